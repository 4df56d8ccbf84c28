#!/usr/bin/env python3
"""Forward cash-out report entry point"""

import asyncio
import sys

from .config import get_config
from .hash_index import IndexEntry
from .logging_config import setup_logging
from .models import OperationEntity
from .reporting import generate_forward_cashout_report
from .repository import CashOperationsRepository
from .storage import PostgreSQLTableStorage, create_table_storage


def build_storages(config):
    """Create the operations and hash index storages from configuration"""
    options = dict(
        storage_type=config.storage_type,
        database_url=config.database_url,
        sqlite_path=config.sqlite_path,
        pool_size=config.database_pool_size,
        command_timeout=config.database_command_timeout,
        chunk_size=config.scan_chunk_size,
    )
    storage = create_table_storage(config.operations_table, OperationEntity, **options)
    index_storage = create_table_storage(config.index_table, IndexEntry, **options)
    return storage, index_storage


async def run(config) -> str:
    storage, index_storage = build_storages(config)
    await storage.initialize()
    if isinstance(storage, PostgreSQLTableStorage) and isinstance(index_storage, PostgreSQLTableStorage):
        index_storage.share_pool(storage)
    await index_storage.initialize()

    try:
        repository = CashOperationsRepository(
            storage, index_storage, max_concurrent_reads=config.max_concurrent_reads
        )
        path = await generate_forward_cashout_report(repository, config)
    finally:
        await index_storage.close()
        await storage.close()
    return str(path)


def main():
    config = get_config()
    logger = setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)

    if not config.report_asset_ids:
        print("❌ No report assets configured (set CASHOPS_REPORT_ASSET_IDS)")
        sys.exit(1)

    try:
        path = asyncio.run(run(config))
    except KeyboardInterrupt:
        print("\n👋 Report cancelled")
        sys.exit(130)
    except Exception as e:
        logger.exception(f"Report failed: {e}")
        print(f"❌ Error generating report: {e}")
        sys.exit(1)

    print(f"✅ Done! Report written to {path}")


if __name__ == "__main__":
    main()
