"""
Tests for the blockchain hash index
"""

import pytest
from decimal import Decimal
from datetime import datetime, timezone

from cash_operations.hash_index import BlockchainHashIndex, IndexEntry
from cash_operations.mirrors import create_mirror_pair
from cash_operations.models import CashInOutOperation, OperationEntity
from cash_operations.storage import InMemoryTableStorage, RecordConflictError


@pytest.fixture
def operation():
    return CashInOutOperation(
        id="op-9",
        client_id="client-9",
        asset_id="BTC",
        amount=Decimal("-0.25"),
        date_time=datetime(2023, 2, 28, tzinfo=timezone.utc),
        blockchain_hash="0x99",
        multisig="M9",
    )


class TestBlockchainHashIndex:
    """Index pointers and their resolution"""

    @pytest.fixture
    def index(self):
        return BlockchainHashIndex(InMemoryTableStorage("idx", IndexEntry))

    @pytest.mark.asyncio
    async def test_insert_and_lookup(self, index):
        entry = await index.insert("0x1", "op-1", "client-1", "op-1")

        assert entry.hash_value == "0x1"
        assert await index.lookup("0x1") == [entry]
        assert await index.lookup("0x2") == []

    @pytest.mark.asyncio
    async def test_insert_twice_conflicts(self, index):
        await index.insert("0x1", "op-1", "client-1", "op-1")
        with pytest.raises(RecordConflictError):
            await index.insert("0x1", "op-1", "client-1", "op-1")

    @pytest.mark.asyncio
    async def test_insert_or_replace_is_idempotent(self, index):
        await index.insert("0x1", "op-1", "client-1", "op-1")
        await index.insert_or_replace("0x1", "op-1", "client-1", "op-1")
        await index.insert_or_replace("0x1", "op-1", "client-1", "op-1")
        assert len(await index.lookup("0x1")) == 1

    @pytest.mark.asyncio
    async def test_resolve_drops_dangling_pointers(self, index, operation):
        storage = InMemoryTableStorage("ops", OperationEntity)
        by_client, _ = create_mirror_pair(operation)
        await storage.insert(by_client)
        await index.insert("0x99", "op-9", "client-9", "op-9")
        await index.insert("0x99", "op-gone", "client-9", "op-gone")

        resolved = await index.resolve("0x99", storage)

        assert [entity.id for entity in resolved] == ["op-9"]
