"""
Blockchain Hash Index

Secondary index from a blockchain transaction hash to the coordinate of the
client-keyed mirror. Entries live at (hash, operation id), so writing the same
hash for the same operation replaces the entry instead of appending one.
"""

from dataclasses import dataclass
from typing import List

from .storage import PartitionedTableStorage, TableEntity


@dataclass
class IndexEntry(TableEntity):
    """Pointer from a hash (partition_key) to a primary coordinate"""
    primary_partition_key: str = ""
    primary_row_key: str = ""

    @property
    def hash_value(self) -> str:
        return self.partition_key

    @classmethod
    def create(cls, hash_value: str, row_key: str, primary_partition_key: str,
               primary_row_key: str) -> 'IndexEntry':
        return cls(
            partition_key=hash_value,
            row_key=row_key,
            primary_partition_key=primary_partition_key,
            primary_row_key=primary_row_key,
        )


class BlockchainHashIndex:
    """Hash lookups over a partitioned table of IndexEntry"""

    def __init__(self, storage: PartitionedTableStorage):
        self.storage = storage

    async def insert(self, hash_value: str, row_key: str, primary_partition_key: str,
                     primary_row_key: str) -> IndexEntry:
        """Add a pointer, failing with RecordConflictError if one exists"""
        entry = IndexEntry.create(hash_value, row_key, primary_partition_key, primary_row_key)
        await self.storage.insert(entry)
        return entry

    async def insert_or_replace(self, hash_value: str, row_key: str, primary_partition_key: str,
                                primary_row_key: str) -> IndexEntry:
        entry = IndexEntry.create(hash_value, row_key, primary_partition_key, primary_row_key)
        await self.storage.insert_or_replace(entry)
        return entry

    async def lookup(self, hash_value: str) -> List[IndexEntry]:
        return await self.storage.get_by_partition(hash_value)

    async def resolve(self, hash_value: str, storage: PartitionedTableStorage) -> List:
        """Follow every pointer for a hash; dangling pointers are dropped"""
        entries = await self.lookup(hash_value)
        if not entries:
            return []
        return await storage.get_many(
            (entry.primary_partition_key, entry.primary_row_key) for entry in entries
        )
