"""
Partitioned Table Storage Module

Provides the async partitioned key-value storage interface used by the cash
operations repository, plus in-memory (testing), SQLite (local persistence)
and PostgreSQL (production, asyncpg) implementations.

Every entity is addressed by a (partition_key, row_key) coordinate. Uniqueness
is per coordinate, not global. Monetary values are stored as Decimal strings.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union, Callable, Iterable, Tuple, Type, TypeVar
from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, asdict, fields
from enum import Enum
from pathlib import Path
import asyncio
import inspect
import json
import logging
import sqlite3
import threading


logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 1000


class StorageError(Exception):
    """Base class for storage errors"""

    def __init__(self, message: str, table: str = "", partition_key: str = "", row_key: str = ""):
        super().__init__(message)
        self.table = table
        self.partition_key = partition_key
        self.row_key = row_key


class RecordNotFoundError(StorageError):
    """Raised when a point lookup or merge targets a missing coordinate"""

    def __init__(self, table: str, partition_key: str, row_key: str):
        super().__init__(
            f"Entity ({partition_key!r}, {row_key!r}) not found in table {table!r}",
            table, partition_key, row_key
        )


class RecordConflictError(StorageError):
    """Raised when inserting over an existing coordinate"""

    def __init__(self, table: str, partition_key: str, row_key: str):
        super().__init__(
            f"Entity ({partition_key!r}, {row_key!r}) already exists in table {table!r}",
            table, partition_key, row_key
        )


@dataclass
class TableEntity:
    """Base class for all entities stored in a partitioned table"""
    partition_key: str = ""
    row_key: str = ""

    @property
    def coordinate(self) -> Tuple[str, str]:
        return self.partition_key, self.row_key

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-safe dictionary for storage"""
        result = asdict(self)
        for key, value in result.items():
            if isinstance(value, Decimal):
                result[key] = str(value)
            elif isinstance(value, datetime):
                if value.tzinfo is None:
                    value = value.replace(tzinfo=timezone.utc)
                result[key] = value.isoformat()
            elif isinstance(value, Enum):
                result[key] = value.value
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TableEntity':
        """Create instance from dictionary, ignoring unknown keys"""
        known = {f.name for f in fields(cls)}
        return cls(**{key: value for key, value in data.items() if key in known})


E = TypeVar('E', bound=TableEntity)

ChunkCallback = Callable[[List[Any]], Any]


async def deliver_chunk(callback: ChunkCallback, chunk: List[Any]) -> None:
    """Invoke a chunk callback that may be either sync or async"""
    result = callback(chunk)
    if inspect.isawaitable(result):
        await result


class PartitionedTableStorage(ABC):
    """
    Abstract interface for partitioned table backends

    An instance is bound to one logical table and one entity type. Retries,
    timeouts and cancellation are the backend client's concern.
    """

    def __init__(self, table: str, entity_type: Type[E], chunk_size: int = DEFAULT_CHUNK_SIZE):
        if chunk_size < 1:
            raise ValueError("chunk_size must be positive")
        self.table = table
        self.entity_type = entity_type
        self.chunk_size = chunk_size

    def _to_entity(self, data: Dict[str, Any]) -> E:
        return self.entity_type.from_dict(data)

    @abstractmethod
    async def insert(self, entity: E) -> None:
        """Insert an entity, failing with RecordConflictError if it exists"""
        pass

    @abstractmethod
    async def insert_or_replace(self, entity: E) -> None:
        """Insert or fully replace an entity"""
        pass

    @abstractmethod
    async def get(self, partition_key: str, row_key: str) -> E:
        """Point lookup, failing with RecordNotFoundError if absent"""
        pass

    @abstractmethod
    async def get_by_partition(self, partition_key: str) -> List[E]:
        """Load all entities under a partition key"""
        pass

    @abstractmethod
    async def get_many(self, keys: Iterable[Tuple[str, str]]) -> List[E]:
        """Batch point lookup; missing coordinates are omitted"""
        pass

    @abstractmethod
    async def merge(self, partition_key: str, row_key: str, mutate: Callable[[E], E]) -> E:
        """Apply a mutation to one entity and persist it atomically"""
        pass

    @abstractmethod
    async def scan_by_chunks(self, callback: ChunkCallback, partition_key: Optional[str] = None) -> None:
        """Deliver the table (or one partition) to callback in bounded pages"""
        pass

    async def initialize(self) -> None:
        """Prepare backend resources (default no-op)"""
        pass

    async def close(self) -> None:
        """Close storage connection (default no-op)"""
        pass


class InMemoryTableStorage(PartitionedTableStorage):
    """In-memory partitioned storage for testing"""

    def __init__(self, table: str, entity_type: Type[E], chunk_size: int = DEFAULT_CHUNK_SIZE):
        super().__init__(table, entity_type, chunk_size)
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _copy(data: Dict[str, Any]) -> Dict[str, Any]:
        # Deep copy to prevent external mutation
        return json.loads(json.dumps(data, default=str))

    def _lookup(self, partition_key: str, row_key: str) -> Optional[Dict[str, Any]]:
        return self._data.get(partition_key, {}).get(row_key)

    def _store(self, entity: E) -> None:
        self._data.setdefault(entity.partition_key, {})[entity.row_key] = self._copy(entity.to_dict())

    async def insert(self, entity: E) -> None:
        async with self._lock:
            if self._lookup(entity.partition_key, entity.row_key) is not None:
                raise RecordConflictError(self.table, entity.partition_key, entity.row_key)
            self._store(entity)

    async def insert_or_replace(self, entity: E) -> None:
        async with self._lock:
            self._store(entity)

    async def get(self, partition_key: str, row_key: str) -> E:
        async with self._lock:
            record = self._lookup(partition_key, row_key)
            if record is None:
                raise RecordNotFoundError(self.table, partition_key, row_key)
            return self._to_entity(self._copy(record))

    async def get_by_partition(self, partition_key: str) -> List[E]:
        async with self._lock:
            partition = self._data.get(partition_key, {})
            return [self._to_entity(self._copy(record)) for record in partition.values()]

    async def get_many(self, keys: Iterable[Tuple[str, str]]) -> List[E]:
        async with self._lock:
            results = []
            for partition_key, row_key in keys:
                record = self._lookup(partition_key, row_key)
                if record is not None:
                    results.append(self._to_entity(self._copy(record)))
            return results

    async def merge(self, partition_key: str, row_key: str, mutate: Callable[[E], E]) -> E:
        async with self._lock:
            record = self._lookup(partition_key, row_key)
            if record is None:
                raise RecordNotFoundError(self.table, partition_key, row_key)
            entity = mutate(self._to_entity(self._copy(record)))
            # The coordinate is fixed by the merge target
            entity.partition_key, entity.row_key = partition_key, row_key
            self._store(entity)
            return entity

    async def scan_by_chunks(self, callback: ChunkCallback, partition_key: Optional[str] = None) -> None:
        async with self._lock:
            if partition_key is None:
                keys = [(pk, rk) for pk, rows in self._data.items() for rk in rows]
            else:
                keys = [(partition_key, rk) for rk in self._data.get(partition_key, {})]

        for start in range(0, len(keys), self.chunk_size):
            chunk = await self.get_many(keys[start:start + self.chunk_size])
            if chunk:
                await deliver_chunk(callback, chunk)

    def count(self) -> int:
        """Count entities across all partitions"""
        return sum(len(rows) for rows in self._data.values())


class SQLiteTableStorage(PartitionedTableStorage):
    """SQLite partitioned storage; blocking calls run in a worker thread"""

    def __init__(
        self,
        table: str,
        entity_type: Type[E],
        db_path: Union[str, Path] = ":memory:",
        chunk_size: int = DEFAULT_CHUNK_SIZE
    ):
        super().__init__(table, entity_type, chunk_size)
        self.db_path = str(db_path)
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False)
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()

        with self._lock:
            if self.db_path != ":memory:":
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
            self._connection.execute(f"""
                CREATE TABLE IF NOT EXISTS "{self.table}" (
                    partition_key TEXT NOT NULL,
                    row_key TEXT NOT NULL,
                    data TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (partition_key, row_key)
                )
            """)
            self._connection.commit()

    def _row_to_entity(self, row: sqlite3.Row) -> E:
        return self._to_entity(json.loads(row['data']))

    def _insert_sync(self, entity: E, replace: bool) -> None:
        verb = "INSERT OR REPLACE" if replace else "INSERT"
        now = datetime.now(timezone.utc).isoformat()
        with self._lock:
            try:
                self._connection.execute(f"""
                    {verb} INTO "{self.table}" (partition_key, row_key, data, updated_at)
                    VALUES (?, ?, ?, ?)
                """, (entity.partition_key, entity.row_key, json.dumps(entity.to_dict()), now))
                self._connection.commit()
            except sqlite3.IntegrityError:
                self._connection.rollback()
                raise RecordConflictError(self.table, entity.partition_key, entity.row_key)

    def _get_sync(self, partition_key: str, row_key: str) -> Optional[E]:
        with self._lock:
            row = self._connection.execute(f"""
                SELECT data FROM "{self.table}" WHERE partition_key = ? AND row_key = ?
            """, (partition_key, row_key)).fetchone()
            return self._row_to_entity(row) if row else None

    def _get_by_partition_sync(self, partition_key: str) -> List[E]:
        with self._lock:
            cursor = self._connection.execute(f"""
                SELECT data FROM "{self.table}" WHERE partition_key = ?
            """, (partition_key,))
            return [self._row_to_entity(row) for row in cursor.fetchall()]

    def _get_many_sync(self, keys: List[Tuple[str, str]]) -> List[E]:
        results = []
        for partition_key, row_key in keys:
            entity = self._get_sync(partition_key, row_key)
            if entity is not None:
                results.append(entity)
        return results

    def _merge_sync(self, partition_key: str, row_key: str, mutate: Callable[[E], E]) -> E:
        with self._lock:
            entity = self._get_sync(partition_key, row_key)
            if entity is None:
                raise RecordNotFoundError(self.table, partition_key, row_key)
            entity = mutate(entity)
            entity.partition_key, entity.row_key = partition_key, row_key
            self._connection.execute(f"""
                UPDATE "{self.table}" SET data = ?, updated_at = ?
                WHERE partition_key = ? AND row_key = ?
            """, (json.dumps(entity.to_dict()), datetime.now(timezone.utc).isoformat(),
                  partition_key, row_key))
            self._connection.commit()
            return entity

    def _page_sync(self, after: Optional[Tuple[str, str]], partition_key: Optional[str]) -> List[sqlite3.Row]:
        conditions = []
        params: List[Any] = []
        if partition_key is not None:
            conditions.append("partition_key = ?")
            params.append(partition_key)
        if after is not None:
            conditions.append("(partition_key > ? OR (partition_key = ? AND row_key > ?))")
            params.extend([after[0], after[0], after[1]])
        where_clause = " AND ".join(conditions) if conditions else "1=1"
        params.append(self.chunk_size)
        with self._lock:
            return self._connection.execute(f"""
                SELECT partition_key, row_key, data FROM "{self.table}"
                WHERE {where_clause}
                ORDER BY partition_key, row_key
                LIMIT ?
            """, params).fetchall()

    async def insert(self, entity: E) -> None:
        await asyncio.to_thread(self._insert_sync, entity, False)

    async def insert_or_replace(self, entity: E) -> None:
        await asyncio.to_thread(self._insert_sync, entity, True)

    async def get(self, partition_key: str, row_key: str) -> E:
        entity = await asyncio.to_thread(self._get_sync, partition_key, row_key)
        if entity is None:
            raise RecordNotFoundError(self.table, partition_key, row_key)
        return entity

    async def get_by_partition(self, partition_key: str) -> List[E]:
        return await asyncio.to_thread(self._get_by_partition_sync, partition_key)

    async def get_many(self, keys: Iterable[Tuple[str, str]]) -> List[E]:
        return await asyncio.to_thread(self._get_many_sync, list(keys))

    async def merge(self, partition_key: str, row_key: str, mutate: Callable[[E], E]) -> E:
        return await asyncio.to_thread(self._merge_sync, partition_key, row_key, mutate)

    async def scan_by_chunks(self, callback: ChunkCallback, partition_key: Optional[str] = None) -> None:
        after = None
        while True:
            rows = await asyncio.to_thread(self._page_sync, after, partition_key)
            if not rows:
                break
            await deliver_chunk(callback, [self._row_to_entity(row) for row in rows])
            if len(rows) < self.chunk_size:
                break
            after = (rows[-1]['partition_key'], rows[-1]['row_key'])

    async def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


class PostgreSQLTableStorage(PartitionedTableStorage):
    """Async PostgreSQL partitioned storage using asyncpg"""

    def __init__(
        self,
        table: str,
        entity_type: Type[E],
        connection_string: str,
        pool_size: int = 10,
        command_timeout: float = 60,
        chunk_size: int = DEFAULT_CHUNK_SIZE
    ):
        super().__init__(table, entity_type, chunk_size)
        self.connection_string = connection_string
        self.pool_size = pool_size
        self.command_timeout = command_timeout
        self.pool = None
        self._owns_pool = True

    def share_pool(self, other: 'PostgreSQLTableStorage') -> None:
        """Reuse another storage's connection pool instead of creating one"""
        self.pool = other.pool
        self._owns_pool = False

    async def initialize(self) -> None:
        """Create connection pool and table; call on startup"""
        if self.pool is None:
            try:
                import asyncpg
            except ImportError:
                raise ImportError("asyncpg is required for PostgreSQLTableStorage")
            self.pool = await asyncpg.create_pool(
                self.connection_string,
                min_size=1,
                max_size=self.pool_size,
                command_timeout=self.command_timeout
            )

        async with self.pool.acquire() as conn:
            await conn.execute(f'''
                CREATE TABLE IF NOT EXISTS "{self.table}" (
                    partition_key TEXT NOT NULL,
                    row_key TEXT NOT NULL,
                    data JSONB NOT NULL,
                    updated_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
                    PRIMARY KEY (partition_key, row_key)
                )
            ''')
        logger.info(f"PostgreSQL table storage ready for table {self.table}")

    async def close(self) -> None:
        """Close pool; call on shutdown"""
        if self.pool and self._owns_pool:
            await self.pool.close()
        self.pool = None

    def _require_pool(self):
        if not self.pool:
            raise RuntimeError("Pool not initialized. Call initialize() first.")
        return self.pool

    def _decode(self, data: Any) -> E:
        if isinstance(data, str):
            data = json.loads(data)
        return self._to_entity(data)

    async def insert(self, entity: E) -> None:
        async with self._require_pool().acquire() as conn:
            status = await conn.execute(f'''
                INSERT INTO "{self.table}" (partition_key, row_key, data)
                VALUES ($1, $2, $3::jsonb)
                ON CONFLICT (partition_key, row_key) DO NOTHING
            ''', entity.partition_key, entity.row_key, json.dumps(entity.to_dict()))
            if status == 'INSERT 0 0':
                raise RecordConflictError(self.table, entity.partition_key, entity.row_key)

    async def insert_or_replace(self, entity: E) -> None:
        async with self._require_pool().acquire() as conn:
            await conn.execute(f'''
                INSERT INTO "{self.table}" (partition_key, row_key, data)
                VALUES ($1, $2, $3::jsonb)
                ON CONFLICT (partition_key, row_key)
                DO UPDATE SET data = EXCLUDED.data, updated_at = NOW()
            ''', entity.partition_key, entity.row_key, json.dumps(entity.to_dict()))

    async def get(self, partition_key: str, row_key: str) -> E:
        async with self._require_pool().acquire() as conn:
            row = await conn.fetchrow(f'''
                SELECT data FROM "{self.table}" WHERE partition_key = $1 AND row_key = $2
            ''', partition_key, row_key)
        if row is None:
            raise RecordNotFoundError(self.table, partition_key, row_key)
        return self._decode(row['data'])

    async def get_by_partition(self, partition_key: str) -> List[E]:
        async with self._require_pool().acquire() as conn:
            rows = await conn.fetch(f'''
                SELECT data FROM "{self.table}" WHERE partition_key = $1
            ''', partition_key)
        return [self._decode(row['data']) for row in rows]

    async def get_many(self, keys: Iterable[Tuple[str, str]]) -> List[E]:
        keys = list(keys)
        if not keys:
            return []
        async with self._require_pool().acquire() as conn:
            rows = await conn.fetch(f'''
                SELECT t.data FROM "{self.table}" t
                JOIN unnest($1::text[], $2::text[]) AS k(partition_key, row_key)
                  ON t.partition_key = k.partition_key AND t.row_key = k.row_key
            ''', [pk for pk, _ in keys], [rk for _, rk in keys])
        return [self._decode(row['data']) for row in rows]

    async def merge(self, partition_key: str, row_key: str, mutate: Callable[[E], E]) -> E:
        async with self._require_pool().acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(f'''
                    SELECT data FROM "{self.table}"
                    WHERE partition_key = $1 AND row_key = $2
                    FOR UPDATE
                ''', partition_key, row_key)
                if row is None:
                    raise RecordNotFoundError(self.table, partition_key, row_key)
                entity = mutate(self._decode(row['data']))
                entity.partition_key, entity.row_key = partition_key, row_key
                await conn.execute(f'''
                    UPDATE "{self.table}" SET data = $3::jsonb, updated_at = NOW()
                    WHERE partition_key = $1 AND row_key = $2
                ''', partition_key, row_key, json.dumps(entity.to_dict()))
        return entity

    async def scan_by_chunks(self, callback: ChunkCallback, partition_key: Optional[str] = None) -> None:
        after_pk, after_rk = None, None
        while True:
            async with self._require_pool().acquire() as conn:
                rows = await conn.fetch(f'''
                    SELECT partition_key, row_key, data FROM "{self.table}"
                    WHERE ($1::text IS NULL OR partition_key = $1)
                      AND ($2::text IS NULL OR (partition_key, row_key) > ($2, $3))
                    ORDER BY partition_key, row_key
                    LIMIT $4
                ''', partition_key, after_pk, after_rk, self.chunk_size)
            if not rows:
                break
            await deliver_chunk(callback, [self._decode(row['data']) for row in rows])
            if len(rows) < self.chunk_size:
                break
            after_pk, after_rk = rows[-1]['partition_key'], rows[-1]['row_key']


def create_table_storage(
    table: str,
    entity_type: Type[E],
    storage_type: str = "memory",
    database_url: Optional[str] = None,
    sqlite_path: Union[str, Path] = ":memory:",
    pool_size: int = 10,
    command_timeout: float = 60,
    chunk_size: int = DEFAULT_CHUNK_SIZE
) -> PartitionedTableStorage:
    """Factory function to create partitioned storage instances"""
    storage_type = (storage_type or "memory").lower()

    if storage_type == "postgresql":
        if not database_url:
            raise ValueError("database_url is required for postgresql storage")
        return PostgreSQLTableStorage(
            table, entity_type, database_url,
            pool_size=pool_size, command_timeout=command_timeout, chunk_size=chunk_size
        )
    if storage_type == "sqlite":
        return SQLiteTableStorage(table, entity_type, sqlite_path, chunk_size=chunk_size)
    if storage_type == "memory":
        return InMemoryTableStorage(table, entity_type, chunk_size=chunk_size)

    raise ValueError(f"Unknown storage type: {storage_type}")
