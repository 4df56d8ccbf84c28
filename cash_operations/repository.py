"""
Cash Operations Repository

Single entry point for registering, reading and updating cash operations.

Every operation is stored as two mirrors in one partitioned table, keyed by
client id and by multisig, plus an optional hash index entry pointing at the
client-keyed mirror. Mirror writes are issued concurrently with no atomicity
across them: if one half of a write fails the copies diverge, the failure is
logged and re-raised, and nothing is rolled back or repaired here.
"""

from typing import Awaitable, Callable, Iterable, List, Optional, Tuple
import asyncio
import logging
import uuid

from .hash_index import BlockchainHashIndex
from .logging_config import log_action
from .mirrors import ByClientId, ByMultisig, create_mirror_pair, is_client_mirror
from .models import CashInOutOperation, OperationEntity, TransactionState
from .storage import ChunkCallback, PartitionedTableStorage, deliver_chunk


logger = logging.getLogger(__name__)


class CashOperationsRepository:
    """
    Dual-keyed store of cash-in/cash-out operations

    Args:
        storage: table holding both mirrors
        index_storage: table holding blockchain hash index entries
        max_concurrent_reads: optional bound on concurrent partition reads
            issued by get_by_multisigs
    """

    def __init__(
        self,
        storage: PartitionedTableStorage,
        index_storage: PartitionedTableStorage,
        max_concurrent_reads: Optional[int] = None
    ):
        self.storage = storage
        self.hash_index = BlockchainHashIndex(index_storage)
        self._read_semaphore = asyncio.Semaphore(max_concurrent_reads) if max_concurrent_reads else None

    async def _when_all(self, action: str, resources: List[str], *aws: Awaitable) -> list:
        """Await every request to completion, then raise the first failure"""
        results = await asyncio.gather(*aws, return_exceptions=True)
        errors = [r for r in results if isinstance(r, BaseException)]
        if errors:
            failed = [res for res, r in zip(resources, results) if isinstance(r, BaseException)]
            if len(errors) < len(results):
                log_action(
                    logger, "warning",
                    f"Partial failure during {action}; mirrors may have diverged",
                    action=action, resource=",".join(resources),
                    extra={"failed": failed, "error": repr(errors[0])}
                )
            raise errors[0]
        return results

    def _resource(self, partition_key: str, row_key: str) -> str:
        return f"{self.storage.table}/{partition_key}/{row_key}"

    async def register(self, operation: CashInOutOperation) -> str:
        """
        Store both mirrors of a new operation and index its hash if known

        Returns the operation id, generating one if the operation has none.
        Raises RecordConflictError if either mirror coordinate already exists;
        the other mirror may still have been written.
        """
        if not operation.id:
            operation.id = str(uuid.uuid4())

        by_client, by_multisig = create_mirror_pair(operation)
        await self._when_all(
            "register",
            [self._resource(*by_client.coordinate), self._resource(*by_multisig.coordinate)],
            self.storage.insert(by_client),
            self.storage.insert(by_multisig),
        )

        if operation.blockchain_hash:
            await self.hash_index.insert(
                operation.blockchain_hash, by_client.row_key,
                by_client.partition_key, by_client.row_key
            )

        log_action(logger, "info", "Registered cash operation", action="register",
                   resource=self._resource(*by_client.coordinate))
        return by_client.id

    async def get_by_client(self, client_id: str) -> List[OperationEntity]:
        return await self.storage.get_by_partition(ByClientId.generate_partition_key(client_id))

    async def get_by_client_chunked(self, client_id: str, on_chunk: ChunkCallback) -> None:
        """Deliver a client's operations in bounded pages"""
        await self.storage.scan_by_chunks(on_chunk, ByClientId.generate_partition_key(client_id))

    async def get_one(self, client_id: str, operation_id: str) -> OperationEntity:
        """Point lookup on the client-keyed mirror; raises RecordNotFoundError"""
        return await self.storage.get(
            ByClientId.generate_partition_key(client_id),
            ByClientId.generate_row_key(operation_id)
        )

    async def _locate(self, client_id: str, operation_id: str) -> List[Tuple[str, str]]:
        """Read the client mirror to find both mirror coordinates"""
        partition_key = ByClientId.generate_partition_key(client_id)
        row_key = ByClientId.generate_row_key(operation_id)

        record = await self.storage.get(partition_key, row_key)

        return [
            (partition_key, row_key),
            (ByMultisig.generate_partition_key(record.multisig), ByMultisig.generate_row_key(operation_id)),
        ]

    async def _merge_mirrors(self, action: str, coordinates: List[Tuple[str, str]],
                             mutate: Callable[[OperationEntity], OperationEntity]) -> None:
        await self._when_all(
            action,
            [self._resource(*coordinate) for coordinate in coordinates],
            *(self.storage.merge(pk, rk, mutate) for pk, rk in coordinates)
        )
        log_action(logger, "info", "Updated cash operation", action=action,
                   resource=self._resource(*coordinates[0]))

    async def update_blockchain_hash(self, client_id: str, operation_id: str, hash_value: str) -> None:
        """Attach a blockchain hash and mark the operation settled on-chain"""
        coordinates = await self._locate(client_id, operation_id)
        partition_key, row_key = coordinates[0]

        await self.hash_index.insert_or_replace(hash_value, row_key, partition_key, row_key)

        def mutate(entity: OperationEntity) -> OperationEntity:
            entity.blockchain_hash = hash_value
            entity.state = TransactionState.SETTLED_ONCHAIN
            return entity

        await self._merge_mirrors("update_blockchain_hash", coordinates, mutate)

    async def set_transaction_id(self, client_id: str, operation_id: str, transaction_id: str) -> None:
        """Link the operation to an external transaction queue record"""
        def mutate(entity: OperationEntity) -> OperationEntity:
            entity.transaction_id = transaction_id
            return entity

        coordinates = await self._locate(client_id, operation_id)
        await self._merge_mirrors("set_transaction_id", coordinates, mutate)

    async def set_settled(self, client_id: str, operation_id: str, offchain: bool) -> None:
        """
        Mark the operation settled

        Off-chain settlement moves state to SettledOffchain. Otherwise only
        is_settled is set and state is left unchanged.
        """
        def mutate(entity: OperationEntity) -> OperationEntity:
            if offchain:
                entity.state = TransactionState.SETTLED_OFFCHAIN
            else:
                entity.is_settled = True
            return entity

        coordinates = await self._locate(client_id, operation_id)
        await self._merge_mirrors("set_settled", coordinates, mutate)

    async def get_by_hash(self, hash_value: str) -> List[OperationEntity]:
        return await self.hash_index.resolve(hash_value, self.storage)

    async def get_by_multisig(self, multisig: str) -> List[OperationEntity]:
        return await self.storage.get_by_partition(ByMultisig.generate_partition_key(multisig))

    async def _read_partition(self, partition_key: str) -> List[OperationEntity]:
        if self._read_semaphore is None:
            return await self.storage.get_by_partition(partition_key)
        async with self._read_semaphore:
            return await self.storage.get_by_partition(partition_key)

    async def get_by_multisigs(self, multisigs: Iterable[str]) -> List[OperationEntity]:
        """Read several multisig partitions concurrently; results are not deduplicated"""
        partitions = await asyncio.gather(*(
            self._read_partition(ByMultisig.generate_partition_key(multisig))
            for multisig in multisigs
        ))

        result = []
        for entities in partitions:
            result.extend(entities)
        return result

    async def scan_all_chunked(self, on_chunk: ChunkCallback) -> None:
        """
        Deliver every operation once, in bounded pages

        The underlying table holds both mirrors; each page is narrowed to the
        client-keyed copies. Pages with no client-keyed copies are skipped.
        """
        async def narrow(chunk: List[OperationEntity]) -> None:
            client_mirrors = [entity for entity in chunk if is_client_mirror(entity)]
            if client_mirrors:
                await deliver_chunk(on_chunk, client_mirrors)

        await self.storage.scan_by_chunks(narrow)
