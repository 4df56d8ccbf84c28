"""
Test suite for the cash operations repository

Tests registration of mirror pairs, the three read paths (client, multisig,
blockchain hash), mirrored updates and the observable divergence left behind
by a partially failed update.
"""

import pytest
from decimal import Decimal
from datetime import datetime, timezone

from cash_operations.hash_index import IndexEntry
from cash_operations.models import (
    CashInOutOperation, OperationEntity, TransactionState,
    CashOperationType, FeeSizeType
)
from cash_operations.repository import CashOperationsRepository
from cash_operations.storage import (
    InMemoryTableStorage, SQLiteTableStorage, RecordConflictError, RecordNotFoundError
)


class FailingMergeStorage(InMemoryTableStorage):
    """In-memory storage whose merges fail for chosen partitions"""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.fail_partitions = set()

    async def merge(self, partition_key, row_key, mutate):
        if partition_key in self.fail_partitions:
            raise ConnectionError(f"simulated outage for {partition_key}")
        return await super().merge(partition_key, row_key, mutate)


def make_operation(**overrides):
    values = dict(
        id="op-1",
        client_id="client-1",
        asset_id="X",
        amount=Decimal("10"),
        date_time=datetime(2024, 5, 1, 9, 30, tzinfo=timezone.utc),
        multisig="M1",
        type=CashOperationType.FORWARD_CASH_OUT,
        address_from="addr-from",
        address_to="addr-to",
        fee_size=Decimal("0.5"),
        fee_type=FeeSizeType.ABSOLUTE,
    )
    values.update(overrides)
    return CashInOutOperation(**values)


def assert_matches_operation(entity, operation):
    assert entity.id == operation.id
    assert entity.client_id == operation.client_id
    assert entity.asset_id == operation.asset_id
    assert entity.amount == operation.amount
    assert entity.date_time == operation.date_time
    assert entity.multisig == operation.multisig
    assert entity.blockchain_hash == operation.blockchain_hash
    assert entity.transaction_id == operation.transaction_id
    assert entity.address_from == operation.address_from
    assert entity.address_to == operation.address_to
    assert entity.is_settled == operation.is_settled
    assert entity.is_hidden == operation.is_hidden
    assert entity.is_refund == operation.is_refund
    assert entity.state is operation.state
    assert entity.type is operation.type
    assert entity.fee_size == operation.fee_size
    assert entity.fee_type is operation.fee_type


@pytest.fixture
def storage():
    return FailingMergeStorage("OperationsCash", OperationEntity, chunk_size=2)


@pytest.fixture
def index_storage():
    return InMemoryTableStorage("OperationsCashHashIndex", IndexEntry)


@pytest.fixture
def repository(storage, index_storage):
    return CashOperationsRepository(storage, index_storage)


async def multisig_copy(repository, client_id, operation_id):
    """Load the multisig-keyed mirror of an operation"""
    record = await repository.get_one(client_id, operation_id)
    return await repository.storage.get(record.multisig, operation_id)


class TestRegister:
    """Registration writes both mirrors and the optional index entry"""

    @pytest.mark.asyncio
    async def test_register_creates_both_mirrors(self, repository, storage):
        operation = make_operation()
        operation_id = await repository.register(operation)

        assert operation_id == "op-1"
        by_client = await storage.get("client-1", "op-1")
        by_multisig = await storage.get("M1", "op-1")
        assert_matches_operation(by_client, operation)
        assert_matches_operation(by_multisig, operation)
        assert by_client.content() == by_multisig.content()
        assert storage.count() == 2

    @pytest.mark.asyncio
    async def test_register_assigns_id_when_missing(self, repository):
        operation = make_operation(id="")
        operation_id = await repository.register(operation)

        assert operation_id
        assert operation.id == operation_id
        assert (await repository.get_one("client-1", operation_id)).id == operation_id

    @pytest.mark.asyncio
    async def test_register_preserves_initial_state(self, repository):
        operation = make_operation(state=TransactionState.IN_PROCESS_OFFCHAIN)
        await repository.register(operation)

        assert (await repository.get_one("client-1", "op-1")).state is TransactionState.IN_PROCESS_OFFCHAIN
        assert (await multisig_copy(repository, "client-1", "op-1")).state is TransactionState.IN_PROCESS_OFFCHAIN

    @pytest.mark.asyncio
    async def test_register_without_hash_writes_no_index(self, repository, index_storage):
        await repository.register(make_operation())
        assert index_storage.count() == 0

    @pytest.mark.asyncio
    async def test_register_with_hash_then_get_by_hash(self, repository, index_storage):
        operation = make_operation(blockchain_hash="0xfeed")
        await repository.register(operation)

        found = await repository.get_by_hash("0xfeed")

        assert len(found) == 1
        assert found[0].partition_key == "client-1"
        assert_matches_operation(found[0], operation)

        entries = await repository.hash_index.lookup("0xfeed")
        assert [(e.primary_partition_key, e.primary_row_key) for e in entries] == [("client-1", "op-1")]

    @pytest.mark.asyncio
    async def test_register_duplicate_conflicts(self, repository):
        await repository.register(make_operation())
        with pytest.raises(RecordConflictError):
            await repository.register(make_operation())

    @pytest.mark.asyncio
    async def test_register_conflict_on_one_mirror_leaves_partial_insert(self, repository, storage):
        # Occupy only the multisig coordinate
        await repository.register(make_operation(client_id="client-0", multisig="M1"))

        with pytest.raises(RecordConflictError):
            await repository.register(make_operation(client_id="client-1", multisig="M1"))

        # The client-keyed mirror was still written
        partial = await storage.get("client-1", "op-1")
        assert partial.client_id == "client-1"


class TestReads:
    """Reads by client, multisig and hash"""

    @pytest.mark.asyncio
    async def test_get_by_client(self, repository):
        await repository.register(make_operation(id="a"))
        await repository.register(make_operation(id="b", multisig="M2"))
        await repository.register(make_operation(id="c", client_id="client-2"))

        found = await repository.get_by_client("client-1")
        assert sorted(entity.id for entity in found) == ["a", "b"]
        assert {entity.partition_key for entity in found} == {"client-1"}

    @pytest.mark.asyncio
    async def test_get_by_client_chunked(self, repository, storage):
        for i in range(5):
            await repository.register(make_operation(id=f"op-{i}"))
        chunks = []

        await repository.get_by_client_chunked("client-1", chunks.append)

        assert all(len(chunk) <= storage.chunk_size for chunk in chunks)
        assert sorted(e.id for chunk in chunks for e in chunk) == [f"op-{i}" for i in range(5)]

    @pytest.mark.asyncio
    async def test_get_one_missing(self, repository):
        with pytest.raises(RecordNotFoundError):
            await repository.get_one("client-1", "nope")

    @pytest.mark.asyncio
    async def test_get_by_multisig(self, repository):
        await repository.register(make_operation(id="a", client_id="c1"))
        await repository.register(make_operation(id="b", client_id="c2"))
        await repository.register(make_operation(id="c", multisig="M2"))

        found = await repository.get_by_multisig("M1")
        assert sorted(entity.id for entity in found) == ["a", "b"]
        assert {entity.partition_key for entity in found} == {"M1"}

    @pytest.mark.asyncio
    async def test_get_by_multisigs_concatenates_without_dedup(self, repository):
        await repository.register(make_operation(id="a"))
        await repository.register(make_operation(id="b", multisig="M2"))

        found = await repository.get_by_multisigs(["M1", "M2", "M1", "M9"])
        assert sorted(entity.id for entity in found) == ["a", "a", "b"]

    @pytest.mark.asyncio
    async def test_get_by_multisigs_with_bounded_fan_out(self, storage, index_storage):
        repository = CashOperationsRepository(storage, index_storage, max_concurrent_reads=1)
        for i in range(4):
            await repository.register(make_operation(id=f"op-{i}", multisig=f"M{i}"))

        found = await repository.get_by_multisigs([f"M{i}" for i in range(4)])
        assert sorted(entity.id for entity in found) == [f"op-{i}" for i in range(4)]

    @pytest.mark.asyncio
    async def test_get_by_unknown_hash(self, repository):
        assert await repository.get_by_hash("0xnothing") == []


class TestUpdateBlockchainHash:
    """Hash attachment updates both mirrors and the index"""

    @pytest.mark.asyncio
    async def test_forward_cash_out_scenario(self, repository):
        await repository.register(make_operation())

        await repository.update_blockchain_hash("client-1", "op-1", "0xabc")

        for entity in (await repository.get_one("client-1", "op-1"),
                       await multisig_copy(repository, "client-1", "op-1")):
            assert entity.state is TransactionState.SETTLED_ONCHAIN
            assert entity.blockchain_hash == "0xabc"

        found = await repository.get_by_hash("0xabc")
        assert [entity.id for entity in found] == ["op-1"]
        assert found[0].type is CashOperationType.FORWARD_CASH_OUT

    @pytest.mark.asyncio
    async def test_repeated_hash_leaves_one_pointer(self, repository):
        await repository.register(make_operation(blockchain_hash="0xabc"))

        await repository.update_blockchain_hash("client-1", "op-1", "0xabc")
        await repository.update_blockchain_hash("client-1", "op-1", "0xabc")

        assert len(await repository.hash_index.lookup("0xabc")) == 1
        assert len(await repository.get_by_hash("0xabc")) == 1

    @pytest.mark.asyncio
    async def test_missing_operation(self, repository, index_storage):
        with pytest.raises(RecordNotFoundError):
            await repository.update_blockchain_hash("client-1", "nope", "0xabc")
        assert index_storage.count() == 0


class TestSetTransactionId:
    """Transaction id attachment"""

    @pytest.mark.asyncio
    async def test_sets_on_both_mirrors(self, repository):
        await repository.register(make_operation())

        await repository.set_transaction_id("client-1", "op-1", "btc-tx-7")

        assert (await repository.get_one("client-1", "op-1")).transaction_id == "btc-tx-7"
        assert (await multisig_copy(repository, "client-1", "op-1")).transaction_id == "btc-tx-7"


class TestSetSettled:
    """Settlement marking"""

    @pytest.mark.asyncio
    async def test_offchain_sets_state(self, repository):
        await repository.register(make_operation())

        await repository.set_settled("client-1", "op-1", offchain=True)

        for entity in (await repository.get_one("client-1", "op-1"),
                       await multisig_copy(repository, "client-1", "op-1")):
            assert entity.state is TransactionState.SETTLED_OFFCHAIN
            assert entity.is_settled is None

    @pytest.mark.asyncio
    async def test_onchain_sets_flag_only(self, repository):
        await repository.register(make_operation())

        await repository.set_settled("client-1", "op-1", offchain=False)

        for entity in (await repository.get_one("client-1", "op-1"),
                       await multisig_copy(repository, "client-1", "op-1")):
            assert entity.is_settled is True
            assert entity.state is TransactionState.IN_PROCESS_ONCHAIN

    @pytest.mark.asyncio
    async def test_failed_second_merge_leaves_observable_divergence(self, repository, storage, caplog):
        await repository.register(make_operation())
        storage.fail_partitions.add("M1")

        with pytest.raises(ConnectionError):
            await repository.set_settled("client-1", "op-1", offchain=True)

        by_client = await storage.get("client-1", "op-1")
        by_multisig = await storage.get("M1", "op-1")
        assert by_client.state is TransactionState.SETTLED_OFFCHAIN
        assert by_multisig.state is TransactionState.IN_PROCESS_ONCHAIN
        assert by_client.content() != by_multisig.content()
        assert "mirrors may have diverged" in caplog.text


class TestMirrorIdentity:
    """Both mirrors stay field-identical across the update lifecycle"""

    @pytest.mark.asyncio
    async def test_mirrors_identical_after_every_update(self, repository):
        await repository.register(make_operation(is_refund=True, is_hidden=True))

        async def assert_identical():
            by_client = await repository.get_one("client-1", "op-1")
            by_multisig = await multisig_copy(repository, "client-1", "op-1")
            assert by_client.content() == by_multisig.content()

        await assert_identical()
        await repository.set_transaction_id("client-1", "op-1", "tx-1")
        await assert_identical()
        await repository.update_blockchain_hash("client-1", "op-1", "0x1")
        await assert_identical()
        await repository.set_settled("client-1", "op-1", offchain=False)
        await assert_identical()


class TestScanAllChunked:
    """Full scans deliver each operation once"""

    @pytest.mark.asyncio
    async def test_scan_is_complete_without_duplicates(self, repository):
        ids = [f"op-{i}" for i in range(7)]
        for i, operation_id in enumerate(ids):
            await repository.register(make_operation(
                id=operation_id, client_id=f"client-{i % 3}", multisig=f"M{i % 2}"
            ))
        chunks = []

        await repository.scan_all_chunked(chunks.append)

        scanned = [entity for chunk in chunks for entity in chunk]
        assert sorted(entity.id for entity in scanned) == ids
        assert all(entity.partition_key == entity.client_id for entity in scanned)

        by_partition = []
        for i in range(3):
            by_partition.extend(await repository.get_by_client(f"client-{i}"))
        assert sorted(e.id for e in by_partition) == sorted(e.id for e in scanned)

    @pytest.mark.asyncio
    async def test_scan_over_sqlite(self, tmp_path):
        storage = SQLiteTableStorage("OperationsCash", OperationEntity, tmp_path / "ops.db", chunk_size=3)
        index_storage = SQLiteTableStorage("OperationsCashHashIndex", IndexEntry, tmp_path / "ops.db")
        repository = CashOperationsRepository(storage, index_storage)
        try:
            for i in range(5):
                await repository.register(make_operation(id=f"op-{i}", blockchain_hash=f"0x{i}"))
            seen = []

            async def on_chunk(chunk):
                seen.extend(chunk)

            await repository.scan_all_chunked(on_chunk)

            assert sorted(entity.id for entity in seen) == [f"op-{i}" for i in range(5)]
            assert [e.id for e in await repository.get_by_hash("0x3")] == ["op-3"]
        finally:
            await index_storage.close()
            await storage.close()
