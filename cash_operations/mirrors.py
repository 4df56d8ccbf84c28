"""
Dual-Key Mirror Layer

Each cash operation is stored twice in the same table: once partitioned by
client id and once partitioned by multisig address. The row key is the
operation id under both schemes. Keeping the key derivation here lets the
repository address either copy without knowing how the keys are built.
"""

from typing import Any, Tuple

from .models import OperationEntity


def _copy_fields(src: Any, partition_key: str, row_key: str) -> OperationEntity:
    """Build a mirror entity from a CashInOutOperation or another OperationEntity"""
    return OperationEntity(
        partition_key=partition_key,
        row_key=row_key,
        date_time=src.date_time,
        is_hidden=src.is_hidden,
        asset_id=src.asset_id,
        client_id=src.client_id,
        amount=src.amount,
        blockchain_hash=src.blockchain_hash,
        multisig=src.multisig,
        transaction_id=src.transaction_id,
        address_from=src.address_from,
        address_to=src.address_to,
        is_settled=src.is_settled,
        state_field=src.state.value,
        is_refund=src.is_refund,
        type_field=src.type.value,
        fee_size=src.fee_size,
        fee_type_text=src.fee_type.value,
    )


class ByClientId:
    """Key scheme for the client-keyed mirror"""

    @staticmethod
    def generate_partition_key(client_id: str) -> str:
        return client_id

    @staticmethod
    def generate_row_key(operation_id: str) -> str:
        return operation_id

    @classmethod
    def create(cls, src: Any) -> OperationEntity:
        return _copy_fields(
            src,
            cls.generate_partition_key(src.client_id),
            cls.generate_row_key(src.id),
        )


class ByMultisig:
    """Key scheme for the multisig-keyed mirror"""

    @staticmethod
    def generate_partition_key(multisig: str) -> str:
        return multisig

    @staticmethod
    def generate_row_key(operation_id: str) -> str:
        return operation_id

    @classmethod
    def create(cls, src: Any) -> OperationEntity:
        return _copy_fields(
            src,
            cls.generate_partition_key(src.multisig),
            cls.generate_row_key(src.id),
        )


def create_mirror_pair(src: Any) -> Tuple[OperationEntity, OperationEntity]:
    """Return (client-keyed, multisig-keyed) mirrors of one operation"""
    return ByClientId.create(src), ByMultisig.create(src)


def is_client_mirror(entity: OperationEntity) -> bool:
    """True if the entity is the client-keyed copy of its operation"""
    return entity.partition_key == ByClientId.generate_partition_key(entity.client_id)
