"""
Tests for the dual-key mirror layer
"""

import pytest
from decimal import Decimal
from datetime import datetime, timezone

from cash_operations.mirrors import (
    ByClientId, ByMultisig, create_mirror_pair, is_client_mirror
)
from cash_operations.models import (
    CashInOutOperation, OperationEntity, TransactionState, CashOperationType, FeeSizeType
)


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
        transaction_id="tx-9",
        is_settled=False,
        state=TransactionState.SETTLED_NO_CHAIN,
        type=CashOperationType.FORWARD_CASH_IN,
        fee_size=Decimal("1.5"),
        fee_type=FeeSizeType.PERCENTAGE,
    )


class TestKeySchemes:
    """Partition and row key derivation"""

    def test_keys(self):
        assert ByClientId.generate_partition_key("c") == "c"
        assert ByMultisig.generate_partition_key("m") == "m"
        assert ByClientId.generate_row_key("id") == ByMultisig.generate_row_key("id") == "id"

    def test_mirror_pair_coordinates(self, operation):
        by_client, by_multisig = create_mirror_pair(operation)
        assert by_client.coordinate == ("client-9", "op-9")
        assert by_multisig.coordinate == ("M9", "op-9")
        assert is_client_mirror(by_client)
        assert not is_client_mirror(by_multisig)

    def test_mirror_pair_preserves_every_field(self, operation):
        by_client, by_multisig = create_mirror_pair(operation)

        assert by_client.content() == by_multisig.content()
        assert by_client.state is TransactionState.SETTLED_NO_CHAIN
        assert by_client.type is CashOperationType.FORWARD_CASH_IN
        assert by_client.fee_type is FeeSizeType.PERCENTAGE
        assert by_client.fee_size == Decimal("1.5")
        assert by_client.transaction_id == "tx-9"
        assert by_client.is_settled is False

    def test_mirror_from_stored_entity(self, operation):
        by_client = ByClientId.create(operation)
        copy = ByMultisig.create(by_client)
        assert isinstance(copy, OperationEntity)
        assert copy.partition_key == "M9"
        assert copy.content() == by_client.content()
