"""
Cash Operation Models

Defines the cash-in/cash-out operation record, its enumerated sub-fields and
the stored entity form. Enumerations persist as text; decoding is total and
falls back to a documented default on empty or unrecognised text instead of
failing.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
from enum import Enum

from .storage import TableEntity


class TextEnum(Enum):
    """Enumeration persisted as its member text"""

    @classmethod
    def default(cls) -> 'TextEnum':
        return next(iter(cls))

    @classmethod
    def parse(cls, text: Optional[str]) -> 'TextEnum':
        """
        Decode stored text, never raising

        Accepts a member name or a valid ordinal. Anything else, including
        empty or missing text, yields the default member.
        """
        if text is None:
            return cls.default()
        text = str(text).strip()
        if not text:
            return cls.default()

        try:
            return cls(text)
        except ValueError:
            pass

        try:
            ordinal = int(text)
        except ValueError:
            return cls.default()

        members = list(cls)
        if 0 <= ordinal < len(members):
            return members[ordinal]
        return cls.default()


class TransactionState(TextEnum):
    """Settlement state of an operation; defaults to InProcessOnchain"""
    IN_PROCESS_ONCHAIN = "InProcessOnchain"
    SETTLED_ONCHAIN = "SettledOnchain"
    IN_PROCESS_OFFCHAIN = "InProcessOffchain"
    SETTLED_OFFCHAIN = "SettledOffchain"
    # No operation transitions into this state; only set at registration
    SETTLED_NO_CHAIN = "SettledNoChain"


class CashOperationType(TextEnum):
    """Kind of cash operation; defaults to None"""
    NONE = "None"
    FORWARD_CASH_OUT = "ForwardCashOut"
    FORWARD_CASH_IN = "ForwardCashIn"


class FeeSizeType(TextEnum):
    """How fee_size is interpreted; defaults to Unknown"""
    UNKNOWN = "Unknown"
    ABSOLUTE = "Absolute"
    PERCENTAGE = "Percentage"


def _parse_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif value:
        parsed = datetime.fromisoformat(str(value))
    else:
        parsed = datetime.fromtimestamp(0, tz=timezone.utc)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_decimal(value: Any) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    return Decimal(str(value))


@dataclass
class CashInOutOperation:
    """
    Caller-side cash operation passed to registration

    An empty id is replaced with a generated one when the operation is
    registered.
    """
    client_id: str
    asset_id: str
    amount: Decimal
    date_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    id: str = ""
    is_hidden: bool = False
    blockchain_hash: Optional[str] = None
    multisig: str = ""
    transaction_id: Optional[str] = None
    address_from: Optional[str] = None
    address_to: Optional[str] = None
    is_settled: Optional[bool] = None
    state: TransactionState = TransactionState.IN_PROCESS_ONCHAIN
    is_refund: bool = False
    type: CashOperationType = CashOperationType.NONE
    fee_size: Decimal = Decimal("0")
    fee_type: FeeSizeType = FeeSizeType.UNKNOWN


@dataclass
class OperationEntity(TableEntity):
    """
    Stored form of a cash operation

    The same entity type backs both mirrors; only partition_key differs.
    Enumerations are kept as raw text (state_field, type_field,
    fee_type_text) and decoded on access.
    """
    date_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    is_hidden: bool = False
    asset_id: str = ""
    client_id: str = ""
    amount: Decimal = Decimal("0")
    blockchain_hash: Optional[str] = None
    multisig: str = ""
    transaction_id: Optional[str] = None
    address_from: Optional[str] = None
    address_to: Optional[str] = None
    is_settled: Optional[bool] = None
    state_field: Optional[str] = None
    is_refund: bool = False
    type_field: Optional[str] = None
    fee_size: Decimal = Decimal("0")
    fee_type_text: Optional[str] = None

    @property
    def id(self) -> str:
        return self.row_key

    @property
    def state(self) -> TransactionState:
        return TransactionState.parse(self.state_field)

    @state.setter
    def state(self, value: TransactionState) -> None:
        self.state_field = value.value

    @property
    def type(self) -> CashOperationType:
        return CashOperationType.parse(self.type_field)

    @type.setter
    def type(self, value: CashOperationType) -> None:
        self.type_field = value.value

    @property
    def fee_type(self) -> FeeSizeType:
        return FeeSizeType.parse(self.fee_type_text)

    def content(self) -> Dict[str, Any]:
        """Persisted fields excluding the partition coordinate"""
        data = self.to_dict()
        data.pop('partition_key')
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'OperationEntity':
        entity = super().from_dict(data)
        entity.date_time = _parse_datetime(entity.date_time)
        entity.amount = _parse_decimal(entity.amount)
        entity.fee_size = _parse_decimal(entity.fee_size)
        return entity
