"""Domain models shared by the disposal engine and the history reconstructor."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Iterable, Literal, Mapping, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from .errors import InvalidTransactionError

DUST_THRESHOLD = 1e-6

AssetId = Union[int, str]


class PnLMethod(str, Enum):
    FIFO = "fifo"
    LIFO = "lifo"
    AVG = "avg"


class TransactionType(str, Enum):
    BUY = "buy"
    SELL = "sell"
    TRANSFER_IN = "transfer_in"
    TRANSFER_OUT = "transfer_out"
    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"
    AIRDROP = "airdrop"


ACQUISITION_TYPES = frozenset(
    {
        TransactionType.BUY,
        TransactionType.TRANSFER_IN,
        TransactionType.DEPOSIT,
        TransactionType.AIRDROP,
    }
)
DISPOSAL_TYPES = frozenset(
    {
        TransactionType.SELL,
        TransactionType.TRANSFER_OUT,
        TransactionType.WITHDRAW,
    }
)


class _TransactionBase(BaseModel):
    """Fields common to every transaction kind."""

    model_config = ConfigDict(frozen=True)

    id: int | str | None = None
    asset_id: int | str
    quantity: float = Field(gt=0, allow_inf_nan=False)
    price: float = Field(default=0.0, ge=0, allow_inf_nan=False)
    fee: float = Field(default=0.0, ge=0, allow_inf_nan=False)
    timestamp: datetime

    @field_validator("timestamp")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @property
    def kind(self) -> TransactionType:
        return TransactionType(self.type)  # type: ignore[attr-defined]

    @property
    def is_acquisition(self) -> bool:
        return self.kind in ACQUISITION_TYPES

    @property
    def is_disposal(self) -> bool:
        return self.kind in DISPOSAL_TYPES


class Buy(_TransactionBase):
    type: Literal["buy"] = "buy"
    price: float = Field(ge=0, allow_inf_nan=False)


class Sell(_TransactionBase):
    type: Literal["sell"] = "sell"
    price: float = Field(ge=0, allow_inf_nan=False)


class TransferIn(_TransactionBase):
    type: Literal["transfer_in"] = "transfer_in"


class TransferOut(_TransactionBase):
    type: Literal["transfer_out"] = "transfer_out"


class Deposit(_TransactionBase):
    type: Literal["deposit"] = "deposit"


class Withdraw(_TransactionBase):
    type: Literal["withdraw"] = "withdraw"


class Airdrop(_TransactionBase):
    type: Literal["airdrop"] = "airdrop"


Transaction = Annotated[
    Union[Buy, Sell, TransferIn, TransferOut, Deposit, Withdraw, Airdrop],
    Field(discriminator="type"),
]

_TRANSACTION_ADAPTER: TypeAdapter = TypeAdapter(Transaction)


def parse_transaction(payload: Mapping[str, Any] | _TransactionBase) -> Transaction:
    """Validate a raw transaction mapping into its typed variant."""

    if isinstance(payload, _TransactionBase):
        return payload  # type: ignore[return-value]
    data = dict(payload)
    raw_type = data.get("type")
    if isinstance(raw_type, str):
        data["type"] = raw_type.strip().lower()
    try:
        return _TRANSACTION_ADAPTER.validate_python(data)
    except ValidationError as exc:
        raise InvalidTransactionError(
            f"Invalid transaction {data.get('id')!r}: {exc}",
            transaction_id=data.get("id"),
        ) from exc


def parse_transactions(rows: Iterable[Mapping[str, Any] | _TransactionBase]) -> list[Transaction]:
    return [parse_transaction(row) for row in rows]


@dataclass
class Lot:
    """An open quantity acquired at a single unit cost."""

    quantity: float
    unit_cost: float

    @property
    def total_cost(self) -> float:
        return self.quantity * self.unit_cost


@dataclass
class Position:
    """Aggregate of all open lots for one asset."""

    asset_id: AssetId
    quantity: float = 0.0
    total_cost: float = 0.0
    avg_cost: float = 0.0

    @property
    def is_open(self) -> bool:
        return self.quantity > DUST_THRESHOLD


@dataclass(frozen=True)
class PnLResult:
    realized: float
    quantity: float
    avg_price: float
    unmatched_quantity: float = 0.0


@dataclass(frozen=True)
class AssetPrice:
    asset_id: AssetId
    symbol: str
    price: float


@dataclass(frozen=True)
class HistoricalDataPoint:
    """Portfolio valuation for one calendar day."""

    timestamp: datetime
    total_value: float
    total_cost: float
    total_pnl: float
    roi: float
    missing_prices: tuple[AssetId, ...] = ()

    @classmethod
    def from_totals(
        cls,
        timestamp: datetime,
        total_value: float,
        total_cost: float,
        missing_prices: Iterable[AssetId] = (),
    ) -> "HistoricalDataPoint":
        total_pnl = total_value - total_cost
        roi = total_pnl / total_cost * 100 if total_cost > 0 else 0.0
        return cls(
            timestamp=timestamp,
            total_value=total_value,
            total_cost=total_cost,
            total_pnl=total_pnl,
            roi=roi,
            missing_prices=tuple(missing_prices),
        )

    @classmethod
    def empty(cls, timestamp: datetime) -> "HistoricalDataPoint":
        return cls(timestamp=timestamp, total_value=0.0, total_cost=0.0, total_pnl=0.0, roi=0.0)


__all__ = [
    "DUST_THRESHOLD",
    "AssetId",
    "PnLMethod",
    "TransactionType",
    "ACQUISITION_TYPES",
    "DISPOSAL_TYPES",
    "Buy",
    "Sell",
    "TransferIn",
    "TransferOut",
    "Deposit",
    "Withdraw",
    "Airdrop",
    "Transaction",
    "parse_transaction",
    "parse_transactions",
    "Lot",
    "Position",
    "PnLResult",
    "AssetPrice",
    "HistoricalDataPoint",
]
