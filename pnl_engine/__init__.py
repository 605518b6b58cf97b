"""Cost-basis accounting and portfolio valuation engine."""

from .errors import (
    GatewayUnavailableError,
    InsufficientInventoryError,
    InvalidTransactionError,
    PnLEngineError,
)
from .frames import history_to_frame
from .gateway import CachingPriceGateway, InMemoryPriceGateway, PriceCache, PriceGateway
from .history import build_history, iter_history
from .lots import (
    compute_realized_pnl,
    compute_realized_pnl_by_asset,
    pnl_percentage,
    total_pnl,
    unrealized_pnl,
)
from .models import (
    AssetPrice,
    HistoricalDataPoint,
    PnLMethod,
    PnLResult,
    Position,
    Transaction,
    TransactionType,
    parse_transaction,
    parse_transactions,
)

__all__ = [
    "AssetPrice",
    "HistoricalDataPoint",
    "PnLMethod",
    "PnLResult",
    "Position",
    "Transaction",
    "TransactionType",
    "parse_transaction",
    "parse_transactions",
    "compute_realized_pnl",
    "compute_realized_pnl_by_asset",
    "unrealized_pnl",
    "total_pnl",
    "pnl_percentage",
    "build_history",
    "iter_history",
    "history_to_frame",
    "PriceGateway",
    "InMemoryPriceGateway",
    "PriceCache",
    "CachingPriceGateway",
    "PnLEngineError",
    "InvalidTransactionError",
    "InsufficientInventoryError",
    "GatewayUnavailableError",
]
