"""Exceptions raised by the P&L engine."""

from __future__ import annotations


class PnLEngineError(Exception):
    """Base exception for engine errors."""


class InvalidTransactionError(PnLEngineError, ValueError):
    """Raised when a transaction fails validation at ingestion."""

    def __init__(self, message: str, transaction_id: str | int | None = None):
        super().__init__(message)
        self.transaction_id = transaction_id


class InsufficientInventoryError(PnLEngineError):
    """Raised when a disposal exceeds the open lot quantity."""

    def __init__(
        self,
        asset_id: str | int,
        transaction_id: str | int | None,
        requested: float,
        unmatched: float,
    ):
        super().__init__(
            f"Disposal {transaction_id} of {requested} units of asset {asset_id} "
            f"exceeds open inventory by {unmatched}"
        )
        self.asset_id = asset_id
        self.transaction_id = transaction_id
        self.requested = requested
        self.unmatched = unmatched


class GatewayUnavailableError(PnLEngineError, RuntimeError):
    """Raised when the historical price gateway cannot serve a request."""


__all__ = [
    "PnLEngineError",
    "InvalidTransactionError",
    "InsufficientInventoryError",
    "GatewayUnavailableError",
]
