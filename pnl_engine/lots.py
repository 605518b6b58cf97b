"""Lot-based disposal accounting.

The disposal engine replays one asset's transactions against a queue of open
lots and reports realized P&L plus the remaining open position. Disposals are
matched oldest-first (FIFO), newest-first (LIFO) or against a blended average
of the whole book (AVG). Fees can be folded into the acquisition cost basis
and charged against disposal proceeds.
"""

from __future__ import annotations

import logging
from collections import defaultdict, deque
from typing import Deque, Dict, Iterable, List, Sequence

from .errors import InsufficientInventoryError, InvalidTransactionError
from .models import DUST_THRESHOLD, AssetId, Lot, PnLMethod, PnLResult, Transaction

logger = logging.getLogger(__name__)


def sort_transactions(transactions: Iterable[Transaction]) -> List[Transaction]:
    """Return transactions ordered by timestamp, ties kept in input order."""

    return sorted(transactions, key=lambda tx: tx.timestamp)


def _collapse(lots: Deque[Lot]) -> Lot:
    total_qty = sum(lot.quantity for lot in lots)
    total_cost = sum(lot.total_cost for lot in lots)
    lots.clear()
    return Lot(quantity=total_qty, unit_cost=total_cost / total_qty if total_qty > 0 else 0.0)


def _take_lot(lots: Deque[Lot], method: PnLMethod) -> Lot:
    if method == PnLMethod.AVG:
        return _collapse(lots)
    if method == PnLMethod.LIFO:
        return lots.pop()
    return lots.popleft()


def _return_leftover(lots: Deque[Lot], lot: Lot, method: PnLMethod) -> None:
    if lot.quantity <= DUST_THRESHOLD:
        return
    if method == PnLMethod.FIFO:
        lots.appendleft(lot)
    else:
        lots.append(lot)


def _single_asset(transactions: Sequence[Transaction]) -> AssetId | None:
    asset_ids = {tx.asset_id for tx in transactions}
    if len(asset_ids) > 1:
        raise InvalidTransactionError(
            f"Expected transactions for a single asset, got {sorted(map(str, asset_ids))}"
        )
    return next(iter(asset_ids), None)


def compute_realized_pnl(
    transactions: Iterable[Transaction],
    method: PnLMethod | str,
    include_fees: bool = True,
    *,
    strict: bool = True,
) -> PnLResult:
    """Replay one asset's transactions and return realized P&L and the open position.

    With ``strict`` set, a disposal larger than the open inventory raises
    :class:`InsufficientInventoryError`. Otherwise matching stops when the
    lots run out and the shortfall is reported in
    :attr:`PnLResult.unmatched_quantity`.
    """

    method = PnLMethod(method)
    ordered = sort_transactions(transactions)
    asset_id = _single_asset(ordered)

    lots: Deque[Lot] = deque()
    realized = 0.0
    unmatched_total = 0.0

    for tx in ordered:
        fee = tx.fee if include_fees else 0.0
        if tx.is_acquisition:
            unit_cost = (tx.price * tx.quantity + fee) / tx.quantity
            lots.append(Lot(quantity=tx.quantity, unit_cost=unit_cost))
            continue

        remaining = tx.quantity
        fee_per_unit = fee / tx.quantity
        while remaining > 0 and lots:
            lot = _take_lot(lots, method)
            take = min(remaining, lot.quantity)
            realized += take * tx.price - take * lot.unit_cost - take * fee_per_unit
            lot.quantity -= take
            _return_leftover(lots, lot, method)
            remaining -= take

        if remaining > DUST_THRESHOLD:
            if strict:
                raise InsufficientInventoryError(asset_id, tx.id, tx.quantity, remaining)
            logger.warning(
                "Disposal %s of asset %s left %s units unmatched", tx.id, asset_id, remaining
            )
            unmatched_total += remaining

    quantity = sum(lot.quantity for lot in lots)
    if quantity <= DUST_THRESHOLD:
        return PnLResult(realized=realized, quantity=0.0, avg_price=0.0, unmatched_quantity=unmatched_total)
    total_cost = sum(lot.total_cost for lot in lots)
    return PnLResult(
        realized=realized,
        quantity=quantity,
        avg_price=total_cost / quantity,
        unmatched_quantity=unmatched_total,
    )


def compute_realized_pnl_by_asset(
    transactions: Iterable[Transaction],
    method: PnLMethod | str,
    include_fees: bool = True,
    *,
    strict: bool = True,
) -> Dict[AssetId, PnLResult]:
    """Run :func:`compute_realized_pnl` once per asset in a mixed stream."""

    grouped: Dict[AssetId, List[Transaction]] = defaultdict(list)
    for tx in transactions:
        grouped[tx.asset_id].append(tx)
    return {
        asset_id: compute_realized_pnl(txs, method, include_fees, strict=strict)
        for asset_id, txs in grouped.items()
    }


def unrealized_pnl(avg_entry_price: float, current_price: float, quantity: float) -> float:
    return (current_price - avg_entry_price) * quantity


def total_pnl(realized: float, avg_entry_price: float, current_price: float, quantity: float) -> float:
    return realized + unrealized_pnl(avg_entry_price, current_price, quantity)


def pnl_percentage(pnl: float, cost_basis: float) -> float:
    if cost_basis == 0:
        return 0.0
    return pnl / cost_basis * 100


__all__ = [
    "sort_transactions",
    "compute_realized_pnl",
    "compute_realized_pnl_by_asset",
    "unrealized_pnl",
    "total_pnl",
    "pnl_percentage",
]
