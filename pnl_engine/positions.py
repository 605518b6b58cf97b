"""Fold transaction streams into per-asset positions."""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Dict, Iterable, List, Mapping

from .lots import compute_realized_pnl, sort_transactions
from .models import DUST_THRESHOLD, AssetId, PnLMethod, Position, Transaction

logger = logging.getLogger(__name__)


def fold_positions(transactions: Iterable[Transaction]) -> Dict[AssetId, Position]:
    """Fold transactions into positions using a running average cost.

    Acquisitions add their quantity and ``quantity * price + fee`` to the
    position. Disposals remove their quantity at the current average cost,
    whatever disposal method the caller reports under. Positions that fall to
    the dust threshold are dropped and restart from zero on the next
    acquisition.
    """

    positions: Dict[AssetId, Position] = {}
    for tx in sort_transactions(transactions):
        position = positions.get(tx.asset_id) or Position(asset_id=tx.asset_id)
        if tx.is_acquisition:
            position.quantity += tx.quantity
            position.total_cost += tx.quantity * tx.price + tx.fee
        else:
            if tx.quantity > position.quantity + DUST_THRESHOLD:
                logger.debug(
                    "Disposal %s exceeds open quantity %s of asset %s",
                    tx.id,
                    position.quantity,
                    tx.asset_id,
                )
            position.quantity -= tx.quantity
            position.total_cost -= tx.quantity * position.avg_cost
        position.avg_cost = position.total_cost / position.quantity if position.quantity > 0 else 0.0

        if position.is_open:
            positions[tx.asset_id] = position
        else:
            positions.pop(tx.asset_id, None)
    return positions


def fold_lot_positions(
    transactions: Iterable[Transaction],
    method: PnLMethod | str,
    include_fees: bool = True,
) -> Dict[AssetId, Position]:
    """Build positions from true per-lot matching under ``method``."""

    grouped: Dict[AssetId, List[Transaction]] = defaultdict(list)
    for tx in transactions:
        grouped[tx.asset_id].append(tx)

    positions: Dict[AssetId, Position] = {}
    for asset_id, txs in grouped.items():
        result = compute_realized_pnl(txs, method, include_fees, strict=False)
        if result.quantity <= DUST_THRESHOLD:
            continue
        positions[asset_id] = Position(
            asset_id=asset_id,
            quantity=result.quantity,
            total_cost=result.quantity * result.avg_price,
            avg_cost=result.avg_price,
        )
    return positions


def open_asset_ids(positions: Mapping[AssetId, Position]) -> List[AssetId]:
    """Return ids of positions above the dust threshold in a stable order."""

    return sorted((p.asset_id for p in positions.values() if p.is_open), key=str)


__all__ = ["fold_positions", "fold_lot_positions", "open_asset_ids"]
