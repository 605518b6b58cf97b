"""Daily portfolio valuation history.

Each day in the window is rebuilt from every transaction up to the end of that
day and priced through the historical price gateway, so no error carries over
from one day to the next. By default positions are folded at running average
cost for every disposal method; ``exact_lots`` switches to per-lot FIFO/LIFO
matching instead.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import AsyncIterator, Iterable, List, Mapping, Sequence
from zoneinfo import ZoneInfo

from opentelemetry import trace

from .config import get_settings
from .gateway import PriceGateway
from .lots import sort_transactions
from .models import HistoricalDataPoint, PnLMethod, Transaction, parse_transactions
from .positions import fold_lot_positions, fold_positions, open_asset_ids

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def start_of_day(day: date, tz: tzinfo) -> datetime:
    return datetime.combine(day, time.min, tzinfo=tz)


def end_of_day(day: date, tz: tzinfo) -> datetime:
    return datetime.combine(day, time.max, tzinfo=tz)


def day_window(days: int, today: date) -> List[date]:
    """Return ``days`` calendar days ending with ``today``, oldest first."""

    if days < 1:
        raise ValueError("days must be >= 1")
    start = today - timedelta(days=days - 1)
    return [start + timedelta(days=offset) for offset in range(days)]


def _resolve_tz(tz: tzinfo | str | None) -> tzinfo:
    if tz is None:
        tz = get_settings().timezone
    if isinstance(tz, str):
        return timezone.utc if tz.upper() == "UTC" else ZoneInfo(tz)
    return tz


async def compute_day_snapshot(
    transactions: Sequence[Transaction],
    day: date,
    method: PnLMethod,
    gateway: PriceGateway,
    *,
    tz: tzinfo,
    exact_lots: bool = False,
    include_fees: bool = True,
) -> HistoricalDataPoint:
    """Value the portfolio as of the end of ``day``."""

    day_end = end_of_day(day, tz)
    up_to_day = [tx for tx in transactions if tx.timestamp <= day_end]
    if exact_lots:
        positions = fold_lot_positions(up_to_day, method, include_fees)
    else:
        positions = fold_positions(up_to_day)

    timestamp = start_of_day(day, tz)
    asset_ids = open_asset_ids(positions)
    if not asset_ids:
        return HistoricalDataPoint.empty(timestamp)

    with tracer.start_as_current_span("pnl_engine.fetch_day_prices") as span:
        span.set_attribute("pnl.day", day.isoformat())
        span.set_attribute("pnl.asset_count", len(asset_ids))
        prices = await gateway.fetch_prices(day, asset_ids)

    price_map: Mapping = {price.asset_id: price.price for price in prices}
    missing = [asset_id for asset_id in asset_ids if asset_id not in price_map]
    if missing:
        logger.info("No price for assets %s on %s; valuing them at 0", missing, day.isoformat())

    total_value = sum(positions[asset_id].quantity * price_map.get(asset_id, 0.0) for asset_id in asset_ids)
    total_cost = sum(positions[asset_id].total_cost for asset_id in asset_ids)
    return HistoricalDataPoint.from_totals(timestamp, total_value, total_cost, missing)


async def iter_history(
    transactions: Iterable,
    days: int,
    method: PnLMethod | str,
    gateway: PriceGateway,
    *,
    today: date | None = None,
    tz: tzinfo | str | None = None,
    exact_lots: bool | None = None,
    include_fees: bool | None = None,
    max_concurrency: int | None = None,
) -> AsyncIterator[HistoricalDataPoint]:
    """Yield one fully priced point per day, oldest first.

    Stopping iteration abandons the remaining days; a point is only yielded
    once its day has been completely priced.
    """

    settings = get_settings()
    method = PnLMethod(method)
    zone = _resolve_tz(tz)
    exact = settings.history_exact_lots if exact_lots is None else exact_lots
    fees = settings.include_fees if include_fees is None else include_fees
    concurrency = settings.history_max_concurrency if max_concurrency is None else max_concurrency
    if concurrency < 1:
        raise ValueError("max_concurrency must be >= 1")

    window = day_window(days, today or datetime.now(zone).date())
    ordered = sort_transactions(parse_transactions(transactions))
    if not exact and method != PnLMethod.AVG:
        logger.debug("History for method %s uses running average cost positions", method.value)

    async def _snapshot(day: date) -> HistoricalDataPoint:
        return await compute_day_snapshot(
            ordered, day, method, gateway, tz=zone, exact_lots=exact, include_fees=fees
        )

    if concurrency == 1:
        for day in window:
            yield await _snapshot(day)
        return

    semaphore = asyncio.Semaphore(concurrency)

    async def _bounded(day: date) -> HistoricalDataPoint:
        async with semaphore:
            return await _snapshot(day)

    tasks = [asyncio.ensure_future(_bounded(day)) for day in window]
    try:
        for task in tasks:
            yield await task
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


async def build_history(
    transactions: Iterable,
    days: int,
    method: PnLMethod | str,
    gateway: PriceGateway,
    *,
    today: date | None = None,
    tz: tzinfo | str | None = None,
    exact_lots: bool | None = None,
    include_fees: bool | None = None,
    max_concurrency: int | None = None,
) -> List[HistoricalDataPoint]:
    """Return exactly ``days`` valuation points in ascending day order."""

    with tracer.start_as_current_span("pnl_engine.build_history") as span:
        span.set_attribute("pnl.days", days)
        span.set_attribute("pnl.method", PnLMethod(method).value)
        history = [
            point
            async for point in iter_history(
                transactions,
                days,
                method,
                gateway,
                today=today,
                tz=tz,
                exact_lots=exact_lots,
                include_fees=include_fees,
                max_concurrency=max_concurrency,
            )
        ]
    logger.debug("Built %d history points", len(history))
    return history


__all__ = [
    "start_of_day",
    "end_of_day",
    "day_window",
    "compute_day_snapshot",
    "iter_history",
    "build_history",
]
