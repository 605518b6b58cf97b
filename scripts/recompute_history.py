"""Recompute realized P&L and valuation history from a transactions file."""

from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path

from pnl_engine import build_history, compute_realized_pnl_by_asset, history_to_frame, parse_transactions
from pnl_engine.coingecko import AssetRef, CoinGeckoPriceGateway
from pnl_engine.config import get_settings
from pnl_engine.gateway import CachingPriceGateway, PriceCache
from pnl_engine.logging import setup_logging
from pnl_engine.telemetry import setup_telemetry


async def _run(path: Path, days: int, method: str, include_fees: bool) -> None:
    payload = json.loads(path.read_text())
    transactions = parse_transactions(payload["transactions"])
    assets = [AssetRef(**asset) for asset in payload.get("assets", [])]

    results = compute_realized_pnl_by_asset(transactions, method, include_fees, strict=False)
    for asset_id, result in results.items():
        print(
            f"asset={asset_id} realized={result.realized:.2f} quantity={result.quantity:.6f} "
            f"avg_price={result.avg_price:.2f} unmatched={result.unmatched_quantity:.6f}"
        )

    settings = get_settings()
    cache = PriceCache(settings.price_cache_ttl_seconds)
    async with CoinGeckoPriceGateway(assets, settings=settings) as coingecko:
        gateway = CachingPriceGateway(coingecko, cache)
        history = await build_history(transactions, days, method, gateway)
    print(history_to_frame(history).to_string(float_format="{:.2f}".format))


def main() -> None:
    parser = argparse.ArgumentParser(description="Recompute P&L and daily valuation history")
    parser.add_argument("transactions_file", help="JSON file with 'transactions' and 'assets' lists")
    parser.add_argument("--days", type=int, default=30)
    parser.add_argument("--method", default="fifo", choices=["fifo", "lifo", "avg"])
    parser.add_argument("--exclude-fees", action="store_true")
    args = parser.parse_args()
    path = Path(args.transactions_file)
    if not path.exists():
        raise SystemExit(f"Transactions file not found: {path}")
    settings = get_settings()
    setup_logging(settings.log_level)
    setup_telemetry(settings)
    asyncio.run(_run(path, args.days, args.method, not args.exclude_fees))


if __name__ == "__main__":
    main()
