"""CoinGecko-backed historical price gateway.

CoinGecko's free tier allows a handful of calls per minute, so assets are
priced in small batches with a pause between batches. A 429 response pauses
for the configured backoff and retries the whole batch.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from typing import Awaitable, Callable, Dict, Iterable, List, Sequence

import httpx
from opentelemetry import trace

from .config import EngineSettings, get_settings
from .errors import GatewayUnavailableError
from .models import AssetId, AssetPrice

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

SYMBOL_TO_COINGECKO_ID: Dict[str, str] = {
    "btc": "bitcoin",
    "eth": "ethereum",
    "sol": "solana",
    "usdt": "tether",
    "usdc": "usd-coin",
    "bnb": "binancecoin",
    "xrp": "ripple",
    "ada": "cardano",
    "doge": "dogecoin",
    "matic": "matic-network",
    "dot": "polkadot",
    "dai": "dai",
    "avax": "avalanche-2",
    "link": "chainlink",
    "uni": "uniswap",
    "atom": "cosmos",
    "ltc": "litecoin",
    "etc": "ethereum-classic",
    "xlm": "stellar",
    "algo": "algorand",
}


def coingecko_id_for(symbol: str) -> str | None:
    return SYMBOL_TO_COINGECKO_ID.get(symbol.lower())


@dataclass(frozen=True)
class AssetRef:
    """Maps an engine asset id to the CoinGecko coin it is priced from."""

    asset_id: AssetId
    symbol: str
    coingecko_id: str | None = None

    def resolve_coin_id(self) -> str | None:
        return self.coingecko_id or coingecko_id_for(self.symbol)


class _RateLimited(Exception):
    pass


class CoinGeckoPriceGateway:
    """Throttled CoinGecko gateway returning one day-end price per asset.

    Prices always cover the UTC calendar day: the last quote between 00:00:00
    and 23:59:59 UTC is used, whatever timezone the history is built in.
    """

    def __init__(
        self,
        assets: Iterable[AssetRef],
        *,
        client: httpx.AsyncClient | None = None,
        settings: EngineSettings | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings or get_settings()
        self._assets: Dict[AssetId, AssetRef] = {asset.asset_id: asset for asset in assets}
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=self.settings.request_timeout_seconds)
        self._sleep = sleep
        self._headers = {"Accept": "application/json"}
        if self.settings.coingecko_api_key:
            self._headers["x-cg-demo-api-key"] = self.settings.coingecko_api_key

    async def __aenter__(self) -> "CoinGeckoPriceGateway":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def fetch_prices(self, day: date, asset_ids: Sequence[AssetId]) -> List[AssetPrice]:
        targets: List[tuple[AssetRef, str]] = []
        for asset_id in asset_ids:
            ref = self._assets.get(asset_id)
            if ref is None:
                logger.warning("Asset %s is not registered with the CoinGecko gateway", asset_id)
                continue
            coin_id = ref.resolve_coin_id()
            if not coin_id:
                logger.warning("No CoinGecko ID for %s", ref.symbol)
                continue
            targets.append((ref, coin_id))

        batch_size = self.settings.price_batch_size
        prices: List[AssetPrice] = []
        for start in range(0, len(targets), batch_size):
            batch = targets[start : start + batch_size]
            prices.extend(await self._fetch_batch(day, batch))
            if start + batch_size < len(targets):
                await self._sleep(self.settings.price_batch_delay_seconds)
        return prices

    async def _fetch_batch(self, day: date, batch: Sequence[tuple[AssetRef, str]]) -> List[AssetPrice]:
        retries = 0
        while True:
            with tracer.start_as_current_span("coingecko.fetch_batch") as span:
                span.set_attribute("pnl.day", day.isoformat())
                span.set_attribute("pnl.batch_size", len(batch))
                results = await asyncio.gather(
                    *(self._fetch_one(day, ref, coin_id) for ref, coin_id in batch),
                    return_exceptions=True,
                )
            for result in results:
                if isinstance(result, BaseException) and not isinstance(result, _RateLimited):
                    raise result
            if not any(isinstance(result, _RateLimited) for result in results):
                return [result for result in results if isinstance(result, AssetPrice)]

            if retries >= self.settings.rate_limit_max_retries:
                raise GatewayUnavailableError(
                    f"CoinGecko rate limit persisted after {retries} retries for {day.isoformat()}"
                )
            retries += 1
            logger.warning(
                "CoinGecko rate limit hit; retrying batch in %.0fs (attempt %d)",
                self.settings.rate_limit_backoff_seconds,
                retries,
            )
            await self._sleep(self.settings.rate_limit_backoff_seconds)

    async def _fetch_one(self, day: date, ref: AssetRef, coin_id: str) -> AssetPrice | None:
        day_start = int(datetime.combine(day, time.min, tzinfo=timezone.utc).timestamp())
        url = f"{self.settings.coingecko_base_url.rstrip('/')}/coins/{coin_id}/market_chart/range"
        params = {
            "vs_currency": self.settings.vs_currency,
            "from": day_start,
            "to": day_start + 86399,
        }
        try:
            response = await self._client.get(url, params=params, headers=self._headers)
        except httpx.TransportError as exc:
            raise GatewayUnavailableError(f"CoinGecko request for {coin_id} failed: {exc}") from exc

        if response.status_code == 429:
            raise _RateLimited(coin_id)
        if response.status_code >= 400:
            logger.warning("CoinGecko API error %s for %s", response.status_code, ref.symbol)
            return None
        try:
            payload = response.json()
        except ValueError:
            logger.warning("CoinGecko returned a non-JSON body for %s", ref.symbol)
            return None

        if not isinstance(payload, dict):
            logger.warning("CoinGecko returned an unexpected payload for %s", ref.symbol)
            return None
        series = payload.get("prices") or []
        if not series:
            logger.info("CoinGecko has no prices for %s on %s", ref.symbol, day.isoformat())
            return None
        try:
            price = float(series[-1][1])
        except (IndexError, KeyError, TypeError, ValueError):
            logger.warning("CoinGecko returned a malformed price point for %s: %r", ref.symbol, series[-1])
            return None
        return AssetPrice(asset_id=ref.asset_id, symbol=ref.symbol, price=price)


__all__ = [
    "SYMBOL_TO_COINGECKO_ID",
    "coingecko_id_for",
    "AssetRef",
    "CoinGeckoPriceGateway",
]
