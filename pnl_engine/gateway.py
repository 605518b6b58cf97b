"""Historical price gateway interface, cache and in-memory implementation.

The history reconstructor only ever talks to a :class:`PriceGateway`. A gateway
may return prices for a subset of the requested assets; callers treat the
missing ones as unpriced. Caching is an explicit object handed to
:class:`CachingPriceGateway` so its lifetime is owned by whoever builds the
gateway.
"""

from __future__ import annotations

import time
from datetime import date
from typing import Callable, Dict, List, Mapping, MutableMapping, Protocol, Sequence

from .models import AssetId, AssetPrice


class PriceGateway(Protocol):
    """Pluggable historical price provider."""

    async def fetch_prices(self, day: date, asset_ids: Sequence[AssetId]) -> List[AssetPrice]:
        ...


class InMemoryPriceGateway:
    """Simple gateway for tests and examples."""

    def __init__(
        self,
        prices: Mapping[date, Mapping[AssetId, float]],
        symbols: Mapping[AssetId, str] | None = None,
    ):
        self._prices: Dict[date, Dict[AssetId, float]] = {
            day: {asset_id: float(price) for asset_id, price in by_asset.items()}
            for day, by_asset in prices.items()
        }
        self._symbols = dict(symbols or {})
        self.calls: List[tuple[date, tuple[AssetId, ...]]] = []

    async def fetch_prices(self, day: date, asset_ids: Sequence[AssetId]) -> List[AssetPrice]:
        self.calls.append((day, tuple(asset_ids)))
        by_asset = self._prices.get(day, {})
        return [
            AssetPrice(asset_id=asset_id, symbol=self._symbols.get(asset_id, str(asset_id)), price=by_asset[asset_id])
            for asset_id in asset_ids
            if asset_id in by_asset
        ]


class PriceCache:
    """Per-day price cache whose entries expire after ``ttl_seconds``."""

    def __init__(self, ttl_seconds: float, *, clock: Callable[[], float] = time.monotonic):
        if ttl_seconds < 0:
            raise ValueError("ttl_seconds must be >= 0")
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: MutableMapping[tuple[date, AssetId], tuple[float, AssetPrice]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, day: date, asset_id: AssetId) -> AssetPrice | None:
        key = (day, asset_id)
        entry = self._entries.get(key)
        if entry is None:
            return None
        stored_at, price = entry
        if self._clock() - stored_at >= self.ttl_seconds:
            del self._entries[key]
            return None
        return price

    def set(self, day: date, price: AssetPrice) -> None:
        self._entries[(day, price.asset_id)] = (self._clock(), price)

    def invalidate(self, day: date | None = None, asset_id: AssetId | None = None) -> int:
        """Drop entries matching ``day`` and/or ``asset_id``; both ``None`` clears all."""

        keys = [
            key
            for key in self._entries
            if (day is None or key[0] == day) and (asset_id is None or key[1] == asset_id)
        ]
        for key in keys:
            del self._entries[key]
        return len(keys)

    def clear(self) -> None:
        self._entries.clear()

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [key for key, (stored_at, _) in self._entries.items() if now - stored_at >= self.ttl_seconds]
        for key in expired:
            del self._entries[key]
        return len(expired)


class CachingPriceGateway:
    """Cache wrapper that only asks the delegate for prices it has not seen."""

    def __init__(self, delegate: PriceGateway, cache: PriceCache):
        self.delegate = delegate
        self.cache = cache

    async def fetch_prices(self, day: date, asset_ids: Sequence[AssetId]) -> List[AssetPrice]:
        found: Dict[AssetId, AssetPrice] = {}
        misses: List[AssetId] = []
        for asset_id in asset_ids:
            cached = self.cache.get(day, asset_id)
            if cached is None:
                misses.append(asset_id)
            else:
                found[asset_id] = cached
        if misses:
            for price in await self.delegate.fetch_prices(day, misses):
                self.cache.set(day, price)
                found[price.asset_id] = price
        return [found[asset_id] for asset_id in asset_ids if asset_id in found]


__all__ = [
    "PriceGateway",
    "InMemoryPriceGateway",
    "PriceCache",
    "CachingPriceGateway",
]
