from datetime import date, datetime, timezone

import httpx
import pytest

from pnl_engine.coingecko import AssetRef, CoinGeckoPriceGateway, coingecko_id_for
from pnl_engine.config import EngineSettings
from pnl_engine.errors import GatewayUnavailableError
from pnl_engine.history import build_history
from pnl_engine.models import Buy

DAY = date(2025, 10, 16)
DAY_START = int(datetime(2025, 10, 16, tzinfo=timezone.utc).timestamp())

SYMBOLS = ["BTC", "ETH", "SOL", "ADA", "DOT", "LINK", "UNI"]


def _settings(**overrides) -> EngineSettings:
    values = {
        "coingecko_base_url": "https://coingecko.test/api/v3",
        "price_batch_size": 5,
        "price_batch_delay_seconds": 1.0,
        "rate_limit_backoff_seconds": 60.0,
        "rate_limit_max_retries": 2,
    }
    values.update(overrides)
    return EngineSettings(**values)


class _Sleeps:
    def __init__(self):
        self.calls = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def _prices_payload(price: float) -> dict:
    return {"prices": [[DAY_START * 1000, price - 1], [(DAY_START + 80000) * 1000, price]]}


def _coin_id(request: httpx.Request) -> str:
    return request.url.path.split("/")[-3]


def _gateway(handler, *, assets=None, settings=None, sleep=None):
    assets = assets or [AssetRef(asset_id=index, symbol=symbol) for index, symbol in enumerate(SYMBOLS, 1)]
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return CoinGeckoPriceGateway(assets, client=client, settings=settings or _settings(), sleep=sleep or _Sleeps())


def test_symbol_lookup_is_case_insensitive():
    assert coingecko_id_for("BTC") == "bitcoin"
    assert coingecko_id_for("matic") == "matic-network"
    assert coingecko_id_for("NOPE") is None
    assert AssetRef(asset_id=1, symbol="XYZ", coingecko_id="custom").resolve_coin_id() == "custom"


@pytest.mark.asyncio
async def test_fetch_uses_range_endpoint_and_last_price():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=_prices_payload(42000.0))

    gateway = _gateway(handler, assets=[AssetRef(asset_id=1, symbol="BTC")])
    async with gateway:
        prices = await gateway.fetch_prices(DAY, [1])

    assert [(p.asset_id, p.symbol, p.price) for p in prices] == [(1, "BTC", 42000.0)]
    request = seen[0]
    assert request.url.path == "/api/v3/coins/bitcoin/market_chart/range"
    assert request.url.params["vs_currency"] == "usd"
    assert request.url.params["from"] == str(DAY_START)
    assert request.url.params["to"] == str(DAY_START + 86399)
    assert "x-cg-demo-api-key" not in request.headers


@pytest.mark.asyncio
async def test_assets_are_fetched_in_batches_with_a_pause():
    sleeps = _Sleeps()

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=_prices_payload(10.0))

    gateway = _gateway(handler, sleep=sleeps)
    prices = await gateway.fetch_prices(DAY, list(range(1, len(SYMBOLS) + 1)))

    assert [p.asset_id for p in prices] == list(range(1, len(SYMBOLS) + 1))
    assert sleeps.calls == [1.0]


@pytest.mark.asyncio
async def test_rate_limit_retries_batch_after_backoff():
    sleeps = _Sleeps()
    attempts = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        attempts["count"] += 1
        if attempts["count"] == 1:
            return httpx.Response(429)
        return httpx.Response(200, json=_prices_payload(5.0))

    gateway = _gateway(handler, assets=[AssetRef(asset_id=1, symbol="ETH")], sleep=sleeps)
    prices = await gateway.fetch_prices(DAY, [1])

    assert [p.price for p in prices] == [5.0]
    assert sleeps.calls == [60.0]


@pytest.mark.asyncio
async def test_persistent_rate_limit_raises():
    sleeps = _Sleeps()

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429)

    gateway = _gateway(handler, assets=[AssetRef(asset_id=1, symbol="ETH")], sleep=sleeps)
    with pytest.raises(GatewayUnavailableError):
        await gateway.fetch_prices(DAY, [1])
    assert sleeps.calls == [60.0, 60.0]


@pytest.mark.asyncio
async def test_unknown_assets_and_api_errors_are_skipped():
    def handler(request: httpx.Request) -> httpx.Response:
        if _coin_id(request) == "ethereum":
            return httpx.Response(500)
        if _coin_id(request) == "solana":
            return httpx.Response(200, json={"prices": []})
        return httpx.Response(200, json=_prices_payload(7.0))

    assets = [
        AssetRef(asset_id=1, symbol="BTC"),
        AssetRef(asset_id=2, symbol="ETH"),
        AssetRef(asset_id=3, symbol="SOL"),
        AssetRef(asset_id=4, symbol="MYSTERY"),
    ]
    gateway = _gateway(handler, assets=assets)
    prices = await gateway.fetch_prices(DAY, [1, 2, 3, 4, 99])

    assert [p.asset_id for p in prices] == [1]


@pytest.mark.asyncio
async def test_malformed_payloads_are_treated_as_missing():
    bodies = {
        "bitcoin": [],
        "ethereum": {"prices": [[DAY_START * 1000]]},
        "solana": {"prices": [[DAY_START * 1000, "n/a"]]},
        "cardano": {"prices": [None]},
    }

    def handler(request: httpx.Request) -> httpx.Response:
        coin_id = _coin_id(request)
        if coin_id in bodies:
            return httpx.Response(200, json=bodies[coin_id])
        return httpx.Response(200, json=_prices_payload(3.0))

    assets = [
        AssetRef(asset_id=1, symbol="BTC"),
        AssetRef(asset_id=2, symbol="ETH"),
        AssetRef(asset_id=3, symbol="SOL"),
        AssetRef(asset_id=4, symbol="ADA"),
        AssetRef(asset_id=5, symbol="DOT"),
    ]
    gateway = _gateway(handler, assets=assets)
    prices = await gateway.fetch_prices(DAY, [1, 2, 3, 4, 5])

    assert [(p.asset_id, p.price) for p in prices] == [(5, 3.0)]


@pytest.mark.asyncio
async def test_history_survives_non_object_payload():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=[])

    txs = [Buy(asset_id=1, quantity=2, price=10, timestamp=datetime(2025, 10, 15, tzinfo=timezone.utc))]
    gateway = _gateway(handler, assets=[AssetRef(asset_id=1, symbol="BTC")])
    history = await build_history(txs, 1, "avg", gateway, today=DAY, tz="UTC")

    assert history[0].total_value == 0
    assert history[0].total_cost == pytest.approx(20)
    assert history[0].missing_prices == (1,)


@pytest.mark.asyncio
async def test_transport_errors_raise_gateway_unavailable():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    gateway = _gateway(handler, assets=[AssetRef(asset_id=1, symbol="BTC")])
    with pytest.raises(GatewayUnavailableError):
        await gateway.fetch_prices(DAY, [1])


@pytest.mark.asyncio
async def test_api_key_header_is_sent():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=_prices_payload(1.0))

    gateway = _gateway(
        handler,
        assets=[AssetRef(asset_id=1, symbol="BTC")],
        settings=_settings(coingecko_api_key="demo-key", vs_currency="eur"),
    )
    await gateway.fetch_prices(DAY, [1])

    assert seen[0].headers["x-cg-demo-api-key"] == "demo-key"
    assert seen[0].url.params["vs_currency"] == "eur"
