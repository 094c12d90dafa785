import httpx
import pytest

from ingestgate.errors import FetchError
from ingestgate.market_data import MarketDataClient, normalize_array


def _client(handler) -> MarketDataClient:
    return MarketDataClient(
        api_key="secret",
        base_url="https://market-data.test",
        max_retries=2,
        backoff_seconds=0,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


@pytest.mark.asyncio
async def test_prices_request_carries_key_and_joined_ids() -> None:
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url.path)
        return httpx.Response(200, json={"coins": {"ethereum:0xabc": {"price": 1.0}}})

    async with _client(handler) as client:
        coins = await client.fetch_historical_prices(1772323200, ["ethereum:0xabc", "solana:So1"])

    assert coins == {"ethereum:0xabc": {"price": 1.0}}
    assert seen == ["/secret/coins/prices/historical/1772323200/ethereum:0xabc,solana:So1"]


@pytest.mark.asyncio
async def test_server_errors_are_retried() -> None:
    attempts = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal attempts
        attempts += 1
        if attempts < 3:
            return httpx.Response(503)
        return httpx.Response(200, json={"data": [{"pool": "p1"}]})

    async with _client(handler) as client:
        pools = await client.fetch_pools()

    assert attempts == 3
    assert pools == [{"pool": "p1"}]


@pytest.mark.asyncio
async def test_client_errors_are_not_retried() -> None:
    attempts = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal attempts
        attempts += 1
        return httpx.Response(404)

    async with _client(handler) as client:
        with pytest.raises(FetchError) as excinfo:
            await client.fetch_lending_history("m1")

    assert attempts == 1
    assert excinfo.value.status_code == 404
    assert "secret" not in str(excinfo.value)


@pytest.mark.asyncio
async def test_exhausted_retries_raise_fetch_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    async with _client(handler) as client:
        with pytest.raises(FetchError):
            await client.fetch_stablecoin_charts()


@pytest.mark.asyncio
async def test_etf_flows_pass_window_as_query() -> None:
    seen: list[httpx.URL] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url)
        return httpx.Response(200, json=[{"gecko_id": "ibit"}])

    async with _client(handler) as client:
        rows = await client.fetch_etf_flows(1, 2)

    assert rows == [{"gecko_id": "ibit"}]
    assert seen[0].params["start"] == "1"
    assert seen[0].params["end"] == "2"


def test_normalize_array_accepts_bare_and_wrapped_lists() -> None:
    assert normalize_array([{"a": 1}, "junk"]) == [{"a": 1}]
    assert normalize_array({"data": [{"a": 1}]}) == [{"a": 1}]
    assert normalize_array({"status": "error"}) == []
