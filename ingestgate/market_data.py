import logging
from urllib.parse import quote

import httpx

from ingestgate.config import Settings
from ingestgate.errors import FetchError
from ingestgate.retry import RetryExhaustedError, run_with_retries


logger = logging.getLogger(__name__)


def normalize_array(payload: object) -> list[dict[str, object]]:
    """Series endpoints answer either with a bare list or with ``{"data": [...]}``."""
    if isinstance(payload, dict):
        payload = payload.get("data")
    if not isinstance(payload, list):
        return []
    return [item for item in payload if isinstance(item, dict)]


class MarketDataClient:
    """Read-only client for the DeFiLlama pro API.

    The API key is part of the URL path, so it is kept out of every log line.
    """

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = "https://pro-api.llama.fi",
        timeout_seconds: float = 30,
        max_retries: int = 2,
        backoff_seconds: float = 0.5,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self._prefix = f"{base_url.rstrip('/')}/{api_key}"
        self._client = http_client or httpx.AsyncClient(timeout=timeout_seconds)

    @classmethod
    def from_settings(cls, settings: Settings, http_client: httpx.AsyncClient | None = None) -> "MarketDataClient":
        return cls(
            api_key=settings.api_key,
            base_url=settings.market_data_base_url,
            timeout_seconds=settings.http_timeout_seconds,
            max_retries=settings.fetch_max_retries,
            backoff_seconds=settings.fetch_retry_backoff_seconds,
            http_client=http_client,
        )

    async def __aenter__(self) -> "MarketDataClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _get_once(self, path: str, params: dict[str, object] | None) -> object:
        try:
            response = await self._client.get(f"{self._prefix}/{path}", params=params)
        except httpx.HTTPError as exc:
            raise FetchError(f"request to {path} failed: {exc.__class__.__name__}") from exc

        if response.status_code >= 400:
            # Rate limits and server faults clear up; other client errors do not.
            retryable = response.status_code == 429 or response.status_code >= 500
            raise FetchError(
                f"{path} answered {response.status_code} {response.reason_phrase}",
                status_code=response.status_code,
                retryable=retryable,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise FetchError(f"{path} returned invalid JSON", status_code=response.status_code, retryable=False) from exc

    async def get_json(self, path: str, params: dict[str, object] | None = None) -> object:
        def log_failure(attempt: int, exc: Exception) -> None:
            logger.warning("market data request failed", extra={"path": path, "attempt": attempt, "error": str(exc)})

        try:
            return await run_with_retries(
                lambda: self._get_once(path, params),
                max_retries=self.max_retries,
                backoff_seconds=self.backoff_seconds,
                on_attempt_failure=log_failure,
                should_retry=lambda exc: isinstance(exc, FetchError) and exc.retryable,
            )
        except RetryExhaustedError as exc:
            cause = exc.__cause__
            status_code = cause.status_code if isinstance(cause, FetchError) else None
            raise FetchError(str(exc), status_code=status_code, retryable=False) from cause

    async def fetch_historical_prices(self, timestamp: int, coin_ids: list[str]) -> dict[str, dict[str, object]]:
        ids = quote(",".join(coin_ids), safe="")
        payload = await self.get_json(f"coins/prices/historical/{timestamp}/{ids}")
        coins = payload.get("coins") if isinstance(payload, dict) else None
        return coins if isinstance(coins, dict) else {}

    async def fetch_lending_history(self, market_id: str) -> list[dict[str, object]]:
        return normalize_array(await self.get_json(f"yields/chartLendBorrow/{quote(market_id, safe='')}"))

    async def fetch_pools(self) -> list[dict[str, object]]:
        return normalize_array(await self.get_json("yields/pools"))

    async def fetch_protocol(self, slug: str) -> dict[str, object]:
        payload = await self.get_json(f"api/protocol/{quote(slug, safe='')}")
        if not isinstance(payload, dict):
            raise FetchError(f"protocol '{slug}' returned an unexpected payload", retryable=False)
        return payload

    async def fetch_etf_flows(self, start: int, end: int) -> list[dict[str, object]]:
        return normalize_array(await self.get_json("etfs/flows", params={"start": start, "end": end}))

    async def fetch_stablecoin_charts(self) -> list[dict[str, object]]:
        return normalize_array(await self.get_json("stablecoins/stablecoincharts/all"))
