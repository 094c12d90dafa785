from collections.abc import AsyncGenerator, Callable
from dataclasses import replace
import json
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from ingestgate.config import Settings
from ingestgate.database import build_engine, build_session_factory, init_models
from ingestgate.errors import FetchError
from ingestgate.pipeline import IngestRunner


class FakeMarketData:
    def __init__(self) -> None:
        self.prices: dict[str, dict[str, object]] = {}
        self.lending: dict[str, list[dict[str, object]]] = {}
        self.pools: list[dict[str, object]] = []
        self.protocols: dict[str, dict[str, object]] = {}
        self.etf_rows: list[dict[str, object]] = []
        self.stablecoin_rows: list[dict[str, object]] = []
        self.failing: set[str] = set()
        self.calls: list[tuple[object, ...]] = []

    def _maybe_fail(self, key: str) -> None:
        if key in self.failing:
            raise FetchError(f"{key} unavailable", status_code=503)

    async def fetch_historical_prices(self, timestamp: int, coin_ids: list[str]) -> dict[str, dict[str, object]]:
        self.calls.append(("prices", timestamp, tuple(coin_ids)))
        for coin_id in coin_ids:
            self._maybe_fail(coin_id)
        return {coin_id: self.prices[coin_id] for coin_id in coin_ids if coin_id in self.prices}

    async def fetch_lending_history(self, market_id: str) -> list[dict[str, object]]:
        self.calls.append(("lending", market_id))
        self._maybe_fail(market_id)
        return self.lending.get(market_id, [])

    async def fetch_pools(self) -> list[dict[str, object]]:
        self.calls.append(("pools",))
        self._maybe_fail("pools")
        return self.pools

    async def fetch_protocol(self, slug: str) -> dict[str, object]:
        self.calls.append(("protocol", slug))
        self._maybe_fail(slug)
        return self.protocols.get(slug, {})

    async def fetch_etf_flows(self, start: int, end: int) -> list[dict[str, object]]:
        self.calls.append(("etf", start, end))
        self._maybe_fail("etf")
        return self.etf_rows

    async def fetch_stablecoin_charts(self) -> list[dict[str, object]]:
        self.calls.append(("stablecoins",))
        self._maybe_fail("stablecoins")
        return self.stablecoin_rows


@pytest.fixture()
def temp_workspace(tmp_path: Path) -> Path:
    (tmp_path / "candidates").mkdir(parents=True, exist_ok=True)
    return tmp_path


@pytest.fixture()
def test_settings(temp_workspace: Path) -> Settings:
    return Settings(
        app_name="ingestgate",
        database_url=f"sqlite+aiosqlite:///{temp_workspace / 'test.db'}",
        api_key="test-key",
        market_data_base_url="https://market-data.test",
        log_level="INFO",
        candidate_dir=str(temp_workspace / "candidates"),
        db_pool_size=5,
        request_delay_seconds=0,
        http_timeout_seconds=5,
        fetch_max_retries=1,
        fetch_retry_backoff_seconds=0,
        dispatch_batch_size=2,
        dispatch_max_concurrency=2,
        dispatch_success_threshold=0.7,
        batch_timeout_seconds=0,
        freshness_window_minutes=180,
        lock_ttl_seconds=60,
        schedule_hour_utc=2,
        schedule_minute_utc=0,
        scheduled_jobs=("token_prices",),
    )


@pytest.fixture()
def write_candidates(test_settings: Settings) -> Callable[[str, list[object]], Path]:
    def write(filename: str, items: list[object]) -> Path:
        path = Path(test_settings.candidate_dir) / filename
        path.write_text(json.dumps(items), encoding="utf-8")
        return path

    return write


@pytest.fixture()
def fake_market_data() -> FakeMarketData:
    return FakeMarketData()


@pytest_asyncio.fixture()
async def engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, None]:
    engine = build_engine(test_settings)
    await init_models(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture()
async def db(engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    async with build_session_factory(engine)() as session:
        yield session


@pytest.fixture()
def runner(test_settings: Settings, engine: AsyncEngine, fake_market_data: FakeMarketData) -> IngestRunner:
    return IngestRunner(test_settings, engine, build_session_factory(engine), fake_market_data)


@pytest.fixture()
def settings_without_api_key(test_settings: Settings) -> Settings:
    return replace(test_settings, api_key="")
