from dataclasses import replace

from fastapi.testclient import TestClient
from sqlalchemy import create_engine, text

from ingestgate.api import create_app
from ingestgate.config import Settings


ETH_TOKEN = "0x" + "b" * 40
ETH_COIN = f"ethereum:{ETH_TOKEN}"


def _client(settings: Settings, fake_market_data) -> TestClient:
    return TestClient(create_app(settings, client_factory=lambda _: fake_market_data))


def test_health_lists_jobs(test_settings: Settings, fake_market_data) -> None:
    resp = _client(test_settings, fake_market_data).get("/health")

    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"
    assert "token_prices" in resp.json()["jobs"]


def test_job_endpoint_returns_metrics(test_settings: Settings, fake_market_data, write_candidates) -> None:
    write_candidates("token_list_active.json", [{"chain": "ethereum", "address": ETH_TOKEN}])
    fake_market_data.prices[ETH_COIN] = {"symbol": "BBB", "price": 3.0, "timestamp": 1772323200}

    resp = _client(test_settings, fake_market_data).get("/jobs/token_prices", params={"day": "2026-03-01", "limit": 5})

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["run_id"].startswith("token_prices_")
    assert body["metrics"]["clean_records"] == 1
    assert body["mode"] == "day:2026-03-01"


def test_unknown_job_is_404(test_settings: Settings, fake_market_data) -> None:
    resp = _client(test_settings, fake_market_data).get("/jobs/weather")

    assert resp.status_code == 404
    assert resp.json()["success"] is False


def test_missing_api_key_is_structured_500(test_settings: Settings, fake_market_data) -> None:
    settings = replace(test_settings, api_key="")

    resp = _client(settings, fake_market_data).get("/jobs/token_prices")

    assert resp.status_code == 500
    body = resp.json()
    assert body["success"] is False
    assert body["missing"] == ["DEFILLAMA_API_KEY"]
    assert "run_id" in body


def test_missing_candidate_file_is_500(test_settings: Settings, fake_market_data) -> None:
    resp = _client(test_settings, fake_market_data).get("/jobs/etf_flows")

    assert resp.status_code == 500
    assert "candidate file not found" in resp.json()["error"]


def test_held_full_sync_lock_is_423(test_settings: Settings, fake_market_data, write_candidates) -> None:
    write_candidates("poollist.json", [{"market_id": "m1"}])
    client = _client(test_settings, fake_market_data)

    # The lease table lives in the same SQLite file the app opens per request.
    sync_url = test_settings.database_url.replace("sqlite+aiosqlite", "sqlite")
    assert client.get("/quality").status_code == 200
    engine = create_engine(sync_url)
    with engine.begin() as conn:
        conn.execute(
            text(
                "INSERT INTO sync_locks (name, owner, acquired_at, expires_at) "
                "VALUES ('lending_markets:0-500', 'other-host:1', '2026-01-01 00:00:00', '2999-01-01 00:00:00')"
            )
        )
    engine.dispose()

    resp = client.get("/jobs/lending_markets", params={"full": "1", "limit": 500})

    assert resp.status_code == 423
    body = resp.json()
    assert body["success"] is False
    assert body["lock_name"] == "lending_markets:0-500"


def test_dispatch_endpoint_reports_batches(test_settings: Settings, fake_market_data, write_candidates) -> None:
    write_candidates("stablecoin_pegs.json", [{"peg": "peggedUSD"}, {"peg": "peggedEUR"}, {"peg": "peggedJPY"}])
    fake_market_data.stablecoin_rows = [
        {"date": "1772323200", "totalCirculatingUSD": {"peggedUSD": 2.5e11, "peggedEUR": 5e8, "peggedJPY": 1e7}}
    ]

    resp = _client(test_settings, fake_market_data).get(
        "/dispatch/stablecoin_mcap", params={"day": "2026-03-01", "batch_size": 2, "policy": "pool"}
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["total_batches"] == 2
    assert body["metrics"]["clean_records"] == 3


def test_quality_report_summarises_runs(test_settings: Settings, fake_market_data, write_candidates) -> None:
    write_candidates("etf_list.json", [{"gecko_id": "ibit"}])
    fake_market_data.etf_rows = [{"gecko_id": "ibit", "day": "2026-03-01", "total_flow_usd": None}]
    client = _client(test_settings, fake_market_data)
    client.get("/jobs/etf_flows", params={"day": "2026-03-01"})

    summary = client.get("/quality").json()
    errors = client.get("/quality", params={"type": "errors", "job": "etf_flows"}).json()

    assert summary["results"][0]["job_name"] == "etf_flows"
    assert summary["results"][0]["total_runs"] == 1
    assert errors["results"] == [{"job_name": "etf_flows", "error_type": "missing_flow", "error_count": 1}]


def test_quality_report_rejects_unknown_type(test_settings: Settings, fake_market_data) -> None:
    resp = _client(test_settings, fake_market_data).get("/quality", params={"type": "weather"})

    assert resp.status_code == 422
