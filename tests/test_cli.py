import json
import os
from pathlib import Path
import subprocess
import sys


def _base_env(tmp_path: Path) -> dict[str, str]:
    env = os.environ.copy()
    env["DATABASE_URL"] = f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}"
    env["DEFILLAMA_API_KEY"] = "test-key"
    env["MARKET_DATA_BASE_URL"] = "http://127.0.0.1:9"
    env["CANDIDATE_DIR"] = str(tmp_path / "candidates")
    env["FETCH_MAX_RETRIES"] = "0"
    env["REQUEST_DELAY_SECONDS"] = "0"
    return env


def _run_cli(tmp_path: Path, env: dict[str, str], *args: str) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        [sys.executable, "-m", "ingestgate.main", *args],
        cwd=Path(__file__).resolve().parents[1],
        env=env,
        check=False,
        capture_output=True,
        text=True,
    )


def test_cli_exits_2_when_api_key_is_missing(tmp_path: Path) -> None:
    env = _base_env(tmp_path)
    env["DEFILLAMA_API_KEY"] = ""

    proc = _run_cli(tmp_path, env, "run", "token_prices")

    assert proc.returncode == 2
    assert "DEFILLAMA_API_KEY" in proc.stdout


def test_cli_exits_2_when_candidates_are_missing(tmp_path: Path) -> None:
    proc = _run_cli(tmp_path, _base_env(tmp_path), "dispatch", "etf_flows", "--batch-size", "10")

    assert proc.returncode == 2
    assert "candidate file not found" in proc.stdout


def test_cli_run_fails_when_market_data_is_unreachable(tmp_path: Path) -> None:
    candidates = tmp_path / "candidates"
    candidates.mkdir()
    (candidates / "etf_list.json").write_text(json.dumps([{"gecko_id": "ibit"}]), encoding="utf-8")

    proc = _run_cli(tmp_path, _base_env(tmp_path), "run", "etf_flows", "--day", "2026-03-01")

    assert proc.returncode == 1
    assert "success=False" in proc.stdout
    assert "errors=1" in proc.stdout


def test_cli_report_prints_json(tmp_path: Path) -> None:
    proc = _run_cli(tmp_path, _base_env(tmp_path), "report", "--type", "errors")

    assert proc.returncode == 0
    report = json.loads(proc.stdout)
    assert report["report_type"] == "errors"
    assert report["results"] == []
