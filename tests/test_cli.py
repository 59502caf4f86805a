import json
import os
from pathlib import Path
import subprocess
import sys


ROWS = [
    {"uuid": "a", "rx_data_id": "rx-a", "aspn_id": None},
    {"uuid": "b", "rx_data_id": "rx-b", "aspn_id": None},
    {"uuid": "c", "rx_data_id": "rx-c", "aspn_id": None},
]


def _base_env(test_settings) -> dict[str, str]:
    env = os.environ.copy()
    env["DATABASE_URL"] = test_settings.database_url
    env["LEDGER_DATABASE_URL"] = test_settings.ledger_database_url
    env["OUTPUT_DIR"] = test_settings.output_dir
    env["API_USE_MOCK"] = "true"
    env["MOCK_SUCCESS_RATE"] = "1.0"
    return env


def _run_cli(env: dict[str, str], *args: str) -> subprocess.CompletedProcess:
    return subprocess.run(
        [sys.executable, "-m", "idbackfill.main", *args],
        cwd=Path(__file__).resolve().parents[1],
        env=env,
        check=False,
        capture_output=True,
        text=True,
    )


def test_cli_returns_zero_when_run_completes(test_settings, seed_target) -> None:
    seed_target(ROWS)

    proc = _run_cli(_base_env(test_settings), "run", "--batch-size", "10", "--concurrency", "3", "--run-key", "cli-1")

    assert proc.returncode == 0, proc.stderr
    assert "status=succeeded" in proc.stdout
    assert "candidates=3" in proc.stdout
    assert "updated=3" in proc.stdout

    report = json.loads((Path(test_settings.output_dir) / "reports" / "cli-1.json").read_text(encoding="utf-8"))
    assert report["candidates"] == 3


def test_cli_returns_zero_with_per_row_failures(test_settings, seed_target) -> None:
    seed_target(ROWS)
    env = _base_env(test_settings)
    env["MOCK_SUCCESS_RATE"] = "0.0"

    proc = _run_cli(env, "run", "--run-key", "cli-2")

    assert proc.returncode == 0, proc.stderr
    assert "not_found=3" in proc.stdout
    assert "updated=0" in proc.stdout


def test_cli_returns_nonzero_when_selection_fails(test_settings) -> None:
    proc = _run_cli(_base_env(test_settings), "run", "--run-key", "cli-3")

    assert proc.returncode == 1
    assert "status=failed" in proc.stdout


def test_cli_rejects_non_positive_concurrency(test_settings) -> None:
    proc = _run_cli(_base_env(test_settings), "run", "--concurrency", "0")

    assert proc.returncode == 2
    assert "positive integer" in proc.stderr
