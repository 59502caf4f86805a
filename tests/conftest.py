from collections.abc import Callable, Iterable
from pathlib import Path
import threading
import time

import pytest
from sqlalchemy import Engine, MetaData, Table, insert

from idbackfill.config import Settings
from idbackfill.database import build_engine
from idbackfill.db_models import target_table
from idbackfill.errors import SelectionError
from idbackfill.lookup import LookupClient
from idbackfill.record_store import RecordStore, SqlRecordStore
from idbackfill.schemas import CandidateRecord, LookupOutcome, NotFound, Updated, UpdateFailed, UpdateOutcome


class InMemoryStore(RecordStore):
    def __init__(
        self,
        rows: dict[str, str | None] | None = None,
        *,
        fail_selection: bool = False,
        failing_updates: Iterable[str] = (),
        raising_updates: Iterable[str] = (),
        duplicate_candidates: bool = False,
    ) -> None:
        self.rows = {key: {"natural_key": natural_key, "identifier": None} for key, natural_key in (rows or {}).items()}
        self.fail_selection = fail_selection
        self.failing_updates = set(failing_updates)
        self.raising_updates = set(raising_updates)
        self.duplicate_candidates = duplicate_candidates
        self.fetch_calls: list[int] = []
        self.update_calls: list[tuple[str, str]] = []
        self._lock = threading.Lock()

    def fetch_candidates(self, limit: int) -> list[CandidateRecord]:
        self.fetch_calls.append(limit)
        if self.fail_selection:
            raise SelectionError("warehouse unavailable")
        candidates = [
            CandidateRecord(row_key=key, natural_key=row["natural_key"])
            for key, row in self.rows.items()
            if row["identifier"] is None and row["natural_key"] is not None
        ][:limit]
        if self.duplicate_candidates:
            candidates = candidates + candidates
        return candidates

    def update(self, row_key: str, identifier: str) -> UpdateOutcome:
        with self._lock:
            self.update_calls.append((row_key, identifier))
        if row_key in self.raising_updates:
            raise RuntimeError("connection reset")
        if row_key in self.failing_updates:
            return UpdateFailed("simulated backend error")
        with self._lock:
            self.rows[row_key]["identifier"] = identifier
        return Updated()


class ScriptedLookup(LookupClient):
    """Answers from a fixed table; unknown keys are NotFound."""

    def __init__(self, outcomes: dict[str, LookupOutcome] | None = None, *, delay_seconds: float = 0.0) -> None:
        self.outcomes = outcomes or {}
        self.delay_seconds = delay_seconds
        self.calls: list[str] = []
        self._lock = threading.Lock()
        self.in_flight = 0
        self.max_in_flight = 0

    def _lookup(self, natural_key: str) -> LookupOutcome:
        with self._lock:
            self.calls.append(natural_key)
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay_seconds:
                time.sleep(self.delay_seconds)
            return self.outcomes.get(natural_key, NotFound())
        finally:
            with self._lock:
                self.in_flight -= 1


@pytest.fixture()
def make_store() -> Callable[..., InMemoryStore]:
    return InMemoryStore


@pytest.fixture()
def make_lookup() -> Callable[..., ScriptedLookup]:
    return ScriptedLookup


@pytest.fixture()
def test_settings(tmp_path: Path) -> Settings:
    return Settings(
        app_name="idbackfill",
        log_level="INFO",
        database_url=f"sqlite:///{tmp_path / 'warehouse.db'}",
        credentials_path=None,
        table_name="records",
        table_schema=None,
        key_column="uuid",
        natural_key_column="rx_data_id",
        identifier_column="aspn_id",
        identifier_prefix="ASPN_",
        batch_size=1000,
        concurrency=4,
        api_base_url="http://lookup.test/api",
        api_lookup_path=None,
        api_use_mock=True,
        api_username=None,
        api_password=None,
        api_timeout_seconds=5.0,
        api_identifier_field="AspnID",
        api_errors_field="Errors",
        mock_success_rate=1.0,
        ledger_database_url=f"sqlite:///{tmp_path / 'ledger.db'}",
        output_dir=str(tmp_path / "outputs"),
        schedule_hour_utc=2,
        schedule_minute_utc=0,
    )


def create_target_table(database_url: str, rows: list[dict[str, object]]) -> tuple[Engine, Table]:
    engine = build_engine(database_url)
    metadata = MetaData()
    table = target_table(
        metadata,
        table_name="records",
        key_column="uuid",
        natural_key_column="rx_data_id",
        identifier_column="aspn_id",
    )
    metadata.create_all(engine)
    if rows:
        with engine.begin() as conn:
            conn.execute(insert(table), rows)
    return engine, table


@pytest.fixture()
def seed_target(test_settings: Settings) -> Callable[[list[dict[str, object]]], tuple[Engine, Table]]:
    def _seed(rows: list[dict[str, object]]) -> tuple[Engine, Table]:
        return create_target_table(test_settings.database_url, rows)

    return _seed


@pytest.fixture()
def sql_store(test_settings: Settings) -> Callable[[Engine], SqlRecordStore]:
    def _build(engine: Engine) -> SqlRecordStore:
        return SqlRecordStore.from_settings(engine, test_settings)

    return _build
