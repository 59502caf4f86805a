import json
import logging
from pathlib import Path

from sqlalchemy.orm import Session, sessionmaker

from idbackfill.config import Settings
from idbackfill.database import build_engine
from idbackfill.db_models import EnrichmentRun
from idbackfill.lookup import build_lookup_client
from idbackfill.pipeline import EnrichmentPipeline
from idbackfill.record_store import SqlRecordStore
from idbackfill.run_store import (
    create_or_get_run,
    mark_run_failed,
    mark_run_succeeded,
    report_from_run,
    restart_run,
)
from idbackfill.schemas import Report, RunResult


logger = logging.getLogger(__name__)


def build_pipeline(settings: Settings) -> EnrichmentPipeline:
    engine = build_engine(
        settings.database_url,
        credentials_path=settings.credentials_path,
        pool_size=settings.concurrency,
    )
    store = SqlRecordStore.from_settings(engine, settings)
    return EnrichmentPipeline(store, build_lookup_client(settings))


def write_json(path: Path, payload: dict[str, object]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as outfile:
        json.dump(payload, outfile, indent=2, sort_keys=True)
        outfile.write("\n")


class BatchRunner:
    def __init__(self, settings: Settings, session_factory: sessionmaker[Session], pipeline: EnrichmentPipeline) -> None:
        self.settings = settings
        self.session_factory = session_factory
        self.pipeline = pipeline

    def run(
        self,
        *,
        run_key: str,
        trigger_source: str = "manual",
        batch_size: int | None = None,
        concurrency: int | None = None,
    ) -> RunResult:
        batch_size = self.settings.batch_size if batch_size is None else batch_size
        concurrency = self.settings.concurrency if concurrency is None else concurrency

        with self.session_factory() as db:
            run, created = create_or_get_run(
                db,
                run_key=run_key,
                trigger_source=trigger_source,
                batch_size=batch_size,
                concurrency=concurrency,
            )
            if not created:
                if run.status != "failed":
                    logger.info("run key reused", extra={"run_key": run_key, "status": run.status})
                    return self._result_from_run(run, report_path=self._report_path(run_key), reused_existing_run=True)
                logger.info("retrying previously failed run", extra={"run_key": run_key})
                restart_run(db, run, trigger_source=trigger_source, batch_size=batch_size, concurrency=concurrency)

            try:
                report = self.pipeline.run(max_candidates=batch_size, concurrency=concurrency)
            except Exception as exc:
                logger.exception("enrichment run crashed", extra={"run_key": run_key})
                report = Report(error=f"{type(exc).__name__}: {exc}")

            if report.error is not None:
                mark_run_failed(db, run, error=report.error, report=report)
                logger.error("enrichment run failed", extra={"run_key": run_key, "error": report.error})
            else:
                mark_run_succeeded(db, run, report)
                logger.info("enrichment run completed", extra={"run_key": run_key, "candidates": report.candidates})

            report_path: str | None = self._report_path(run_key)
            try:
                write_json(Path(report_path), self._report_payload(run, report))
            except OSError:
                # The ledger already holds the outcome; a missing report file does not fail the run.
                logger.exception("report file could not be written", extra={"run_key": run_key, "path": report_path})
                report_path = None

            return self._result_from_run(run, report_path=report_path, reused_existing_run=False)

    def _report_path(self, run_key: str) -> str:
        return str(Path(self.settings.output_dir) / "reports" / f"{run_key}.json")

    def _report_payload(self, run: EnrichmentRun, report: Report) -> dict[str, object]:
        payload = report.as_dict()
        payload.update(
            {
                "run_key": run.run_key,
                "trigger_source": run.trigger_source,
                "batch_size": run.batch_size,
                "concurrency": run.concurrency,
                "started_at": run.started_at.isoformat(),
            }
        )
        return payload

    def _result_from_run(self, run: EnrichmentRun, report_path: str | None, reused_existing_run: bool) -> RunResult:
        return RunResult(
            run_id=run.id,
            run_key=run.run_key,
            trigger_source=run.trigger_source,
            status=run.status,
            started_at=run.started_at,
            completed_at=run.completed_at,
            report=report_from_run(run),
            report_path=report_path,
            reused_existing_run=reused_existing_run,
        )
