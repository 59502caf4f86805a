from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from idbackfill.db_models import EnrichmentRun, utc_now
from idbackfill.schemas import Report


def get_run_by_key(db: Session, run_key: str) -> EnrichmentRun | None:
    stmt = select(EnrichmentRun).where(EnrichmentRun.run_key == run_key)
    return db.execute(stmt).scalar_one_or_none()


def create_or_get_run(
    db: Session,
    *,
    run_key: str,
    trigger_source: str,
    batch_size: int,
    concurrency: int,
) -> tuple[EnrichmentRun, bool]:
    run = EnrichmentRun(
        run_key=run_key,
        trigger_source=trigger_source,
        status="running",
        started_at=utc_now(),
        batch_size=batch_size,
        concurrency=concurrency,
    )
    db.add(run)
    try:
        db.commit()
    except IntegrityError:
        # Unique run_key keeps a scheduled day from being backfilled twice.
        db.rollback()
        existing = get_run_by_key(db, run_key)
        if existing:
            return existing, False
        raise

    db.refresh(run)
    return run, True


def restart_run(db: Session, run: EnrichmentRun, *, trigger_source: str, batch_size: int, concurrency: int) -> None:
    run.status = "running"
    run.trigger_source = trigger_source
    run.started_at = utc_now()
    run.completed_at = None
    run.batch_size = batch_size
    run.concurrency = concurrency
    run.error = None
    _store_counts(run, Report())
    db.commit()


def _store_counts(run: EnrichmentRun, report: Report) -> None:
    run.candidates = report.candidates
    run.resolved = report.resolved
    run.not_found = report.not_found
    run.lookup_failed = report.lookup_failed
    run.updated = report.updated
    run.update_failed = report.update_failed
    run.selection_ms = report.selection_seconds * 1000
    run.fanout_ms = report.fanout_seconds * 1000


def mark_run_succeeded(db: Session, run: EnrichmentRun, report: Report) -> None:
    run.status = "succeeded"
    run.error = None
    _store_counts(run, report)
    run.completed_at = utc_now()
    db.commit()


def mark_run_failed(db: Session, run: EnrichmentRun, *, error: str, report: Report | None = None) -> None:
    run.status = "failed"
    run.error = error
    _store_counts(run, report or Report())
    run.completed_at = utc_now()
    db.commit()


def report_from_run(run: EnrichmentRun) -> Report:
    return Report(
        candidates=run.candidates,
        resolved=run.resolved,
        not_found=run.not_found,
        lookup_failed=run.lookup_failed,
        updated=run.updated,
        update_failed=run.update_failed,
        selection_seconds=(run.selection_ms or 0.0) / 1000,
        fanout_seconds=(run.fanout_ms or 0.0) / 1000,
        error=run.error,
    )
