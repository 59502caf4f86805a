from datetime import UTC, datetime
import logging

from apscheduler.schedulers.blocking import BlockingScheduler

from idbackfill.runner import BatchRunner


logger = logging.getLogger(__name__)


def _run_daily_backfill(runner: BatchRunner) -> None:
    run_date = datetime.now(UTC).date()
    run_key = f"scheduled-{run_date.isoformat()}"

    result = runner.run(run_key=run_key, trigger_source="scheduled")
    extra = {
        "run_key": result.run_key,
        "status": result.status,
        "candidates": result.report.candidates,
        "updated": result.report.updated,
        "reused_existing_run": result.reused_existing_run,
    }
    if result.status == "failed":
        logger.error("scheduled backfill failed", extra=extra)
        return
    logger.info("scheduled backfill completed", extra=extra)


def start_scheduler(runner: BatchRunner, *, run_now: bool = False) -> None:
    settings = runner.settings
    scheduler = BlockingScheduler(timezone="UTC")
    scheduler.add_job(
        _run_daily_backfill,
        "cron",
        args=[runner],
        hour=settings.schedule_hour_utc,
        minute=settings.schedule_minute_utc,
        id="daily_backfill",
        replace_existing=True,
        max_instances=1,
    )

    logger.info(
        "scheduler started",
        extra={
            "schedule_hour_utc": settings.schedule_hour_utc,
            "schedule_minute_utc": settings.schedule_minute_utc,
        },
    )

    if run_now:
        _run_daily_backfill(runner)

    scheduler.start()
