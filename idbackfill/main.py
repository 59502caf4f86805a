import argparse
from datetime import UTC, datetime
import logging

from idbackfill.config import get_settings
from idbackfill.database import build_session_factory
from idbackfill.runner import BatchRunner, build_pipeline
from idbackfill.scheduler import start_scheduler


def positive_int(value: str) -> int:
    try:
        parsed = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"{value!r} is not an integer") from exc
    if parsed < 1:
        raise argparse.ArgumentTypeError(f"{value!r} must be a positive integer")
    return parsed


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Backfill missing identifiers from the lookup API")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="run one backfill batch")
    run_parser.add_argument("--batch-size", type=positive_int, help="Maximum rows selected for this run")
    run_parser.add_argument("--concurrency", type=positive_int, help="Number of lookup workers")
    run_parser.add_argument("--run-key", required=False, help="Idempotency key for this run")

    schedule_parser = subparsers.add_parser("schedule", help="start daily scheduler")
    schedule_parser.add_argument("--run-now", action="store_true", help="also run once immediately")

    return parser.parse_args()


def main() -> None:
    args = parse_args()
    settings = get_settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    session_factory = build_session_factory(settings.ledger_database_url)
    pipeline = build_pipeline(settings)
    runner = BatchRunner(settings, session_factory, pipeline)

    try:
        if args.command == "schedule":
            start_scheduler(runner, run_now=args.run_now)
            return

        run_key = args.run_key or f"manual-{datetime.now(UTC).strftime('%Y%m%dT%H%M%S%f')}"
        result = runner.run(run_key=run_key, batch_size=args.batch_size, concurrency=args.concurrency)
    finally:
        pipeline.lookup.close()

    report = result.report
    print(
        "run_id={run_id} run_key={run_key} status={status} candidates={candidates} resolved={resolved} "
        "not_found={not_found} lookup_failed={lookup_failed} updated={updated} update_failed={update_failed} "
        "success_rate={rate:.2%} reused={reused} report={path}".format(
            run_id=result.run_id,
            run_key=result.run_key,
            status=result.status,
            candidates=report.candidates,
            resolved=report.resolved,
            not_found=report.not_found,
            lookup_failed=report.lookup_failed,
            updated=report.updated,
            update_failed=report.update_failed,
            rate=report.update_success_rate,
            reused=result.reused_existing_run,
            path=result.report_path,
        )
    )
    if result.status == "failed":
        raise SystemExit(1)


if __name__ == "__main__":
    main()
