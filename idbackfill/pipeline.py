from concurrent.futures import Future, ThreadPoolExecutor
import logging
import queue
import time

from idbackfill.lookup import LookupClient
from idbackfill.record_store import RecordStore
from idbackfill.schemas import (
    CandidateRecord,
    LookupFailed,
    LookupOutcome,
    NotFound,
    RecordResult,
    Report,
    Resolved,
    Updated,
    UpdateFailed,
    UpdateOutcome,
)


logger = logging.getLogger(__name__)

DEFAULT_MAX_CANDIDATES = 1000
DEFAULT_CONCURRENCY = 10
PROGRESS_EVERY = 100
_RESULT_POLL_SECONDS = 0.5


def _describe(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"


class EnrichmentPipeline:
    def __init__(self, store: RecordStore, lookup: LookupClient) -> None:
        self.store = store
        self.lookup = lookup

    def run(self, max_candidates: int = DEFAULT_MAX_CANDIDATES, concurrency: int = DEFAULT_CONCURRENCY) -> Report:
        if max_candidates < 0:
            raise ValueError("max_candidates must be >= 0")
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")

        logger.info("enrichment run started", extra={"max_candidates": max_candidates, "concurrency": concurrency})

        selection_started = time.perf_counter()
        try:
            candidates = self.store.fetch_candidates(max_candidates)
        except Exception as exc:
            logger.exception("candidate selection failed")
            return Report(selection_seconds=time.perf_counter() - selection_started, error=_describe(exc))
        candidates = self._unique_within_cap(candidates, max_candidates)
        selection_seconds = time.perf_counter() - selection_started

        if not candidates:
            logger.info("no candidates to process")
            return Report(selection_seconds=selection_seconds)

        fanout_started = time.perf_counter()
        results = self._fan_out(candidates, concurrency)
        fanout_seconds = time.perf_counter() - fanout_started

        report = aggregate_results(results, selection_seconds=selection_seconds, fanout_seconds=fanout_seconds)
        log_summary(report)
        return report

    def _unique_within_cap(self, candidates: list[CandidateRecord], max_candidates: int) -> list[CandidateRecord]:
        # A row key is dispatched at most once so no row is written twice in one run.
        seen: set[str] = set()
        unique: list[CandidateRecord] = []
        for record in candidates:
            if record.row_key in seen:
                logger.warning("duplicate candidate dropped", extra={"row_key": record.row_key})
                continue
            seen.add(record.row_key)
            unique.append(record)

        if len(unique) > max_candidates:
            logger.warning(
                "store returned more candidates than requested",
                extra={"returned": len(unique), "max_candidates": max_candidates},
            )
            unique = unique[:max_candidates]
        return unique

    def _fan_out(self, candidates: list[CandidateRecord], concurrency: int) -> list[RecordResult]:
        work: queue.Queue[CandidateRecord] = queue.Queue()
        for record in candidates:
            work.put(record)
        outcomes: queue.Queue[RecordResult] = queue.Queue()

        expected = len(candidates)
        results: list[RecordResult] = []

        logger.info("dispatching lookups", extra={"candidates": expected, "workers": concurrency})
        with ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix="enrich") as executor:
            workers = [executor.submit(self._drain, work, outcomes) for _ in range(concurrency)]
            while len(results) < expected:
                try:
                    result = outcomes.get(timeout=_RESULT_POLL_SECONDS)
                except queue.Empty:
                    if self._workers_finished(workers):
                        results.extend(self._drain_outcomes(outcomes))
                        break
                    continue

                results.append(result)
                if len(results) % PROGRESS_EVERY == 0:
                    logger.info("progress: %d/%d records processed", len(results), expected)

        if len(results) != expected:
            raise RuntimeError(f"fan-out produced {len(results)} results for {expected} candidates")
        return results

    def _workers_finished(self, workers: list[Future[None]]) -> bool:
        if not all(worker.done() for worker in workers):
            return False
        for worker in workers:
            # Re-raises anything that killed a worker outside the row boundary.
            worker.result()
        return True

    def _drain_outcomes(self, outcomes: queue.Queue[RecordResult]) -> list[RecordResult]:
        drained: list[RecordResult] = []
        while True:
            try:
                drained.append(outcomes.get_nowait())
            except queue.Empty:
                return drained

    def _drain(self, work: queue.Queue[CandidateRecord], outcomes: queue.Queue[RecordResult]) -> None:
        while True:
            try:
                record = work.get_nowait()
            except queue.Empty:
                return
            outcomes.put(self.process_record(record))

    def process_record(self, record: CandidateRecord) -> RecordResult:
        """Resolve one row and write its identifier back.

        Faults are contained here: a failing lookup becomes ``LookupFailed``
        and a failing write becomes ``UpdateFailed``.
        """
        started = time.perf_counter()
        try:
            lookup = self.lookup.resolve(record.natural_key)
        except Exception as exc:
            logger.exception("lookup crashed", extra={"row_key": record.row_key})
            lookup = LookupFailed(_describe(exc))
        if not isinstance(lookup, (Resolved, NotFound, LookupFailed)):
            lookup = LookupFailed(f"unexpected lookup result: {lookup!r}")
        looked_up = time.perf_counter()

        if not isinstance(lookup, Resolved):
            logger.debug(
                "no identifier for record",
                extra={"row_key": record.row_key, "outcome": type(lookup).__name__, "lookup_ms": (looked_up - started) * 1000},
            )
            return RecordResult(record=record, lookup=lookup)

        update: UpdateOutcome
        try:
            update = self.store.update(record.row_key, lookup.identifier)
        except Exception as exc:
            logger.exception("update crashed", extra={"row_key": record.row_key})
            update = UpdateFailed(_describe(exc))
        if not isinstance(update, (Updated, UpdateFailed)):
            update = UpdateFailed(f"unexpected update result: {update!r}")

        finished = time.perf_counter()
        logger.debug(
            "record processed",
            extra={
                "row_key": record.row_key,
                "outcome": type(update).__name__,
                "lookup_ms": (looked_up - started) * 1000,
                "update_ms": (finished - looked_up) * 1000,
            },
        )
        return RecordResult(record=record, lookup=lookup, update=update)


def _count_lookup(counts: dict[str, int], lookup: LookupOutcome) -> None:
    if isinstance(lookup, Resolved):
        counts["resolved"] += 1
    elif isinstance(lookup, NotFound):
        counts["not_found"] += 1
    else:
        counts["lookup_failed"] += 1


def aggregate_results(results: list[RecordResult], *, selection_seconds: float, fanout_seconds: float) -> Report:
    counts = {"resolved": 0, "not_found": 0, "lookup_failed": 0, "updated": 0, "update_failed": 0}
    for result in results:
        _count_lookup(counts, result.lookup)
        if not isinstance(result.lookup, Resolved):
            continue
        if isinstance(result.update, Updated):
            counts["updated"] += 1
        else:
            # A resolved row that never reached a successful write is a failed update.
            counts["update_failed"] += 1

    return Report(
        candidates=len(results),
        selection_seconds=selection_seconds,
        fanout_seconds=fanout_seconds,
        **counts,
    )


def log_summary(report: Report) -> None:
    logger.info("=== enrichment summary ===")
    logger.info("selection: %.0f ms, fan-out: %.0f ms", report.selection_seconds * 1000, report.fanout_seconds * 1000)
    if report.candidates:
        logger.info("average fan-out time per record: %.1f ms", report.fanout_seconds * 1000 / report.candidates)
    logger.info(
        "candidates=%d resolved=%d not_found=%d lookup_failed=%d",
        report.candidates,
        report.resolved,
        report.not_found,
        report.lookup_failed,
    )
    logger.info("updated=%d update_failed=%d", report.updated, report.update_failed)
    logger.info("update success rate: %.2f%%", report.update_success_rate * 100)
