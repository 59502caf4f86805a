from dataclasses import asdict, dataclass
from datetime import datetime


@dataclass(frozen=True)
class CandidateRecord:
    row_key: str
    natural_key: str


@dataclass(frozen=True)
class Resolved:
    identifier: str


@dataclass(frozen=True)
class NotFound:
    pass


@dataclass(frozen=True)
class LookupFailed:
    cause: str


LookupOutcome = Resolved | NotFound | LookupFailed


@dataclass(frozen=True)
class Updated:
    pass


@dataclass(frozen=True)
class UpdateFailed:
    cause: str


UpdateOutcome = Updated | UpdateFailed


@dataclass(frozen=True)
class RecordResult:
    record: CandidateRecord
    lookup: LookupOutcome
    update: UpdateOutcome | None = None


@dataclass(frozen=True)
class Report:
    candidates: int = 0
    resolved: int = 0
    not_found: int = 0
    lookup_failed: int = 0
    updated: int = 0
    update_failed: int = 0
    selection_seconds: float = 0.0
    fanout_seconds: float = 0.0
    error: str | None = None

    @property
    def update_success_rate(self) -> float:
        if self.candidates == 0:
            return 0.0
        return self.updated / self.candidates

    def as_dict(self) -> dict[str, object]:
        payload = asdict(self)
        payload["update_success_rate"] = self.update_success_rate
        return payload


@dataclass(frozen=True)
class RunResult:
    run_id: int
    run_key: str
    trigger_source: str
    status: str
    started_at: datetime
    completed_at: datetime | None
    report: Report
    report_path: str | None
    reused_existing_run: bool = False
