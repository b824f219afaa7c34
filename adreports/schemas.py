from dataclasses import dataclass, field
from datetime import date


CUSTOM_DATE = "CUSTOM_DATE"


@dataclass(frozen=True)
class DateRange:
    mode: str
    start: date
    end: date

    @property
    def is_custom(self) -> bool:
        return self.mode == CUSTOM_DATE

    @property
    def label(self) -> str:
        if self.is_custom:
            return f"{self.start:%Y%m%d}-{self.end:%Y%m%d}"
        return self.mode


@dataclass(frozen=True)
class ReportDefinition:
    report_type: str
    date_range: DateRange
    columns: tuple[str, ...]


@dataclass(frozen=True)
class ReportRow:
    index: int
    headers: tuple[str, ...]
    fields: tuple[str, ...]


@dataclass(frozen=True)
class AccountTask:
    account_id: int
    definition: ReportDefinition

    @property
    def report_type(self) -> str:
        return self.definition.report_type

    @property
    def date_range(self) -> DateRange:
        return self.definition.date_range


@dataclass(frozen=True)
class RejectedRow:
    row_index: int
    record: tuple[str, ...]
    reason: str


@dataclass(frozen=True)
class TaskOutcome:
    task: AccountTask
    status: str
    attempts: int
    rows_persisted: int = 0
    rows_rejected: int = 0
    rejected: tuple[RejectedRow, ...] = ()
    error: str | None = None
    transient: bool = False


@dataclass
class RunSummary:
    run_id: int | None
    run_key: str
    total_tasks: int
    succeeded: int = 0
    failed: int = 0
    cancelled: int = 0
    rows_persisted: int = 0
    rows_rejected: int = 0
    status: str = "running"
    outcomes: list[TaskOutcome] = field(default_factory=list)

    def record(self, outcome: TaskOutcome) -> None:
        self.outcomes.append(outcome)
        if outcome.status == "succeeded":
            self.succeeded += 1
        elif outcome.status == "cancelled":
            self.cancelled += 1
        else:
            self.failed += 1
        self.rows_persisted += outcome.rows_persisted
        self.rows_rejected += outcome.rows_rejected

    @property
    def failure_rate(self) -> float:
        if self.total_tasks == 0:
            return 0.0
        return self.failed / self.total_tasks
