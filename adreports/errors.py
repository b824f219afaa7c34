from dataclasses import dataclass


class ReportingError(Exception):
    pass


class ConfigError(ReportingError):
    pass


class FetchError(ReportingError):
    def __init__(self, message: str, *, transient: bool, status_code: int | None = None) -> None:
        super().__init__(message)
        self.transient = transient
        self.status_code = status_code


class CoercionError(ReportingError):
    pass


class DateFormatError(CoercionError):
    pass


@dataclass(frozen=True)
class FieldIssue:
    column: str
    raw_value: str | None
    reason: str


class MappingError(ReportingError):
    def __init__(self, row_index: int, issues: list[FieldIssue]) -> None:
        self.row_index = row_index
        self.issues = list(issues)
        details = "; ".join(f"{issue.column}={issue.raw_value!r}: {issue.reason}" for issue in self.issues)
        super().__init__(f"row {row_index}: {details}")

    @property
    def column(self) -> str | None:
        return self.issues[0].column if self.issues else None

    @property
    def raw_value(self) -> str | None:
        return self.issues[0].raw_value if self.issues else None


class MissingColumnError(MappingError):
    def __init__(self, column: str, row_index: int = -1) -> None:
        super().__init__(row_index, [FieldIssue(column, None, "required column missing from report header")])
        self.missing_column = column


class PersistError(ReportingError):
    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient
