"""Maps delimited report rows onto typed report entities.

A ``RowMapper`` is bound to one report's header line: the column lookup is
resolved once and reused for every data row of that report.
"""

import csv
from collections.abc import Iterable, Iterator, Sequence
from datetime import datetime
from decimal import Decimal, InvalidOperation
import re

from adreports.entities import ZERO_VALUES, ColumnSpec, EntitySchema, FieldType, ReportEntity
from adreports.errors import CoercionError, DateFormatError, FieldIssue, MappingError, MissingColumnError
from adreports.schemas import DateRange, ReportRow


DATE_FORMAT = "%Y-%m-%d"
DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S"
NULL_MARKERS = frozenset({"", "--"})
SUMMARY_MARKER = "Total"
TRUE_VALUES = frozenset({"true", "yes", "y", "1", "on"})
FALSE_VALUES = frozenset({"false", "no", "n", "0", "off"})
MICROS_PER_UNIT = Decimal(1_000_000)

_INTEGER_PATTERN = re.compile(r"[+-]?[0-9]+")


def _parse_decimal(value: str) -> Decimal:
    try:
        parsed = Decimal(value)
    except InvalidOperation:
        raise CoercionError("not a decimal number") from None
    if not parsed.is_finite():
        raise CoercionError("not a finite decimal number")
    return parsed


def coerce_value(raw: str, field_type: FieldType) -> object:
    value = raw.strip()

    if field_type is FieldType.TEXT:
        return value
    if field_type is FieldType.INTEGER:
        if not _INTEGER_PATTERN.fullmatch(value):
            raise CoercionError("not a base-10 integer")
        return int(value)
    if field_type is FieldType.BOOLEAN:
        lowered = value.lower()
        if lowered in TRUE_VALUES:
            return True
        if lowered in FALSE_VALUES:
            return False
        raise CoercionError("not a recognised boolean")
    if field_type is FieldType.DATE:
        try:
            return datetime.strptime(value, DATE_FORMAT).date()
        except ValueError:
            raise DateFormatError(f"expected date in {DATE_FORMAT} format") from None
    if field_type is FieldType.DATETIME:
        try:
            return datetime.strptime(value, DATETIME_FORMAT)
        except ValueError:
            raise DateFormatError(f"expected timestamp in {DATETIME_FORMAT} format") from None
    if field_type is FieldType.MONEY:
        return _parse_decimal(value) / MICROS_PER_UNIT
    if field_type is FieldType.DECIMAL:
        return _parse_decimal(value)
    if field_type is FieldType.PERCENT:
        # Share columns are reported as "< 10%" when below the vendor threshold.
        return _parse_decimal(value.lstrip("<> ").rstrip("%").strip())
    raise CoercionError(f"unsupported field type {field_type}")


class RowMapper:
    def __init__(self, schema: EntitySchema, headers: Sequence[str]) -> None:
        self.schema = schema
        self.headers = tuple(header.strip().lstrip("\ufeff") for header in headers)

        positions: dict[str, int] = {}
        for position, name in enumerate(self.headers):
            positions.setdefault(name, position)

        self._bindings: list[tuple[str, ColumnSpec, int | None]] = []
        for name, spec in schema.fields.items():
            position = positions.get(spec.column)
            if position is None and spec.required:
                raise MissingColumnError(spec.column)
            self._bindings.append((name, spec, position))

    def map(
        self,
        fields: Sequence[str],
        *,
        row_index: int = 0,
        account_id: int = 0,
        date_range: DateRange | None = None,
    ) -> ReportEntity:
        values: dict[str, object] = {}
        issues: list[FieldIssue] = []

        for name, spec, position in self._bindings:
            if position is None:
                values[name] = ZERO_VALUES[spec.type]
                continue
            if position >= len(fields):
                issues.append(FieldIssue(spec.column, None, "row is shorter than the header"))
                continue

            raw = fields[position]
            if raw.strip() in NULL_MARKERS:
                if spec.required:
                    issues.append(FieldIssue(spec.column, raw, "required value is null"))
                else:
                    values[name] = ZERO_VALUES[spec.type]
                continue

            try:
                values[name] = coerce_value(raw, spec.type)
            except CoercionError as exc:
                issues.append(FieldIssue(spec.column, raw, str(exc)))

        if issues:
            raise MappingError(row_index, issues)

        return self.schema.entity_cls(
            account_id=account_id,
            date_start=date_range.start if date_range else None,
            date_end=date_range.end if date_range else None,
            **values,
        )


def map_row(
    headers: Sequence[str],
    row: Sequence[str],
    schema: EntitySchema,
    *,
    row_index: int = 0,
    account_id: int = 0,
    date_range: DateRange | None = None,
) -> ReportEntity:
    return RowMapper(schema, headers).map(row, row_index=row_index, account_id=account_id, date_range=date_range)


def read_report(lines: Iterable[str]) -> tuple[tuple[str, ...], Iterator[ReportRow]]:
    reader = csv.reader(lines)
    header = next(reader, None)
    if header is None:
        return (), iter(())

    headers = tuple(column.strip().lstrip("\ufeff") for column in header)
    return headers, _iter_rows(reader, headers)


def _iter_rows(reader: Iterator[list[str]], headers: tuple[str, ...]) -> Iterator[ReportRow]:
    index = 0
    for fields in reader:
        if not fields or (len(fields) == 1 and not fields[0].strip()):
            continue
        if fields[0].strip() == SUMMARY_MARKER:
            continue
        yield ReportRow(index=index, headers=headers, fields=tuple(fields))
        index += 1
