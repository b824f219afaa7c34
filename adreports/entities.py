from dataclasses import dataclass, fields as dataclass_fields
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import ClassVar, Mapping

from adreports.errors import ConfigError
from adreports.schemas import DateRange, ReportDefinition


class FieldType(Enum):
    INTEGER = "integer"
    TEXT = "text"
    BOOLEAN = "boolean"
    DATE = "date"
    DATETIME = "datetime"
    MONEY = "money"
    DECIMAL = "decimal"
    PERCENT = "percent"


ZERO_VALUES: dict[FieldType, object] = {
    FieldType.INTEGER: 0,
    FieldType.TEXT: "",
    FieldType.BOOLEAN: False,
    FieldType.DATE: None,
    FieldType.DATETIME: None,
    FieldType.MONEY: Decimal("0"),
    FieldType.DECIMAL: Decimal("0"),
    FieldType.PERCENT: Decimal("0"),
}


@dataclass(frozen=True)
class ColumnSpec:
    column: str
    type: FieldType
    required: bool = True


@dataclass(kw_only=True)
class ReportEntity:
    report_type: ClassVar[str] = ""

    account_id: int = 0
    date_start: date | None = None
    date_end: date | None = None


@dataclass(kw_only=True)
class CampaignNegativeKeyword(ReportEntity):
    report_type: ClassVar[str] = "CAMPAIGN_NEGATIVE_KEYWORDS_PERFORMANCE_REPORT"

    campaign_id: int = 0
    keyword_id: int = 0
    match_type: str = ""
    text: str = ""
    negative: bool = False


@dataclass(kw_only=True)
class AccountPerformance(ReportEntity):
    report_type: ClassVar[str] = "ACCOUNT_PERFORMANCE_REPORT"

    account_name: str = ""
    currency_code: str = ""
    month: date | None = None
    clicks: int = 0
    impressions: int = 0
    cost: Decimal = Decimal("0")
    ctr: Decimal = Decimal("0")
    average_cpc: Decimal = Decimal("0")
    conversions: int = 0
    search_impression_share: Decimal = Decimal("0")


@dataclass(kw_only=True)
class CampaignPerformance(ReportEntity):
    report_type: ClassVar[str] = "CAMPAIGN_PERFORMANCE_REPORT"

    campaign_id: int = 0
    campaign_name: str = ""
    status: str = ""
    budget: Decimal = Decimal("0")
    day: date | None = None
    clicks: int = 0
    impressions: int = 0
    cost: Decimal = Decimal("0")
    ctr: Decimal = Decimal("0")


@dataclass(kw_only=True)
class KeywordPerformance(ReportEntity):
    report_type: ClassVar[str] = "KEYWORDS_PERFORMANCE_REPORT"

    campaign_id: int = 0
    ad_group_id: int = 0
    keyword_id: int = 0
    text: str = ""
    match_type: str = ""
    status: str = ""
    quality_score: int = 0
    negative: bool = False
    day: date | None = None
    clicks: int = 0
    impressions: int = 0
    cost: Decimal = Decimal("0")
    average_cpc: Decimal = Decimal("0")


@dataclass(frozen=True)
class EntitySchema:
    report_type: str
    entity_cls: type[ReportEntity]
    fields: Mapping[str, ColumnSpec]
    key_fields: tuple[str, ...] = ()
    date_field: str | None = None

    @property
    def columns(self) -> tuple[str, ...]:
        return tuple(spec.column for spec in self.fields.values())

    def dimension_key(self, entity: ReportEntity) -> str:
        if not self.key_fields:
            return "-"
        return "|".join(str(getattr(entity, name)) for name in self.key_fields)

    def key_date(self, entity: ReportEntity) -> date:
        value = getattr(entity, self.date_field) if self.date_field else None
        if isinstance(value, datetime):
            value = value.date()
        if value is None:
            value = entity.date_start
        if value is None:
            raise ValueError(f"{type(entity).__name__} has neither a date column value nor a range start")
        return value

    def natural_key(self, entity: ReportEntity) -> tuple[int, str, str, date]:
        return entity.account_id, self.report_type, self.dimension_key(entity), self.key_date(entity)


SCHEMAS: dict[str, EntitySchema] = {
    schema.report_type: schema
    for schema in (
        EntitySchema(
            report_type=CampaignNegativeKeyword.report_type,
            entity_cls=CampaignNegativeKeyword,
            fields={
                "campaign_id": ColumnSpec("CampaignId", FieldType.INTEGER),
                "keyword_id": ColumnSpec("Id", FieldType.INTEGER),
                "match_type": ColumnSpec("KeywordMatchType", FieldType.TEXT),
                "text": ColumnSpec("KeywordText", FieldType.TEXT),
                "negative": ColumnSpec("IsNegative", FieldType.BOOLEAN),
            },
            key_fields=("campaign_id", "keyword_id"),
        ),
        EntitySchema(
            report_type=AccountPerformance.report_type,
            entity_cls=AccountPerformance,
            fields={
                "account_name": ColumnSpec("AccountDescriptiveName", FieldType.TEXT),
                "currency_code": ColumnSpec("AccountCurrencyCode", FieldType.TEXT),
                "month": ColumnSpec("Month", FieldType.DATE, required=False),
                "clicks": ColumnSpec("Clicks", FieldType.INTEGER),
                "impressions": ColumnSpec("Impressions", FieldType.INTEGER),
                "cost": ColumnSpec("Cost", FieldType.MONEY),
                "ctr": ColumnSpec("Ctr", FieldType.PERCENT, required=False),
                "average_cpc": ColumnSpec("AverageCpc", FieldType.MONEY, required=False),
                "conversions": ColumnSpec("Conversions", FieldType.INTEGER, required=False),
                "search_impression_share": ColumnSpec("SearchImpressionShare", FieldType.PERCENT, required=False),
            },
            date_field="month",
        ),
        EntitySchema(
            report_type=CampaignPerformance.report_type,
            entity_cls=CampaignPerformance,
            fields={
                "campaign_id": ColumnSpec("CampaignId", FieldType.INTEGER),
                "campaign_name": ColumnSpec("CampaignName", FieldType.TEXT),
                "status": ColumnSpec("CampaignStatus", FieldType.TEXT),
                "budget": ColumnSpec("Amount", FieldType.MONEY, required=False),
                "day": ColumnSpec("Date", FieldType.DATE, required=False),
                "clicks": ColumnSpec("Clicks", FieldType.INTEGER),
                "impressions": ColumnSpec("Impressions", FieldType.INTEGER),
                "cost": ColumnSpec("Cost", FieldType.MONEY),
                "ctr": ColumnSpec("Ctr", FieldType.PERCENT, required=False),
            },
            key_fields=("campaign_id",),
            date_field="day",
        ),
        EntitySchema(
            report_type=KeywordPerformance.report_type,
            entity_cls=KeywordPerformance,
            fields={
                "campaign_id": ColumnSpec("CampaignId", FieldType.INTEGER),
                "ad_group_id": ColumnSpec("AdGroupId", FieldType.INTEGER),
                "keyword_id": ColumnSpec("Id", FieldType.INTEGER),
                "text": ColumnSpec("KeywordText", FieldType.TEXT),
                "match_type": ColumnSpec("KeywordMatchType", FieldType.TEXT),
                "status": ColumnSpec("Status", FieldType.TEXT),
                "quality_score": ColumnSpec("QualityScore", FieldType.INTEGER, required=False),
                "negative": ColumnSpec("IsNegative", FieldType.BOOLEAN, required=False),
                "day": ColumnSpec("Date", FieldType.DATE, required=False),
                "clicks": ColumnSpec("Clicks", FieldType.INTEGER),
                "impressions": ColumnSpec("Impressions", FieldType.INTEGER),
                "cost": ColumnSpec("Cost", FieldType.MONEY),
                "average_cpc": ColumnSpec("AverageCpc", FieldType.MONEY, required=False),
            },
            key_fields=("keyword_id", "ad_group_id"),
            date_field="day",
        ),
    )
}


def get_schema(report_type: str) -> EntitySchema:
    try:
        return SCHEMAS[report_type]
    except KeyError:
        raise ConfigError(f"unsupported report type {report_type!r}") from None


def build_definition(report_type: str, date_range: DateRange) -> ReportDefinition:
    schema = get_schema(report_type)
    return ReportDefinition(report_type=schema.report_type, date_range=date_range, columns=schema.columns)


def _to_json_value(value: object) -> object:
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    return value


def _from_json_value(field_type: FieldType, value: object) -> object:
    if value is None:
        return ZERO_VALUES[field_type]
    if field_type is FieldType.DATE:
        return date.fromisoformat(str(value))
    if field_type is FieldType.DATETIME:
        return datetime.fromisoformat(str(value))
    if field_type in (FieldType.MONEY, FieldType.DECIMAL, FieldType.PERCENT):
        return Decimal(str(value))
    if field_type is FieldType.INTEGER:
        return int(value)
    if field_type is FieldType.BOOLEAN:
        return bool(value)
    return str(value)


def entity_to_payload(entity: ReportEntity) -> dict[str, object]:
    return {item.name: _to_json_value(getattr(entity, item.name)) for item in dataclass_fields(entity)}


def entity_from_payload(schema: EntitySchema, payload: Mapping[str, object]) -> ReportEntity:
    values: dict[str, object] = {
        "account_id": int(payload.get("account_id") or 0),
        "date_start": date.fromisoformat(str(payload["date_start"])) if payload.get("date_start") else None,
        "date_end": date.fromisoformat(str(payload["date_end"])) if payload.get("date_end") else None,
    }
    for name, spec in schema.fields.items():
        values[name] = _from_json_value(spec.type, payload.get(name))
    return schema.entity_cls(**values)
