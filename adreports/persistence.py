from collections.abc import Sequence
from datetime import date
import json
import logging
import threading
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from adreports.db_models import ReportEntityRecord, utc_now
from adreports.entities import ReportEntity, entity_from_payload, entity_to_payload, get_schema
from adreports.errors import ConfigError, PersistError


logger = logging.getLogger(__name__)

NaturalKey = tuple[int, str, str, date]


class EntityPersister(Protocol):
    def save(self, entities: Sequence[ReportEntity]) -> int: ...

    def query(self, report_type: str, account_id: int, date_from: date, date_to: date) -> list[ReportEntity]: ...


def _dedupe(entities: Sequence[ReportEntity]) -> dict[NaturalKey, ReportEntity]:
    # Last entity wins when a chunk repeats a natural key.
    keyed: dict[NaturalKey, ReportEntity] = {}
    for entity in entities:
        schema = get_schema(entity.report_type)
        keyed[schema.natural_key(entity)] = entity
    return keyed


class SqlEntityPersister:
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self.session_factory = session_factory

    def save(self, entities: Sequence[ReportEntity]) -> int:
        if not entities:
            return 0

        keyed = _dedupe(entities)
        groups: dict[tuple[int, str], dict[tuple[str, date], ReportEntity]] = {}
        for (account_id, report_type, dimension_key, report_date), entity in keyed.items():
            groups.setdefault((account_id, report_type), {})[(dimension_key, report_date)] = entity

        try:
            with self.session_factory() as db:
                for (account_id, report_type), members in groups.items():
                    self._upsert_group(db, account_id, report_type, members)
                db.commit()
        except IntegrityError as exc:
            raise PersistError(f"constraint violation while saving entities: {exc.orig}", transient=False) from exc
        except OperationalError as exc:
            raise PersistError(f"storage unavailable: {exc.orig}", transient=True) from exc
        except SQLAlchemyError as exc:
            raise PersistError(f"failed to save entities: {exc}", transient=False) from exc

        return len(keyed)

    def _upsert_group(
        self,
        db: Session,
        account_id: int,
        report_type: str,
        members: dict[tuple[str, date], ReportEntity],
    ) -> None:
        report_dates = [report_date for _, report_date in members]
        stmt = select(ReportEntityRecord).where(
            ReportEntityRecord.account_id == account_id,
            ReportEntityRecord.report_type == report_type,
            ReportEntityRecord.report_date >= min(report_dates),
            ReportEntityRecord.report_date <= max(report_dates),
            ReportEntityRecord.dimension_key.in_(sorted({dimension_key for dimension_key, _ in members})),
        )
        existing = {(record.dimension_key, record.report_date): record for record in db.execute(stmt).scalars()}

        for (dimension_key, report_date), entity in members.items():
            payload = json.dumps(entity_to_payload(entity), sort_keys=True)
            record = existing.get((dimension_key, report_date))
            if record is None:
                db.add(
                    ReportEntityRecord(
                        account_id=account_id,
                        report_type=report_type,
                        dimension_key=dimension_key,
                        report_date=report_date,
                        date_start=entity.date_start,
                        date_end=entity.date_end,
                        payload=payload,
                    )
                )
                continue
            record.payload = payload
            record.date_start = entity.date_start
            record.date_end = entity.date_end
            record.updated_at = utc_now()

    def query(self, report_type: str, account_id: int, date_from: date, date_to: date) -> list[ReportEntity]:
        schema = get_schema(report_type)
        stmt = (
            select(ReportEntityRecord)
            .where(
                ReportEntityRecord.report_type == report_type,
                ReportEntityRecord.account_id == account_id,
                ReportEntityRecord.report_date >= date_from,
                ReportEntityRecord.report_date <= date_to,
            )
            .order_by(ReportEntityRecord.report_date, ReportEntityRecord.dimension_key)
        )
        with self.session_factory() as db:
            records = db.execute(stmt).scalars().all()
        return [entity_from_payload(schema, json.loads(record.payload)) for record in records]


class MemoryEntityPersister:
    """Keeps entities in a dict keyed by natural key, like a document collection."""

    def __init__(self) -> None:
        self._documents: dict[NaturalKey, ReportEntity] = {}
        self._lock = threading.Lock()

    def save(self, entities: Sequence[ReportEntity]) -> int:
        keyed = _dedupe(entities)
        with self._lock:
            self._documents.update(keyed)
        return len(keyed)

    def query(self, report_type: str, account_id: int, date_from: date, date_to: date) -> list[ReportEntity]:
        with self._lock:
            matches = [
                (key, entity)
                for key, entity in self._documents.items()
                if key[0] == account_id and key[1] == report_type and date_from <= key[3] <= date_to
            ]
        return [entity for _, entity in sorted(matches, key=lambda item: (item[0][3], item[0][2]))]

    def __len__(self) -> int:
        with self._lock:
            return len(self._documents)


def build_persister(entity_store: str, session_factory: sessionmaker[Session]) -> EntityPersister:
    if entity_store == "sql":
        return SqlEntityPersister(session_factory)
    if entity_store == "memory":
        logger.warning("entities are kept in memory only and discarded when the process exits")
        return MemoryEntityPersister()
    raise ConfigError(f"unsupported entity store {entity_store!r}")
