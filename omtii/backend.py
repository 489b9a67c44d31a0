# omtii/backend.py

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlmodel import Session, select

from omtii.auth import LocalAuth
from omtii.errors import BackendUnavailable, RemoteRejected
from omtii.models import (
    Category,
    Message,
    Profile,
    RequestStatus,
    Service,
    ServiceRequest,
    UserRole,
)
from omtii.realtime import ChangeEvent, EventType, RealtimeHub
from omtii.storage import LocalStorage

logger = logging.getLogger(__name__)

TABLES = {
    "profiles": Profile,
    "user_roles": UserRole,
    "categories": Category,
    "services": Service,
    "service_requests": ServiceRequest,
    "messages": Message,
}


# ----------------------------
# Table constraints
# ----------------------------

def check_services(values: dict, existing: Service | None) -> None:
    price = values.get("price")
    if price is not None and price < 0:
        raise RemoteRejected(
            'new row for relation "services" violates check constraint "services_price_check"',
            code="constraint",
        )


def check_service_requests(values: dict, existing: ServiceRequest | None) -> None:
    if existing is None or "status" not in values:
        return
    if existing.status != RequestStatus.PENDING and values["status"] != existing.status:
        raise RemoteRejected(
            f"Service request {existing.id} is already {existing.status.value}",
            code="constraint",
        )


def check_messages(values: dict, existing: Message | None) -> None:
    if existing is None:
        if not (values.get("content") or "").strip():
            raise RemoteRejected(
                'new row for relation "messages" violates check constraint "messages_content_check"',
                code="constraint",
            )
        return
    if set(values) - {"is_read"}:
        raise RemoteRejected("Messages are append-only; only is_read can change", code="constraint")


CONSTRAINTS = {
    "services": check_services,
    "service_requests": check_service_requests,
    "messages": check_messages,
}


@dataclass
class Join:
    alias: str
    table: str
    on: str
    key: str = "id"
    columns: tuple[str, ...] | None = None


def _only(record: dict, columns) -> dict:
    if not columns:
        return record
    return {column: record.get(column) for column in columns}


class TableQuery:
    """
    One request against one table, built fluently and run with ``execute()``.

    ``execute()`` returns a list of row dicts for selects, updates and
    deletes, the created row for inserts, and a single row or None after
    ``maybe_single()``.
    """

    def __init__(self, backend: "Backend", table: str):
        if table not in TABLES:
            raise RemoteRejected(f'relation "{table}" does not exist', code="not_found")
        self.backend = backend
        self.table = table
        self.model = TABLES[table]
        self._action = "select"
        self._values: dict | None = None
        self._columns: tuple[str, ...] | None = None
        self._joins: list[Join] = []
        self._filters: list[tuple[str, str, Any]] = []
        self._order: list[tuple[str, bool]] = []
        self._limit: int | None = None
        self._single = False

    # -- builders --

    def select(self, *columns: str) -> "TableQuery":
        wanted = tuple(c for c in columns if c != "*")
        for column in wanted:
            self._column(column)
        self._columns = wanted or None
        return self

    def join(self, alias: str, table: str, on: str, columns=None, key: str = "id") -> "TableQuery":
        if table not in TABLES:
            raise RemoteRejected(f'relation "{table}" does not exist', code="not_found")
        self._column(on)
        self._joins.append(Join(alias, table, on, key, tuple(columns) if columns else None))
        return self

    def eq(self, column: str, value: Any) -> "TableQuery":
        self._filters.append((column, "eq", self._coerce(column, value)))
        return self

    def in_(self, column: str, values) -> "TableQuery":
        self._filters.append((column, "in", [self._coerce(column, v) for v in values]))
        return self

    def order(self, column: str, desc: bool = False) -> "TableQuery":
        self._column(column)
        self._order.append((column, desc))
        return self

    def limit(self, count: int) -> "TableQuery":
        self._limit = count
        return self

    def maybe_single(self) -> "TableQuery":
        self._single = True
        return self

    def insert(self, values: dict) -> "TableQuery":
        self._action = "insert"
        self._values = {k: self._coerce(k, v) for k, v in values.items()}
        return self

    def update(self, values: dict) -> "TableQuery":
        self._action = "update"
        self._values = {k: self._coerce(k, v) for k, v in values.items()}
        return self

    def delete(self) -> "TableQuery":
        self._action = "delete"
        return self

    # -- helpers --

    def _column(self, column: str):
        if column not in self.model.model_fields:
            raise RemoteRejected(
                f"Could not find the '{column}' column of '{self.table}'", code="rejected"
            )
        return getattr(self.model, column)

    def _coerce(self, column: str, value: Any) -> Any:
        self._column(column)
        annotation = self.model.model_fields[column].annotation
        if value is not None and isinstance(annotation, type) and issubclass(annotation, Enum):
            try:
                return annotation(value)
            except ValueError:
                raise RemoteRejected(
                    f'invalid input value for enum {annotation.__name__}: "{value}"', code="rejected"
                )
        return value

    def _where(self, statement):
        for column, op, value in self._filters:
            attribute = getattr(self.model, column)
            if op == "in":
                statement = statement.where(attribute.in_(value))
            elif value is None:
                statement = statement.where(attribute.is_(None))
            else:
                statement = statement.where(attribute == value)
        return statement

    def _require_filter(self) -> None:
        if not self._filters:
            raise RemoteRejected(f"{self._action.upper()} requires a WHERE clause", code="rejected")

    def _project(self, record: dict) -> dict:
        projected = _only(record, self._columns)
        for join in self._joins:
            projected[join.alias] = record.get(join.alias)
        return projected

    def _attach(self, session: Session, records: list[dict], join: Join) -> None:
        model = TABLES[join.table]
        keys = {r.get(join.on) for r in records if r.get(join.on) is not None}
        related = {}
        if keys:
            remote = getattr(model, join.key)
            for row in session.exec(select(model).where(remote.in_(keys))).all():
                related[getattr(row, join.key)] = row.model_dump()
        for record in records:
            match = related.get(record.get(join.on))
            record[join.alias] = _only(match, join.columns) if match else None

    # -- execution --

    async def execute(self):
        changes: list[ChangeEvent] = []
        try:
            with Session(self.backend.engine) as session:
                if self._action == "select":
                    result = self._run_select(session)
                elif self._action == "insert":
                    result = self._run_insert(session, changes)
                elif self._action == "update":
                    result = self._run_update(session, changes)
                else:
                    result = self._run_delete(session, changes)
        except IntegrityError as e:
            logger.error(f"{self._action} on {self.table} violated a constraint: {e.orig}")
            raise RemoteRejected(str(e.orig), code="constraint")
        except OperationalError as e:
            logger.error(f"{self._action} on {self.table} failed: {e.orig}")
            raise BackendUnavailable(str(e.orig))

        for change in changes:
            self.backend.realtime.publish(change)
        return result

    def _run_select(self, session: Session):
        statement = self._where(select(self.model))
        for column, desc in self._order:
            attribute = getattr(self.model, column)
            statement = statement.order_by(attribute.desc() if desc else attribute.asc())
        if self._limit is not None:
            statement = statement.limit(self._limit)
        records = [row.model_dump() for row in session.exec(statement).all()]
        for join in self._joins:
            self._attach(session, records, join)
        rows = [self._project(record) for record in records]
        if self._single:
            if len(rows) > 1:
                raise RemoteRejected("JSON object requested, multiple rows returned", code="rejected")
            return rows[0] if rows else None
        return rows

    def _run_insert(self, session: Session, changes: list) -> dict:
        check = CONSTRAINTS.get(self.table)
        if check:
            check(self._values, None)
        row = self.model(**self._values)
        session.add(row)
        session.commit()
        session.refresh(row)
        created = row.model_dump()
        changes.append(ChangeEvent(self.table, EventType.INSERT, new=created))
        return _only(created, self._columns)

    def _run_update(self, session: Session, changes: list) -> list[dict]:
        self._require_filter()
        rows = session.exec(self._where(select(self.model))).all()
        check = CONSTRAINTS.get(self.table)
        if check:
            # every row is checked before any row changes
            for row in rows:
                check(self._values, row)
        previous = [row.model_dump() for row in rows]
        for row in rows:
            for key, value in self._values.items():
                setattr(row, key, value)
            session.add(row)
        session.commit()
        updated = []
        for row, old in zip(rows, previous):
            session.refresh(row)
            new = row.model_dump()
            updated.append(new)
            changes.append(ChangeEvent(self.table, EventType.UPDATE, new=new, old=old))
        return [_only(record, self._columns) for record in updated]

    def _run_delete(self, session: Session, changes: list) -> list[dict]:
        self._require_filter()
        rows = session.exec(self._where(select(self.model))).all()
        deleted = [row.model_dump() for row in rows]
        for row in rows:
            session.delete(row)
        session.commit()
        for old in deleted:
            changes.append(ChangeEvent(self.table, EventType.DELETE, old=old))
        return deleted


class Backend:
    """Client handle on the data store, auth, object storage and change stream."""

    def __init__(self, engine, auth: LocalAuth, storage: LocalStorage, realtime: RealtimeHub):
        self.engine = engine
        self.auth = auth
        self.storage = storage
        self.realtime = realtime

    def table(self, name: str) -> TableQuery:
        return TableQuery(self, name)


def create_backend(
    engine,
    secret_key: str,
    storage_root: str,
    public_base_url: str,
    access_token_expire_minutes: int = 60,
    require_email_confirmation: bool = False,
) -> Backend:
    auth = LocalAuth(
        engine,
        secret_key,
        access_token_expire_minutes=access_token_expire_minutes,
        require_email_confirmation=require_email_confirmation,
    )
    return Backend(engine, auth, LocalStorage(storage_root, public_base_url), RealtimeHub())
