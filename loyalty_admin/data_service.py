"""
Gateway to the loyalty data store.

The admin and analytics layers never touch ORM sessions directly. They go
through three interface shapes:

- table-style queries and mutations (``data.table("customers").select(...)``),
- named stored procedures (``data.rpc("process_point_transaction", ...)``),
- a change-notification channel (``data.feed``) fed by table mutations.

Each call runs in its own session and transaction. Rows come back as plain
dicts with Decimal values converted to floats.
"""

from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterator, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from werkzeug.security import generate_password_hash

from loyalty_admin.exceptions import DataServiceError
from loyalty_admin.logger import setup_logger
from loyalty_admin.models import (
    Branch,
    Customer,
    MenuItem,
    Restaurant,
    Reward,
    RewardRedemption,
    SupportMessage,
    SupportTicket,
    Transaction,
    User,
    as_utc,
    utcnow,
)
from loyalty_admin.procedures import PROCEDURES
from loyalty_admin.realtime import ChangeEvent, ChangeFeed

logger = setup_logger(__name__)

TABLES = {
    "restaurants": Restaurant,
    "customers": Customer,
    "transactions": Transaction,
    "rewards": Reward,
    "reward_redemptions": RewardRedemption,
    "support_tickets": SupportTicket,
    "support_messages": SupportMessage,
    "branches": Branch,
    "menu_items": MenuItem,
}


def _to_native(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, list):
        return [_to_native(item) for item in value]
    if isinstance(value, dict):
        return {k: _to_native(v) for k, v in value.items()}
    return value


def _column_names(model) -> list[str]:
    return [attr.key for attr in model.__mapper__.column_attrs]


def serialize_row(obj, columns: Optional[Sequence[str]] = None) -> dict[str, Any]:
    names = columns or _column_names(type(obj))
    return {name: _to_native(getattr(obj, name)) for name in names}


class TableQuery:
    """Fluent query against one table; nothing runs until a terminal method."""

    def __init__(self, service: "DataService", table: str, model):
        self._service = service
        self._table = table
        self._model = model
        self._columns: Optional[list[str]] = None
        self._embed: dict[str, Optional[list[str]]] = {}
        self._where: list[Any] = []
        self._order: list[Any] = []
        self._limit: Optional[int] = None

    def _column(self, name: str):
        if name not in _column_names(self._model):
            raise DataServiceError(f"unknown column {name!r}", table=self._table)
        return getattr(self._model, name)

    def select(self, *columns: str, embed: Optional[dict[str, Optional[list[str]]]] = None) -> "TableQuery":
        if columns and columns != ("*",):
            for name in columns:
                self._column(name)
            self._columns = list(columns)
        relationships = self._model.__mapper__.relationships
        for relation in (embed or {}):
            if relation not in relationships:
                raise DataServiceError(f"unknown relation {relation!r}", table=self._table)
        self._embed = dict(embed or {})
        return self

    @staticmethod
    def _value(value: Any) -> Any:
        return as_utc(value) if isinstance(value, datetime) else value

    def eq(self, column: str, value: Any) -> "TableQuery":
        self._where.append(self._column(column) == self._value(value))
        return self

    def neq(self, column: str, value: Any) -> "TableQuery":
        self._where.append(self._column(column) != self._value(value))
        return self

    def gt(self, column: str, value: Any) -> "TableQuery":
        self._where.append(self._column(column) > self._value(value))
        return self

    def gte(self, column: str, value: Any) -> "TableQuery":
        self._where.append(self._column(column) >= self._value(value))
        return self

    def lt(self, column: str, value: Any) -> "TableQuery":
        self._where.append(self._column(column) < self._value(value))
        return self

    def lte(self, column: str, value: Any) -> "TableQuery":
        self._where.append(self._column(column) <= self._value(value))
        return self

    def in_(self, column: str, values: Sequence[Any]) -> "TableQuery":
        self._where.append(self._column(column).in_(list(values)))
        return self

    def order(self, column: str, desc: bool = False) -> "TableQuery":
        col = self._column(column)
        self._order.append(col.desc() if desc else col.asc())
        return self

    def limit(self, count: int) -> "TableQuery":
        self._limit = count
        return self

    def _statement(self):
        stmt = select(self._model)
        for clause in self._where:
            stmt = stmt.where(clause)
        for clause in self._order:
            stmt = stmt.order_by(clause)
        if self._limit is not None:
            stmt = stmt.limit(self._limit)
        return stmt

    def _serialize(self, obj) -> dict[str, Any]:
        row = serialize_row(obj, self._columns)
        for relation, columns in self._embed.items():
            related = getattr(obj, relation)
            row[relation] = serialize_row(related, columns) if related is not None else None
        return row

    def execute(self) -> list[dict[str, Any]]:
        with self._service.session(table=self._table) as session:
            objects = session.scalars(self._statement()).all()
            return [self._serialize(obj) for obj in objects]

    def single(self) -> dict[str, Any]:
        rows = self.execute()
        if len(rows) != 1:
            raise DataServiceError(
                f"expected exactly one row, got {len(rows)}", table=self._table
            )
        return rows[0]

    def maybe_single(self) -> Optional[dict[str, Any]]:
        rows = self.execute()
        if len(rows) > 1:
            raise DataServiceError(
                f"expected at most one row, got {len(rows)}", table=self._table
            )
        return rows[0] if rows else None

    def count(self) -> int:
        stmt = select(func.count()).select_from(self._model)
        for clause in self._where:
            stmt = stmt.where(clause)
        with self._service.session(table=self._table) as session:
            return session.scalar(stmt) or 0

    def insert(self, values: dict[str, Any] | list[dict[str, Any]]) -> list[dict[str, Any]]:
        records = values if isinstance(values, list) else [values]
        known = set(_column_names(self._model))
        for record in records:
            unknown = set(record) - known
            if unknown:
                raise DataServiceError(
                    f"unknown column(s) {sorted(unknown)}", table=self._table
                )
        with self._service.session(table=self._table) as session:
            objects = [self._model(**record) for record in records]
            session.add_all(objects)
            session.flush()
            rows = [serialize_row(obj) for obj in objects]
        self._service.notify(self._table, "INSERT", rows)
        return rows

    def update(self, values: dict[str, Any]) -> list[dict[str, Any]]:
        if not self._where:
            raise DataServiceError("refusing update without a filter", table=self._table)
        for name in values:
            self._column(name)
        changes = dict(values)
        if "updated_at" in _column_names(self._model) and "updated_at" not in changes:
            changes["updated_at"] = utcnow()
        with self._service.session(table=self._table) as session:
            objects = session.scalars(self._statement()).all()
            previous = [serialize_row(obj) for obj in objects]
            for obj in objects:
                for name, value in changes.items():
                    setattr(obj, name, value)
            session.flush()
            rows = [serialize_row(obj) for obj in objects]
        self._service.notify(self._table, "UPDATE", rows, previous)
        return rows

    def delete(self) -> int:
        if not self._where:
            raise DataServiceError("refusing delete without a filter", table=self._table)
        with self._service.session(table=self._table) as session:
            objects = session.scalars(self._statement()).all()
            rows = [serialize_row(obj) for obj in objects]
            for obj in objects:
                session.delete(obj)
        self._service.notify(self._table, "DELETE", [], rows)
        return len(rows)


class AuthAdmin:
    """Administrative access to user accounts."""

    def __init__(self, service: "DataService"):
        self._service = service

    @staticmethod
    def _public(user: User) -> dict[str, Any]:
        return serialize_row(user, ["id", "email", "user_metadata", "created_at"])

    def create_user(
        self,
        email: str,
        password: str,
        user_metadata: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        if not email or not password:
            raise DataServiceError("email and password are required", table="users")
        user = User(
            email=email.strip().lower(),
            password_hash=generate_password_hash(password),
            user_metadata=user_metadata or {},
        )
        try:
            with self._service.session(table="users") as session:
                session.add(user)
                session.flush()
                return self._public(user)
        except DataServiceError as exc:
            if isinstance(exc.__cause__, IntegrityError):
                raise DataServiceError(f"user {email} already exists", table="users") from exc
            raise

    def get_user_by_id(self, user_id: str) -> Optional[dict[str, Any]]:
        with self._service.session(table="users") as session:
            user = session.get(User, user_id)
            return self._public(user) if user else None

    def delete_user(self, user_id: str) -> bool:
        with self._service.session(table="users") as session:
            user = session.get(User, user_id)
            if user is None:
                return False
            session.delete(user)
            return True


class DataService:
    def __init__(self, session_factory: sessionmaker, feed: Optional[ChangeFeed] = None):
        self._session_factory = session_factory
        self.feed = feed or ChangeFeed()
        self.auth = AuthAdmin(self)

    @contextmanager
    def session(self, table: Optional[str] = None, procedure: Optional[str] = None) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            raise DataServiceError(str(exc), table=table, procedure=procedure) from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def table(self, name: str) -> TableQuery:
        model = TABLES.get(name)
        if model is None:
            raise DataServiceError(f"unknown table {name!r}", table=name)
        return TableQuery(self, name, model)

    def rpc(self, name: str, **params: Any) -> Any:
        procedure = PROCEDURES.get(name)
        if procedure is None:
            raise DataServiceError(f"unknown procedure {name!r}", procedure=name)
        logger.debug(f"Calling procedure {name}({', '.join(sorted(params))})")
        with self.session(procedure=name) as session:
            return _to_native(procedure(session, **params))

    def notify(
        self,
        table: str,
        event_type: str,
        rows: list[dict[str, Any]],
        previous: Optional[list[dict[str, Any]]] = None,
    ) -> None:
        if event_type == "DELETE":
            for old in previous or []:
                self.feed.publish(ChangeEvent(event_type=event_type, table=table, old=old))
            return
        old_rows = previous or [None] * len(rows)
        for new, old in zip(rows, old_rows):
            self.feed.publish(ChangeEvent(event_type=event_type, table=table, new=new, old=old))

