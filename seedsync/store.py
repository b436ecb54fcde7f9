from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import REGCLASS
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import DBAPIError

from seedsync.errors import ConfigurationError, PersistenceError
from seedsync.settings import SETTINGS


# Returns a problem description, or None when the record is acceptable.
Validator = Callable[["Record"], str | None]


def column_list(columns: Iterable[str]) -> str:
    return "`" + "`, `".join(columns) + "`"


@dataclass(frozen=True)
class EntityType:
    table: sa.Table
    validators: tuple[Validator, ...] = ()

    @property
    def name(self) -> str:
        return self.table.name

    @property
    def attributes(self) -> frozenset[str]:
        return frozenset(c.key for c in self.table.columns)

    @property
    def primary_key_columns(self) -> tuple[str, ...]:
        return tuple(c.key for c in self.table.primary_key.columns)

    @property
    def primary_key(self) -> str | None:
        cols = self.primary_key_columns
        return cols[0] if len(cols) == 1 else None

    @property
    def sequence_column(self) -> sa.Column | None:
        return self.table.autoincrement_column

    def __str__(self) -> str:
        return self.name


class Record:
    """
    One row of an entity type.

    A record loaded from the store remembers the key it was loaded under so it can be
    updated even when its primary key is reassigned. A record built by `new_record`
    has no key until it is persisted.
    """

    def __init__(
        self,
        entity: EntityType,
        values: Mapping[str, Any] | None = None,
        *,
        identity: Mapping[str, Any] | None = None,
    ) -> None:
        self.entity = entity
        self.values: dict[str, Any] = dict(values or {})
        self._identity = dict(identity) if identity is not None else None

    @property
    def is_new(self) -> bool:
        return self._identity is None

    def __getitem__(self, attr: str) -> Any:
        return self.values[attr]

    def get(self, attr: str, default: Any = None) -> Any:
        return self.values.get(attr, default)

    def __repr__(self) -> str:
        state = " new" if self.is_new else ""
        return f"<Record {self.entity.name}{state} {self.values!r}>"


def _match(table: sa.Table, predicate: Mapping[str, Any]) -> list[Any]:
    return [table.c[k].is_(None) if v is None else table.c[k] == v for k, v in predicate.items()]


def _identity_of(entity: EntityType, values: Mapping[str, Any]) -> dict[str, Any]:
    # Tables without a primary key are addressed by every known column value.
    keys = entity.primary_key_columns or tuple(values)
    return {k: values.get(k) for k in keys}


class SqlStore:
    """CRUD + transaction access to seedable tables over a SQLAlchemy engine."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        # The open transaction belongs to the calling thread/context, never to the store.
        self._active: ContextVar[Connection | None] = ContextVar(f"seedsync_conn_{id(self)}", default=None)

    def entity(self, name: str, schema: str | None = None, validators: Iterable[Validator] = ()) -> EntityType:
        table = sa.Table(name, sa.MetaData(), schema=schema, autoload_with=self.engine)
        return EntityType(table, tuple(validators))

    @contextmanager
    def transaction(self, entity: EntityType) -> Iterator[Connection]:
        conn = self._active.get()
        if conn is not None:
            # Nested use runs in a SAVEPOINT so a failed inner batch leaves nothing behind.
            with conn.begin_nested():
                yield conn
            return
        with self.engine.begin() as conn:
            token = self._active.set(conn)
            try:
                yield conn
            finally:
                self._active.reset(token)

    @contextmanager
    def _connection(self) -> Iterator[Connection]:
        conn = self._active.get()
        if conn is not None:
            yield conn
            return
        with self.engine.begin() as conn:
            yield conn

    def list_known_attributes(self, entity: EntityType) -> frozenset[str]:
        return entity.attributes

    def find_one(self, entity: EntityType, predicate: Mapping[str, Any]) -> Record | None:
        q = sa.select(entity.table).where(*_match(entity.table, predicate)).limit(1)
        with self._connection() as conn:
            row = conn.execute(q).mappings().first()
        if row is None:
            return None
        values = dict(row)
        return Record(entity, values, identity=_identity_of(entity, values))

    def new_record(self, entity: EntityType) -> Record:
        return Record(entity)

    def is_new_record(self, record: Record) -> bool:
        return record.is_new

    def assign(self, record: Record, values: Mapping[str, Any]) -> None:
        unknown = sorted(set(values) - record.entity.attributes)
        if unknown:
            raise ConfigurationError(f"`{record.entity.name}` has no column(s) {column_list(unknown)}")
        record.values.update(values)

    def persist(self, record: Record, validate: bool = True) -> Record:
        entity = record.entity
        if validate:
            problems = [p for p in (check(record) for check in entity.validators) if p]
            if problems:
                raise PersistenceError(
                    f"{entity.name} record is invalid: {'; '.join(problems)}",
                    entity=entity.name,
                    values=record.values,
                )

        table = entity.table
        try:
            with self._connection() as conn:
                if record.is_new:
                    result = conn.execute(table.insert().values(**record.values))
                    for col, value in zip(table.primary_key.columns, result.inserted_primary_key or ()):
                        if value is not None:
                            record.values.setdefault(col.key, value)
                else:
                    result = conn.execute(
                        table.update().where(*_match(table, record._identity)).values(**record.values)
                    )
                    if result.rowcount == 0:
                        raise PersistenceError(
                            f"{entity.name} record not saved: stored row {record._identity!r} is gone",
                            entity=entity.name,
                            values=record.values,
                        )
        except DBAPIError as exc:
            raise PersistenceError(
                f"{entity.name} record not saved: {exc.orig}",
                entity=entity.name,
                values=record.values,
            ) from exc

        record._identity = _identity_of(entity, record.values)
        return record


@runtime_checkable
class SequenceAware(Protocol):
    """Stores that keep an explicit auto-increment sequence per table."""

    def sequence_name(self, entity: EntityType) -> str | None: ...

    def read_sequence_last_value(self, entity: EntityType) -> int | None: ...

    def resync_sequence_to_table_max(self, entity: EntityType) -> None: ...


class PostgresStore(SqlStore):
    def sequence_name(self, entity: EntityType) -> str | None:
        column = entity.sequence_column
        if column is None or entity.primary_key is None:
            return None
        preparer = self.engine.dialect.identifier_preparer
        if isinstance(column.default, sa.Sequence):
            return preparer.format_sequence(column.default)
        # serial and identity columns both own an implicit sequence.
        q = sa.select(sa.func.pg_get_serial_sequence(preparer.format_table(entity.table), column.name))
        with self._connection() as conn:
            return conn.execute(q).scalar_one()

    def read_sequence_last_value(self, entity: EntityType) -> int | None:
        """Return the last value the sequence handed out (one step below start if never used)."""
        name = self.sequence_name(entity)
        if name is None:
            return None
        with self._connection() as conn:
            last_value, is_called = conn.execute(sa.text(f"SELECT last_value, is_called FROM {name}")).one()
            if is_called:
                return last_value
            # Not yet called (fresh, or setval(..., false)): nextval() returns last_value itself.
            increment = conn.execute(
                sa.text("SELECT seqincrement FROM pg_sequence WHERE seqrelid = CAST(:seq AS regclass)"), {"seq": name}
            ).scalar_one()
            return last_value - increment

    def resync_sequence_to_table_max(self, entity: EntityType) -> None:
        column = entity.sequence_column
        name = self.sequence_name(entity)
        if column is None or name is None:
            return
        seq = sa.cast(name, REGCLASS)
        with self._connection() as conn:
            current_max = conn.execute(sa.select(sa.func.max(column))).scalar_one()
            if current_max is None:
                conn.execute(sa.select(sa.func.setval(seq, 1, False)))
            else:
                # is_called=true: last_value reads as max and nextval() returns max + 1.
                conn.execute(sa.select(sa.func.setval(seq, current_max, True)))


def create_engine(database_url: str | None = None) -> Engine:
    return sa.create_engine(database_url or SETTINGS.database_url, pool_pre_ping=True)


def store_for(engine: Engine) -> SqlStore:
    if engine.dialect.name == "postgresql":
        return PostgresStore(engine)
    return SqlStore(engine)
