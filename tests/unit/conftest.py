from __future__ import annotations

import pytest
import sqlalchemy as sa
import structlog

from seedsync.store import EntityType, SqlStore


def _reject_nowhere(record) -> str | None:
    if record.get("name") == "Nowhere":
        return "name must be a real country"
    return None


@pytest.fixture()
def engine() -> sa.Engine:
    eng = sa.create_engine("sqlite://")
    yield eng
    eng.dispose()


@pytest.fixture()
def countries(engine: sa.Engine) -> EntityType:
    meta = sa.MetaData()
    table = sa.Table(
        "countries",
        meta,
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("code", sa.Text(), nullable=True),
        sa.Column("name", sa.Text(), nullable=True, unique=True),
        sa.Column("population", sa.Integer(), nullable=True),
    )
    meta.create_all(engine)
    return EntityType(table, validators=(_reject_nowhere,))


@pytest.fixture()
def store(engine: sa.Engine) -> SqlStore:
    return SqlStore(engine)


@pytest.fixture()
def stored_rows(engine: sa.Engine, countries: EntityType):
    def _rows() -> list[dict]:
        with engine.connect() as conn:
            q = sa.select(countries.table).order_by(countries.table.c.id)
            return [dict(r) for r in conn.execute(q).mappings()]

    return _rows


@pytest.fixture()
def reset_structlog():
    yield
    structlog.reset_defaults()
