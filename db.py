from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator, List, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Connection, Engine, RowMapping
from sqlalchemy.exc import SQLAlchemyError

from fsqa_config import load_settings
from fsqa_errors import PersistenceError

LOGGER = logging.getLogger(__name__)


def get_engine(db_url: Optional[str] = None) -> Engine:
    """
    If FSQA_DATABASE_URL / DATABASE_URL is set -> uses Postgres (recommended for real app).
    Else -> uses local SQLite for dev.
    """
    if not db_url:
        db_url = load_settings().database_url
    return create_engine(db_url, pool_pre_ping=True)


@contextmanager
def transaction(engine: Engine) -> Iterator[Connection]:
    """One connection, one commit. Driver errors come out as PersistenceError."""
    try:
        with engine.begin() as conn:
            yield conn
    except SQLAlchemyError as exc:
        LOGGER.exception("Database operation failed")
        raise PersistenceError() from exc


def exec_sql(engine: Engine, sql: str, params: Optional[dict] = None) -> None:
    with transaction(engine) as conn:
        conn.execute(text(sql), params or {})


def insert_returning_id(engine: Engine, sql: str, params: Optional[dict] = None) -> int:
    # sql must end with RETURNING id (SQLite >= 3.35 and Postgres both accept it)
    with transaction(engine) as conn:
        return int(conn.execute(text(sql), params or {}).scalar_one())


def fetch_all(engine: Engine, sql: str, params: Optional[dict] = None) -> List[RowMapping]:
    with transaction(engine) as conn:
        res = conn.execute(text(sql), params or {})
        return [r._mapping for r in res.fetchall()]


def fetch_one(engine: Engine, sql: str, params: Optional[dict] = None) -> Optional[RowMapping]:
    rows = fetch_all(engine, sql, params)
    return rows[0] if rows else None
