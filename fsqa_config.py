from __future__ import annotations

import logging
import os
from dataclasses import dataclass


def _get_env(name: str, fallback: str = "") -> str:
    v = os.getenv(name)
    return (v or fallback).strip()


def _get_int(name: str, fallback: int) -> int:
    raw = _get_env(name)
    if not raw:
        return fallback
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got '{raw}'")


DEFAULT_SNAPSHOT_HISTORY = 10
DEFAULT_SESSION_LIST_LIMIT = 50


@dataclass(frozen=True)
class Settings:
    database_url: str
    log_level: str
    snapshot_history_limit: int
    session_list_limit: int


def load_settings() -> Settings:
    """
    FSQA_DATABASE_URL wins over DATABASE_URL; with neither set we fall back to
    a local SQLite file for dev.
    """
    db_url = _get_env("FSQA_DATABASE_URL") or _get_env("DATABASE_URL")
    if not db_url:
        db_url = "sqlite:///fsqa.db"
    return Settings(
        database_url=db_url,
        log_level=_get_env("FSQA_LOG_LEVEL", "INFO").upper(),
        snapshot_history_limit=_get_int("FSQA_SNAPSHOT_HISTORY", DEFAULT_SNAPSHOT_HISTORY),
        session_list_limit=_get_int("FSQA_SESSION_LIST_LIMIT", DEFAULT_SESSION_LIST_LIMIT),
    )


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(level=settings.log_level, format="%(levelname)s %(message)s")
