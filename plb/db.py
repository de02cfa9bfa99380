from __future__ import annotations

import hashlib
import logging
import os
import sqlite3
from datetime import datetime, timezone
from typing import Any

from .settings import settings

logger = logging.getLogger("plb.events")

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    If the configured path is a directory (a bind mount created before the
    file existed, typically), the journal file is placed inside it.
    """

    p = os.path.abspath(settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "plb.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def connect() -> sqlite3.Connection:
    conn = sqlite3.connect(_resolve_db_path(), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


def init_db() -> None:
    """Create tables if they do not exist."""
    with connect() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              scope TEXT,
              message TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS applies (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              scope TEXT,
              config_sha256 TEXT NOT NULL,
              pid INTEGER,
              ok INTEGER NOT NULL,
              detail TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            """
        )


def log_event(level: str, message: str, scope: str | None = None) -> None:
    """Emit an operational event to the log and persist it to the journal."""
    level = level.upper()
    logger.log(_LEVELS.get(level, logging.INFO), "%s", f"[{scope}] {message}" if scope else message)
    with connect() as conn:
        conn.execute(
            "INSERT INTO events (ts, level, scope, message) VALUES (?, ?, ?, ?)",
            (utc_now(), level, scope, message),
        )


def config_digest(config: str) -> str:
    return hashlib.sha256(config.encode("utf-8")).hexdigest()


def record_apply(config: str, pid: int | None, ok: bool, scope: str | None = None, detail: str | None = None) -> None:
    with connect() as conn:
        conn.execute(
            "INSERT INTO applies (ts, scope, config_sha256, pid, ok, detail) VALUES (?, ?, ?, ?, ?, ?)",
            (utc_now(), scope, config_digest(config), pid, 1 if ok else 0, detail),
        )


def latest_events(limit: int = 100) -> list[dict[str, Any]]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]


def latest_applies(limit: int = 20) -> list[dict[str, Any]]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM applies ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]
