from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

PREFERENCES_TABLE_SCHEMA = """
CREATE TABLE IF NOT EXISTS preferences (
    key TEXT PRIMARY KEY,
    json TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""
DEFAULT_BUSY_TIMEOUT_SECONDS = 2.0


def _prepare_db_path(db_path: Path) -> Path:
    normalized = Path(db_path)
    normalized.parent.mkdir(parents=True, exist_ok=True)
    return normalized


def connect(db_path: Path, *, timeout: float = DEFAULT_BUSY_TIMEOUT_SECONDS) -> sqlite3.Connection:
    connection = sqlite3.connect(_prepare_db_path(db_path), timeout=timeout)
    connection.row_factory = sqlite3.Row
    connection.execute("PRAGMA journal_mode = WAL;")
    connection.execute("PRAGMA synchronous = NORMAL;")
    return connection


@contextmanager
def open_db(db_path: Path) -> Iterator[sqlite3.Connection]:
    connection = connect(db_path)
    try:
        connection.executescript(PREFERENCES_TABLE_SCHEMA)
        yield connection
    finally:
        connection.close()


def read_value(connection: sqlite3.Connection, key: str) -> str | None:
    row = connection.execute("SELECT json FROM preferences WHERE key = ?", (key,)).fetchone()
    if row is None:
        return None
    return str(row["json"])


def write_value(connection: sqlite3.Connection, key: str, payload_json: str, updated_at: str) -> None:
    connection.execute(
        """
        INSERT INTO preferences (key, json, updated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET
            json=excluded.json,
            updated_at=excluded.updated_at
        """,
        (key, payload_json, updated_at),
    )
    connection.commit()


def initialize_database(db_path: Path) -> None:
    with open_db(db_path):
        return
