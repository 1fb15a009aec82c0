"""
SQLite store client.

One ``Database`` is constructed at startup and handed to every service. Each
operation opens its own short-lived connection, so reads issued concurrently
from worker threads do not share cursor state; WAL journaling lets them run
alongside a writer.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator, TypeVar

from echo_tracker.errors import StoreError

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).parent / "schema.sql"

T = TypeVar("T")


def new_id() -> str:
    return uuid.uuid4().hex


def _casefold(value: Any) -> Any:
    return value.casefold() if isinstance(value, str) else value


class Database:
    def __init__(self, db_path: str | Path, busy_timeout: float = 30.0):
        self.db_path = Path(db_path)
        self.busy_timeout = busy_timeout
        self._initialized = False

    def initialize(self) -> "Database":
        """Create the database file and apply the schema. Safe to call repeatedly."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        schema_sql = SCHEMA_PATH.read_text(encoding="utf-8")
        try:
            conn = sqlite3.connect(str(self.db_path), timeout=self.busy_timeout)
            try:
                conn.execute("PRAGMA journal_mode=WAL")
                conn.executescript(schema_sql)
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to initialize store at {self.db_path}: {e}") from e
        self._initialized = True
        logger.info("Initialized store: %s", self.db_path)
        return self

    def _open(self) -> sqlite3.Connection:
        if not self._initialized:
            raise StoreError("Database used before initialize()")
        # isolation_level=None: transactions are opened explicitly with BEGIN
        conn = sqlite3.connect(
            str(self.db_path), timeout=self.busy_timeout, isolation_level=None
        )
        conn.row_factory = sqlite3.Row
        # SQLite's lower() folds ASCII only
        conn.create_function("casefold", 1, _casefold, deterministic=True)
        return conn

    @contextmanager
    def read(self) -> Iterator[sqlite3.Connection]:
        conn = self._open()
        try:
            yield conn
        except sqlite3.Error as e:
            raise StoreError(f"Store read failed: {e}") from e
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Write transaction; commits on success, rolls back on any exception."""
        conn = self._open()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            raise StoreError(f"Store write failed: {e}") from e
        finally:
            conn.close()

    async def run(self, fn: Callable[..., T], *args: Any) -> T:
        """Run blocking store work on a worker thread."""
        return await asyncio.to_thread(fn, *args)

    def close(self) -> None:
        # Connections are per-operation; nothing is held between calls.
        self._initialized = False
