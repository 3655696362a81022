"""SQLite implementation of the automation repository."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from ..errors import UniqueViolation
from ..utils.clock import ensure_utc
from .sqlbase import SQLAutomationRepository

# Fixed-width UTC text so lexicographic order matches time order.
_TS_FORMAT = "%Y-%m-%dT%H:%M:%S.%f+00:00"


class SQLiteAutomationRepository(SQLAutomationRepository):
    """Persist automation state using SQLite."""

    column_types = {
        "ts": "TEXT",
        "json": "TEXT",
        "bool": "INTEGER",
        "serial": "INTEGER PRIMARY KEY AUTOINCREMENT",
    }

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        for statement in self.schema_statements():
            cur.execute(statement)
        self._conn.commit()

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute_sync(self, query: str, params: tuple) -> int:
        with self._lock:
            cur = self._conn.cursor()
            try:
                cur.execute(query, params)
            except sqlite3.IntegrityError as exc:
                self._conn.rollback()
                if "UNIQUE" in str(exc):
                    raise UniqueViolation(str(exc)) from exc
                raise
            self._conn.commit()
            return cur.rowcount

    def _fetchone_sync(self, query: str, params: tuple) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall_sync(self, query: str, params: tuple) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    async def _execute(self, query: str, *params: Any) -> int:
        return await asyncio.to_thread(self._execute_sync, query, params)

    async def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        return await asyncio.to_thread(self._fetchone_sync, query, params)

    async def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        return await asyncio.to_thread(self._fetchall_sync, query, params)

    def _ts(self, value: Optional[datetime]) -> Optional[str]:
        if value is None:
            return None
        return ensure_utc(value).strftime(_TS_FORMAT)

    def _from_ts(self, value: Any) -> Optional[datetime]:
        if value is None:
            return None
        return ensure_utc(datetime.fromisoformat(value))
