"""PostgreSQL implementation of the automation repository."""

from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Mapping, Optional

import asyncpg

from ..errors import UniqueViolation
from ..utils.clock import ensure_utc
from .sqlbase import SQLAutomationRepository

_PLACEHOLDER = re.compile(r"\?")


def _numbered(query: str) -> str:
    """Rewrite ``?`` placeholders as asyncpg's ``$1, $2, ...``."""
    counter = iter(range(1, 10_000))
    return _PLACEHOLDER.sub(lambda _: f"${next(counter)}", query)


def _affected(status: str) -> int:
    """Extract the row count from a command tag such as ``UPDATE 1``."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, IndexError):
        return 0


class PostgresAutomationRepository(SQLAutomationRepository):
    """Persist automation state using PostgreSQL."""

    column_types = {
        "ts": "TIMESTAMPTZ",
        "json": "JSONB",
        "bool": "BOOLEAN",
        "serial": "SERIAL PRIMARY KEY",
    }

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        for statement in self.schema_statements():
            await conn.execute(statement)

    # ------------------------------------------------------------------
    async def _execute(self, query: str, *params: Any) -> int:
        conn = await self._connect()
        try:
            status = await conn.execute(_numbered(query), *params)
        except asyncpg.UniqueViolationError as exc:
            raise UniqueViolation(exc.constraint_name or str(exc)) from exc
        finally:
            await conn.close()
        return _affected(status)

    async def _fetchone(self, query: str, *params: Any) -> Mapping[str, Any] | None:
        conn = await self._connect()
        try:
            return await conn.fetchrow(_numbered(query), *params)
        finally:
            await conn.close()

    async def _fetchall(self, query: str, *params: Any) -> list[Mapping[str, Any]]:
        conn = await self._connect()
        try:
            return await conn.fetch(_numbered(query), *params)
        finally:
            await conn.close()

    def _ts(self, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value) if value is not None else None

    def _from_ts(self, value: Any) -> Optional[datetime]:
        return ensure_utc(value) if value is not None else None
