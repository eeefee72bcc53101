"""Activity Log: append-only timeline of everything the engine decided or did.

Every decision rationale, skip reason and execution result lands here so
that nothing fails silently. Rows go to SQLite and are mirrored to structlog.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from vaultdealer.shell.database import Database

log = structlog.get_logger()

CATEGORIES = ("SCHEDULER", "TASK", "REASONING", "SIGNAL", "SKIP", "TRADE", "CYCLE", "SYSTEM")


class ActivityLogger:
    """Writes activity entries to DB and emits structlog."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def log(
        self,
        category: str,
        summary: str,
        severity: str = "info",
        detail: dict | str | None = None,
    ) -> None:
        ts = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")

        detail_str = None
        if detail is not None:
            if isinstance(detail, str):
                detail_str = detail
            else:
                try:
                    detail_str = json.dumps(detail, default=str)
                except (TypeError, ValueError):
                    detail_str = str(detail)

        await self._db.execute(
            "INSERT INTO activity_log (timestamp, category, severity, summary, detail) VALUES (?, ?, ?, ?, ?)",
            (ts, category, severity, summary, detail_str),
        )
        await self._db.commit()

        emit = log.warning if severity in ("warning", "error") else log.info
        emit("activity", category=category, severity=severity, summary=summary)

    # --- Convenience methods ---

    async def scheduler(self, summary: str, severity: str = "info", detail: dict | None = None) -> None:
        await self.log("SCHEDULER", summary, severity, detail)

    async def task(self, summary: str, severity: str = "info", detail: dict | None = None) -> None:
        await self.log("TASK", summary, severity, detail)

    async def reasoning(self, summary: str, detail: dict | None = None) -> None:
        await self.log("REASONING", summary, "info", detail)

    async def skip(self, summary: str, severity: str = "info", detail: dict | None = None) -> None:
        await self.log("SKIP", summary, severity, detail)

    async def trade(self, summary: str, severity: str = "info", detail: dict | None = None) -> None:
        await self.log("TRADE", summary, severity, detail)

    async def cycle(self, summary: str, severity: str = "info", detail: dict | None = None) -> None:
        await self.log("CYCLE", summary, severity, detail)

    async def system(self, summary: str, severity: str = "info", detail: dict | None = None) -> None:
        await self.log("SYSTEM", summary, severity, detail)

    # --- Query methods ---

    async def recent(self, limit: int = 30) -> list[dict]:
        """Return last N entries in chronological order (oldest first)."""
        rows = await self._db.fetchall(
            "SELECT * FROM activity_log ORDER BY id DESC LIMIT ?",
            (limit,),
        )
        return list(reversed(rows))

    async def query(
        self,
        limit: int = 50,
        since: str | None = None,
        category: str | None = None,
        severity: str | None = None,
    ) -> list[dict]:
        """Filtered query, newest first."""
        sql = "SELECT * FROM activity_log WHERE 1=1"
        params: list = []

        if since:
            sql += " AND timestamp >= ?"
            params.append(since)
        if category:
            sql += " AND category = ?"
            params.append(category)
        if severity:
            sql += " AND severity = ?"
            params.append(severity)

        sql += " ORDER BY id DESC LIMIT ?"
        params.append(limit)

        return await self._db.fetchall(sql, tuple(params))
