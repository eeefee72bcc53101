"""Namespaced byte store over the kv_store table.

Each namespace is one logical table: ``scheduled_tasks`` keyed by task id,
``cycle_history`` keyed by dealer type. Values are opaque bytes; callers
own their encoding.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from vaultdealer.shell.database import Database

TASKS_NAMESPACE = "scheduled_tasks"
HISTORY_NAMESPACE = "cycle_history"


class SqliteStore:
    def __init__(self, db: Database, namespace: str) -> None:
        self._db = db
        self._namespace = namespace

    @property
    def namespace(self) -> str:
        return self._namespace

    async def get(self, key: str) -> bytes | None:
        row = await self._db.fetchone(
            "SELECT value FROM kv_store WHERE namespace = ? AND key = ?",
            (self._namespace, key),
        )
        return bytes(row["value"]) if row else None

    async def set(self, key: str, value: bytes) -> None:
        await self._db.execute(
            "INSERT INTO kv_store (namespace, key, value, updated_at) VALUES (?, ?, ?, datetime('now')) "
            "ON CONFLICT(namespace, key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at",
            (self._namespace, key, value),
        )
        await self._db.commit()

    async def delete(self, key: str) -> None:
        await self._db.execute(
            "DELETE FROM kv_store WHERE namespace = ? AND key = ?",
            (self._namespace, key),
        )
        await self._db.commit()

    async def items(self) -> list[tuple[str, bytes]]:
        rows = await self._db.fetchall(
            "SELECT key, value FROM kv_store WHERE namespace = ? ORDER BY key",
            (self._namespace,),
        )
        return [(r["key"], bytes(r["value"])) for r in rows]
