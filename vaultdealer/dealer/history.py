"""Rolling cycle history: the last few cycles' decisions, newest first."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

import structlog

from vaultdealer.shell.contract import CycleDecision

if TYPE_CHECKING:
    from vaultdealer.shell.store import SqliteStore

log = structlog.get_logger()


class CycleHistory:
    def __init__(self, store: SqliteStore, dealer_type: str = "perps", size: int = 5) -> None:
        self._store = store
        self._key = dealer_type
        self._size = size
        self._entries: list[dict] = []

    @property
    def entries(self) -> list[dict]:
        return list(self._entries)

    async def load(self) -> None:
        raw = await self._store.get(self._key)
        if raw is None:
            self._entries = []
            return
        try:
            entries = json.loads(raw)
        except ValueError as e:
            log.error("history.corrupt", dealer_type=self._key, error=str(e))
            entries = []
        self._entries = entries[: self._size] if isinstance(entries, list) else []

    async def record(
        self,
        timestamp: float,
        decisions: list[CycleDecision],
        assets_analyzed: int,
        summary: Optional[str] = None,
    ) -> dict:
        entry = {
            "timestamp": timestamp,
            "decisions": [
                {"asset": d.coin, "action": d.action.value, "confidence": d.confidence}
                for d in decisions
            ],
            "assetsAnalyzed": assets_analyzed,
        }
        if summary:
            entry["summary"] = summary
        self._entries = [entry] + self._entries[: self._size - 1]
        await self._store.set(self._key, json.dumps(self._entries).encode())
        return entry

    def context_for_oracle(self) -> dict:
        """Condensed view of recent cycles for the next oracle call."""
        if not self._entries:
            return {}
        cycles = []
        for entry in self._entries:
            when = datetime.fromtimestamp(entry["timestamp"], tz=timezone.utc).strftime("%Y-%m-%d %H:%M")
            moves = [
                f"{d['asset']}:{d['action']}({d['confidence']:.2f})"
                for d in entry["decisions"]
                if d["action"] != "HOLD"
            ]
            cycles.append({"time": when, "decisions": moves or ["all HOLD"]})
        context = {"recentCycles": cycles}
        latest_summary = next((e["summary"] for e in self._entries if e.get("summary")), None)
        if latest_summary:
            context["lastCycleSummary"] = latest_summary
        return context
