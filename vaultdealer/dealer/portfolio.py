"""Portfolio sync: the one piece of state shared between the dealer and its sync loop.

The snapshot is immutable and replaced wholesale on every refresh. While a
dealer cycle holds the priority lock, background refreshes are skipped and
the cycle's own sync is authoritative.
"""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING, Callable, Optional

import structlog

from vaultdealer.shell.contract import PortfolioSnapshot, Position

if TYPE_CHECKING:
    from vaultdealer.execution.venue import PerpsVenue

log = structlog.get_logger()


class PortfolioSync:
    def __init__(self, venue: PerpsVenue, clock: Callable[[], float] = time.time) -> None:
        self._venue = venue
        self._clock = clock
        self._snapshot: Optional[PortfolioSnapshot] = None
        self._requested = 0
        self._applied = 0
        self.priority_lock = asyncio.Lock()

    @property
    def snapshot(self) -> Optional[PortfolioSnapshot]:
        return self._snapshot

    async def refresh(self, force: bool = False) -> Optional[PortfolioSnapshot]:
        """Fetch account state and swap in a new snapshot. Non-forced refreshes yield to a running cycle."""
        if not force and self.priority_lock.locked():
            log.debug("portfolio.sync_skipped", reason="dealer cycle active")
            return self._snapshot
        self._requested += 1
        seq = self._requested
        account = await self._venue.get_account_state()
        # a read that started earlier never replaces a newer snapshot
        if seq < self._applied or (not force and self.priority_lock.locked()):
            log.debug("portfolio.stale_sync_dropped", seq=seq, applied=self._applied)
            return self._snapshot
        self._applied = seq
        self._snapshot = PortfolioSnapshot.from_account(account, self._clock())
        log.debug("portfolio.synced", positions=self._snapshot.open_count,
                  account_value=round(self._snapshot.account_value, 2))
        return self._snapshot

    async def sync_job(self) -> None:
        """Background interval job."""
        try:
            await self.refresh()
        except Exception as e:
            log.warning("portfolio.sync_failed", error=str(e))

    async def fetch_position(self, coin: str) -> Optional[Position]:
        """Fresh venue read for one coin, bypassing the snapshot."""
        account = await self._venue.get_account_state()
        for pos in account.positions:
            if pos.coin == coin and pos.size != 0:
                return pos
        return None
