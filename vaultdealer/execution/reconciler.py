"""Execution Reconciler: resolves one venue mutation to success, failed or uncertain.

A timeout that carries a transaction reference is not a failure: the
reference is re-checked out-of-band until it settles or the attempts run
out. An unknown outcome stays ``uncertain`` so callers never mistake it for
a clean success or failure.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable, Optional

import structlog

from vaultdealer.shell.contract import SettlementStatus, TxStatus
from vaultdealer.shell.errors import UncertainSettlement, VenueError

if TYPE_CHECKING:
    from vaultdealer.execution.venue import SettlementSource

log = structlog.get_logger()


@dataclass(frozen=True)
class ExecutionOutcome:
    status: SettlementStatus
    reference: Optional[str] = None
    message: str = ""

    @property
    def succeeded(self) -> bool:
        return self.status is SettlementStatus.SUCCESS


class ExecutionReconciler:
    def __init__(
        self,
        settle_attempts: int = 3,
        settle_interval: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._attempts = settle_attempts
        self._interval = settle_interval
        self._sleep = sleep

    async def execute(
        self,
        call: Callable[[], Awaitable[str]],
        source: SettlementSource,
        label: str = "",
    ) -> ExecutionOutcome:
        try:
            reference = await call()
        except UncertainSettlement as e:
            if not e.reference:
                log.error("reconcile.failed", label=label, error=str(e))
                return ExecutionOutcome(SettlementStatus.FAILED, None, str(e))
            log.warning("reconcile.venue_unsure", label=label, reference=e.reference, error=str(e))
            return await self._reconcile(e.reference, source, label, str(e))
        except VenueError as e:
            if e.reference and e.timed_out:
                log.warning("reconcile.timeout", label=label, reference=e.reference, error=str(e))
                return await self._reconcile(e.reference, source, label, str(e))
            log.error("reconcile.failed", label=label, reference=e.reference, error=str(e))
            return ExecutionOutcome(SettlementStatus.FAILED, e.reference, str(e))
        except Exception as e:
            log.error("reconcile.failed", label=label, error=str(e), exc_info=True)
            return ExecutionOutcome(SettlementStatus.FAILED, None, str(e) or type(e).__name__)

        log.info("reconcile.direct_success", label=label, reference=reference)
        return ExecutionOutcome(SettlementStatus.SUCCESS, reference)

    async def _reconcile(
        self, reference: str, source: SettlementSource, label: str, original_error: str
    ) -> ExecutionOutcome:
        for attempt in range(self._attempts + 1):
            try:
                status = await source.get_transaction_status(reference)
            except Exception as e:
                log.warning("reconcile.status_check_failed", label=label, reference=reference, error=str(e))
                return ExecutionOutcome(
                    SettlementStatus.UNCERTAIN, reference, f"Status check failed: {e}"
                )

            if status is TxStatus.CONFIRMED:
                log.info("reconcile.settled", label=label, reference=reference, attempt=attempt)
                return ExecutionOutcome(SettlementStatus.SUCCESS, reference)
            if status is TxStatus.FAILED:
                log.error("reconcile.settled_failed", label=label, reference=reference)
                return ExecutionOutcome(
                    SettlementStatus.FAILED, reference, f"Transaction failed on-chain: {original_error}"
                )

            if attempt < self._attempts:
                await self._sleep(self._interval)

        log.warning("reconcile.uncertain", label=label, reference=reference)
        return ExecutionOutcome(SettlementStatus.UNCERTAIN, reference, "Settlement still pending")
