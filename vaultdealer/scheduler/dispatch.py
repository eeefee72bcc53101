"""Task dispatch: turns a claimed ScheduledTask into one reconciled venue action."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from vaultdealer.execution.reconciler import ExecutionOutcome
from vaultdealer.shell.contract import (
    Action,
    ExecutionIntent,
    ScheduledTask,
    SettlementStatus,
    TaskType,
)
from vaultdealer.shell.errors import WrongPassword

if TYPE_CHECKING:
    from vaultdealer.execution.orders import OrderExecutor
    from vaultdealer.execution.reconciler import ExecutionReconciler
    from vaultdealer.execution.venue import VaultVenue
    from vaultdealer.shell.activity import ActivityLogger
    from vaultdealer.shell.config import SecretsConfig
    from vaultdealer.shell.keyring import Decryptor

log = structlog.get_logger()

ALERT_TRIGGERED = "ALERT_TRIGGERED"


def result_text(task: ScheduledTask, outcome: ExecutionOutcome) -> str:
    """Human-readable task result stored with the task."""
    if outcome.status is SettlementStatus.SUCCESS:
        if task.type is TaskType.ALERT:
            return ALERT_TRIGGERED
        return f"Success: {outcome.reference}"
    if outcome.status is SettlementStatus.UNCERTAIN:
        return f"Warning: Status unknown - verify manually: {outcome.reference}"
    return f"Failed: {outcome.message}"


class TaskDispatcher:
    def __init__(
        self,
        keyring: Decryptor,
        secrets: SecretsConfig,
        vault: VaultVenue,
        orders: OrderExecutor,
        reconciler: ExecutionReconciler,
        activity: ActivityLogger,
    ) -> None:
        self._keyring = keyring
        self._secrets = secrets
        self._vault = vault
        self._orders = orders
        self._reconciler = reconciler
        self._activity = activity

    async def execute(self, task: ScheduledTask) -> ExecutionOutcome:
        if task.type is TaskType.ALERT:
            return await self._alert(task)

        secret = self._secrets.venue_secret if task.type is TaskType.VENUE_ORDER else self._secrets.vault_secret
        try:
            key = self._keyring.decrypt(secret, self._secrets.vault_password)
        except WrongPassword as e:
            log.error("dispatch.wrong_password", task_id=task.id)
            return ExecutionOutcome(SettlementStatus.FAILED, None, str(e))

        if task.type is TaskType.SWAP:
            return await self._reconciler.execute(
                lambda: self._vault.swap(key, task.params), self._vault, f"swap {task.short_id}"
            )

        if task.type is TaskType.TRANSFER:
            destination = self._secrets.owner_address
            if not destination:
                return ExecutionOutcome(SettlementStatus.FAILED, None, "No owner address configured for transfers")
            return await self._reconciler.execute(
                lambda: self._vault.transfer(key, task.params, destination), self._vault,
                f"transfer {task.short_id}",
            )

        return await self._orders.submit(key, self._intent_for(task))

    def _intent_for(self, task: ScheduledTask) -> ExecutionIntent:
        p = task.params
        return ExecutionIntent(
            coin=p.coin.upper(),
            action=Action.BUY if p.is_buy else Action.SELL,
            order_type=p.order_type,
            size_usdc=p.usdc_amount or 0.0,
            leverage=p.leverage,
            is_buy=p.is_buy,
            price=p.price,
            size=p.size,
            reduce_only=p.reduce_only,
            stop_loss=p.stop_loss,
            take_profit=p.take_profit,
            reason=f"scheduled task {task.id}",
        )

    async def _alert(self, task: ScheduledTask) -> ExecutionOutcome:
        trigger = task.condition.describe() if task.condition else "scheduled time reached"
        message = task.params.message or trigger
        await self._activity.log("SIGNAL", f"Alert: {message}", "warning",
                                 {"task_id": task.id, "trigger": trigger})
        return ExecutionOutcome(SettlementStatus.SUCCESS, ALERT_TRIGGERED)
