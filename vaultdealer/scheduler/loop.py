"""Scheduler Loop: fixed-interval tick over every active task.

Each tick snapshots the active tasks, decides which are due (deadline
passed or condition met), then claims and executes the due ones one after
another. Ticks may overlap when execution runs long; the ``executing``
claim keeps an overlapping tick from firing the same task twice.
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime
from typing import TYPE_CHECKING, Callable, Optional

import structlog
from apscheduler.triggers.interval import IntervalTrigger

from vaultdealer.execution.reconciler import ExecutionOutcome
from vaultdealer.scheduler.dispatch import result_text
from vaultdealer.shell.contract import ScheduledTask, SettlementStatus, TaskStatus

if TYPE_CHECKING:
    from apscheduler.schedulers.asyncio import AsyncIOScheduler

    from vaultdealer.scheduler.conditions import ConditionEvaluator
    from vaultdealer.scheduler.dispatch import TaskDispatcher
    from vaultdealer.scheduler.tasks import TaskStore
    from vaultdealer.shell.activity import ActivityLogger
    from vaultdealer.shell.config import SchedulerConfig

log = structlog.get_logger()

TICK_JOB_ID = "scheduler_tick"
SHUTDOWN_RESULT = "Failed: engine stopped before the task finished - verify on the venue"


class SchedulerLoop:
    def __init__(
        self,
        tasks: TaskStore,
        evaluator: ConditionEvaluator,
        dispatcher: TaskDispatcher,
        activity: ActivityLogger,
        config: SchedulerConfig,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._tasks = tasks
        self._evaluator = evaluator
        self._dispatcher = dispatcher
        self._activity = activity
        self._config = config
        self._clock = clock
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._ticks: set[asyncio.Task] = set()
        self._stopping = False

    async def start(self, scheduler: AsyncIOScheduler) -> None:
        """Recover interrupted tasks, then register the tick job."""
        interrupted = await self._tasks.fail_executing()
        for task in interrupted:
            await self._activity.task(
                f"{task.type.value} task {task.short_id} was interrupted and marked failed", "warning",
                {"task_id": task.id},
            )
        self._stopping = False
        self._scheduler = scheduler
        scheduler.add_job(
            self.tick, IntervalTrigger(seconds=self._config.tick_seconds),
            id=TICK_JOB_ID, name="Scheduler Tick", replace_existing=True,
            max_instances=3, coalesce=True, next_run_time=datetime.now(),
        )
        log.info("scheduler.started", tick_seconds=self._config.tick_seconds,
                 active=len(self._tasks.active()))

    async def stop(self) -> None:
        """Stop ticking, let in-flight executions finish, and fail anything left executing."""
        self._stopping = True
        if self._scheduler is not None and self._scheduler.get_job(TICK_JOB_ID):
            self._scheduler.remove_job(TICK_JOB_ID)

        pending = {t for t in self._ticks if not t.done() and t is not asyncio.current_task()}
        if pending:
            _, still_running = await asyncio.wait(pending, timeout=self._config.stop_timeout_seconds)
            for task in still_running:
                task.cancel()
            if still_running:
                await asyncio.gather(*still_running, return_exceptions=True)
                log.warning("scheduler.stop_timeout", cancelled=len(still_running))

        await self._tasks.fail_executing(SHUTDOWN_RESULT)
        log.info("scheduler.stopped")

    async def tick(self) -> list[str]:
        """One pass over the active tasks. Returns the ids of tasks executed in this tick."""
        current = asyncio.current_task()
        if current is not None:
            self._ticks.add(current)
        try:
            return await self._tick()
        finally:
            if current is not None:
                self._ticks.discard(current)

    async def _tick(self) -> list[str]:
        due: list[ScheduledTask] = []
        for task in self._tasks.active():
            if self._stopping:
                return []
            if await self._is_due(task):
                due.append(task)

        executed = []
        for task in due:
            if self._stopping:
                break
            # claim() is synchronous: no await between the status check and the transition
            claimed = self._tasks.claim(task.id, self._clock())
            if claimed is None:
                continue
            await self._run(claimed)
            executed.append(claimed.id)
        return executed

    async def _is_due(self, task: ScheduledTask) -> bool:
        if task.execute_at is not None:
            return self._clock() >= task.execute_at
        result = await self._evaluator.evaluate(task.condition)
        if result.met:
            log.info("scheduler.condition_met", task_id=task.id, condition=task.condition.describe(),
                     current=result.current_value)
        return result.met

    async def _run(self, task: ScheduledTask) -> None:
        try:
            await self._execute(task)
        except Exception as e:
            log.error("scheduler.task_bookkeeping_failed", task_id=task.id, error=str(e), exc_info=True)
            if task.status is TaskStatus.EXECUTING:
                self._tasks.abandon(task.id, f"Failed: {str(e) or type(e).__name__}")

    async def _execute(self, task: ScheduledTask) -> None:
        log.info("scheduler.task_claimed", task_id=task.id, type=task.type.value)
        await self._tasks.save(task)
        await self._activity.scheduler(f"Executing {task.type.value} task {task.short_id}",
                                       detail={"task_id": task.id})
        try:
            outcome = await self._dispatcher.execute(task)
        except Exception as e:
            log.error("scheduler.task_error", task_id=task.id, error=str(e), exc_info=True)
            outcome = ExecutionOutcome(SettlementStatus.FAILED, None, str(e) or type(e).__name__)

        result = result_text(task, outcome)
        await self._tasks.finish(task.id, outcome.status is not SettlementStatus.FAILED, result)

        severity = {
            SettlementStatus.SUCCESS: "info",
            SettlementStatus.UNCERTAIN: "warning",
            SettlementStatus.FAILED: "error",
        }[outcome.status]
        await self._activity.task(f"{task.type.value} task {task.short_id}: {result}", severity,
                                  {"task_id": task.id, "reference": outcome.reference})
