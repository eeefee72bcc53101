"""Task Store: owns every ScheduledTask and its status transitions.

active -> executing -> completed | failed. Claiming (active -> executing) is
synchronous so nothing can interleave between the eligibility check and the
status change; persistence of the claim follows asynchronously. Terminal
tasks are kept for audit and are never re-armed.
"""

from __future__ import annotations

import json
import time
from typing import TYPE_CHECKING, Callable, Optional

import structlog

from vaultdealer.shell.contract import (
    Condition,
    ScheduledTask,
    TaskParams,
    TaskStatus,
    TaskType,
    params_from_dict,
)
from vaultdealer.shell.errors import TaskValidationError

if TYPE_CHECKING:
    from vaultdealer.shell.store import SqliteStore

log = structlog.get_logger()

TERMINAL = (TaskStatus.COMPLETED, TaskStatus.FAILED)
INTERRUPTED_RESULT = "Failed: interrupted before completion (engine stopped mid-execution)"


class TaskStore:
    def __init__(
        self,
        store: SqliteStore,
        cooldown_seconds: float = 300.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._cooldown = cooldown_seconds
        self._clock = clock
        self._tasks: dict[str, ScheduledTask] = {}

    async def load(self) -> int:
        """Read every persisted task into memory. Undecodable records are logged and skipped."""
        self._tasks.clear()
        for key, raw in await self._store.items():
            try:
                task = ScheduledTask.from_dict(json.loads(raw))
            except (ValueError, KeyError, TypeError) as e:
                log.error("tasks.corrupt_record", task_id=key, error=str(e))
                continue
            self._tasks[task.id] = task
        log.info("tasks.loaded", count=len(self._tasks))
        return len(self._tasks)

    async def _persist(self, task: ScheduledTask) -> None:
        await self._store.set(task.id, json.dumps(task.to_dict()).encode())

    def _new_id(self) -> str:
        candidate = int(self._clock() * 1000)
        while str(candidate) in self._tasks:
            candidate += 1
        return str(candidate)

    async def create(
        self,
        task_type: TaskType | str,
        params: TaskParams | dict | None = None,
        execute_at: Optional[float] = None,
        condition: Condition | dict | None = None,
    ) -> ScheduledTask:
        """Validate and persist a new active task."""
        if not isinstance(task_type, TaskType):
            try:
                task_type = TaskType(str(task_type).upper())
            except ValueError:
                raise TaskValidationError(f"Unknown task type: {task_type!r}") from None
        if params is None or isinstance(params, dict):
            params = params_from_dict(task_type, params)
        if isinstance(condition, dict):
            condition = Condition.from_dict(condition)

        task = ScheduledTask(
            id=self._new_id(),
            type=task_type,
            params=params,
            created_at=self._clock(),
            execute_at=execute_at,
            condition=condition,
        )
        self._tasks[task.id] = task
        await self._persist(task)
        log.info("tasks.created", task_id=task.id, type=task.type.value,
                 trigger=task.condition.describe() if task.condition else f"at {task.execute_at}")
        return task

    def get(self, task_id: str) -> Optional[ScheduledTask]:
        return self._tasks.get(task_id)

    def all(self) -> list[ScheduledTask]:
        return sorted(self._tasks.values(), key=lambda t: t.created_at)

    def active(self) -> list[ScheduledTask]:
        return [t for t in self.all() if t.status is TaskStatus.ACTIVE]

    def in_cooldown(self, task: ScheduledTask, now: Optional[float] = None) -> bool:
        if task.last_executed is None:
            return False
        now = self._clock() if now is None else now
        return now - task.last_executed < self._cooldown

    def claim(self, task_id: str, now: Optional[float] = None) -> Optional[ScheduledTask]:
        """active -> executing, or None if the task is not claimable right now.

        Never awaits: the check and the transition happen in one step of the
        event loop, so overlapping ticks cannot both claim the same task.
        """
        task = self._tasks.get(task_id)
        if task is None or task.status is not TaskStatus.ACTIVE:
            return None
        now = self._clock() if now is None else now
        if self.in_cooldown(task, now):
            log.debug("tasks.cooldown_skip", task_id=task_id)
            return None
        task.status = TaskStatus.EXECUTING
        task.last_executed = now
        return task

    async def save(self, task: ScheduledTask) -> None:
        await self._persist(task)

    async def finish(self, task_id: str, success: bool, result: str) -> ScheduledTask:
        """executing -> completed | failed."""
        task = self._tasks[task_id]
        if task.status is not TaskStatus.EXECUTING:
            raise RuntimeError(f"Task {task_id} is {task.status.value}, not executing")
        task.status = TaskStatus.COMPLETED if success else TaskStatus.FAILED
        task.result = result
        task.last_executed = self._clock()
        await self._persist(task)
        log.info("tasks.finished", task_id=task_id, status=task.status.value, result=result)
        return task

    def abandon(self, task_id: str, result: str) -> ScheduledTask:
        """executing -> failed in memory only, for when the store itself is failing."""
        task = self._tasks[task_id]
        task.status = TaskStatus.FAILED
        task.result = result
        task.last_executed = self._clock()
        log.warning("tasks.abandoned", task_id=task_id, result=result)
        return task

    async def fail_executing(self, result: str = INTERRUPTED_RESULT) -> list[ScheduledTask]:
        """Mark every task stuck in executing as failed. Used at startup and on shutdown."""
        stuck = [t for t in self._tasks.values() if t.status is TaskStatus.EXECUTING]
        for task in stuck:
            await self.finish(task.id, False, result)
        if stuck:
            log.warning("tasks.interrupted", count=len(stuck), task_ids=[t.id for t in stuck])
        return stuck
