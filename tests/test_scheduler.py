"""Scheduler loop: due detection, exclusive execution, recovery and shutdown."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from tests.helpers import FakeClock, MemoryStore


class SequenceMarket:
    """Returns the next value for every indicator read."""

    def __init__(self, values):
        self.values = list(values)
        self.reads = 0

    async def get_indicator(self, symbol, indicator, timeframe="60", params=None):
        self.reads += 1
        return self.values.pop(0)


class AlwaysMet:
    def __init__(self):
        self.calls = 0

    async def evaluate(self, condition):
        from vaultdealer.scheduler.conditions import ConditionResult

        self.calls += 1
        await asyncio.sleep(0)
        return ConditionResult(True, 1.0)


def _outcome(status_name="SUCCESS", reference="ref-1", message=""):
    from vaultdealer.execution.reconciler import ExecutionOutcome
    from vaultdealer.shell.contract import SettlementStatus

    return ExecutionOutcome(SettlementStatus[status_name], reference, message)


def _build(evaluator, dispatcher=None, clock=None, stop_timeout=30.0):
    from vaultdealer.scheduler.loop import SchedulerLoop
    from vaultdealer.scheduler.tasks import TaskStore
    from vaultdealer.shell.config import SchedulerConfig

    clock = clock or FakeClock()
    tasks = TaskStore(MemoryStore(), 300, clock)
    if dispatcher is None:
        dispatcher = MagicMock()
        dispatcher.execute = AsyncMock(return_value=_outcome())
    activity = AsyncMock()
    loop = SchedulerLoop(tasks, evaluator, dispatcher, activity,
                         SchedulerConfig(tick_seconds=10, stop_timeout_seconds=stop_timeout), clock)
    return loop, tasks, dispatcher, activity


def _rsi_below_30():
    return {"symbol": "BTCUSDT", "indicator": "rsi", "operator": "<", "value": 30}


@pytest.mark.asyncio
async def test_conditional_alert_fires_once_when_condition_met():
    """RSI reads 35, 32, 28: the alert fires on the third tick and never again."""
    from vaultdealer.execution.reconciler import ExecutionReconciler
    from vaultdealer.scheduler.conditions import ConditionEvaluator
    from vaultdealer.scheduler.dispatch import TaskDispatcher
    from vaultdealer.shell.config import SecretsConfig
    from vaultdealer.shell.contract import TaskStatus, TaskType

    market = SequenceMarket([35.0, 32.0, 28.0])
    signal_log = AsyncMock()
    dispatcher = TaskDispatcher(MagicMock(), SecretsConfig(), MagicMock(), MagicMock(),
                                ExecutionReconciler(0, 0), signal_log)
    loop, tasks, _, activity = _build(ConditionEvaluator(market), dispatcher)
    task = await tasks.create(TaskType.ALERT, {"message": "BTC oversold"}, condition=_rsi_below_30())

    assert await loop.tick() == []
    assert await loop.tick() == []
    assert task.status is TaskStatus.ACTIVE

    assert await loop.tick() == [task.id]
    assert task.status is TaskStatus.COMPLETED
    assert task.result == "ALERT_TRIGGERED"
    signal_log.log.assert_awaited_once()
    assert signal_log.log.call_args.args[:3] == ("SIGNAL", "Alert: BTC oversold", "warning")

    assert await loop.tick() == []
    assert market.reads == 3


@pytest.mark.asyncio
async def test_time_based_task_waits_for_deadline():
    from vaultdealer.shell.contract import TaskStatus, TaskType

    clock = FakeClock()
    loop, tasks, dispatcher, _ = _build(AlwaysMet(), clock=clock)
    task = await tasks.create(TaskType.SWAP, {"input_token": "SOL", "output_token": "USDC", "amount": 1},
                              execute_at=clock.now + 60)

    assert await loop.tick() == []
    clock.advance(60)
    assert await loop.tick() == [task.id]
    assert task.status is TaskStatus.COMPLETED
    assert task.result == "Success: ref-1"
    dispatcher.execute.assert_awaited_once_with(task)


@pytest.mark.asyncio
async def test_overlapping_ticks_execute_a_task_once():
    from vaultdealer.shell.contract import TaskStatus, TaskType

    async def slow_execute(task):
        await asyncio.sleep(0)
        return _outcome()

    dispatcher = MagicMock()
    dispatcher.execute = AsyncMock(side_effect=slow_execute)
    evaluator = AlwaysMet()
    loop, tasks, _, _ = _build(evaluator, dispatcher)
    task = await tasks.create(TaskType.ALERT, condition=_rsi_below_30())

    first, second = await asyncio.gather(loop.tick(), loop.tick())

    assert evaluator.calls == 2
    assert sorted([first, second]) == [[], [task.id]]
    assert dispatcher.execute.await_count == 1
    assert task.status is TaskStatus.COMPLETED


@pytest.mark.asyncio
async def test_dispatch_error_fails_task():
    from vaultdealer.shell.contract import TaskStatus, TaskType

    dispatcher = MagicMock()
    dispatcher.execute = AsyncMock(side_effect=RuntimeError("boom"))
    loop, tasks, _, activity = _build(AlwaysMet(), dispatcher)
    task = await tasks.create(TaskType.ALERT, condition=_rsi_below_30())

    await loop.tick()
    assert task.status is TaskStatus.FAILED
    assert task.result == "Failed: boom"
    summary, severity = activity.task.call_args.args[:2]
    assert task.short_id in summary
    assert severity == "error"

    # Failed tasks are terminal
    assert await loop.tick() == []
    assert dispatcher.execute.await_count == 1


@pytest.mark.asyncio
async def test_uncertain_outcome_completes_with_warning():
    from vaultdealer.shell.contract import TaskStatus, TaskType

    dispatcher = MagicMock()
    dispatcher.execute = AsyncMock(return_value=_outcome("UNCERTAIN", "sig-9"))
    loop, tasks, _, activity = _build(AlwaysMet(), dispatcher)
    task = await tasks.create(TaskType.ALERT, condition=_rsi_below_30())

    await loop.tick()
    assert task.status is TaskStatus.COMPLETED
    assert task.result == "Warning: Status unknown - verify manually: sig-9"
    assert activity.task.call_args.args[1] == "warning"


@pytest.mark.asyncio
async def test_start_recovers_interrupted_tasks_and_registers_job():
    from vaultdealer.scheduler.loop import TICK_JOB_ID
    from vaultdealer.scheduler.tasks import INTERRUPTED_RESULT
    from vaultdealer.shell.contract import TaskStatus, TaskType

    loop, tasks, _, activity = _build(AlwaysMet())
    task = await tasks.create(TaskType.ALERT, condition=_rsi_below_30())
    tasks.claim(task.id)

    scheduler = MagicMock()
    await loop.start(scheduler)

    assert task.status is TaskStatus.FAILED
    assert task.result == INTERRUPTED_RESULT
    activity.task.assert_awaited_once()
    kwargs = scheduler.add_job.call_args.kwargs
    assert kwargs["id"] == TICK_JOB_ID
    assert kwargs["max_instances"] == 3
    assert scheduler.add_job.call_args.args[0] == loop.tick


@pytest.mark.asyncio
async def test_stop_cancels_stuck_execution_and_fails_task():
    from vaultdealer.scheduler.loop import SHUTDOWN_RESULT, TICK_JOB_ID
    from vaultdealer.shell.contract import TaskStatus, TaskType

    started = asyncio.Event()
    never = asyncio.Event()

    async def hang(task):
        started.set()
        await never.wait()

    dispatcher = MagicMock()
    dispatcher.execute = AsyncMock(side_effect=hang)
    loop, tasks, _, _ = _build(AlwaysMet(), dispatcher, stop_timeout=0.05)
    task = await tasks.create(TaskType.ALERT, condition=_rsi_below_30())

    scheduler = MagicMock()
    await loop.start(scheduler)
    tick = asyncio.create_task(loop.tick())
    await started.wait()
    assert task.status is TaskStatus.EXECUTING

    await loop.stop()

    assert tick.cancelled()
    assert task.status is TaskStatus.FAILED
    assert task.result == SHUTDOWN_RESULT
    scheduler.remove_job.assert_called_once_with(TICK_JOB_ID)


@pytest.mark.asyncio
async def test_stop_waits_for_in_flight_execution():
    from vaultdealer.shell.contract import TaskStatus, TaskType

    started = asyncio.Event()
    release = asyncio.Event()

    async def gated(task):
        started.set()
        await release.wait()
        return _outcome()

    dispatcher = MagicMock()
    dispatcher.execute = AsyncMock(side_effect=gated)
    loop, tasks, _, _ = _build(AlwaysMet(), dispatcher, stop_timeout=5)
    task = await tasks.create(TaskType.ALERT, condition=_rsi_below_30())

    tick = asyncio.create_task(loop.tick())
    await started.wait()
    stopper = asyncio.create_task(loop.stop())
    await asyncio.sleep(0)
    release.set()
    await stopper

    assert await tick == [task.id]
    assert task.status is TaskStatus.COMPLETED


class FailingStore(MemoryStore):
    def __init__(self):
        super().__init__()
        self.failing = False

    async def set(self, key, value):
        if self.failing:
            raise OSError("disk I/O error")
        await super().set(key, value)


@pytest.mark.asyncio
async def test_store_error_after_claim_fails_task_instead_of_stranding_it():
    from vaultdealer.scheduler.loop import SchedulerLoop
    from vaultdealer.scheduler.tasks import TaskStore
    from vaultdealer.shell.config import SchedulerConfig
    from vaultdealer.shell.contract import TaskStatus, TaskType

    clock = FakeClock()
    store = FailingStore()
    tasks = TaskStore(store, 300, clock)
    dispatcher = MagicMock()
    dispatcher.execute = AsyncMock(return_value=_outcome())
    loop = SchedulerLoop(tasks, AlwaysMet(), dispatcher, AsyncMock(), SchedulerConfig(tick_seconds=10), clock)
    task = await tasks.create(TaskType.ALERT, condition=_rsi_below_30())

    store.failing = True
    await loop.tick()
    store.failing = False

    assert task.status is TaskStatus.FAILED
    assert "disk I/O error" in task.result
    dispatcher.execute.assert_not_awaited()
    assert not [t for t in tasks.all() if t.status is TaskStatus.EXECUTING]

    clock.advance(3600)
    assert await loop.tick() == []
