"""VaultDealer: main entry point.

Startup: load config -> connect DB -> load tasks and history -> wire venues -> start scheduler
Shutdown: stop dealer -> drain scheduler ticks -> stop APScheduler -> close clients -> close DB
"""

from __future__ import annotations

import asyncio
import signal
from typing import Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from vaultdealer.dealer.ai_client import AIClient
from vaultdealer.dealer.history import CycleHistory
from vaultdealer.dealer.oracle import AIDecisionOracle, DecisionOracle
from vaultdealer.dealer.orchestrator import DealerOrchestrator
from vaultdealer.dealer.portfolio import PortfolioSync
from vaultdealer.execution.orders import OrderExecutor
from vaultdealer.execution.paper import PaperVenue
from vaultdealer.execution.reconciler import ExecutionReconciler
from vaultdealer.execution.venue import PerpsVenue, VaultVenue
from vaultdealer.market.candles import CandleClient
from vaultdealer.market.context import MarketContextProvider
from vaultdealer.scheduler.conditions import ConditionEvaluator
from vaultdealer.scheduler.dispatch import TaskDispatcher
from vaultdealer.scheduler.loop import SchedulerLoop
from vaultdealer.scheduler.tasks import TaskStore
from vaultdealer.shell.activity import ActivityLogger
from vaultdealer.shell.config import Config, load_config
from vaultdealer.shell.contract import Condition, ScheduledTask, TaskParams, TaskType
from vaultdealer.shell.database import Database
from vaultdealer.shell.keyring import Decryptor, StaticKeyring
from vaultdealer.shell.risk import RiskManager
from vaultdealer.shell.store import HISTORY_NAMESPACE, TASKS_NAMESPACE, SqliteStore
from vaultdealer.utils.logging import setup_logging

log = structlog.get_logger()

PAPER_PASSWORD = "paper"


class VaultDealer:
    """Wires every service explicitly; nothing is a module-level singleton."""

    def __init__(
        self,
        config: Optional[Config] = None,
        vault: Optional[VaultVenue] = None,
        perps: Optional[PerpsVenue] = None,
        keyring: Optional[Decryptor] = None,
        oracle: Optional[DecisionOracle] = None,
    ) -> None:
        self._config = config or load_config()
        setup_logging(self._config.log_level)

        self._vault = vault
        self._perps = perps
        self._keyring = keyring
        self._oracle = oracle

        self._db = Database(self._config.db_path)
        self._activity = ActivityLogger(self._db)
        self._candles: Optional[CandleClient] = None
        self._tasks: Optional[TaskStore] = None
        self._scheduler_loop: Optional[SchedulerLoop] = None
        self._dealer: Optional[DealerOrchestrator] = None
        self._ai: Optional[AIClient] = None
        self._scheduler: Optional[AsyncIOScheduler] = None
        self._running = False

    @property
    def tasks(self) -> TaskStore:
        if self._tasks is None:
            raise RuntimeError("VaultDealer not started")
        return self._tasks

    @property
    def dealer(self) -> DealerOrchestrator:
        if self._dealer is None:
            raise RuntimeError("VaultDealer not started")
        return self._dealer

    @property
    def activity(self) -> ActivityLogger:
        return self._activity

    def _wire_venues(self, market: MarketContextProvider) -> None:
        secrets = self._config.secrets
        if self._config.is_paper():
            paper = PaperVenue(self._config.paper_balance_usd, market.get_mid_price,
                               taker_fee=self._config.dealer.taker_fee)
            self._vault = self._vault or paper
            self._perps = self._perps or paper
            if not secrets.vault_password:
                secrets.vault_password = PAPER_PASSWORD
            self._keyring = self._keyring or StaticKeyring(
                {secrets.vault_secret: "paper-vault-key", secrets.venue_secret: "paper-venue-key"},
                secrets.vault_password,
            )
        elif self._vault is None or self._perps is None or self._keyring is None:
            raise RuntimeError("Live mode needs vault and perps venue clients and a keyring injected")

    async def start(self) -> None:
        cfg = self._config
        log.info("vaultdealer.starting", mode=cfg.mode)

        # 1. Database and stores
        await self._db.connect()
        self._tasks = TaskStore(SqliteStore(self._db, TASKS_NAMESPACE), cfg.scheduler.cooldown_seconds)
        await self._tasks.load()
        history = CycleHistory(SqliteStore(self._db, HISTORY_NAMESPACE), "perps", cfg.dealer.history_size)
        await history.load()

        # 2. Market data and venues
        self._candles = CandleClient(cfg.market)
        market = MarketContextProvider(self._candles, cfg.market.candle_limit)
        self._wire_venues(market)

        # 3. Execution
        reconciler = ExecutionReconciler(cfg.execution.settle_attempts, cfg.execution.settle_interval_seconds)
        orders = OrderExecutor(self._perps, reconciler, cfg.execution.market_slippage)

        # 4. Scheduler loop
        dispatcher = TaskDispatcher(self._keyring, cfg.secrets, self._vault, orders, reconciler, self._activity)
        self._scheduler_loop = SchedulerLoop(
            self._tasks, ConditionEvaluator(market), dispatcher, self._activity, cfg.scheduler,
        )

        # 5. Dealer
        if self._oracle is None:
            self._ai = AIClient(cfg.ai, self._db)
            await self._ai.initialize()
            self._oracle = AIDecisionOracle(self._ai)
        self._dealer = DealerOrchestrator(
            cfg.dealer, market, self._oracle, PortfolioSync(self._perps), orders,
            RiskManager(cfg.dealer), history, self._activity, self._keyring, cfg.secrets,
        )

        # 6. APScheduler
        self._scheduler = AsyncIOScheduler()
        await self._scheduler_loop.start(self._scheduler)
        self._dealer.start(self._scheduler)
        self._scheduler.start()

        self._running = True
        await self._activity.system(
            f"Engine online ({cfg.mode}): {len(self._tasks.active())} active tasks, "
            f"dealer {'on' if cfg.dealer.enabled else 'off'}"
        )
        log.info("vaultdealer.started", mode=cfg.mode, active_tasks=len(self._tasks.active()))

    async def run_forever(self) -> None:
        while self._running:
            await asyncio.sleep(1)

    async def schedule(
        self,
        task_type: TaskType | str,
        params: TaskParams | dict | None = None,
        execute_at: Optional[float] = None,
        condition: Condition | dict | None = None,
    ) -> ScheduledTask:
        task = await self.tasks.create(task_type, params, execute_at, condition)
        trigger = task.condition.describe() if task.condition else f"at {task.execute_at}"
        await self._activity.scheduler(f"Scheduled {task.type.value} task {task.short_id} ({trigger})",
                                       detail=task.to_dict())
        return task

    async def stop(self) -> None:
        """Graceful shutdown sequence."""
        log.info("vaultdealer.stopping")
        self._running = False

        # 1. Dealer: cancel the running cycle and remove its jobs
        if self._dealer:
            await self._dealer.stop()

        # 2. Scheduler loop: drain in-flight ticks, fail anything left executing
        if self._scheduler_loop:
            await self._scheduler_loop.stop()

        # 3. APScheduler
        if self._scheduler and self._scheduler.running:
            self._scheduler.shutdown(wait=False)

        # 4. Market data client
        if self._candles:
            await self._candles.close()

        # 5. Database
        if self._db.conn_open:
            detail = None
            if self._ai:
                try:
                    detail = {"ai_usage_today": await self._ai.get_daily_usage()}
                except Exception as e:
                    log.warning("vaultdealer.usage_unavailable", error=str(e))
            await self._activity.system("Engine stopped", detail=detail)
            await self._db.close()

        log.info("vaultdealer.stopped")


async def main() -> None:
    engine = VaultDealer()

    loop = asyncio.get_running_loop()
    _stop_task = None

    def signal_handler():
        nonlocal _stop_task
        if _stop_task is None:
            _stop_task = asyncio.create_task(engine.stop())

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await engine.start()
        await engine.run_forever()
    finally:
        if _stop_task is not None:
            await _stop_task
        else:
            await engine.stop()


def run() -> None:
    """Entry point for the ``vaultdealer`` console script."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
