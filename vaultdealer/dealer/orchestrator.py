"""Cycle Orchestrator: the dealer loop.

One cycle: gate, sync positions, gather market context in chunks, ask the
oracle per chunk, filter and rank every decision, execute the top of the
list under risk limits, then record telemetry and a rolling history.

Only one cycle runs at a time. A cycle holds the portfolio priority lock
for its whole duration and observes a single cancellation signal before
every phase, asset and trade. Cancellation is not an error: the cycle
simply stops, releases the lock and leaves executed trades as they are.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

import structlog
from apscheduler.triggers.interval import IntervalTrigger

from vaultdealer.execution.reconciler import ExecutionOutcome
from vaultdealer.market.candles import to_coin
from vaultdealer.shell.contract import (
    Action,
    CycleDecision,
    ExecutionIntent,
    OrderType,
    PortfolioSnapshot,
    SettlementStatus,
)
from vaultdealer.shell.errors import CycleCancelled, WrongPassword

if TYPE_CHECKING:
    from apscheduler.schedulers.asyncio import AsyncIOScheduler

    from vaultdealer.dealer.history import CycleHistory
    from vaultdealer.dealer.oracle import DecisionOracle
    from vaultdealer.dealer.portfolio import PortfolioSync
    from vaultdealer.execution.orders import OrderExecutor
    from vaultdealer.market.context import MarketContextProvider
    from vaultdealer.shell.activity import ActivityLogger
    from vaultdealer.shell.config import DealerConfig, SecretsConfig
    from vaultdealer.shell.keyring import Decryptor
    from vaultdealer.shell.risk import RiskManager

log = structlog.get_logger()

CYCLE_JOB_ID = "dealer_cycle"
SYNC_JOB_ID = "dealer_sync"
COUNTED_STATUSES = (SettlementStatus.SUCCESS, SettlementStatus.UNCERTAIN)


@dataclass
class CycleReport:
    started_at: float
    assets_analyzed: int = 0
    decisions: list[CycleDecision] = field(default_factory=list)
    executed: list[tuple[str, Action, SettlementStatus]] = field(default_factory=list)
    skipped: list[tuple[str, str]] = field(default_factory=list)
    trades_executed: int = 0
    fetch_seconds: float = 0.0
    decision_seconds: float = 0.0
    execution_seconds: float = 0.0
    cancelled: bool = False
    aborted: Optional[str] = None

    @property
    def execution_order(self) -> list[str]:
        return [coin for coin, _, _ in self.executed]


class DealerOrchestrator:
    def __init__(
        self,
        config: DealerConfig,
        market: MarketContextProvider,
        oracle: DecisionOracle,
        portfolio: PortfolioSync,
        orders: OrderExecutor,
        risk: RiskManager,
        history: CycleHistory,
        activity: ActivityLogger,
        keyring: Decryptor,
        secrets: SecretsConfig,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config
        self._market = market
        self._oracle = oracle
        self._portfolio = portfolio
        self._orders = orders
        self._risk = risk
        self._history = history
        self._activity = activity
        self._keyring = keyring
        self._secrets = secrets
        self._clock = clock

        self._scheduler: Optional[AsyncIOScheduler] = None
        self._running = False
        self._cancel = asyncio.Event()
        self._cycle_task: Optional[asyncio.Task] = None
        self._last_error: Optional[tuple[float, str]] = None

    # --- Lifecycle ---

    @property
    def is_running_cycle(self) -> bool:
        return self._running

    @property
    def enabled(self) -> bool:
        return self._config.enabled

    def start(self, scheduler: AsyncIOScheduler) -> None:
        """Register the cycle and sync jobs. No-op while autonomous mode is off."""
        self._scheduler = scheduler
        if not self._config.enabled:
            log.info("dealer.disabled")
            return
        scheduler.add_job(
            self.run_cycle, IntervalTrigger(seconds=self._config.check_interval_seconds),
            id=CYCLE_JOB_ID, name="Dealer Cycle", replace_existing=True,
            max_instances=2, coalesce=True,
        )
        scheduler.add_job(
            self._portfolio.sync_job, IntervalTrigger(seconds=self._config.sync_interval_seconds),
            id=SYNC_JOB_ID, name="Portfolio Sync", replace_existing=True,
            coalesce=True,
        )
        log.info("dealer.started", pairs=self._config.trading_pairs,
                 interval=self._config.check_interval_seconds)

    def _stop_loop(self, reason: str) -> None:
        if self._scheduler is not None:
            for job_id in (CYCLE_JOB_ID, SYNC_JOB_ID):
                if self._scheduler.get_job(job_id):
                    self._scheduler.remove_job(job_id)
        log.info("dealer.loop_stopped", reason=reason)

    def cancel(self) -> None:
        """Signal the running cycle, if any, to stop at its next checkpoint."""
        if self._running:
            self._cancel.set()

    async def stop(self, timeout: float = 30.0) -> None:
        self._stop_loop("shutdown")
        self.cancel()
        task = self._cycle_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            done, _ = await asyncio.wait({task}, timeout=timeout)
            if not done:
                log.warning("dealer.cycle_stop_timeout", timeout=timeout)
                task.cancel()

    async def set_enabled(self, enabled: bool) -> None:
        """Toggle autonomous mode. Turning it off cancels the running cycle and both timers."""
        self._config.enabled = enabled
        if enabled:
            if self._scheduler is not None:
                self.start(self._scheduler)
            await self._activity.system("Autonomous dealer enabled")
        else:
            self._stop_loop("autonomous mode off")
            self.cancel()
            await self._activity.system("Autonomous dealer disabled")

    # --- Cancellation helpers ---

    def _checkpoint(self) -> None:
        if self._cancel.is_set():
            raise CycleCancelled()

    async def _pause(self, seconds: float) -> None:
        """Fixed pacing delay that ends early on cancellation."""
        self._checkpoint()
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(self._cancel.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        raise CycleCancelled()

    async def _race(self, awaitable: Awaitable[Any]) -> Any:
        """Await a read-only call, abandoning it if cancellation is signalled first."""
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._cancel.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()
        if task in done:
            return task.result()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise CycleCancelled()

    # --- Cycle ---

    async def run_cycle(self) -> Optional[CycleReport]:
        # Phase 0: gate
        if not self._config.enabled:
            self._stop_loop("autonomous mode off")
            return None
        if self._running:
            log.info("dealer.cycle_skipped", reason="previous cycle still running")
            return None

        self._running = True
        self._cancel = asyncio.Event()
        self._cycle_task = asyncio.current_task()
        report = CycleReport(started_at=self._clock())
        try:
            async with self._portfolio.priority_lock:
                await self._run_phases(report)
        except CycleCancelled:
            report.cancelled = True
            log.info("dealer.cycle_cancelled", executed=len(report.executed))
            await self._activity.cycle("Cycle cancelled", detail={"executed": report.execution_order})
        finally:
            self._running = False
            self._cycle_task = None
        return report

    async def _run_phases(self, report: CycleReport) -> None:
        cfg = self._config
        log.info("dealer.cycle_start", pairs=len(cfg.trading_pairs))

        # Phase 1: sync
        self._checkpoint()
        snapshot = await self._sync()
        if snapshot is None:
            report.aborted = "no portfolio snapshot"
            await self._activity.cycle("Cycle aborted: portfolio state unavailable", "error")
            return

        # Phases 2-3: chunked context gathering and decision collection
        summaries: list[str] = []
        prices: dict[str, float] = {}
        risk_settings = self._risk_settings()
        chunks = [cfg.trading_pairs[i:i + cfg.chunk_size] for i in range(0, len(cfg.trading_pairs), cfg.chunk_size)]

        for index, chunk in enumerate(chunks):
            self._checkpoint()
            fetch_start = time.monotonic()
            contexts = []
            for pair in chunk:
                self._checkpoint()
                coin = to_coin(pair)
                try:
                    ctx = await self._race(self._asset_context(coin, snapshot))
                except CycleCancelled:
                    raise
                except Exception as e:
                    log.warning("dealer.context_failed", coin=coin, error=str(e))
                    await self._activity.skip(f"{coin}: market data unavailable ({e})", "warning")
                    continue
                contexts.append(ctx)
                prices[ctx["coin"]] = ctx["price"]
                await self._pause(cfg.asset_delay_seconds)
            report.fetch_seconds += time.monotonic() - fetch_start
            report.assets_analyzed += len(contexts)

            if contexts:
                self._checkpoint()
                decide_start = time.monotonic()
                try:
                    reply = await self._race(self._oracle.analyze_batch(
                        contexts, risk_settings, cfg.strategy_prompt, self._batch_extra(snapshot),
                    ))
                except CycleCancelled:
                    raise
                except Exception as e:
                    log.error("dealer.oracle_failed", chunk=index + 1, coins=chunk, error=str(e))
                    await self._activity.cycle(f"Oracle failed for chunk {index + 1} ({', '.join(chunk)}): {e}", "error")
                else:
                    report.decisions.extend(reply.decisions)
                    if reply.summary:
                        summaries.append(reply.summary)
                report.decision_seconds += time.monotonic() - decide_start

            if index < len(chunks) - 1:
                await self._pause(cfg.chunk_delay_seconds)

        eligible = await self._filter(report)

        # Phase 4: prioritization
        ranked = self._risk.rank(eligible)

        # Phases 5-6: bounded, paced execution
        exec_start = time.monotonic()
        if ranked:
            await self._execute_ranked(ranked, snapshot, prices, report)
        report.execution_seconds = time.monotonic() - exec_start

        # Phase 7: telemetry and history
        await self._history.record(
            report.started_at, report.decisions, report.assets_analyzed,
            " | ".join(summaries) if summaries else None,
        )
        log.info("dealer.cycle_complete", assets=report.assets_analyzed, decisions=len(report.decisions),
                 executed=len(report.executed), trades=report.trades_executed,
                 fetch_s=round(report.fetch_seconds, 2), decide_s=round(report.decision_seconds, 2),
                 exec_s=round(report.execution_seconds, 2))
        await self._activity.cycle(
            f"Cycle complete: {report.assets_analyzed} assets, {len(report.decisions)} decisions, "
            f"{len(report.executed)} executed",
            detail={
                "timing": {
                    "fetch": round(report.fetch_seconds, 3),
                    "decision": round(report.decision_seconds, 3),
                    "execution": round(report.execution_seconds, 3),
                },
                "executed": report.execution_order,
                "skipped": report.skipped,
            },
        )

    async def _sync(self) -> Optional[PortfolioSnapshot]:
        try:
            return await self._race(self._portfolio.refresh(force=True))
        except CycleCancelled:
            raise
        except Exception as e:
            log.warning("dealer.sync_failed", error=str(e), have_snapshot=self._portfolio.snapshot is not None)
            return self._portfolio.snapshot

    async def _asset_context(self, coin: str, snapshot: PortfolioSnapshot) -> dict:
        cfg = self._config
        ctx = await self._market.build_asset_context(
            coin, cfg.analysis_timeframe, cfg.indicators, cfg.history_candles,
        )
        if cfg.macro_enabled:
            try:
                ctx["macro"] = await self._market.get_macro_snapshot(
                    coin, cfg.macro_timeframe, cfg.macro_indicators, cfg.indicators,
                )
            except Exception as e:
                log.debug("dealer.macro_unavailable", coin=coin, error=str(e))
        # The oracle must never infer position state on its own
        position = snapshot.position_for(coin)
        ctx["openPosition"] = position.as_context() if position else {"hasPosition": False}
        return ctx

    def _risk_settings(self) -> dict:
        cfg = self._config
        settings = {
            "maxLeverage": cfg.max_leverage,
            "maxPositionSizeUSDC": cfg.max_position_size_usdc,
            "maxOpenPositions": cfg.max_open_positions,
            "maxTradesPerCycle": cfg.max_trades_per_cycle,
            "confidenceThreshold": cfg.threshold,
            "aggressiveMode": cfg.aggressive_mode,
        }
        if cfg.stop_loss_enabled:
            settings["stopLossPercent"] = cfg.stop_loss_percent
        if cfg.take_profit_enabled:
            settings["takeProfitPercent"] = cfg.take_profit_percent
        return settings

    def _batch_extra(self, snapshot: PortfolioSnapshot) -> dict:
        portfolio = {
            "balance": round(snapshot.account_value, 2),
            "positions": [dict(p.as_context(), coin=p.coin) for p in snapshot.positions],
            "settings": self._risk_settings(),
            "userFees": {"maker": self._config.maker_fee, "taker": self._config.taker_fee},
        }
        if self._last_error is not None:
            at, message = self._last_error
            if self._clock() - at < self._config.error_memory_seconds:
                portfolio["lastExecutionError"] = message
        extra = {"portfolio": portfolio}
        history = self._history.context_for_oracle()
        if history:
            extra["cycleHistory"] = history
        return extra

    async def _filter(self, report: CycleReport) -> list[CycleDecision]:
        """Log every rationale; drop HOLDs and decisions under the confidence threshold."""
        eligible = []
        for decision in report.decisions:
            await self._activity.reasoning(
                f"{decision.coin} {decision.action.value} ({decision.confidence:.2f}): {decision.reason}",
                detail={"coin": decision.coin, "action": decision.action.value,
                        "confidence": decision.confidence, "reason": decision.reason},
            )
            if decision.action is Action.HOLD:
                continue
            check = self._risk.check_confidence(decision)
            if not check.passed:
                report.skipped.append((decision.coin, check.reason))
                await self._activity.skip(f"{decision.coin} {decision.action.value}: {check.reason}")
                continue
            eligible.append(decision)
        return eligible

    async def _execute_ranked(
        self,
        ranked: list[CycleDecision],
        snapshot: PortfolioSnapshot,
        prices: dict[str, float],
        report: CycleReport,
    ) -> None:
        self._checkpoint()
        try:
            key = self._keyring.decrypt(self._secrets.venue_secret, self._secrets.vault_password)
        except WrongPassword as e:
            log.error("dealer.wrong_password")
            await self._activity.trade(f"Execution skipped: {e}", "error")
            return

        open_coins = {p.coin for p in snapshot.positions}
        available = self._available_balance(snapshot)
        attempted = 0

        for decision in ranked:
            self._checkpoint()
            check = self._risk.check_decision(decision, report.trades_executed, open_coins)
            if not check.passed:
                report.skipped.append((decision.coin, check.reason))
                await self._activity.skip(f"{decision.coin} {decision.action.value}: {check.reason}")
                continue

            intent = await self._build_intent(decision, available, prices, report)
            if intent is None:
                continue

            if attempted:
                await self._pause(self._config.execution_delay_seconds)
            attempted += 1

            # Venue calls are never abandoned half-way: no race here
            outcome = await self._orders.submit(key, intent)
            report.executed.append((decision.coin, decision.action, outcome.status))
            await self._record_outcome(decision, intent, outcome)

            if outcome.status in COUNTED_STATUSES:
                if decision.action is Action.CLOSE:
                    open_coins.discard(decision.coin)
                else:
                    report.trades_executed += 1
                    open_coins.add(decision.coin)
                    available = max(0.0, available - intent.size_usdc / intent.leverage)

    def _available_balance(self, snapshot: PortfolioSnapshot) -> float:
        margin = sum(p.exposure / max(p.leverage, 1) for p in snapshot.positions)
        return max(0.0, snapshot.account_value - margin)

    async def _build_intent(
        self,
        decision: CycleDecision,
        available: float,
        prices: dict[str, float],
        report: CycleReport,
    ) -> Optional[ExecutionIntent]:
        if decision.action is Action.CLOSE:
            try:
                position = await self._portfolio.fetch_position(decision.coin)
            except Exception as e:
                log.warning("dealer.close_lookup_failed", coin=decision.coin, error=str(e))
                report.skipped.append((decision.coin, f"position lookup failed: {e}"))
                await self._activity.skip(f"{decision.coin} CLOSE: position lookup failed ({e})", "warning")
                return None
            if position is None:
                report.skipped.append((decision.coin, "no open position"))
                await self._activity.skip(f"{decision.coin} CLOSE: no open position on the venue", "warning")
                return None
            return ExecutionIntent(
                coin=decision.coin,
                action=Action.CLOSE,
                order_type=OrderType.MARKET,
                size_usdc=position.exposure,
                leverage=position.leverage,
                is_buy=position.size < 0,
                size=abs(position.size),
                reduce_only=True,
                reason=decision.reason,
            )

        leverage = self._risk.cap_leverage(decision)
        size_usdc = self._risk.size_trade(decision, available, leverage)
        check = self._risk.check_size(decision, size_usdc)
        if not check.passed:
            report.skipped.append((decision.coin, check.reason))
            await self._activity.skip(f"{decision.coin} {decision.action.value}: {check.reason}")
            return None

        is_buy = decision.action is Action.BUY
        reference_price = decision.price or prices.get(decision.coin, 0.0)
        stop_loss, take_profit = self._risk.protective_levels(decision, reference_price, is_buy)
        return ExecutionIntent(
            coin=decision.coin,
            action=decision.action,
            order_type=decision.order_type,
            size_usdc=size_usdc,
            leverage=leverage,
            is_buy=is_buy,
            price=decision.price,
            stop_loss=stop_loss,
            take_profit=take_profit,
            reason=decision.reason,
        )

    async def _record_outcome(
        self, decision: CycleDecision, intent: ExecutionIntent, outcome: ExecutionOutcome
    ) -> None:
        label = f"{decision.action.value} {decision.coin} ${intent.size_usdc:.2f} x{intent.leverage:g}"
        detail = {"reference": outcome.reference, "cloid": intent.idempotency_token,
                  "confidence": decision.confidence}
        if outcome.status is SettlementStatus.SUCCESS:
            await self._activity.trade(f"{label} executed: {outcome.reference}", detail=detail)
        elif outcome.status is SettlementStatus.UNCERTAIN:
            await self._activity.trade(
                f"{label} status unknown - verify manually: {outcome.reference}", "warning", detail
            )
        else:
            self._last_error = (self._clock(), f"{label} failed: {outcome.message}")
            await self._activity.trade(f"{label} failed: {outcome.message}", "error", detail)
