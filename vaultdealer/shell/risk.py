"""Risk Manager: limits applied to every oracle decision before it can execute.

Closing risk is never rate-limited: CLOSE bypasses the per-cycle trade cap,
the position-count gate and the minimum-size floor.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import structlog

from vaultdealer.shell.config import DealerConfig
from vaultdealer.shell.contract import Action, CycleDecision

log = structlog.get_logger()


@dataclass
class RiskCheck:
    passed: bool
    reason: str


class RiskManager:
    """Enforces the dealer's confidence, cap, exposure and sizing limits."""

    def __init__(self, config: DealerConfig) -> None:
        self._config = config

    @property
    def threshold(self) -> float:
        return self._config.threshold

    def effective_confidence(self, decision: CycleDecision) -> float:
        return decision.effective_confidence(self._config.close_priority_boost)

    def check_confidence(self, decision: CycleDecision) -> RiskCheck:
        score = self.effective_confidence(decision)
        if score < self.threshold:
            return RiskCheck(False, f"Confidence {score:.2f} below threshold {self.threshold:.2f}")
        return RiskCheck(True, "OK")

    def rank(self, decisions: list[CycleDecision]) -> list[CycleDecision]:
        """Highest effective confidence first. Stable for equal scores."""
        return sorted(decisions, key=self.effective_confidence, reverse=True)

    def check_decision(
        self,
        decision: CycleDecision,
        trades_executed: int,
        open_coins: set[str],
    ) -> RiskCheck:
        """Per-cycle cap and open-position gate, evaluated right before execution."""
        if decision.action is Action.CLOSE:
            return RiskCheck(True, "OK")

        if trades_executed >= self._config.max_trades_per_cycle:
            return RiskCheck(
                False, f"Trade cap reached: {trades_executed}/{self._config.max_trades_per_cycle}"
            )

        # Adding to an existing position is an adjustment, not a new slot
        if decision.action is Action.BUY and decision.coin not in open_coins:
            if len(open_coins) >= self._config.max_open_positions:
                return RiskCheck(
                    False, f"Max positions: {len(open_coins)}/{self._config.max_open_positions}"
                )

        return RiskCheck(True, "OK")

    def cap_leverage(self, decision: CycleDecision) -> float:
        requested = decision.suggested_leverage or self._config.max_leverage
        leverage = min(requested, self._config.max_leverage)
        if leverage < requested:
            log.info("risk.leverage_capped", coin=decision.coin, requested=requested, capped=leverage)
        return max(leverage, 1)

    def size_trade(self, decision: CycleDecision, balance: float, leverage: float) -> float:
        """min(requested, max position size, balance x leverage x affordability)."""
        requested = decision.size_usdc or self._config.max_position_size_usdc or self._config.default_trade_usdc
        affordable = balance * leverage * self._config.affordability_factor
        size = min(requested, self._config.max_position_size_usdc, affordable)
        if size < requested:
            log.debug("risk.clamped_size", coin=decision.coin, requested=requested, clamped=round(size, 2))
        return max(size, 0.0)

    def check_size(self, decision: CycleDecision, size_usdc: float) -> RiskCheck:
        if decision.action is not Action.CLOSE and size_usdc < self._config.min_trade_usdc:
            return RiskCheck(False, f"Size ${size_usdc:.2f} below ${self._config.min_trade_usdc:.2f} minimum")
        return RiskCheck(True, "OK")

    def protective_levels(
        self, decision: CycleDecision, price: float, is_buy: bool
    ) -> tuple[Optional[float], Optional[float]]:
        """Stop-loss / take-profit: user percent from the entry price if enabled, else the oracle's levels."""
        cfg = self._config
        direction = 1 if is_buy else -1

        stop_loss = decision.stop_loss
        if cfg.stop_loss_enabled and price > 0:
            stop_loss = price * (1 - direction * cfg.stop_loss_percent / 100)

        take_profit = decision.take_profit
        if cfg.take_profit_enabled and price > 0:
            take_profit = price * (1 + direction * cfg.take_profit_percent / 100)

        return stop_loss, take_profit
