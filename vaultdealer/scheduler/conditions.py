"""Condition Evaluator: compares a live indicator value against a task's trigger rule.

A data outage never fires a task and never fails it: the condition reads as
not met and the task is looked at again on the next tick.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

import structlog

from vaultdealer.market.indicators import canonical
from vaultdealer.shell.errors import DataUnavailable

if TYPE_CHECKING:
    from vaultdealer.market.context import MarketContextProvider
    from vaultdealer.shell.contract import Condition

log = structlog.get_logger()

# Fixed field used when an indicator returns a composite value
COMPOSITE_FIELDS = {"macd": "macd", "stoch": "k"}


@dataclass(frozen=True)
class ConditionResult:
    met: bool
    current_value: Optional[float]


def scalar_value(indicator: str, value) -> Optional[float]:
    if not isinstance(value, dict):
        return float(value)
    field = COMPOSITE_FIELDS.get(canonical(indicator))
    if field and field in value:
        return float(value[field])
    for fallback in ("value", canonical(indicator)):
        if fallback in value:
            return float(value[fallback])
    return None


class ConditionEvaluator:
    def __init__(self, market: MarketContextProvider) -> None:
        self._market = market

    async def evaluate(self, condition: Condition) -> ConditionResult:
        try:
            raw = await self._market.get_indicator(condition.symbol, condition.indicator, condition.timeframe)
        except DataUnavailable as e:
            log.warning("condition.data_unavailable", condition=condition.describe(), error=str(e))
            return ConditionResult(False, None)

        current = scalar_value(condition.indicator, raw)
        if current is None:
            log.warning("condition.no_scalar", condition=condition.describe(), fields=sorted(raw))
            return ConditionResult(False, None)

        met = condition.operator.compare(current, condition.value)
        log.debug("condition.evaluated", condition=condition.describe(), current=current, met=met)
        return ConditionResult(met, current)
