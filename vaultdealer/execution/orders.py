"""Order preparation: coin size from notional, market-to-IOC conversion, venue price rounding."""

from __future__ import annotations

import math
from dataclasses import replace
from typing import TYPE_CHECKING

import structlog

from vaultdealer.execution.reconciler import ExecutionOutcome
from vaultdealer.shell.contract import ExecutionIntent, OrderType, SettlementStatus
from vaultdealer.shell.errors import DataUnavailable, VenueError

if TYPE_CHECKING:
    from vaultdealer.execution.reconciler import ExecutionReconciler
    from vaultdealer.execution.venue import PerpsVenue

log = structlog.get_logger()

MAX_PRICE_DECIMALS = 6
SIGNIFICANT_FIGURES = 5


def round_price(price: float, sz_decimals: int) -> float:
    """At most 5 significant figures and (6 - szDecimals) decimals."""
    decimals = max(0, MAX_PRICE_DECIMALS - sz_decimals)
    px = round(price, decimals)
    px = float(f"{px:.{SIGNIFICANT_FIGURES}g}")
    return round(px, decimals)


def floor_size(size: float, sz_decimals: int) -> float:
    factor = 10 ** sz_decimals
    return math.floor(size * factor + 1e-9) / factor


async def prepare_order(venue: PerpsVenue, intent: ExecutionIntent, slippage: float = 0.05) -> ExecutionIntent:
    """Resolve size and price against the live book. Returns a new intent; the input is untouched."""
    bid, ask = await venue.get_best_prices(intent.coin)
    sz_decimals = await venue.get_sz_decimals(intent.coin)
    touch = ask if intent.is_buy else bid
    if touch <= 0:
        raise VenueError(f"No usable {'ask' if intent.is_buy else 'bid'} for {intent.coin}")

    size = intent.size
    if size is None:
        size = intent.size_usdc / touch
    size = floor_size(size, sz_decimals)
    if size <= 0:
        raise VenueError(f"Order size for {intent.coin} rounds to zero at {sz_decimals} decimals")

    order_type = intent.order_type
    price = intent.price
    if order_type is OrderType.MARKET:
        price = touch * (1 + slippage) if intent.is_buy else touch * (1 - slippage)
        order_type = OrderType.IOC
    elif price is None:
        price = touch

    return replace(intent, size=size, price=round_price(price, sz_decimals), order_type=order_type)


class OrderExecutor:
    """Leverage update, order preparation and a reconciled submission, in that order."""

    def __init__(self, venue: PerpsVenue, reconciler: ExecutionReconciler, slippage: float = 0.05) -> None:
        self._venue = venue
        self._reconciler = reconciler
        self._slippage = slippage

    @property
    def venue(self) -> PerpsVenue:
        return self._venue

    async def submit(self, key: str, intent: ExecutionIntent) -> ExecutionOutcome:
        label = f"{intent.action.value} {intent.coin}"
        try:
            if intent.leverage != 1 and not intent.reduce_only:
                await self._venue.update_leverage(key, intent.coin, intent.leverage)
            prepared = await prepare_order(self._venue, intent, self._slippage)
        except (VenueError, DataUnavailable) as e:
            log.error("orders.prepare_failed", label=label, error=str(e))
            return ExecutionOutcome(SettlementStatus.FAILED, None, str(e))

        log.info("orders.submit", label=label, size=prepared.size, price=prepared.price,
                 order_type=prepared.order_type.value, reduce_only=prepared.reduce_only,
                 cloid=prepared.idempotency_token)
        return await self._reconciler.execute(
            lambda: self._venue.place_order(key, prepared), self._venue, label
        )
