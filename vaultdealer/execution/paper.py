"""Paper venue: in-memory vault and perps account for ``mode = "paper"``.

Fills at the touch price derived from the live mid, charges taker fees and
settles everything instantly. References look like ``paper-<n>``.
"""

from __future__ import annotations

import itertools
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import structlog

from vaultdealer.shell.contract import (
    AccountState,
    ExecutionIntent,
    OrderType,
    Position,
    SwapParams,
    TransferParams,
    TxStatus,
)
from vaultdealer.shell.errors import VenueError

log = structlog.get_logger()

DEFAULT_SZ_DECIMALS = {"BTC": 5, "ETH": 4, "SOL": 2}


@dataclass
class _PaperPosition:
    size: float
    entry_price: float
    leverage: float


class PaperVenue:
    def __init__(
        self,
        balance: float,
        price_source: Callable[[str], Awaitable[float]],
        sz_decimals: Optional[dict[str, int]] = None,
        spread: float = 0.0005,
        taker_fee: float = 0.0005,
    ) -> None:
        self._cash = balance
        self._price_source = price_source
        self._sz_decimals = dict(DEFAULT_SZ_DECIMALS if sz_decimals is None else sz_decimals)
        self._spread = spread
        self._taker_fee = taker_fee
        self._positions: dict[str, _PaperPosition] = {}
        self._leverage: dict[str, float] = {}
        self._settled: dict[str, TxStatus] = {}
        self._resting: dict[str, ExecutionIntent] = {}
        self._ids = itertools.count(1)

    def _reference(self, status: TxStatus = TxStatus.CONFIRMED) -> str:
        ref = f"paper-{next(self._ids)}"
        self._settled[ref] = status
        return ref

    @property
    def cash(self) -> float:
        return self._cash

    # --- Vault ---

    async def swap(self, key: str, params: SwapParams) -> str:
        ref = self._reference()
        log.info("paper.swap", input=params.input_token, output=params.output_token,
                 amount=params.amount, reference=ref)
        return ref

    async def transfer(self, key: str, params: TransferParams, destination: str) -> str:
        ref = self._reference()
        log.info("paper.transfer", token=params.token_mint, amount=params.amount,
                 destination=destination, reference=ref)
        return ref

    async def get_transaction_status(self, reference: str) -> TxStatus:
        return self._settled.get(reference, TxStatus.PENDING)

    # --- Perps ---

    async def get_best_prices(self, coin: str) -> tuple[float, float]:
        mid = await self._price_source(coin)
        half = mid * self._spread / 2
        return mid - half, mid + half

    async def get_sz_decimals(self, coin: str) -> int:
        return self._sz_decimals.get(coin, 2)

    async def update_leverage(self, key: str, coin: str, leverage: float) -> None:
        self._leverage[coin] = leverage
        log.info("paper.leverage_set", coin=coin, leverage=leverage)

    async def place_order(self, key: str, intent: ExecutionIntent) -> str:
        if intent.size is None or intent.size <= 0:
            raise VenueError(f"Order for {intent.coin} has no size")
        bid, ask = await self.get_best_prices(intent.coin)
        touch = ask if intent.is_buy else bid

        marketable = intent.price is None or (
            intent.price >= touch if intent.is_buy else intent.price <= touch
        )
        if not marketable:
            if intent.order_type is OrderType.IOC:
                raise VenueError(f"IOC order for {intent.coin} could not match at {intent.price}")
            ref = self._reference()
            self._resting[ref] = intent
            log.info("paper.order_resting", coin=intent.coin, price=intent.price, reference=ref)
            return ref

        self._fill(intent, touch)
        ref = self._reference()
        log.info("paper.order_filled", coin=intent.coin, is_buy=intent.is_buy, size=intent.size,
                 price=touch, reduce_only=intent.reduce_only, cloid=intent.idempotency_token, reference=ref)
        return ref

    def _fill(self, intent: ExecutionIntent, price: float) -> None:
        delta = intent.size if intent.is_buy else -intent.size
        pos = self._positions.get(intent.coin)
        current = pos.size if pos else 0.0

        if intent.reduce_only:
            if current == 0 or (current > 0) == (delta > 0):
                raise VenueError(f"Reduce-only order would increase {intent.coin} position")
            if abs(delta) > abs(current):
                delta = -current

        self._cash -= abs(delta) * price * self._taker_fee
        leverage = self._leverage.get(intent.coin, 1.0)

        if pos is None or current == 0:
            self._positions[intent.coin] = _PaperPosition(delta, price, leverage)
            return

        if (current > 0) == (delta > 0):
            new_size = current + delta
            pos.entry_price = (pos.entry_price * abs(current) + price * abs(delta)) / abs(new_size)
            pos.size = new_size
            return

        closed = min(abs(delta), abs(current))
        direction = 1 if current > 0 else -1
        self._cash += (price - pos.entry_price) * closed * direction
        new_size = current + delta
        if abs(new_size) < 1e-12:
            del self._positions[intent.coin]
        elif (new_size > 0) == (current > 0):
            pos.size = new_size
        else:
            self._positions[intent.coin] = _PaperPosition(new_size, price, leverage)

    async def get_account_state(self) -> AccountState:
        positions = []
        unrealized_total = 0.0
        for coin, pos in list(self._positions.items()):
            mid = await self._price_source(coin)
            unrealized = (mid - pos.entry_price) * pos.size
            unrealized_total += unrealized
            positions.append(Position(
                coin=coin,
                size=pos.size,
                entry_price=pos.entry_price,
                unrealized_pnl=round(unrealized, 4),
                leverage=pos.leverage,
            ))
        return AccountState(account_value=self._cash + unrealized_total, positions=tuple(positions))
