"""Order preparation and submission."""

import pytest


class BookVenue:
    """Fixed top of book; records every mutation."""

    def __init__(self, bid=99.0, ask=101.0, sz_decimals=2):
        self.bid = bid
        self.ask = ask
        self.sz_decimals = sz_decimals
        self.leverage_calls = []
        self.orders = []

    async def get_best_prices(self, coin):
        return self.bid, self.ask

    async def get_sz_decimals(self, coin):
        return self.sz_decimals

    async def update_leverage(self, key, coin, leverage):
        self.leverage_calls.append((key, coin, leverage))

    async def place_order(self, key, intent):
        self.orders.append((key, intent))
        return f"oid-{len(self.orders)}"

    async def get_transaction_status(self, reference):
        from vaultdealer.shell.contract import TxStatus
        return TxStatus.CONFIRMED


def _intent(**overrides):
    from vaultdealer.shell.contract import Action, ExecutionIntent, OrderType

    fields = dict(coin="SOL", action=Action.BUY, order_type=OrderType.LIMIT, size_usdc=50.0,
                  leverage=1, is_buy=True)
    fields.update(overrides)
    return ExecutionIntent(**fields)


def test_round_price():
    from vaultdealer.execution.orders import round_price

    assert round_price(65432.123, 5) == 65432.0
    assert round_price(0.123456789, 0) == 0.12346
    assert round_price(106.05, 2) == 106.05
    assert round_price(3012.3449, 4) == 3012.3


def test_floor_size():
    from vaultdealer.execution.orders import floor_size

    assert floor_size(0.123456, 4) == 0.1234
    assert floor_size(0.49, 2) == 0.49
    assert floor_size(0.009, 2) == 0.0


@pytest.mark.asyncio
async def test_market_order_becomes_ioc_with_slippage():
    from vaultdealer.execution.orders import prepare_order
    from vaultdealer.shell.contract import OrderType

    intent = _intent(order_type=OrderType.MARKET)
    prepared = await prepare_order(BookVenue(), intent, slippage=0.05)

    assert prepared.order_type is OrderType.IOC
    assert prepared.size == 0.49
    assert prepared.price == 106.05
    assert prepared.idempotency_token == intent.idempotency_token
    # Input intent is untouched
    assert intent.size is None
    assert intent.order_type is OrderType.MARKET


@pytest.mark.asyncio
async def test_limit_sell_defaults_to_bid():
    from vaultdealer.execution.orders import prepare_order
    from vaultdealer.shell.contract import Action, OrderType

    prepared = await prepare_order(BookVenue(), _intent(action=Action.SELL, is_buy=False, size_usdc=99.0))
    assert prepared.order_type is OrderType.LIMIT
    assert prepared.price == 99.0
    assert prepared.size == 1.0


@pytest.mark.asyncio
async def test_unusable_orders_raise():
    from vaultdealer.execution.orders import prepare_order
    from vaultdealer.shell.errors import VenueError

    with pytest.raises(VenueError):
        await prepare_order(BookVenue(), _intent(size_usdc=0.5))
    with pytest.raises(VenueError):
        await prepare_order(BookVenue(ask=0.0), _intent())


@pytest.mark.asyncio
async def test_submit_updates_leverage_then_places():
    from vaultdealer.execution.orders import OrderExecutor
    from vaultdealer.execution.reconciler import ExecutionReconciler
    from vaultdealer.shell.contract import SettlementStatus

    venue = BookVenue()
    executor = OrderExecutor(venue, ExecutionReconciler(0, 0))
    outcome = await executor.submit("key", _intent(leverage=3))

    assert outcome.status is SettlementStatus.SUCCESS
    assert outcome.reference == "oid-1"
    assert venue.leverage_calls == [("key", "SOL", 3)]
    assert venue.orders[0][1].size == 0.49


@pytest.mark.asyncio
async def test_reduce_only_skips_leverage_update():
    from vaultdealer.execution.orders import OrderExecutor
    from vaultdealer.execution.reconciler import ExecutionReconciler
    from vaultdealer.shell.contract import Action, OrderType

    venue = BookVenue()
    executor = OrderExecutor(venue, ExecutionReconciler(0, 0))
    await executor.submit("key", _intent(action=Action.CLOSE, order_type=OrderType.MARKET, is_buy=False,
                                         size=2.0, leverage=4, reduce_only=True))
    assert venue.leverage_calls == []
    assert venue.orders[0][1].reduce_only is True


@pytest.mark.asyncio
async def test_prepare_failure_is_failed_outcome():
    from vaultdealer.execution.orders import OrderExecutor
    from vaultdealer.execution.reconciler import ExecutionReconciler
    from vaultdealer.shell.contract import SettlementStatus

    venue = BookVenue()
    executor = OrderExecutor(venue, ExecutionReconciler(0, 0))
    outcome = await executor.submit("key", _intent(size_usdc=0.1))
    assert outcome.status is SettlementStatus.FAILED
    assert "rounds to zero" in outcome.message
    assert venue.orders == []
