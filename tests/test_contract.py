"""Contract types: validation at construction, serialization, snapshot behaviour."""

import pytest


def test_task_requires_exactly_one_trigger():
    from vaultdealer.shell.contract import AlertParams, Condition, ScheduledTask, TaskType
    from vaultdealer.shell.errors import TaskValidationError

    condition = Condition(symbol="BTCUSDT", indicator="rsi", operator="<", value=30)

    with pytest.raises(TaskValidationError):
        ScheduledTask(id="1", type=TaskType.ALERT, params=AlertParams(), created_at=0.0)
    with pytest.raises(TaskValidationError):
        ScheduledTask(id="1", type=TaskType.ALERT, params=AlertParams(), created_at=0.0,
                      execute_at=10.0, condition=condition)

    by_time = ScheduledTask(id="1", type=TaskType.ALERT, params=AlertParams(), created_at=0.0, execute_at=10.0)
    by_condition = ScheduledTask(id="2", type=TaskType.ALERT, params=AlertParams(), created_at=0.0,
                                 condition=condition)
    assert by_time.condition is None
    assert by_condition.execute_at is None


def test_task_params_must_match_type():
    from vaultdealer.shell.contract import AlertParams, ScheduledTask, TaskType
    from vaultdealer.shell.errors import TaskValidationError

    with pytest.raises(TaskValidationError):
        ScheduledTask(id="1", type=TaskType.SWAP, params=AlertParams(), created_at=0.0, execute_at=1.0)


def test_validation_error_is_value_error():
    from vaultdealer.shell.errors import EngineError, TaskValidationError
    assert issubclass(TaskValidationError, ValueError)
    assert issubclass(TaskValidationError, EngineError)


def test_condition_normalizes_fields():
    from vaultdealer.shell.contract import Condition, Operator

    cond = Condition(symbol="btc/usdt", indicator=" RSI ", operator="<=", value="30", timeframe=60)
    assert cond.symbol == "BTCUSDT"
    assert cond.indicator == "rsi"
    assert cond.operator is Operator.LE
    assert cond.value == 30.0
    assert cond.timeframe == "60"


@pytest.mark.parametrize("kwargs", [
    {"symbol": "", "indicator": "rsi", "operator": "<", "value": 30},
    {"symbol": "BTC", "indicator": "", "operator": "<", "value": 30},
    {"symbol": "BTC", "indicator": "rsi", "operator": "=>", "value": 30},
    {"symbol": "BTC", "indicator": "rsi", "operator": "<", "value": "low"},
])
def test_condition_rejects_bad_input(kwargs):
    from vaultdealer.shell.contract import Condition
    from vaultdealer.shell.errors import TaskValidationError

    with pytest.raises(TaskValidationError):
        Condition(**kwargs)


def test_operator_compare():
    from vaultdealer.shell.contract import Operator

    assert Operator.LT.compare(28, 30)
    assert not Operator.LT.compare(30, 30)
    assert Operator.LE.compare(30, 30)
    assert Operator.GT.compare(31, 30)
    assert Operator.GE.compare(30, 30)
    assert Operator.EQ.compare(30.0, 30)


def test_params_from_dict_variants():
    from vaultdealer.shell.contract import (
        OrderType, SwapParams, TaskType, TransferParams, VenueOrderParams, params_from_dict,
    )
    from vaultdealer.shell.errors import TaskValidationError

    swap = params_from_dict(TaskType.SWAP, {"input_token": "SOL", "output_token": "USDC", "amount": 1.5})
    assert isinstance(swap, SwapParams)

    transfer = params_from_dict(TaskType.TRANSFER, {"amount": 2, "token_mint": "So111"})
    assert isinstance(transfer, TransferParams)
    assert transfer.decimals == 9

    order = params_from_dict(TaskType.VENUE_ORDER, {"coin": "ETH", "side": "B", "usdc_amount": 25,
                                                    "order_type": "MARKET"})
    assert isinstance(order, VenueOrderParams)
    assert order.is_buy is True
    assert order.order_type is OrderType.MARKET

    with pytest.raises(TaskValidationError):
        params_from_dict(TaskType.SWAP, {"input_token": "SOL", "output_token": "USDC", "amount": 0})
    with pytest.raises(TaskValidationError):
        params_from_dict(TaskType.VENUE_ORDER, {"coin": "ETH", "is_buy": True})
    with pytest.raises(TaskValidationError):
        params_from_dict(TaskType.SWAP, {"unexpected": 1})


def test_limit_order_with_size_needs_price():
    from vaultdealer.shell.contract import VenueOrderParams
    from vaultdealer.shell.errors import TaskValidationError

    with pytest.raises(TaskValidationError):
        VenueOrderParams(coin="BTC", is_buy=True, size=0.01)
    assert VenueOrderParams(coin="BTC", is_buy=True, size=0.01, price=50000).price == 50000


def test_task_survives_serialization():
    from vaultdealer.shell.contract import (
        Condition, OrderType, ScheduledTask, TaskStatus, TaskType, VenueOrderParams,
    )

    task = ScheduledTask(
        id="1700000000000",
        type=TaskType.VENUE_ORDER,
        params=VenueOrderParams(coin="BTC", is_buy=False, usdc_amount=40, order_type=OrderType.MARKET, leverage=3),
        created_at=1.0,
        condition=Condition(symbol="BTCUSDT", indicator="macd", operator=">", value=0),
        status=TaskStatus.FAILED,
        last_executed=5.0,
        result="Failed: boom",
    )
    restored = ScheduledTask.from_dict(task.to_dict())
    assert restored == task


def test_decision_from_dict():
    from vaultdealer.shell.contract import Action, OrderType, decision_from_dict

    decision = decision_from_dict({"coin": "eth", "action": "close", "reason": "take profit",
                                   "orderType": "market", "stopLoss": "2900"})
    assert decision.coin == "ETH"
    assert decision.action is Action.CLOSE
    assert decision.confidence == 0.0
    assert decision.order_type is OrderType.MARKET
    assert decision.stop_loss == 2900.0

    with pytest.raises(ValueError):
        decision_from_dict({"coin": "BTC", "action": "YOLO", "confidence": 0.9})
    with pytest.raises(ValueError):
        decision_from_dict({"coin": "BTC", "action": "BUY", "confidence": 1.5})


def test_effective_confidence_boosts_close_only():
    from vaultdealer.shell.contract import Action, CycleDecision

    close = CycleDecision(coin="ETH", action=Action.CLOSE, confidence=0.4)
    buy = CycleDecision(coin="BTC", action=Action.BUY, confidence=0.7)
    assert close.effective_confidence(0.5) == pytest.approx(0.9)
    assert buy.effective_confidence(0.5) == pytest.approx(0.7)


def test_idempotency_token_format():
    from vaultdealer.shell.contract import Action, ExecutionIntent, OrderType

    a = ExecutionIntent(coin="BTC", action=Action.BUY, order_type=OrderType.LIMIT,
                        size_usdc=20, leverage=1, is_buy=True)
    b = ExecutionIntent(coin="BTC", action=Action.BUY, order_type=OrderType.LIMIT,
                        size_usdc=20, leverage=1, is_buy=True)
    assert a.idempotency_token.startswith("0x")
    assert len(a.idempotency_token) == 34
    int(a.idempotency_token, 16)
    assert a.idempotency_token != b.idempotency_token


def test_snapshot_from_account():
    from vaultdealer.shell.contract import AccountState, PortfolioSnapshot, Position

    account = AccountState(account_value=500.0, positions=(
        Position(coin="BTC", size=0.01, entry_price=50000.0, leverage=2),
        Position(coin="SOL", size=0.0, entry_price=100.0),
        Position(coin="ETH", size=-0.5, entry_price=3000.0, unrealized_pnl=-12.5),
    ))
    snap = PortfolioSnapshot.from_account(account, synced_at=42.0)

    assert snap.open_count == 2
    assert snap.total_exposure == pytest.approx(500.0 + 1500.0)
    assert snap.position_for("SOL") is None
    eth = snap.position_for("ETH")
    assert eth.side == "SHORT"
    assert eth.as_context() == {
        "hasPosition": True, "side": "SHORT", "size": 0.5, "entryPrice": 3000.0,
        "unrealizedPnl": -12.5, "leverage": 1.0,
    }
    with pytest.raises(AttributeError):
        snap.account_value = 1.0
