"""Engine contract: the typed values that flow between the loops and the venues.

Payloads are validated where they are constructed (task creation, oracle
parsing), never deep inside execution. Anything that reaches the scheduler
or the dealer's execution phase is already well formed.
"""

from __future__ import annotations

import secrets
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional, Union

from vaultdealer.shell.errors import TaskValidationError


# --- Enums ---

class TaskType(Enum):
    SWAP = "SWAP"
    TRANSFER = "TRANSFER"
    ALERT = "ALERT"
    VENUE_ORDER = "VENUE_ORDER"


class TaskStatus(Enum):
    ACTIVE = "active"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


class Action(Enum):
    BUY = "BUY"
    SELL = "SELL"
    CLOSE = "CLOSE"
    HOLD = "HOLD"


class OrderType(Enum):
    LIMIT = "limit"
    MARKET = "market"
    IOC = "ioc"
    ALO = "alo"


class Operator(Enum):
    LT = "<"
    GT = ">"
    LE = "<="
    GE = ">="
    EQ = "=="

    def compare(self, current: float, threshold: float) -> bool:
        if self is Operator.LT:
            return current < threshold
        if self is Operator.GT:
            return current > threshold
        if self is Operator.LE:
            return current <= threshold
        if self is Operator.GE:
            return current >= threshold
        return current == threshold


class SettlementStatus(Enum):
    SUCCESS = "success"
    FAILED = "failed"
    UNCERTAIN = "uncertain"


class TxStatus(Enum):
    CONFIRMED = "confirmed"
    FAILED = "failed"
    PENDING = "pending"


def normalize_symbol(symbol: str) -> str:
    """'btc/usdt' -> 'BTCUSDT'."""
    return symbol.strip().upper().replace("/", "").replace("-", "").replace("_", "")


# --- Scheduled task payloads ---

@dataclass(frozen=True)
class Condition:
    symbol: str
    indicator: str
    operator: Operator
    value: float
    timeframe: str = "60"

    def __post_init__(self):
        symbol = normalize_symbol(self.symbol)
        if not symbol:
            raise TaskValidationError("Condition symbol is required")
        if not self.indicator or not self.indicator.strip():
            raise TaskValidationError("Condition indicator is required")
        if not isinstance(self.operator, Operator):
            try:
                op = Operator(self.operator)
            except ValueError:
                raise TaskValidationError(f"Unknown operator: {self.operator!r}") from None
            object.__setattr__(self, "operator", op)
        try:
            value = float(self.value)
        except (TypeError, ValueError):
            raise TaskValidationError(f"Condition value must be numeric, got {self.value!r}") from None
        object.__setattr__(self, "symbol", symbol)
        object.__setattr__(self, "indicator", self.indicator.strip().lower())
        object.__setattr__(self, "value", value)
        object.__setattr__(self, "timeframe", str(self.timeframe or "60"))

    def describe(self) -> str:
        return f"{self.indicator.upper()} {self.symbol} ({self.timeframe}) {self.operator.value} {self.value:g}"

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "indicator": self.indicator,
            "operator": self.operator.value,
            "value": self.value,
            "timeframe": self.timeframe,
        }

    @classmethod
    def from_dict(cls, data: dict) -> Condition:
        return cls(
            symbol=data.get("symbol", ""),
            indicator=data.get("indicator", ""),
            operator=data.get("operator", ""),
            value=data.get("value"),
            timeframe=data.get("timeframe") or "60",
        )


@dataclass(frozen=True)
class SwapParams:
    input_token: str
    output_token: str
    amount: float

    def __post_init__(self):
        if not self.input_token or not self.output_token:
            raise TaskValidationError("Swap needs input_token and output_token")
        if self.amount <= 0:
            raise TaskValidationError(f"Swap amount must be > 0, got {self.amount}")


@dataclass(frozen=True)
class TransferParams:
    amount: float
    token_mint: str
    decimals: int = 9

    def __post_init__(self):
        if not self.token_mint:
            raise TaskValidationError("Transfer needs token_mint")
        if self.amount <= 0:
            raise TaskValidationError(f"Transfer amount must be > 0, got {self.amount}")


@dataclass(frozen=True)
class AlertParams:
    message: str = ""


@dataclass(frozen=True)
class VenueOrderParams:
    coin: str
    is_buy: bool
    size: Optional[float] = None          # coin units
    usdc_amount: Optional[float] = None   # notional, converted at execution time
    price: Optional[float] = None
    order_type: OrderType = OrderType.LIMIT
    leverage: float = 1
    reduce_only: bool = False
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None

    def __post_init__(self):
        if not self.coin:
            raise TaskValidationError("Venue order needs a coin")
        if not isinstance(self.order_type, OrderType):
            try:
                object.__setattr__(self, "order_type", OrderType(str(self.order_type).lower()))
            except ValueError:
                raise TaskValidationError(f"Unknown order type: {self.order_type!r}") from None
        if self.size is None and self.usdc_amount is None:
            raise TaskValidationError("Venue order needs size or usdc_amount")
        if self.size is not None and self.size <= 0:
            raise TaskValidationError(f"Invalid order size: {self.size}")
        if self.usdc_amount is not None and self.usdc_amount <= 0:
            raise TaskValidationError(f"Invalid usdc_amount: {self.usdc_amount}")
        if self.order_type in (OrderType.LIMIT, OrderType.ALO) and self.price is None and self.size is not None:
            raise TaskValidationError("Limit orders with a fixed size need a price")
        if self.leverage < 1:
            raise TaskValidationError(f"Leverage must be >= 1, got {self.leverage}")


TaskParams = Union[SwapParams, TransferParams, AlertParams, VenueOrderParams]

_PARAMS_BY_TYPE: dict[TaskType, type] = {
    TaskType.SWAP: SwapParams,
    TaskType.TRANSFER: TransferParams,
    TaskType.ALERT: AlertParams,
    TaskType.VENUE_ORDER: VenueOrderParams,
}


def params_from_dict(task_type: TaskType, payload: dict | None) -> TaskParams:
    """Build the params variant for ``task_type``. Accepts the legacy ``side: "B"`` order form."""
    payload = dict(payload or {})
    if task_type is TaskType.VENUE_ORDER and "is_buy" not in payload and "side" in payload:
        payload["is_buy"] = str(payload.pop("side")).upper() in ("B", "BUY", "LONG")
    cls = _PARAMS_BY_TYPE[task_type]
    try:
        return cls(**payload)
    except TypeError as e:
        raise TaskValidationError(f"Bad {task_type.value} params: {e}") from None


def _params_to_dict(params: TaskParams) -> dict:
    data = asdict(params)
    if isinstance(params, VenueOrderParams):
        data["order_type"] = params.order_type.value
    return data


@dataclass
class ScheduledTask:
    id: str
    type: TaskType
    params: TaskParams
    created_at: float
    execute_at: Optional[float] = None
    condition: Optional[Condition] = None
    status: TaskStatus = TaskStatus.ACTIVE
    last_executed: Optional[float] = None
    result: Optional[str] = None

    def __post_init__(self):
        if (self.execute_at is None) == (self.condition is None):
            raise TaskValidationError("A task needs exactly one of execute_at or condition")
        expected = _PARAMS_BY_TYPE[self.type]
        if not isinstance(self.params, expected):
            raise TaskValidationError(
                f"{self.type.value} task needs {expected.__name__}, got {type(self.params).__name__}"
            )

    @property
    def short_id(self) -> str:
        return self.id[-6:]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type.value,
            "params": _params_to_dict(self.params),
            "created_at": self.created_at,
            "execute_at": self.execute_at,
            "condition": self.condition.to_dict() if self.condition else None,
            "status": self.status.value,
            "last_executed": self.last_executed,
            "result": self.result,
        }

    @classmethod
    def from_dict(cls, data: dict) -> ScheduledTask:
        task_type = TaskType(data["type"])
        return cls(
            id=str(data["id"]),
            type=task_type,
            params=params_from_dict(task_type, data.get("params")),
            created_at=float(data["created_at"]),
            execute_at=data.get("execute_at"),
            condition=Condition.from_dict(data["condition"]) if data.get("condition") else None,
            status=TaskStatus(data.get("status", "active")),
            last_executed=data.get("last_executed"),
            result=data.get("result"),
        )


# --- Dealer types ---

@dataclass(frozen=True)
class CycleDecision:
    coin: str
    action: Action
    confidence: float
    size_usdc: Optional[float] = None
    suggested_leverage: Optional[float] = None
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    order_type: OrderType = OrderType.LIMIT
    price: Optional[float] = None
    reason: str = ""

    def __post_init__(self):
        if not self.coin:
            raise ValueError("Decision needs a coin")
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"Confidence must be within [0, 1], got {self.confidence}")

    def effective_confidence(self, close_boost: float) -> float:
        """Ranking score. CLOSE gets a fixed boost."""
        return self.confidence + (close_boost if self.action is Action.CLOSE else 0.0)


def _opt_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    return float(value)


def decision_from_dict(data: dict) -> CycleDecision:
    """Parse one oracle decision. Raises ValueError on malformed entries."""
    try:
        action = Action(str(data.get("action", "")).upper())
    except ValueError:
        raise ValueError(f"Unknown action: {data.get('action')!r}") from None
    order_type = str(data.get("orderType") or data.get("order_type") or "limit").lower()
    return CycleDecision(
        coin=str(data.get("coin", "")).upper(),
        action=action,
        confidence=float(data.get("confidence") or 0),
        size_usdc=_opt_float(data.get("sizeUSDC", data.get("size_usdc"))),
        suggested_leverage=_opt_float(data.get("suggestedLeverage", data.get("leverage"))),
        stop_loss=_opt_float(data.get("stopLoss", data.get("stop_loss"))),
        take_profit=_opt_float(data.get("takeProfit", data.get("take_profit"))),
        order_type=OrderType(order_type),
        price=_opt_float(data.get("price")),
        reason=str(data.get("reason") or ""),
    )


@dataclass(frozen=True)
class OracleReply:
    decisions: list[CycleDecision]
    summary: Optional[str] = None


def new_idempotency_token() -> str:
    """128-bit client order id: 0x + 32 hex chars."""
    return "0x" + secrets.token_hex(16)


@dataclass
class ExecutionIntent:
    coin: str
    action: Action
    order_type: OrderType
    size_usdc: float
    leverage: float
    is_buy: bool
    idempotency_token: str = field(default_factory=new_idempotency_token)
    price: Optional[float] = None
    size: Optional[float] = None          # resolved coin size, set by order preparation
    reduce_only: bool = False
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    reason: str = ""


# --- Venue state ---

@dataclass(frozen=True)
class Position:
    coin: str
    size: float               # signed: > 0 long, < 0 short
    entry_price: float
    unrealized_pnl: float = 0.0
    leverage: float = 1.0
    liquidation_price: Optional[float] = None

    @property
    def side(self) -> str:
        return "LONG" if self.size > 0 else "SHORT"

    @property
    def exposure(self) -> float:
        return abs(self.size * self.entry_price)

    def as_context(self) -> dict:
        """Position block injected into an asset's oracle context."""
        return {
            "hasPosition": True,
            "side": self.side,
            "size": abs(self.size),
            "entryPrice": self.entry_price,
            "unrealizedPnl": self.unrealized_pnl,
            "leverage": self.leverage,
        }


@dataclass(frozen=True)
class AccountState:
    account_value: float
    positions: tuple[Position, ...] = ()


@dataclass(frozen=True)
class PortfolioSnapshot:
    """Latest venue view. Immutable; replaced wholesale on every sync."""

    positions: tuple[Position, ...]
    account_value: float
    total_exposure: float
    synced_at: float

    @classmethod
    def from_account(cls, account: AccountState, synced_at: float) -> PortfolioSnapshot:
        open_positions = tuple(p for p in account.positions if p.size != 0)
        return cls(
            positions=open_positions,
            account_value=account.account_value,
            total_exposure=sum(p.exposure for p in open_positions),
            synced_at=synced_at,
        )

    def position_for(self, coin: str) -> Optional[Position]:
        for pos in self.positions:
            if pos.coin == coin:
                return pos
        return None

    @property
    def open_count(self) -> int:
        return len(self.positions)
