# file: papertrader/execution/order_model.py

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

LONG = "long"
SHORT = "short"
OPEN = "open"
CLOSED = "closed"

BUY = "buy"
SELL = "sell"
HOLD = "hold"


def side_for_action(action: str) -> Optional[str]:
    """buy -> long, sell -> short, hold -> None."""
    return {BUY: LONG, SELL: SHORT}.get(action)


def opposite_action(side: str) -> str:
    """Signal action that reverses a position on `side`."""
    return SELL if side == LONG else BUY


@dataclass
class Position:
    symbol: str
    side: str
    quantity: float
    entry_price: float
    opened_at: str
    stop_loss_price: Optional[float] = None
    take_profit_price: Optional[float] = None
    status: str = OPEN
    fees: float = 0.0
    exit_price: Optional[float] = None
    gross_pnl: Optional[float] = None
    net_pnl: Optional[float] = None
    exit_reason: Optional[str] = None
    closed_at: Optional[str] = None
    prediction_id: Optional[int] = None
    signal_confidence: Optional[float] = None
    id: Optional[int] = None

    @property
    def is_open(self) -> bool:
        return self.status == OPEN

    @property
    def direction(self) -> int:
        return 1 if self.side == LONG else -1

    @property
    def exit_reasons(self) -> List[str]:
        if not self.exit_reason:
            return []
        return [r for r in self.exit_reason.split(",") if r]

    @property
    def notional(self) -> float:
        return self.entry_price * self.quantity

    @classmethod
    def from_row(cls, row: Any) -> "Position":
        data = dict(row)
        names = cls.__dataclass_fields__.keys()
        return cls(**{k: v for k, v in data.items() if k in names})

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class TradingSignal:
    """Recommendation derived from a forecast and a reference price. Never persisted."""

    symbol: str
    action: str
    confidence: float
    price: float
    predicted_return: Optional[float] = None
    predicted_price: Optional[float] = None
    price_difference_percent: Optional[float] = None
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    should_close_low_confidence: bool = False
    prediction_id: Optional[int] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


@dataclass
class ClosureVerdict:
    should_close: bool
    reasons: List[str]
    profit_probability: float


@dataclass
class Closure:
    id: int
    symbol: str
    side: str
    reasons: List[str]
    net_pnl: float
    profit_probability: float


@dataclass
class ClosureReport:
    checked: int = 0
    closed_count: int = 0
    closures: List[Closure] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
