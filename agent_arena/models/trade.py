"""Trade model: one leveraged futures entry opened by an agent."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


class TradeSide(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"


class TradeStatus(str, Enum):
    ACTIVE = "active"
    UNPROTECTED = "unprotected"  # entry filled but stop-loss/take-profit placement failed
    CLOSED = "closed"
    FAILED = "failed"

    @property
    def is_open(self) -> bool:
        return self in (TradeStatus.ACTIVE, TradeStatus.UNPROTECTED)


@dataclass
class Trade:
    symbol: str
    side: TradeSide
    leverage: int
    amount: float  # notional USD
    quantity: float
    entry_price: float
    stop_loss: float | None = None
    take_profit: float | None = None
    order_id: str | None = None
    opened_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    status: TradeStatus = TradeStatus.ACTIVE
    current_price: float | None = None
    unrealized_pnl: float = 0.0
    realized_pnl: float | None = None
    exit_price: float | None = None
    closed_at: datetime | None = None
    close_reason: str | None = None

    @property
    def is_open(self) -> bool:
        return self.status.is_open

    @property
    def direction(self) -> int:
        return 1 if self.side == TradeSide.LONG else -1

    def pnl_at(self, price: float) -> float:
        return (price - self.entry_price) * self.quantity * self.direction

    def mark_closed(self, reason: str, exit_price: float | None = None):
        """Move the trade to ``closed``; realized P&L comes from the exit price when known."""
        self.status = TradeStatus.CLOSED
        self.closed_at = datetime.now(timezone.utc)
        self.close_reason = reason
        if exit_price:
            self.exit_price = exit_price
            self.realized_pnl = self.pnl_at(exit_price)
        else:
            self.exit_price = self.current_price
            self.realized_pnl = self.unrealized_pnl
        self.unrealized_pnl = 0.0

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "side": self.side.value,
            "leverage": self.leverage,
            "amount": self.amount,
            "quantity": self.quantity,
            "entry_price": self.entry_price,
            "stop_loss": self.stop_loss,
            "take_profit": self.take_profit,
            "order_id": self.order_id,
            "opened_at": self.opened_at.isoformat(),
            "status": self.status.value,
            "current_price": self.current_price,
            "unrealized_pnl": round(self.unrealized_pnl, 4),
            "realized_pnl": round(self.realized_pnl, 4) if self.realized_pnl is not None else None,
            "exit_price": self.exit_price,
            "closed_at": self.closed_at.isoformat() if self.closed_at else None,
            "close_reason": self.close_reason,
        }
