"""Agent state held by the registry, one instance per configured agent."""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from agent_arena.models.trade import Trade


@dataclass
class BalancesSnapshot:
    ledger_balance: float = 0.0
    exchange_balance: float = 0.0
    refreshed_at: datetime | None = None

    @property
    def total(self) -> float:
        return self.ledger_balance + self.exchange_balance

    def to_dict(self) -> dict:
        return {
            "ledger_balance": round(self.ledger_balance, 2),
            "exchange_balance": round(self.exchange_balance, 2),
            "total": round(self.total, 2),
            "refreshed_at": self.refreshed_at.isoformat() if self.refreshed_at else None,
        }


@dataclass
class TokenPosition:
    """A position on the on-chain venue, reported by the external swap pipeline."""

    token: str
    amount: float
    entry_price: float
    venue: str = "onchain"
    current_price: float | None = None
    status: str = "open"  # "open" or "closed"
    tx_ref: str | None = None
    opened_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_active(self) -> bool:
        return self.status == "open"

    @property
    def value_usd(self) -> float:
        return self.amount * (self.current_price if self.current_price is not None else self.entry_price)

    def to_dict(self) -> dict:
        return {
            "token": self.token,
            "amount": self.amount,
            "entry_price": self.entry_price,
            "venue": self.venue,
            "current_price": self.current_price,
            "status": self.status,
            "tx_ref": self.tx_ref,
            "value_usd": round(self.value_usd, 2),
            "opened_at": self.opened_at.isoformat(),
        }


@dataclass
class AgentState:
    agent_id: int
    name: str
    api_key: str = ""
    api_secret: str = ""
    wallet_address: str = ""
    is_running: bool = False
    interval_minutes: int | None = None
    last_action: str | None = None
    last_cycle_at: datetime | None = None
    success_count: int = 0
    failure_count: int = 0
    last_error: str | None = None
    baseline_balance: float = 1900.0
    balances: BalancesSnapshot = field(default_factory=BalancesSnapshot)
    trades: list[Trade] = field(default_factory=list)
    token_positions: list[TokenPosition] = field(default_factory=list)
    config_error: str | None = None  # set when the agent config cannot be wired
    needs_position_sync: bool = True
    stop_token: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    client: Any = field(default=None, repr=False)
    gateway: Any = field(default=None, repr=False)

    @property
    def tag(self) -> str:
        return f"[agent_{self.agent_id}]"

    @property
    def has_credentials(self) -> bool:
        return bool(self.api_key and self.api_secret)

    def open_trades(self) -> list[Trade]:
        """Open trades, oldest first."""
        return sorted((t for t in self.trades if t.is_open), key=lambda t: t.opened_at)

    def active_token_positions(self) -> list[TokenPosition]:
        return [p for p in self.token_positions if p.is_active]

    @property
    def trade_pnl(self) -> float:
        total = 0.0
        for trade in self.trades:
            if trade.is_open:
                total += trade.unrealized_pnl
            elif trade.realized_pnl is not None:
                total += trade.realized_pnl
        return total

    @property
    def total_pnl(self) -> float:
        return self.balances.total - self.baseline_balance

    def to_status(self) -> dict:
        open_trades = self.open_trades()
        return {
            "agent_id": self.agent_id,
            "name": self.name,
            "is_running": self.is_running,
            "interval_minutes": self.interval_minutes,
            "last_action": self.last_action,
            "last_cycle_at": self.last_cycle_at.isoformat() if self.last_cycle_at else None,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "last_error": self.last_error,
            "baseline_balance": self.baseline_balance,
            "balances": self.balances.to_dict(),
            "total_trades": len(self.trades),
            "active_trades": len(open_trades),
            "trades": [t.to_dict() for t in self.trades],
            "token_positions": [p.to_dict() for p in self.token_positions],
            "trade_pnl": round(self.trade_pnl, 4),
            "total_pnl": round(self.total_pnl, 2),
        }
