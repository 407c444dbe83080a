"""In-memory domain models."""

from agent_arena.models.trade import Trade, TradeSide, TradeStatus
from agent_arena.models.agent import AgentState, BalancesSnapshot, TokenPosition
from agent_arena.models.journal import EntryType, JournalEntry

__all__ = [
    "Trade",
    "TradeSide",
    "TradeStatus",
    "AgentState",
    "BalancesSnapshot",
    "TokenPosition",
    "EntryType",
    "JournalEntry",
]
