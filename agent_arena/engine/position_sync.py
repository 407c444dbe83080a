"""Position sync: reconcile tracked trades with exchange positions.

Runs on an agent's first cycle after start. After a restart the in-memory
trade list is empty while the exchange may still hold positions, and trades
tracked before a stop may have been closed by their stop-loss/take-profit in
the meantime.

Scenarios handled:
1. Tracked trade, matching exchange position → confirmed, P&L refreshed
2. Tracked trade, no exchange position → closed
3. Exchange position not tracked → adopted as an ``unprotected`` trade
"""

import logging

from agent_arena.models.agent import AgentState
from agent_arena.models.trade import Trade, TradeSide, TradeStatus
from agent_arena.services.exchange_client import Position

logger = logging.getLogger(__name__)


def _open_by_symbol(positions: list[Position]) -> dict[str, Position]:
    return {p.symbol: p for p in positions if p.is_open}


def refresh_trade_pnl(agent: AgentState, positions: list[Position]) -> int:
    """Update open trades from live positions; trades whose position is gone become closed.

    Returns the number of trades closed.
    """
    live = _open_by_symbol(positions)
    closed = 0
    for trade in agent.open_trades():
        position = live.get(trade.symbol)
        if position is None:
            trade.mark_closed("Position closed on exchange")
            closed += 1
            logger.info(f"{agent.tag} {trade.symbol} {trade.side.value} closed on exchange, P&L {trade.realized_pnl:.2f}")
            continue
        if position.mark_price > 0:
            trade.current_price = position.mark_price
            trade.unrealized_pnl = trade.pnl_at(position.mark_price)
        else:
            trade.unrealized_pnl = position.unrealized_profit
    return closed


async def sync_agent_positions(agent: AgentState) -> dict:
    """Compare tracked trades against the exchange and reconcile."""
    positions = await agent.client.get_positions()
    live = _open_by_symbol(positions)
    tracked_symbols = {t.symbol for t in agent.open_trades()}

    closed = refresh_trade_pnl(agent, positions)

    adopted = 0
    for symbol, position in live.items():
        if symbol in tracked_symbols:
            continue
        quantity = abs(position.position_amt)
        agent.trades.append(
            Trade(
                symbol=symbol,
                side=TradeSide.LONG if position.position_amt > 0 else TradeSide.SHORT,
                leverage=position.leverage,
                amount=round(quantity * position.entry_price, 2),
                quantity=quantity,
                entry_price=position.entry_price,
                status=TradeStatus.UNPROTECTED,
                current_price=position.mark_price or None,
                unrealized_pnl=position.unrealized_profit,
            )
        )
        adopted += 1
        logger.warning(
            f"{agent.tag} Position sync: adopted untracked {symbol} position ({position.position_amt}) "
            f"without known stop-loss/take-profit"
        )

    confirmed = len(tracked_symbols & live.keys())
    logger.info(
        f"{agent.tag} Position sync: {confirmed} confirmed, {closed} closed, {adopted} adopted"
    )
    return {"confirmed": confirmed, "closed": closed, "adopted": adopted}
