"""Agent supervisor: owns the registry and every agent's schedule.

This is what APScheduler calls on each interval. One cycle per agent runs:
clock sync → stop-order cleanup → position limit → balance check →
market snapshot → decision → execution → bookkeeping.
"""

import asyncio
import logging
from datetime import datetime, timezone

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from agent_arena.config import Settings
from agent_arena.engine.position_sync import refresh_trade_pnl, sync_agent_positions
from agent_arena.engine.registry import AgentRegistry, ConfigurationError
from agent_arena.engine.scheduler import add_agent_job, remove_agent_job
from agent_arena.engine.status import StatusAggregator
from agent_arena.models.agent import AgentState, TokenPosition
from agent_arena.models.journal import EntryType
from agent_arena.models.trade import Trade, TradeSide, TradeStatus
from agent_arena.schemas.decision import (
    DecisionAction,
    DecisionContext,
    OpenPositionView,
    SymbolSnapshot,
    TradeDecision,
)
from agent_arena.services.exchange_client import AsterdexClient, ExchangeError
from agent_arena.services.journal_store import JournalStore
from agent_arena.services.position_manager import ExecutionResult, PositionManager
from agent_arena.services.wallet_balance import BalanceService
from agent_arena.utils.constants import QUOTE_ASSET, STALE_STOP_ORDER_TYPES

logger = logging.getLogger(__name__)


class CycleAbortedError(Exception):
    """A safety step failed; the cycle ends before any new decision is taken."""


def _notify(message: str):
    """Send a Telegram notification (fire-and-forget)."""
    try:
        from agent_arena.services.telegram_bot import get_bot

        bot = get_bot()
        if bot and bot._loop:
            asyncio.run_coroutine_threadsafe(bot.send_notification(message), bot._loop)
    except Exception as e:
        logger.debug(f"Notification not sent: {e}")


class AgentSupervisor:
    def __init__(
        self,
        settings: Settings,
        journal: JournalStore,
        balance_service: BalanceService,
        registry: AgentRegistry | None = None,
        sched: AsyncIOScheduler | None = None,
    ):
        self.settings = settings
        self.journal = journal
        self.balance_service = balance_service
        self.registry = registry or AgentRegistry(settings)
        self.sched = sched
        self.status = StatusAggregator(self.registry, balance_service, settings.balance_refresh_seconds)

    # ========== SCHEDULE CONTROL ==========

    def start_agent(
        self, agent_id: int, interval_minutes: int | None = None, delay_seconds: float = 0.0
    ) -> AgentState:
        """Start (or restart) an agent's schedule. Raises ConfigurationError when it cannot trade."""
        agent = self.registry.get(agent_id)
        if agent.config_error:
            raise ConfigurationError(f"Agent {agent_id} misconfigured: {agent.config_error}")
        remove_agent_job(agent_id, self.sched)
        self.registry.client_for(agent)

        interval = interval_minutes or self.settings.default_interval_minutes
        agent.is_running = True
        agent.interval_minutes = interval
        agent.stop_token.clear()
        agent.needs_position_sync = True
        agent.last_error = None

        self.journal.add_entry(
            agent_id,
            EntryType.DECISION,
            decision="Automation started",
            reasoning=(
                f"Trading cycle set to {interval} minutes. "
                f"Current balance: ${agent.balances.total:.2f}. Baseline: ${agent.baseline_balance:.2f}."
            ),
            result="STARTED",
        )
        add_agent_job(self.run_cycle, agent_id, interval, delay_seconds, self.sched)
        logger.info(f"{agent.tag} Automation started, interval={interval}m")
        return agent

    def stop_agent(self, agent_id: int) -> AgentState:
        """Remove the schedule and signal any in-flight cycle not to take a new decision."""
        agent = self.registry.get(agent_id)
        remove_agent_job(agent_id, self.sched)
        agent.is_running = False
        agent.stop_token.set()
        logger.info(f"{agent.tag} Automation stopped")
        return agent

    def start_all(self, interval_minutes: int | None = None) -> dict:
        """Start every agent, staggering first runs to spread exchange load."""
        started, skipped = [], {}
        for index, agent_id in enumerate(self.registry.agent_ids):
            try:
                self.start_agent(agent_id, interval_minutes, delay_seconds=index * self.settings.start_stagger_seconds)
                started.append(agent_id)
            except ConfigurationError as e:
                logger.warning(f"[agent_{agent_id}] Not started: {e}")
                skipped[agent_id] = str(e)
        return {"started": started, "skipped": skipped}

    def stop_all(self) -> list[int]:
        for agent_id in self.registry.agent_ids:
            self.stop_agent(agent_id)
        logger.info("Automation stopped for all agents")
        return self.registry.agent_ids

    def reset_agent(self, agent_id: int) -> AgentState:
        self.stop_agent(agent_id)
        return self.registry.reset(agent_id)

    async def trigger_cycle(self, agent_id: int) -> AgentState:
        """Run one cycle now, outside the schedule."""
        self.registry.validate_id(agent_id)
        await self.run_cycle(agent_id)
        return self.registry.get(agent_id)

    def record_token_position(self, agent_id: int, position: TokenPosition) -> TokenPosition:
        """Entry point for the swap pipeline to report an on-chain position."""
        agent = self.registry.get(agent_id)
        agent.token_positions.append(position)
        self.journal.add_entry(
            agent_id,
            EntryType.DECISION,
            symbol=position.token,
            decision=f"Token position {position.token}",
            amount=round(position.value_usd, 2),
            entry_price=position.entry_price,
            result="RECORDED",
            external_ref=position.tx_ref,
        )
        logger.info(f"{agent.tag} Recorded token position {position.token} ({position.amount})")
        return position

    # ========== POSITIONS ==========

    def _close_tracked(self, agent: AgentState, symbol: str, reason: str) -> list[Trade]:
        closed = []
        for trade in agent.open_trades():
            if trade.symbol == symbol:
                trade.mark_closed(reason)
                closed.append(trade)
        return closed

    async def close_position(self, agent_id: int, symbol: str) -> dict:
        """Close one symbol on the exchange and mark matching trades closed."""
        agent = self.registry.get(agent_id)
        client = self.registry.client_for(agent)
        result = await client.close_position(symbol)
        trades = self._close_tracked(agent, symbol, "Manual close")
        self.journal.add_entry(
            agent_id,
            EntryType.POSITION_CLOSED,
            symbol=symbol,
            decision=f"Close {symbol}",
            reasoning="Manual close requested",
            result="CLOSED" if result.closed else "NO_POSITION",
            external_ref=result.order_id,
        )
        return {
            "closed": result.closed,
            "symbol": symbol,
            "message": result.message,
            "order_id": result.order_id,
            "trades_closed": len(trades),
        }

    async def close_agent_positions(self, agent_id: int) -> dict:
        """Flatten every exchange position of one agent. Per-symbol failures are collected.

        Waits for an in-flight cycle of the agent to finish first, so an entry
        it is still submitting is closed too.
        """
        agent = self.registry.get(agent_id)
        client = self.registry.client_for(agent)
        if agent.lock.locked():
            logger.info(f"{agent.tag} Waiting for in-flight cycle before closing positions")
        async with agent.lock:
            return await self._flatten(agent, client)

    async def _flatten(self, agent: AgentState, client: AsterdexClient) -> dict:
        agent_id = agent.agent_id
        positions = [p for p in await client.get_positions() if p.is_open]

        closed, errors = [], []
        for position in positions:
            try:
                result = await client.close_position(position.symbol)
            except ExchangeError as e:
                logger.error(f"{agent.tag} Failed to close {position.symbol}: {e}")
                errors.append(f"{position.symbol}: {e}")
                continue
            self._close_tracked(agent, position.symbol, "Emergency close")
            closed.append(position.symbol)
            self.journal.add_entry(
                agent_id,
                EntryType.POSITION_CLOSED,
                symbol=position.symbol,
                decision=f"Close {position.symbol}",
                reasoning="All positions closed by operator",
                result="CLOSED",
                external_ref=result.order_id,
            )

        live = {p.symbol for p in positions}
        for trade in agent.open_trades():
            if trade.symbol not in live:
                trade.mark_closed("Position closed on exchange")

        logger.info(f"{agent.tag} Closed {len(closed)} positions, {len(errors)} errors")
        return {"agent_id": agent_id, "closed": closed, "errors": errors}

    # ========== CYCLE ==========

    async def run_cycle(self, agent_id: int):
        """Run one cycle, skipping if a prior cycle of the same agent is still in flight."""
        agent = self.registry.get(agent_id)
        if agent.lock.locked():
            logger.warning(f"{agent.tag} Skipping overlapping cycle")
            return

        async with agent.lock:
            try:
                await self._run_cycle_once(agent)
            except Exception as e:
                self._record_failure(agent, e)

    async def _run_cycle_once(self, agent: AgentState):
        client = self.registry.client_for(agent)
        agent.last_cycle_at = datetime.now(timezone.utc)
        logger.info(f"{agent.tag} Starting cycle (success={agent.success_count} failed={agent.failure_count})")

        # Step 0: clock and (after start) position reconciliation
        await client.sync_clock()
        if agent.needs_position_sync:
            await sync_agent_positions(agent)
            agent.needs_position_sync = False

        # Step 1: stale stop orders
        await self._cleanup_stop_orders(agent, client)

        # Step 2: position limit
        await self._enforce_position_limit(agent, client)

        # Step 3: funds and exposure
        balance = await client.get_balance(QUOTE_ASSET)
        available = balance.available_balance
        logger.info(f"{agent.tag} Available balance: ${available:.2f} {QUOTE_ASSET}")
        if available < self.settings.min_trading_balance:
            raise CycleAbortedError(
                f"Insufficient balance ${available:.2f} (minimum ${self.settings.min_trading_balance:.2f})"
            )
        open_positions = [p for p in await client.get_positions() if p.is_open]

        # Steps 4-5: decision and execution, unless a stop was requested
        if agent.stop_token.is_set():
            logger.info(f"{agent.tag} Stop requested, skipping decision")
        else:
            context = DecisionContext(
                agent_id=agent.agent_id,
                symbols=await self._market_snapshot(agent, client),
                balance=available,
                open_positions=[
                    OpenPositionView(
                        symbol=p.symbol,
                        side=p.side,
                        position_amt=p.position_amt,
                        entry_price=p.entry_price,
                        mark_price=p.mark_price,
                        unrealized_profit=p.unrealized_profit,
                        leverage=p.leverage,
                    )
                    for p in open_positions
                ],
            )
            decision = await agent.gateway.decide(context)
            if agent.stop_token.is_set():
                logger.info(f"{agent.tag} Stop requested, dropping {decision.action.value} decision")
            else:
                manager = PositionManager(client, self.settings.max_leverage, self.settings.min_confidence)
                result = await manager.execute(decision)
                self._record_outcome(agent, decision, result)

        # Step 6: bookkeeping
        refresh_trade_pnl(agent, await client.get_positions())
        await self._refresh_balances(agent)
        logger.info(
            f"{agent.tag} Cycle complete: trades={len(agent.trades)} open={len(agent.open_trades())} "
            f"balance=${agent.balances.total:.2f} P&L=${agent.total_pnl:.2f}"
        )

    async def _cleanup_stop_orders(self, agent: AgentState, client: AsterdexClient):
        orders = await client.get_open_orders()
        for order in orders:
            if order.get("type") not in STALE_STOP_ORDER_TYPES:
                continue
            try:
                await client.cancel_order(order["symbol"], order["orderId"])
                logger.info(f"{agent.tag} Cancelled stale stop order for {order['symbol']}")
            except ExchangeError as e:
                logger.warning(f"{agent.tag} Could not cancel stop order {order.get('orderId')}: {e}")

    async def _enforce_position_limit(self, agent: AgentState, client: AsterdexClient):
        limit = self.settings.max_active_trades
        while True:
            open_trades = agent.open_trades()
            if len(open_trades) < limit:
                return
            oldest = open_trades[0]
            logger.warning(
                f"{agent.tag} Position limit reached ({len(open_trades)}/{limit}), closing oldest {oldest.symbol}"
            )
            try:
                result = await client.close_position(oldest.symbol)
            except ExchangeError as e:
                raise CycleAbortedError(f"Failed to close {oldest.symbol} at position limit: {e}") from e

            self._close_tracked(agent, oldest.symbol, "Position limit")
            self.journal.add_entry(
                agent.agent_id,
                EntryType.POSITION_CLOSED,
                symbol=oldest.symbol,
                decision="Close position due to limit",
                reasoning=f"Maximum {limit} positions enforced, closing oldest to open new trade",
                result="CLOSED" if result.closed else "NO_POSITION",
                external_ref=result.order_id,
            )

    async def _market_snapshot(self, agent: AgentState, client: AsterdexClient) -> list[SymbolSnapshot]:
        snapshots = []
        for symbol in self.settings.symbols:
            try:
                snapshots.append(SymbolSnapshot.from_ticker(await client.get_ticker(symbol)))
            except (ExchangeError, KeyError, ValueError) as e:
                logger.warning(f"{agent.tag} Skipping market data for {symbol}: {e}")
        if not snapshots:
            raise CycleAbortedError("No market data available for any symbol")
        return snapshots

    async def _refresh_balances(self, agent: AgentState):
        refreshed_at = agent.balances.refreshed_at
        age = (datetime.now(timezone.utc) - refreshed_at).total_seconds() if refreshed_at else None
        if age is None or age > self.settings.balance_refresh_seconds:
            await self.balance_service.refresh(agent)

    def _record_outcome(self, agent: AgentState, decision: TradeDecision, result: ExecutionResult):
        action = decision.action
        symbol = decision.symbol or None
        fields = {
            "symbol": symbol,
            "decision": f"{action.value} {decision.symbol}".strip(),
            "reasoning": decision.reasoning,
            "amount": decision.usd_amount,
            "leverage": result.leverage or decision.leverage,
            "stop_loss": result.stop_loss or decision.stop_loss,
            "take_profit": result.take_profit or decision.take_profit,
            "confidence": decision.confidence,
        }

        if action == DecisionAction.HOLD:
            agent.last_action = "HOLD - no trade placed"
            self.journal.add_entry(
                agent.agent_id,
                EntryType.DECISION,
                decision="HOLD",
                reasoning=decision.reasoning or "No favorable trading opportunity",
                confidence=decision.confidence,
                result="HOLD",
            )
            return

        if result.skipped:
            agent.last_action = f"Skipped {action.value} {decision.symbol}: {result.message}"
            fields["reasoning"] = f"{result.message}. {decision.reasoning}".strip()
            self.journal.add_entry(agent.agent_id, EntryType.DECISION, result="SKIPPED", **fields)
            return

        if not result.success:
            agent.failure_count += 1
            agent.last_error = result.message
            agent.last_action = f"{action.value} {decision.symbol} failed: {result.message}"
            if action in (DecisionAction.LONG, DecisionAction.SHORT):
                agent.trades.append(
                    Trade(
                        symbol=decision.symbol,
                        side=TradeSide(action.value),
                        leverage=fields["leverage"],
                        amount=decision.usd_amount,
                        quantity=0.0,
                        entry_price=0.0,
                        stop_loss=fields["stop_loss"],
                        take_profit=fields["take_profit"],
                        status=TradeStatus.FAILED,
                        close_reason=result.message,
                    )
                )
            fields["reasoning"] = f"{result.message}. {decision.reasoning}".strip()
            self.journal.add_entry(agent.agent_id, EntryType.DECISION, result="FAILED", **fields)
            _notify(f"{agent.name}: {action.value} {decision.symbol} failed\n{result.message}")
            return

        if action == DecisionAction.CLOSE:
            self._close_tracked(agent, decision.symbol, "Closed by decision")
            closed = result.close is not None and result.close.closed
            if closed:
                agent.success_count += 1
            agent.last_action = f"CLOSE {decision.symbol}" if closed else f"CLOSE {decision.symbol}: no position"
            self.journal.add_entry(
                agent.agent_id,
                EntryType.POSITION_CLOSED,
                result="CLOSED" if closed else "NO_POSITION",
                external_ref=result.order_id,
                **fields,
            )
            return

        trade = Trade(
            symbol=decision.symbol,
            side=TradeSide(action.value),
            leverage=result.leverage,
            amount=decision.usd_amount,
            quantity=result.quantity,
            entry_price=result.entry_price,
            stop_loss=result.stop_loss,
            take_profit=result.take_profit,
            order_id=result.order_id,
            status=TradeStatus.ACTIVE if result.protected else TradeStatus.UNPROTECTED,
            current_price=result.entry_price,
        )
        agent.trades.append(trade)
        agent.success_count += 1
        agent.last_action = f"{action.value} {decision.symbol} {result.leverage}x"
        outcome = "EXECUTED" if result.protected else "EXECUTED_UNPROTECTED"
        self.journal.add_entry(
            agent.agent_id,
            EntryType.LONG_OPENED if action == DecisionAction.LONG else EntryType.SHORT_OPENED,
            entry_price=result.entry_price,
            result=outcome,
            external_ref=result.order_id,
            **fields,
        )
        if result.protected:
            logger.info(f"{agent.tag} Executed {action.value} {decision.symbol} order={result.order_id}")
        else:
            legs = ", ".join(result.failed_protection)
            logger.error(f"{agent.tag} {decision.symbol} entry filled but protective orders failed: {legs}")
            _notify(f"{agent.name}: {decision.symbol} {action.value} is UNPROTECTED (failed: {legs})")

    def _record_failure(self, agent: AgentState, error: Exception):
        message = str(error) or type(error).__name__
        agent.failure_count += 1
        agent.last_error = message
        agent.last_action = f"Error: {message}"
        logger.error(f"{agent.tag} Cycle failed: {message}", exc_info=True)
        self.journal.add_entry(
            agent.agent_id,
            EntryType.ERROR,
            decision="Trading cycle failed",
            reasoning=message,
            result="ERROR",
        )
        _notify(f"{agent.name}: cycle failed\n{message}")

    async def close(self):
        await self.registry.close()
        await self.balance_service.close()


def build_supervisor(settings: Settings, sched: AsyncIOScheduler | None = None) -> AgentSupervisor:
    """Wire the journal, balance service and registry from settings."""
    journal = JournalStore(
        settings.journal_path,
        max_entries_per_agent=settings.journal_max_entries_per_agent,
        max_persisted=settings.journal_max_persisted,
    )
    balance_service = BalanceService(
        rpc_url=settings.ledger_rpc_url,
        asset_usd_price=settings.ledger_asset_usd_price,
        default_ledger_balance=settings.ledger_balance_default,
        timeout=settings.request_timeout_seconds,
    )
    return AgentSupervisor(settings, journal, balance_service, sched=sched)
