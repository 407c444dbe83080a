"""Tests for agent scheduling and the trading cycle."""

from datetime import datetime, timedelta, timezone

import pytest

from conftest import position
from agent_arena.config import AgentConfig
from agent_arena.engine.registry import ConfigurationError, InvalidAgentError
from agent_arena.models.agent import TokenPosition
from agent_arena.models.journal import EntryType
from agent_arena.models.trade import Trade, TradeSide, TradeStatus
from agent_arena.schemas.decision import TradeDecision
from agent_arena.services.exchange_client import Balance, CloseResult, ExchangeError, ExchangeNetworkError

T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)


def tracked(symbol: str, minutes: int, side: TradeSide = TradeSide.LONG) -> Trade:
    return Trade(
        symbol=symbol, side=side, leverage=10, amount=100, quantity=1.0,
        entry_price=100.0, stop_loss=95, take_profit=110,
        opened_at=T0 + timedelta(minutes=minutes),
    )


def long_btc(confidence: float = 80) -> TradeDecision:
    return TradeDecision(
        symbol="BTCUSDT", action="LONG", leverage=10, usd_amount=200,
        confidence=confidence, stop_loss=98, take_profit=106, reasoning="momentum",
    )


@pytest.fixture
def agent(supervisor):
    state = supervisor.registry.get(1)
    state.needs_position_sync = False
    return state


# ---------------------------------------------------------------------------
# 1. Schedule control
# ---------------------------------------------------------------------------

class TestScheduleControl:
    def test_start_is_idempotent(self, supervisor, sched):
        supervisor.start_agent(1, interval_minutes=5)
        agent = supervisor.start_agent(1, interval_minutes=7)

        assert agent.is_running is True
        assert agent.interval_minutes == 7
        assert sched.add_job.call_count == 2
        assert sched.add_job.call_args.kwargs["id"] == "agent_1"
        assert sched.add_job.call_args.kwargs["max_instances"] == 1
        started = [e for e in supervisor.journal.get_entries(1) if e.result == "STARTED"]
        assert len(started) == 2

    def test_start_without_credentials_raises(self, supervisor, sched):
        with pytest.raises(ConfigurationError):
            supervisor.start_agent(2)
        sched.add_job.assert_not_called()
        assert supervisor.registry.get(2).is_running is False

    def test_unknown_provider_only_blocks_that_agent(self, misconfigured_supervisor, sched):
        supervisor = misconfigured_supervisor

        agents = supervisor.registry.all()

        assert len(agents) == 6
        beta = supervisor.registry.get(2)
        assert "gpt5" in beta.config_error
        assert beta.last_error == beta.config_error
        assert beta.gateway.name == "hold"
        with pytest.raises(ConfigurationError, match="gpt5"):
            supervisor.start_agent(2)
        assert beta.is_running is False

        assert supervisor.start_agent(1).is_running is True
        result = supervisor.start_all()
        assert result["started"] == [1]
        assert 2 in result["skipped"]

    def test_invalid_agent_id_raises(self, supervisor):
        with pytest.raises(InvalidAgentError):
            supervisor.start_agent(9)
        with pytest.raises(InvalidAgentError):
            supervisor.stop_agent(0)

    def test_stop_sets_token_and_removes_job(self, supervisor, sched):
        supervisor.start_agent(1)
        sched.get_job.return_value = object()

        agent = supervisor.stop_agent(1)

        assert agent.is_running is False
        assert agent.stop_token.is_set()
        sched.remove_job.assert_called_with("agent_1")

    def test_start_clears_stop_token(self, supervisor):
        supervisor.stop_agent(1)
        agent = supervisor.start_agent(1)
        assert not agent.stop_token.is_set()
        assert agent.needs_position_sync is True

    def test_start_all_staggers_and_skips_unconfigured(self, supervisor, settings, sched):
        settings.agents[3] = AgentConfig(name="Gamma", api_key="key-3", api_secret="secret-3")

        result = supervisor.start_all(interval_minutes=3)

        assert result["started"] == [1, 3]
        assert sorted(result["skipped"]) == [2, 4, 5, 6]
        first, second = (c.kwargs["next_run_time"] for c in sched.add_job.call_args_list)
        gap = (second - first).total_seconds()
        assert 3.5 < gap < 4.5

    def test_reset_keeps_client_and_drops_history(self, supervisor, agent, exchange):
        supervisor.registry.client_for(agent)
        agent.trades.append(tracked("BTCUSDT", 0))
        agent.success_count = 4

        fresh = supervisor.reset_agent(1)

        assert fresh is not agent
        assert fresh.trades == []
        assert fresh.success_count == 0
        assert fresh.client is exchange

    def test_record_token_position(self, supervisor):
        token = TokenPosition(token="CAKE", amount=50, entry_price=2.0, tx_ref="0xabc")

        supervisor.record_token_position(1, token)

        agent = supervisor.registry.get(1)
        assert agent.active_token_positions() == [token]
        entry = supervisor.journal.get_entries(1)[-1]
        assert entry.result == "RECORDED"
        assert entry.external_ref == "0xabc"
        assert entry.amount == 100.0


# ---------------------------------------------------------------------------
# 2. Trading cycle
# ---------------------------------------------------------------------------

class TestCycle:
    @pytest.mark.asyncio
    async def test_limit_closes_oldest_before_opening(self, supervisor, agent, exchange, gateway):
        agent.trades = [tracked("ETHUSDT", 0), tracked("SOLUSDT", 10)]
        exchange.get_positions.return_value = [position("SOLUSDT", 1.0), position("BTCUSDT", 2.0)]
        gateway.decide.return_value = long_btc()

        await supervisor.run_cycle(1)

        exchange.close_position.assert_awaited_once_with("ETHUSDT")
        by_symbol = {t.symbol: t for t in agent.trades}
        assert by_symbol["ETHUSDT"].status == TradeStatus.CLOSED
        assert by_symbol["ETHUSDT"].close_reason == "Position limit"
        assert by_symbol["BTCUSDT"].status == TradeStatus.ACTIVE
        assert len(agent.open_trades()) == 2

        entries = supervisor.journal.get_entries(1)
        assert entries[0].type == EntryType.POSITION_CLOSED
        assert entries[0].decision == "Close position due to limit"
        assert entries[-1].type == EntryType.LONG_OPENED
        assert entries[-1].result == "EXECUTED"
        assert agent.success_count == 1
        assert agent.failure_count == 0

    @pytest.mark.asyncio
    async def test_failed_limit_close_aborts_cycle(self, supervisor, agent, exchange, gateway):
        agent.trades = [tracked("ETHUSDT", 0), tracked("SOLUSDT", 10)]
        exchange.close_position.side_effect = ExchangeError("rejected")

        await supervisor.run_cycle(1)

        gateway.decide.assert_not_called()
        assert agent.failure_count == 1
        assert supervisor.journal.get_entries(1)[-1].type == EntryType.ERROR

    @pytest.mark.asyncio
    async def test_low_confidence_is_journaled_as_skipped(self, supervisor, agent, exchange, gateway):
        gateway.decide.return_value = long_btc(confidence=30)

        await supervisor.run_cycle(1)

        exchange.place_order.assert_not_called()
        entry = supervisor.journal.get_entries(1)[-1]
        assert entry.type == EntryType.DECISION
        assert entry.result == "SKIPPED"
        assert agent.failure_count == 0
        assert agent.success_count == 0

    @pytest.mark.asyncio
    async def test_hold_is_journaled(self, supervisor, agent, gateway):
        gateway.decide.return_value = TradeDecision.hold("range bound")

        await supervisor.run_cycle(1)

        entry = supervisor.journal.get_entries(1)[-1]
        assert entry.decision == "HOLD"
        assert entry.result == "HOLD"
        assert agent.last_action == "HOLD - no trade placed"

    @pytest.mark.asyncio
    async def test_exchange_error_is_recorded_as_cycle_failure(self, supervisor, agent, exchange, gateway):
        exchange.get_balance.side_effect = ExchangeNetworkError("connection reset")

        await supervisor.run_cycle(1)

        gateway.decide.assert_not_called()
        assert agent.failure_count == 1
        assert agent.last_error == "connection reset"
        entry = supervisor.journal.get_entries(1)[-1]
        assert entry.type == EntryType.ERROR
        assert entry.decision == "Trading cycle failed"
        assert entry.result == "ERROR"

    @pytest.mark.asyncio
    async def test_low_balance_aborts_before_decision(self, supervisor, agent, exchange, gateway):
        exchange.get_balance.return_value = Balance(asset="USDT", balance=60, available_balance=50)

        await supervisor.run_cycle(1)

        gateway.decide.assert_not_called()
        assert "Insufficient balance" in agent.last_error

    @pytest.mark.asyncio
    async def test_stop_token_skips_decision(self, supervisor, agent, exchange, gateway):
        agent.stop_token.set()

        await supervisor.run_cycle(1)

        gateway.decide.assert_not_called()
        exchange.get_positions.assert_awaited()
        assert agent.failure_count == 0

    @pytest.mark.asyncio
    async def test_overlapping_cycle_is_skipped(self, supervisor, agent, exchange):
        async with agent.lock:
            await supervisor.run_cycle(1)

        exchange.sync_clock.assert_not_called()

    @pytest.mark.asyncio
    async def test_unprotected_entry(self, supervisor, agent, exchange, gateway):
        exchange.set_take_profit.side_effect = ExchangeError("would trigger immediately")
        exchange.get_positions.return_value = [position("BTCUSDT", 2.0)]
        gateway.decide.return_value = long_btc()

        await supervisor.run_cycle(1)

        trade = agent.trades[-1]
        assert trade.status == TradeStatus.UNPROTECTED
        assert trade.is_open
        assert supervisor.journal.get_entries(1)[-1].result == "EXECUTED_UNPROTECTED"
        assert agent.success_count == 1

    @pytest.mark.asyncio
    async def test_failed_entry_records_failed_trade(self, supervisor, agent, exchange, gateway):
        exchange.place_order.side_effect = ExchangeError("margin insufficient")
        gateway.decide.return_value = long_btc()

        await supervisor.run_cycle(1)

        assert agent.failure_count == 1
        assert agent.trades[-1].status == TradeStatus.FAILED
        assert supervisor.journal.get_entries(1)[-1].result == "FAILED"

    @pytest.mark.asyncio
    async def test_cleanup_cancels_only_stop_orders(self, supervisor, agent, exchange):
        exchange.get_open_orders.return_value = [
            {"symbol": "BTCUSDT", "orderId": 1, "type": "STOP_MARKET"},
            {"symbol": "BTCUSDT", "orderId": 2, "type": "LIMIT"},
            {"symbol": "ETHUSDT", "orderId": 3, "type": "STOP"},
        ]

        await supervisor.run_cycle(1)

        cancelled = [c.args for c in exchange.cancel_order.await_args_list]
        assert cancelled == [("BTCUSDT", 1), ("ETHUSDT", 3)]

    @pytest.mark.asyncio
    async def test_first_cycle_adopts_exchange_positions(self, supervisor, exchange):
        exchange.get_positions.return_value = [position("BNBUSDT", -3.0)]
        agent = supervisor.registry.get(1)

        await supervisor.run_cycle(1)

        assert agent.needs_position_sync is False
        adopted = agent.trades[0]
        assert adopted.symbol == "BNBUSDT"
        assert adopted.side == TradeSide.SHORT
        assert adopted.status == TradeStatus.UNPROTECTED


# ---------------------------------------------------------------------------
# 3. Closing
# ---------------------------------------------------------------------------

class TestClosing:
    @pytest.mark.asyncio
    async def test_close_position_marks_every_matching_trade(self, supervisor, agent, exchange):
        agent.trades = [tracked("BTCUSDT", 0), tracked("BTCUSDT", 5), tracked("ETHUSDT", 10)]

        result = await supervisor.close_position(1, "BTCUSDT")

        assert result["closed"] is True
        assert result["trades_closed"] == 2
        assert [t.symbol for t in agent.open_trades()] == ["ETHUSDT"]
        assert supervisor.journal.get_entries(1)[-1].result == "CLOSED"

    @pytest.mark.asyncio
    async def test_close_agent_positions_collects_errors(self, supervisor, agent, exchange):
        exchange.get_positions.return_value = [position("BTCUSDT", 1.0), position("ETHUSDT", -2.0)]
        agent.trades = [tracked("BTCUSDT", 0), tracked("ETHUSDT", 5, TradeSide.SHORT)]

        async def flaky_close(symbol):
            if symbol == "ETHUSDT":
                raise ExchangeError("reduce only rejected")
            return CloseResult(closed=True, symbol=symbol, message="ok", order_id="9")

        exchange.close_position.side_effect = flaky_close

        result = await supervisor.close_agent_positions(1)

        assert result["closed"] == ["BTCUSDT"]
        assert len(result["errors"]) == 1
        assert result["errors"][0].startswith("ETHUSDT")
        assert [t.symbol for t in agent.open_trades()] == ["ETHUSDT"]
