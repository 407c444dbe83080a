"""Tests for the emergency stop and the run-once shutdown handler."""

import asyncio

import pytest

from conftest import position
from agent_arena.engine.shutdown import ShutdownHandler
from agent_arena.engine.supervisor import _notify
from agent_arena.schemas.decision import TradeDecision
from agent_arena.services import telegram_bot
from agent_arena.services.emergency_stop import run_emergency_stop
from agent_arena.services.exchange_client import CloseResult, ExchangeError, OrderResult


@pytest.mark.asyncio
async def test_emergency_stop_stops_then_closes(supervisor, exchange):
    supervisor.start_agent(1)
    exchange.get_positions.return_value = [position("BTCUSDT", 1.0), position("ETHUSDT", -1.0)]

    result = await run_emergency_stop(supervisor)

    assert result == {"positions_closed": 2, "errors": [], "agents_stopped": 1}
    agent = supervisor.registry.get(1)
    assert agent.is_running is False
    assert agent.stop_token.is_set()
    assert supervisor.journal.dirty is False


@pytest.mark.asyncio
async def test_emergency_stop_reports_errors_and_continues(supervisor, exchange):
    exchange.get_positions.side_effect = ExchangeError("account endpoint down")

    result = await run_emergency_stop(supervisor, stop_agents=False)

    assert result["positions_closed"] == 0
    assert len(result["errors"]) == 1
    assert "agent 1" in result["errors"][0]


@pytest.mark.asyncio
async def test_stop_only_leaves_positions(supervisor, exchange):
    result = await run_emergency_stop(supervisor, close_positions=False)

    exchange.get_positions.assert_not_called()
    assert result["positions_closed"] == 0


@pytest.mark.asyncio
async def test_shutdown_runs_once(supervisor, exchange):
    exchange.get_positions.return_value = [position("BTCUSDT", 1.0)]
    handler = ShutdownHandler(supervisor)

    first = handler.trigger("signal SIGTERM")
    second = handler.trigger("uncaught exception")
    await first
    await handler.done.wait()

    assert second is None
    assert handler.is_shutting_down
    assert handler.result["positions_closed"] == 1
    exchange.close_position.assert_awaited_once_with("BTCUSDT")


@pytest.mark.asyncio
async def test_emergency_stop_waits_for_in_flight_entry(supervisor, exchange, gateway):
    held = []
    entered = asyncio.Event()
    release = asyncio.Event()

    async def last_price(symbol):
        entered.set()
        await release.wait()
        return 100.0

    async def place_order(order):
        held.append(position(order.symbol, order.quantity))
        return OrderResult(order_id="1001", symbol=order.symbol)

    async def close_position(symbol):
        held[:] = [p for p in held if p.symbol != symbol]
        return CloseResult(closed=True, symbol=symbol, message=f"Closed {symbol}", order_id="2001")

    exchange.get_positions.side_effect = lambda: list(held)
    exchange.get_last_price.side_effect = last_price
    exchange.place_order.side_effect = place_order
    exchange.close_position.side_effect = close_position
    gateway.decide.return_value = TradeDecision(
        symbol="BTCUSDT", action="LONG", leverage=10, usd_amount=200,
        confidence=80, stop_loss=98, take_profit=106, reasoning="momentum",
    )
    supervisor.start_agent(1)
    supervisor.registry.get(1).needs_position_sync = False

    cycle = asyncio.create_task(supervisor.run_cycle(1))
    await entered.wait()
    stop = asyncio.create_task(run_emergency_stop(supervisor))
    for _ in range(5):
        await asyncio.sleep(0)
    assert not stop.done()

    release.set()
    await cycle
    result = await stop

    assert held == []
    assert result["positions_closed"] == 1
    assert result["errors"] == []
    agent = supervisor.registry.get(1)
    assert agent.is_running is False
    assert agent.open_trades() == []


@pytest.mark.asyncio
async def test_emergency_stop_with_unknown_provider(misconfigured_supervisor, exchange):
    exchange.get_positions.return_value = [position("BTCUSDT", 1.0)]

    result = await run_emergency_stop(misconfigured_supervisor)

    # agents 1 and 2 both hold credentials; the bad provider does not stop the close
    assert result["positions_closed"] == 2
    assert result["errors"] == []


@pytest.mark.asyncio
async def test_notification_failure_is_contained(supervisor, exchange, monkeypatch):
    def broken_bot():
        raise RuntimeError("bot loop stopped")

    monkeypatch.setattr(telegram_bot, "get_bot", broken_bot)
    exchange.get_positions.return_value = [position("BTCUSDT", 1.0)]

    _notify("hello")
    exchange.sync_clock.side_effect = ExchangeError("clock endpoint down")
    await supervisor.run_cycle(1)
    result = await run_emergency_stop(supervisor)

    agent = supervisor.registry.get(1)
    assert agent.failure_count == 1
    assert agent.last_error == "clock endpoint down"
    assert result["positions_closed"] == 1
