"""Tests for the shared balance throttle and the aggregate view."""

import pytest

from agent_arena.engine.status import StatusAggregator
from agent_arena.models.agent import TokenPosition
from agent_arena.models.trade import Trade, TradeSide, TradeStatus


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def status(supervisor, balance_service, clock):
    return StatusAggregator(supervisor.registry, balance_service, refresh_interval=120, clock=clock)


@pytest.mark.asyncio
async def test_balances_refresh_at_most_once_per_interval(status, balance_service, clock):
    await status.get_all_statuses()
    await status.get_all_statuses()
    await status.get_status(3)
    assert balance_service.refresh.await_count == 6

    clock.now += 60
    await status.get_all_statuses()
    assert balance_service.refresh.await_count == 6

    clock.now += 61
    await status.get_all_statuses()
    assert balance_service.refresh.await_count == 12


@pytest.mark.asyncio
async def test_forced_refresh_ignores_interval(status, balance_service):
    await status.refresh_balances()
    assert await status.refresh_balances(force=True) is True
    assert balance_service.refresh.await_count == 12


@pytest.mark.asyncio
async def test_refresh_creates_clients_for_configured_agents(status, supervisor, exchange):
    await status.refresh_balances()

    assert supervisor.registry.get(1).client is exchange
    assert supervisor.registry.get(2).client is None


def test_status_lists_every_agent(supervisor):
    statuses = [agent.to_status() for agent in supervisor.registry.all()]
    assert [s["agent_id"] for s in statuses] == [1, 2, 3, 4, 5, 6]
    assert statuses[0]["name"] == "Alpha"
    assert statuses[1]["name"] == "Agent 2"


def test_aggregate_counts(supervisor):
    one = supervisor.registry.get(1)
    two = supervisor.registry.get(2)
    one.is_running = True
    one.success_count = 3
    two.failure_count = 2
    one.trades = [
        Trade(symbol="BTCUSDT", side=TradeSide.LONG, leverage=5, amount=100, quantity=1, entry_price=100,
              unrealized_pnl=12.5),
        Trade(symbol="ETHUSDT", side=TradeSide.SHORT, leverage=5, amount=100, quantity=1, entry_price=100,
              status=TradeStatus.CLOSED, realized_pnl=-2.5),
    ]
    two.trades = [
        Trade(symbol="SOLUSDT", side=TradeSide.LONG, leverage=5, amount=100, quantity=0, entry_price=0,
              status=TradeStatus.FAILED),
    ]
    two.token_positions = [
        TokenPosition(token="CAKE", amount=10, entry_price=2),
        TokenPosition(token="XVS", amount=5, entry_price=7, status="closed"),
    ]

    stats = supervisor.status.aggregate()

    assert stats["total_agents"] == 6
    assert stats["running_agents"] == 1
    assert stats["total_trades"] == 3
    assert stats["active_trades"] == 1
    assert stats["total_token_positions"] == 2
    assert stats["active_token_positions"] == 1
    assert stats["total_successes"] == 3
    assert stats["total_failures"] == 2
    assert stats["total_trade_pnl"] == 10.0


def test_total_pnl_is_balance_minus_baseline(supervisor):
    agent = supervisor.registry.get(1)
    agent.balances.ledger_balance = 1000
    agent.balances.exchange_balance = 950

    assert agent.total_pnl == 50
    assert agent.to_status()["total_pnl"] == 50


@pytest.mark.asyncio
async def test_one_failing_refresh_does_not_break_status(status, supervisor, balance_service):
    async def refresh(agent):
        if agent.agent_id == 2:
            raise RuntimeError("unexpected payload")
        return agent.balances

    balance_service.refresh.side_effect = refresh

    statuses = await status.get_all_statuses()

    assert len(statuses) == len(supervisor.registry.all())
    assert balance_service.refresh.await_count == len(statuses)
