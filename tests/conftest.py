"""Shared fakes for supervisor, status and API tests."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from agent_arena.config import AgentConfig, Settings
from agent_arena.engine.registry import AgentRegistry
from agent_arena.engine.supervisor import AgentSupervisor
from agent_arena.schemas.decision import TradeDecision
from agent_arena.services.exchange_client import Balance, CloseResult, OrderResult, Position
from agent_arena.services.journal_store import JournalStore


def ticker(symbol: str, price: float = 100.0) -> dict:
    return {
        "symbol": symbol,
        "lastPrice": str(price),
        "priceChange": "1.5",
        "priceChangePercent": "1.52",
        "volume": "12345",
        "highPrice": str(price * 1.02),
        "lowPrice": str(price * 0.97),
    }


def position(symbol: str, amount: float, entry: float = 100.0, mark: float = 101.0) -> Position:
    return Position(
        symbol=symbol,
        position_amt=amount,
        entry_price=entry,
        mark_price=mark,
        unrealized_profit=(mark - entry) * amount,
        leverage=20,
    )


def make_exchange(positions=None, balance: float = 1000.0, price: float = 100.0, quantity: float = 1.0):
    """A MagicMock standing in for AsterdexClient with sensible async defaults."""
    client = MagicMock()
    client.sync_clock = AsyncMock(return_value=0)
    client.get_open_orders = AsyncMock(return_value=[])
    client.cancel_order = AsyncMock(return_value={})
    client.get_balance = AsyncMock(
        return_value=Balance(asset="USDT", balance=balance, available_balance=balance)
    )
    client.get_positions = AsyncMock(return_value=list(positions or []))
    client.get_ticker = AsyncMock(side_effect=lambda symbol: ticker(symbol, price))
    client.get_last_price = AsyncMock(return_value=price)
    client.round_price = AsyncMock(side_effect=lambda symbol, value: round(value, 2))
    client.set_leverage = AsyncMock(return_value={})
    client.calculate_quantity = AsyncMock(return_value=quantity)
    client.place_order = AsyncMock(return_value=OrderResult(order_id="1001", symbol="BTCUSDT"))
    client.set_stop_loss = AsyncMock(return_value=OrderResult(order_id="1002", symbol="BTCUSDT"))
    client.set_take_profit = AsyncMock(return_value=OrderResult(order_id="1003", symbol="BTCUSDT"))
    client.close_position = AsyncMock(
        side_effect=lambda symbol: CloseResult(closed=True, symbol=symbol, message=f"Closed {symbol}", order_id="2001")
    )
    client.close = AsyncMock()
    return client


def make_gateway(decision: TradeDecision | None = None):
    gateway = MagicMock()
    gateway.name = "fake"
    gateway.decide = AsyncMock(return_value=decision or TradeDecision.hold("nothing to do"))
    gateway.close = AsyncMock()
    return gateway


@pytest.fixture
def settings(tmp_path):
    return Settings(
        agent_count=6,
        agents={1: AgentConfig(name="Alpha", api_key="key-1", api_secret="secret-1")},
        symbols=["BTCUSDT", "ETHUSDT"],
        journal_path=tmp_path / "journal.json",
        telegram_bot_token="",
    )


@pytest.fixture
def exchange():
    return make_exchange()


@pytest.fixture
def gateway():
    return make_gateway()


@pytest.fixture
def balance_service():
    service = MagicMock()
    service.refresh = AsyncMock()
    service.close = AsyncMock()
    return service


@pytest.fixture
def sched():
    sched = MagicMock()
    sched.get_job.return_value = None
    return sched


@pytest.fixture
def supervisor(settings, exchange, gateway, balance_service, sched):
    registry = AgentRegistry(
        settings,
        client_factory=lambda agent: exchange,
        gateway_factory=lambda config, s: gateway,
    )
    journal = JournalStore(settings.journal_path)
    return AgentSupervisor(settings, journal, balance_service, registry=registry, sched=sched)


@pytest.fixture
def misconfigured_supervisor(settings, exchange, balance_service, sched):
    """Agent 2 names a decision provider that does not exist; gateways come from the real factory."""
    settings.agents[2] = AgentConfig(name="Beta", api_key="key-2", api_secret="secret-2", provider="gpt5")
    registry = AgentRegistry(settings, client_factory=lambda agent: exchange)
    journal = JournalStore(settings.journal_path)
    return AgentSupervisor(settings, journal, balance_service, registry=registry, sched=sched)
