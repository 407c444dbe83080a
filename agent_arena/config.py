"""Application configuration via environment variables."""

from pathlib import Path

from pydantic import BaseModel
from pydantic_settings import BaseSettings

PROJECT_ROOT = Path(__file__).resolve().parent.parent


class AgentConfig(BaseModel):
    """Credentials and wiring for a single trading agent."""

    name: str = ""
    api_key: str = ""
    api_secret: str = ""
    provider: str = ""  # decision provider, e.g. "deepseek"; empty = always HOLD
    provider_api_key: str = ""
    wallet_address: str = ""  # on-chain ledger wallet for balance snapshots


class Settings(BaseSettings):
    log_level: str = "INFO"
    cors_origins: list[str] = ["http://localhost:3000"]

    # Auth
    admin_username: str = "admin"
    admin_password_hash: str = ""  # bcrypt hash; generate with: python -m agent_arena.cli create-admin
    admin_totp_secret: str = ""
    jwt_secret: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    jwt_expire_minutes: int = 1440  # 24 hours

    # Exchange
    exchange_base_url: str = "https://fapi.asterdex.com"
    recv_window_ms: int = 60000
    request_timeout_seconds: float = 10.0
    clock_sync_cooldown_seconds: float = 60.0
    clock_fallback_offset_ms: int = -2500

    # Agents
    agent_count: int = 6
    agents: dict[int, AgentConfig] = {}
    symbols: list[str] = ["BTCUSDT", "ETHUSDT", "BNBUSDT", "SOLUSDT"]
    default_interval_minutes: int = 5
    start_stagger_seconds: float = 2.0
    auto_start: bool = False  # start every agent when the API server boots
    auto_start_interval_minutes: int = 3

    # Trading safety
    max_active_trades: int = 2
    max_leverage: int = 20
    min_confidence: float = 40.0
    min_trading_balance: float = 100.0

    # Decision gateway
    decision_relay_url: str = "http://localhost:3000"
    decision_timeout_seconds: float = 60.0

    # Journal
    journal_path: Path = PROJECT_ROOT / "logs" / "journal.json"
    journal_max_entries_per_agent: int = 100
    journal_max_persisted: int = 500
    journal_flush_seconds: float = 1.0

    # Balances
    balance_refresh_seconds: float = 120.0
    baseline_balance: float = 1900.0
    ledger_rpc_url: str = "https://bsc-dataseed.binance.org/"
    ledger_asset_usd_price: float = 600.0
    ledger_balance_default: float = 1000.0

    # Shutdown
    close_positions_on_shutdown: bool = True

    # Telegram
    telegram_bot_token: str = ""
    telegram_chat_ids: list[int] = []

    model_config = {"env_prefix": "ARENA_", "env_file": ".env", "env_nested_delimiter": "__"}


settings = Settings()
