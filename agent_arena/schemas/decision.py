"""Pydantic schemas exchanged with the decision provider."""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class DecisionAction(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"
    CLOSE = "CLOSE"
    HOLD = "HOLD"


class TradeDecision(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    symbol: str = ""
    action: DecisionAction
    leverage: int = Field(default=1, ge=1)
    usd_amount: float = Field(default=0.0, ge=0)
    confidence: float = Field(default=0.0, ge=0, le=100)
    reasoning: str = ""
    stop_loss: float | None = Field(default=None, gt=0)
    take_profit: float | None = Field(default=None, gt=0)

    @field_validator("action", mode="before")
    @classmethod
    def _normalize_action(cls, value):
        if isinstance(value, str):
            return value.strip().upper()
        return value

    @field_validator("stop_loss", "take_profit", mode="before")
    @classmethod
    def _zero_means_unset(cls, value):
        if value in (0, "", "0"):
            return None
        return value

    @field_validator("symbol")
    @classmethod
    def _normalize_symbol(cls, value: str) -> str:
        return value.strip().upper()

    @classmethod
    def hold(cls, reasoning: str = "", symbol: str = "") -> "TradeDecision":
        return cls(symbol=symbol, action=DecisionAction.HOLD, reasoning=reasoning)


class SymbolSnapshot(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    symbol: str
    price: float
    price_change: float = 0.0
    price_change_percent: float = 0.0
    volume: float = 0.0
    high24h: float = 0.0
    low24h: float = 0.0

    @classmethod
    def from_ticker(cls, ticker: dict) -> "SymbolSnapshot":
        return cls(
            symbol=ticker["symbol"],
            price=float(ticker["lastPrice"]),
            price_change=float(ticker.get("priceChange", 0) or 0),
            price_change_percent=float(ticker.get("priceChangePercent", 0) or 0),
            volume=float(ticker.get("volume", 0) or 0),
            high24h=float(ticker.get("highPrice", 0) or 0),
            low24h=float(ticker.get("lowPrice", 0) or 0),
        )


class OpenPositionView(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    symbol: str
    side: str
    position_amt: float
    entry_price: float
    mark_price: float
    unrealized_profit: float
    leverage: int


class DecisionContext(BaseModel):
    """Everything the decision provider sees for one cycle."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    agent_id: int
    symbols: list[SymbolSnapshot]
    balance: float
    open_positions: list[OpenPositionView] = []

    def to_payload(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)
