"""Request bodies for the automation control surface."""

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StartRequest(_CamelModel):
    agent_id: int | None = None
    interval_minutes: int = Field(default=5, ge=1, le=1440)
    start_all: bool = False


class StopRequest(_CamelModel):
    agent_id: int | None = None
    stop_all: bool = False
    close_positions: bool = False


class ClosePositionRequest(_CamelModel):
    agent_id: int
    symbol: str = Field(min_length=1, max_length=32)


class TokenPositionCreate(_CamelModel):
    token: str = Field(min_length=1, max_length=64)
    amount: float = Field(gt=0)
    entry_price: float = Field(ge=0)
    venue: str = "onchain"
    tx_ref: str | None = None
