"""Journal entry model.

Entries are immutable. On disk they are stored camelCase (``agentId``,
``entryPrice``...) so existing journal files keep loading.
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class EntryType(str, Enum):
    DECISION = "decision"
    LONG_OPENED = "long-opened"
    SHORT_OPENED = "short-opened"
    POSITION_CLOSED = "position-closed"
    ERROR = "error"


class JournalEntry(BaseModel):
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    timestamp: int  # epoch milliseconds
    agent_id: int
    type: EntryType
    symbol: str | None = None
    decision: str | None = None
    reasoning: str | None = None
    amount: float | None = None
    leverage: int | None = None
    entry_price: float | None = None
    stop_loss: float | None = None
    take_profit: float | None = None
    confidence: float | None = None
    result: str | None = None
    external_ref: str | None = None

    def to_record(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
