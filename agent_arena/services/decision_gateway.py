"""Decision providers: turn a market context into a TradeDecision.

One gateway is chosen per agent when its state is created. The HTTP gateway
talks to a relay exposing ``/api/decision/<provider>``; agents with no
provider configured get the HOLD gateway.
"""

import json
import logging
from abc import ABC, abstractmethod
from enum import Enum

import httpx
from pydantic import ValidationError

from agent_arena.config import AgentConfig, Settings
from agent_arena.schemas.decision import DecisionContext, TradeDecision

logger = logging.getLogger(__name__)

PROMPT_TEMPLATE = """You are a professional crypto futures trader. Find trading opportunities and execute with proper risk management. Return ONLY valid JSON.

MARKET DATA:
{market_data}

BALANCE: ${balance:.2f} USDT
ACTIVE POSITIONS: {open_positions}

REQUIRED JSON FORMAT (ALL FIELDS MANDATORY):
{{
  "symbol": "BTCUSDT",
  "action": "LONG|SHORT|CLOSE|HOLD",
  "leverage": {max_leverage},
  "usdAmount": 100-300,
  "confidence": 0-100,
  "reasoning": "detailed explanation",
  "stopLoss": number (REQUIRED - specific price),
  "takeProfit": number (REQUIRED - specific price)
}}

TRADING RULES:
1. ALWAYS set stopLoss and takeProfit
2. Position sizes: $100-$300 (scale with confidence)
3. Leverage: at most {max_leverage}x
4. Stop loss: 2-3% from entry
5. Take profit: 4-8% from entry (2:1 risk/reward minimum)

RESPOND WITH VALID JSON ONLY."""


class DecisionGatewayError(Exception):
    """The provider could not be reached or returned an unusable decision."""


class GatewayProvider(str, Enum):
    DEEPSEEK = "deepseek"
    OPENAI = "openai"
    XAI = "xai"
    QWEN = "qwen"
    GOOGLE = "google"
    ANTHROPIC = "anthropic"


def build_prompt(context: DecisionContext, max_leverage: int = 20) -> str:
    market_data = json.dumps([s.model_dump(by_alias=True) for s in context.symbols], indent=2)
    return PROMPT_TEMPLATE.format(
        market_data=market_data,
        balance=context.balance,
        open_positions=len(context.open_positions),
        max_leverage=max_leverage,
    )


def extract_json(text: str) -> str:
    """Pull the first JSON object out of free text (code fences, prose around it)."""
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end < start:
        raise DecisionGatewayError(f"No JSON object in provider output: {text[:200]!r}")
    return text[start:end + 1]


def parse_decision(payload) -> TradeDecision:
    """Accept either a decision object or ``{"content": "<text with JSON>"}``."""
    if isinstance(payload, dict) and "content" in payload and "action" not in payload:
        content = payload.get("content") or ""
        if not isinstance(content, str) or not content.strip():
            raise DecisionGatewayError("Empty content from provider")
        try:
            payload = json.loads(extract_json(content))
        except json.JSONDecodeError as e:
            raise DecisionGatewayError(f"Invalid JSON from provider: {e}") from e
    if not isinstance(payload, dict):
        raise DecisionGatewayError(f"Unexpected provider payload type: {type(payload).__name__}")
    try:
        return TradeDecision.model_validate(payload)
    except ValidationError as e:
        raise DecisionGatewayError(f"Malformed decision: {e.errors()[0].get('msg')}") from e


class DecisionGateway(ABC):
    """Interface every decision provider implements."""

    name: str = "base"

    @abstractmethod
    async def decide(self, context: DecisionContext) -> TradeDecision:
        """Return the decision for this cycle or raise DecisionGatewayError."""

    async def close(self):
        pass


class HoldDecisionGateway(DecisionGateway):
    name = "hold"

    async def decide(self, context: DecisionContext) -> TradeDecision:
        return TradeDecision.hold(reasoning="No decision provider configured")


class HttpDecisionGateway(DecisionGateway):
    def __init__(
        self,
        provider: GatewayProvider,
        relay_url: str,
        api_key: str = "",
        timeout: float = 60.0,
        max_leverage: int = 20,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.provider = provider
        self.name = provider.value
        self.url = f"{relay_url.rstrip('/')}/api/decision/{provider.value}"
        self.api_key = api_key
        self.timeout = timeout
        self.max_leverage = max_leverage
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout)

    async def decide(self, context: DecisionContext) -> TradeDecision:
        body = {
            "prompt": build_prompt(context, self.max_leverage),
            "apiKey": self.api_key,
            "context": context.to_payload(),
        }
        try:
            response = await self._http.post(self.url, json=body, timeout=self.timeout)
        except httpx.TimeoutException as e:
            raise DecisionGatewayError(f"{self.name}: timed out after {self.timeout}s") from e
        except httpx.HTTPError as e:
            raise DecisionGatewayError(f"{self.name}: {e}") from e

        if response.status_code >= 400:
            raise DecisionGatewayError(f"{self.name}: HTTP {response.status_code} {response.text[:200]}")
        try:
            data = response.json()
        except ValueError as e:
            raise DecisionGatewayError(f"{self.name}: non-JSON response {response.text[:200]!r}") from e
        if isinstance(data, dict) and data.get("error"):
            raise DecisionGatewayError(f"{self.name} API error: {data['error']}")

        decision = parse_decision(data)
        logger.debug(f"{self.name} decision: {decision.action.value} {decision.symbol}")
        return decision

    async def close(self):
        if self._owns_http:
            await self._http.aclose()


def build_gateway(agent: AgentConfig, settings: Settings) -> DecisionGateway:
    """Select the gateway for one agent from its configured provider."""
    if not agent.provider:
        return HoldDecisionGateway()
    try:
        provider = GatewayProvider(agent.provider.lower())
    except ValueError as e:
        raise DecisionGatewayError(f"Unknown decision provider: {agent.provider}") from e
    return HttpDecisionGateway(
        provider=provider,
        relay_url=settings.decision_relay_url,
        api_key=agent.provider_api_key,
        timeout=settings.decision_timeout_seconds,
        max_leverage=settings.max_leverage,
    )
