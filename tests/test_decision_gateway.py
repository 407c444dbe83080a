"""Tests for decision parsing and the HTTP relay gateway."""

import json

import httpx
import pytest

from agent_arena.config import AgentConfig, Settings
from agent_arena.schemas.decision import DecisionAction, DecisionContext, SymbolSnapshot
from agent_arena.services.decision_gateway import (
    DecisionGatewayError,
    GatewayProvider,
    HoldDecisionGateway,
    HttpDecisionGateway,
    build_gateway,
    build_prompt,
    parse_decision,
)

DECISION = {
    "symbol": "BTCUSDT", "action": "LONG", "leverage": 10, "usdAmount": 150,
    "confidence": 75, "reasoning": "higher lows", "stopLoss": 64000, "takeProfit": 68000,
}


def context() -> DecisionContext:
    return DecisionContext(
        agent_id=2,
        symbols=[SymbolSnapshot(symbol="BTCUSDT", price=65000, price_change_percent=1.2)],
        balance=812.5,
    )


def relay(handler) -> HttpDecisionGateway:
    return HttpDecisionGateway(
        provider=GatewayProvider.DEEPSEEK,
        relay_url="http://relay.test/",
        api_key="sk-test",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


# ---------------------------------------------------------------------------
# 1. Parsing
# ---------------------------------------------------------------------------

class TestParseDecision:
    def test_plain_decision_object(self):
        decision = parse_decision(DECISION)
        assert decision.action == DecisionAction.LONG
        assert decision.take_profit == 68000

    def test_content_with_prose_and_fences(self):
        content = "Here is my call:\n```json\n" + json.dumps(DECISION) + "\n```\nGood luck."
        decision = parse_decision({"content": content})
        assert decision.symbol == "BTCUSDT"
        assert decision.usd_amount == 150

    def test_content_without_json(self):
        with pytest.raises(DecisionGatewayError):
            parse_decision({"content": "I would hold for now."})

    def test_empty_content(self):
        with pytest.raises(DecisionGatewayError):
            parse_decision({"content": ""})

    def test_unknown_action(self):
        with pytest.raises(DecisionGatewayError):
            parse_decision({**DECISION, "action": "BUY_THE_DIP"})

    def test_confidence_out_of_range(self):
        with pytest.raises(DecisionGatewayError):
            parse_decision({**DECISION, "confidence": 140})


def test_prompt_includes_market_and_limits():
    prompt = build_prompt(context(), max_leverage=15)
    assert "BTCUSDT" in prompt
    assert "$812.50 USDT" in prompt
    assert "at most 15x" in prompt


# ---------------------------------------------------------------------------
# 2. Gateways
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_hold_gateway():
    decision = await HoldDecisionGateway().decide(context())
    assert decision.action == DecisionAction.HOLD


@pytest.mark.asyncio
async def test_relay_request_and_response():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"content": json.dumps(DECISION)})

    gateway = relay(handler)
    decision = await gateway.decide(context())

    assert decision.action == DecisionAction.LONG
    request = seen[0]
    assert request.url == "http://relay.test/api/decision/deepseek"
    body = json.loads(request.content)
    assert body["apiKey"] == "sk-test"
    assert body["context"]["agentId"] == 2
    assert "BTCUSDT" in body["prompt"]


@pytest.mark.asyncio
async def test_relay_error_field_raises():
    gateway = relay(lambda request: httpx.Response(200, json={"error": "quota exceeded"}))
    with pytest.raises(DecisionGatewayError, match="quota exceeded"):
        await gateway.decide(context())


@pytest.mark.asyncio
async def test_relay_http_error_raises():
    gateway = relay(lambda request: httpx.Response(502, text="bad gateway"))
    with pytest.raises(DecisionGatewayError, match="HTTP 502"):
        await gateway.decide(context())


@pytest.mark.asyncio
async def test_relay_timeout_raises():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(DecisionGatewayError, match="timed out"):
        await relay(handler).decide(context())


def test_build_gateway_selects_provider():
    settings = Settings(decision_relay_url="http://relay.test")
    assert isinstance(build_gateway(AgentConfig(), settings), HoldDecisionGateway)
    gateway = build_gateway(AgentConfig(provider="OpenAI", provider_api_key="k"), settings)
    assert isinstance(gateway, HttpDecisionGateway)
    assert gateway.url == "http://relay.test/api/decision/openai"
    with pytest.raises(DecisionGatewayError):
        build_gateway(AgentConfig(provider="markov-chain"), settings)
