"""Agent registry: the single owner of per-agent state.

States are created lazily on first access and never destroyed; ``reset``
replaces an agent's state with a fresh one that keeps its credentials and
connections.
"""

import logging
from typing import Callable

from agent_arena.config import AgentConfig, Settings
from agent_arena.models.agent import AgentState
from agent_arena.services.decision_gateway import (
    DecisionGateway,
    DecisionGatewayError,
    HoldDecisionGateway,
    build_gateway,
)
from agent_arena.services.exchange_client import AsterdexClient

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """An agent is missing the configuration needed to trade."""


class InvalidAgentError(ValueError):
    pass


def _default_client_factory(agent: AgentState) -> AsterdexClient:
    return AsterdexClient.from_settings(agent.api_key, agent.api_secret)


class AgentRegistry:
    def __init__(
        self,
        settings: Settings,
        client_factory: Callable[[AgentState], AsterdexClient] | None = None,
        gateway_factory: Callable[[AgentConfig, Settings], DecisionGateway] | None = None,
    ):
        self.settings = settings
        self._client_factory = client_factory or _default_client_factory
        self._gateway_factory = gateway_factory or build_gateway
        self._agents: dict[int, AgentState] = {}

    @property
    def agent_ids(self) -> list[int]:
        return list(range(1, self.settings.agent_count + 1))

    def validate_id(self, agent_id: int) -> int:
        if agent_id not in self.agent_ids:
            raise InvalidAgentError(f"Invalid agent id {agent_id}: must be 1-{self.settings.agent_count}")
        return agent_id

    def _config_for(self, agent_id: int) -> AgentConfig:
        return self.settings.agents.get(agent_id) or AgentConfig()

    def _create(self, agent_id: int) -> AgentState:
        config = self._config_for(agent_id)
        state = AgentState(
            agent_id=agent_id,
            name=config.name or f"Agent {agent_id}",
            api_key=config.api_key,
            api_secret=config.api_secret,
            wallet_address=config.wallet_address,
            baseline_balance=self.settings.baseline_balance,
        )
        try:
            state.gateway = self._gateway_factory(config, self.settings)
        except DecisionGatewayError as e:
            # the agent stays visible but cannot start
            logger.error(f"{state.tag} {e}")
            state.gateway = HoldDecisionGateway()
            state.config_error = str(e)
            state.last_error = str(e)
        logger.debug(f"{state.tag} created with gateway {state.gateway.name}")
        return state

    def get(self, agent_id: int) -> AgentState:
        self.validate_id(agent_id)
        if agent_id not in self._agents:
            self._agents[agent_id] = self._create(agent_id)
        return self._agents[agent_id]

    def all(self) -> list[AgentState]:
        """Every configured agent, creating states as needed."""
        return [self.get(agent_id) for agent_id in self.agent_ids]

    def client_for(self, agent: AgentState) -> AsterdexClient:
        """The agent's exchange client, created on first use."""
        if not agent.has_credentials:
            raise ConfigurationError(f"Exchange API credentials not configured for agent {agent.agent_id}")
        if agent.client is None:
            agent.client = self._client_factory(agent)
        return agent.client

    def reset(self, agent_id: int) -> AgentState:
        old = self.get(agent_id)
        fresh = self._create(agent_id)
        fresh.client = old.client
        self._agents[agent_id] = fresh
        logger.info(f"{fresh.tag} state reset")
        return fresh

    async def close(self):
        for agent in self._agents.values():
            if agent.client is not None:
                await agent.client.close()
            if agent.gateway is not None:
                await agent.gateway.close()
