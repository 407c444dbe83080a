"""Status views for the dashboard, recomputed on every read.

Balance lookups are the expensive part, so a full refresh of every agent
happens at most once per ``refresh_interval`` across all callers.
"""

import asyncio
import logging
import time
from typing import Callable

from agent_arena.engine.registry import AgentRegistry
from agent_arena.models.agent import AgentState
from agent_arena.services.wallet_balance import BalanceService

logger = logging.getLogger(__name__)


class StatusAggregator:
    def __init__(
        self,
        registry: AgentRegistry,
        balance_service: BalanceService,
        refresh_interval: float = 120.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.registry = registry
        self.balance_service = balance_service
        self.refresh_interval = refresh_interval
        self.last_refresh: float | None = None
        self._clock = clock

    def _due(self) -> bool:
        return self.last_refresh is None or self._clock() - self.last_refresh > self.refresh_interval

    async def refresh_balances(self, force: bool = False) -> bool:
        """Refresh every agent's balances if the shared interval has elapsed."""
        if not force and not self._due():
            return False
        self.last_refresh = self._clock()
        agents = self.registry.all()
        for agent in agents:
            if agent.has_credentials and agent.client is None:
                self.registry.client_for(agent)
        logger.info(f"Refreshing balances for {len(agents)} agents")
        results = await asyncio.gather(
            *(self.balance_service.refresh(agent) for agent in agents), return_exceptions=True
        )
        for agent, result in zip(agents, results):
            if isinstance(result, Exception):
                logger.error(f"{agent.tag} Balance refresh failed: {result}")
        return True

    async def get_all_statuses(self) -> list[dict]:
        await self.refresh_balances()
        return [agent.to_status() for agent in self.registry.all()]

    async def get_status(self, agent_id: int) -> dict:
        agent = self.registry.get(agent_id)
        await self.refresh_balances()
        return agent.to_status()

    def aggregate(self, agents: list[AgentState] | None = None) -> dict:
        agents = agents if agents is not None else self.registry.all()
        return {
            "total_agents": len(agents),
            "running_agents": sum(1 for a in agents if a.is_running),
            "total_trades": sum(len(a.trades) for a in agents),
            "active_trades": sum(len(a.open_trades()) for a in agents),
            "total_token_positions": sum(len(a.token_positions) for a in agents),
            "active_token_positions": sum(len(a.active_token_positions()) for a in agents),
            "total_successes": sum(a.success_count for a in agents),
            "total_failures": sum(a.failure_count for a in agents),
            "total_trade_pnl": round(sum(a.trade_pnl for a in agents), 4),
            "total_pnl": round(sum(a.total_pnl for a in agents), 2),
        }
