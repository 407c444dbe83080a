"""Emergency stop: stop every agent's schedule and close all exchange positions."""

import logging

from agent_arena.engine.supervisor import AgentSupervisor, _notify

logger = logging.getLogger(__name__)


async def run_emergency_stop(
    supervisor: AgentSupervisor,
    close_positions: bool = True,
    stop_agents: bool = True,
) -> dict:
    """Execute emergency stop across all agents.

    Schedules are stopped first so no new decision can open a position while
    the existing ones are being closed. Each agent's close waits for its
    in-flight cycle, if any. The journal is flushed at the end.

    Returns dict with positions_closed, errors, agents_stopped.
    """
    result = {"positions_closed": 0, "errors": [], "agents_stopped": 0}

    if stop_agents:
        running = [a.agent_id for a in supervisor.registry.all() if a.is_running]
        supervisor.stop_all()
        result["agents_stopped"] = len(running)

    if close_positions:
        for agent in supervisor.registry.all():
            if not agent.has_credentials:
                continue
            try:
                summary = await supervisor.close_agent_positions(agent.agent_id)
            except Exception as e:
                error_msg = f"Failed to close positions for agent {agent.agent_id}: {e}"
                logger.error(error_msg)
                result["errors"].append(error_msg)
                continue
            result["positions_closed"] += len(summary["closed"])
            result["errors"].extend(f"agent {agent.agent_id}: {err}" for err in summary["errors"])

    await supervisor.journal.flush_async()
    logger.warning(
        f"[emergency_stop] Stopped {result['agents_stopped']} agents, "
        f"closed {result['positions_closed']} positions, {len(result['errors'])} errors"
    )
    _notify(
        f"Emergency stop: {result['agents_stopped']} agents stopped, "
        f"{result['positions_closed']} positions closed, {len(result['errors'])} errors"
    )
    return result
