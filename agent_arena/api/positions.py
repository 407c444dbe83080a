"""Live exchange positions API."""

import logging
from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException

from agent_arena.api.deps import get_current_user, get_supervisor
from agent_arena.engine.registry import ConfigurationError, InvalidAgentError
from agent_arena.engine.supervisor import AgentSupervisor
from agent_arena.schemas.automation import ClosePositionRequest
from agent_arena.services.exchange_client import ExchangeError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/positions", tags=["positions"], dependencies=[Depends(get_current_user)])


@router.get("/{agent_id}")
async def agent_positions(agent_id: int, supervisor: AgentSupervisor = Depends(get_supervisor)):
    """Return actual open positions from the exchange for one agent."""
    try:
        agent = supervisor.registry.get(agent_id)
        client = supervisor.registry.client_for(agent)
    except (InvalidAgentError, ConfigurationError) as e:
        raise HTTPException(status_code=400, detail=str(e))

    try:
        positions = await client.get_positions()
    except ExchangeError as e:
        logger.error(f"{agent.tag} Failed to fetch positions: {e}")
        raise HTTPException(status_code=502, detail=str(e))

    result = []
    for pos in positions:
        if not pos.is_open:
            continue
        notional = abs(pos.position_amt) * pos.entry_price
        pnl_pct = (pos.unrealized_profit / notional * 100) if notional > 0 else 0.0
        result.append({
            **asdict(pos),
            "side": pos.side,
            "notional": round(notional, 2),
            "unrealized_pnl_pct": round(pnl_pct, 2),
        })
    return result


@router.post("/close")
async def close_position(body: ClosePositionRequest, supervisor: AgentSupervisor = Depends(get_supervisor)):
    """Manually close one symbol for one agent."""
    try:
        return await supervisor.close_position(body.agent_id, body.symbol.upper())
    except (InvalidAgentError, ConfigurationError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ExchangeError as e:
        raise HTTPException(status_code=502, detail=str(e))
