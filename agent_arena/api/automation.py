"""Automation API: start/stop agents, status and journal."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from agent_arena.api.deps import get_current_user, get_supervisor
from agent_arena.engine.registry import ConfigurationError, InvalidAgentError
from agent_arena.engine.supervisor import AgentSupervisor
from agent_arena.models.agent import TokenPosition
from agent_arena.schemas.automation import StartRequest, StopRequest, TokenPositionCreate

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/automation", tags=["automation"], dependencies=[Depends(get_current_user)])


@router.post("/start")
def start_automation(body: StartRequest, supervisor: AgentSupervisor = Depends(get_supervisor)):
    if body.start_all:
        result = supervisor.start_all(body.interval_minutes)
        return {
            "success": True,
            "message": f"Started {len(result['started'])} agents",
            "interval_minutes": body.interval_minutes,
            **result,
        }
    if body.agent_id is None:
        raise HTTPException(status_code=400, detail="agentId or startAll is required")
    try:
        agent = supervisor.start_agent(body.agent_id, body.interval_minutes)
    except (InvalidAgentError, ConfigurationError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {
        "success": True,
        "message": f"Automation started for {agent.name}",
        "agent_id": agent.agent_id,
        "interval_minutes": agent.interval_minutes,
    }


@router.post("/stop")
async def stop_automation(body: StopRequest, supervisor: AgentSupervisor = Depends(get_supervisor)):
    if body.stop_all:
        supervisor.stop_all()
        response = {"success": True, "message": "Automation stopped for all agents"}
        if body.close_positions:
            from agent_arena.services.emergency_stop import run_emergency_stop

            response["close_result"] = await run_emergency_stop(
                supervisor, close_positions=True, stop_agents=False
            )
        return response

    if body.agent_id is None:
        raise HTTPException(status_code=400, detail="agentId or stopAll is required")
    try:
        agent = supervisor.stop_agent(body.agent_id)
    except InvalidAgentError as e:
        raise HTTPException(status_code=400, detail=str(e))

    response = {"success": True, "message": f"Automation stopped for {agent.name}", "agent_id": agent.agent_id}
    if body.close_positions:
        try:
            response["close_result"] = await supervisor.close_agent_positions(agent.agent_id)
        except ConfigurationError as e:
            raise HTTPException(status_code=400, detail=str(e))
    return response


@router.post("/reset/{agent_id}")
def reset_agent(agent_id: int, supervisor: AgentSupervisor = Depends(get_supervisor)):
    try:
        agent = supervisor.reset_agent(agent_id)
    except InvalidAgentError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"success": True, "message": f"{agent.name} reset", "status": agent.to_status()}


@router.get("/status")
async def automation_status(
    agent_id: int | None = Query(default=None, alias="agentId"),
    include_journal: bool = Query(default=False, alias="includeJournal"),
    supervisor: AgentSupervisor = Depends(get_supervisor),
):
    if agent_id is not None:
        try:
            status = await supervisor.status.get_status(agent_id)
        except InvalidAgentError as e:
            raise HTTPException(status_code=400, detail=str(e))
        if include_journal:
            status["journal"] = [e.to_record() for e in supervisor.journal.get_entries(agent_id)]
        return status

    statuses = await supervisor.status.get_all_statuses()
    if include_journal:
        for status in statuses:
            status["journal"] = [e.to_record() for e in supervisor.journal.get_entries(status["agent_id"])]
    return {"agents": statuses, "stats": supervisor.status.aggregate()}


@router.get("/journal")
def get_journal(
    agent_id: int | None = Query(default=None, alias="agentId"),
    limit: int | None = Query(default=None, ge=1, le=1000),
    supervisor: AgentSupervisor = Depends(get_supervisor),
):
    if agent_id is not None:
        try:
            supervisor.registry.validate_id(agent_id)
        except InvalidAgentError as e:
            raise HTTPException(status_code=400, detail=str(e))
        entries = supervisor.journal.get_entries(agent_id, limit)
        return {"agent_id": agent_id, "entries": [e.to_record() for e in entries]}

    journals = {}
    for aid in supervisor.registry.agent_ids:
        journals[aid] = [e.to_record() for e in supervisor.journal.get_entries(aid, limit)]
    return {"journals": journals}


@router.delete("/journal")
def clear_journal(
    agent_id: int | None = Query(default=None, alias="agentId"),
    supervisor: AgentSupervisor = Depends(get_supervisor),
):
    if agent_id is not None:
        try:
            supervisor.registry.validate_id(agent_id)
        except InvalidAgentError as e:
            raise HTTPException(status_code=400, detail=str(e))
    supervisor.journal.clear_entries(agent_id)
    return {"success": True}


@router.post("/token-positions/{agent_id}")
def record_token_position(
    agent_id: int, body: TokenPositionCreate, supervisor: AgentSupervisor = Depends(get_supervisor)
):
    """Report an on-chain position opened by the swap pipeline."""
    try:
        position = supervisor.record_token_position(
            agent_id,
            TokenPosition(
                token=body.token,
                amount=body.amount,
                entry_price=body.entry_price,
                venue=body.venue,
                tx_ref=body.tx_ref,
            ),
        )
    except InvalidAgentError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return position.to_dict()
