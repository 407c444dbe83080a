"""System API: health check, scheduler status, manual trigger, emergency stop."""

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from agent_arena.api.deps import get_current_user, get_supervisor
from agent_arena.engine.registry import InvalidAgentError
from agent_arena.engine.supervisor import AgentSupervisor

router = APIRouter(prefix="/api/system", tags=["system"])


@router.get("/health")
def health_check():
    return {"status": "ok"}


@router.get("/scheduler", dependencies=[Depends(get_current_user)])
def scheduler_status(supervisor: AgentSupervisor = Depends(get_supervisor)):
    """Current scheduler state with job details."""
    from agent_arena.engine.scheduler import get_scheduler_status
    return get_scheduler_status(supervisor.sched)


@router.post("/trigger/{agent_id}", dependencies=[Depends(get_current_user)])
async def trigger_agent(agent_id: int, supervisor: AgentSupervisor = Depends(get_supervisor)):
    """Manually trigger one cycle of an agent."""
    try:
        agent = await supervisor.trigger_cycle(agent_id)
    except InvalidAgentError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))
    return {
        "status": "ok",
        "message": f"Cycle completed for agent {agent_id}",
        "last_action": agent.last_action,
        "last_error": agent.last_error,
    }


class EmergencyStopRequest(BaseModel):
    close_positions: bool = True
    stop_agents: bool = True


@router.post("/emergency-stop", dependencies=[Depends(get_current_user)])
async def emergency_stop(body: EmergencyStopRequest, supervisor: AgentSupervisor = Depends(get_supervisor)):
    """Emergency stop: close all positions and/or stop all agents."""
    from agent_arena.services.emergency_stop import run_emergency_stop

    result = await run_emergency_stop(
        supervisor,
        close_positions=body.close_positions,
        stop_agents=body.stop_agents,
    )
    return result
