"""FastAPI application entry point."""

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from agent_arena.config import settings
from agent_arena.utils.logging import setup_logging
from agent_arena.api import auth, automation, positions, system


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    setup_logging()
    from agent_arena.engine.scheduler import add_journal_flush_job, start_scheduler, stop_scheduler
    from agent_arena.engine.supervisor import build_supervisor

    supervisor = build_supervisor(settings)
    app.state.supervisor = supervisor
    add_journal_flush_job(supervisor.journal.flush_async, settings.journal_flush_seconds)
    start_scheduler()

    if settings.auto_start:
        supervisor.start_all(settings.auto_start_interval_minutes)

    # Start Telegram bot if configured
    telegram_bot = None
    if settings.telegram_bot_token:
        from agent_arena.services.telegram_bot import init_bot
        telegram_bot = init_bot(supervisor, asyncio.get_running_loop())
        telegram_bot.start()

    yield

    if settings.close_positions_on_shutdown:
        from agent_arena.services.emergency_stop import run_emergency_stop
        await run_emergency_stop(supervisor, close_positions=True, stop_agents=True)
    else:
        supervisor.stop_all()
        await supervisor.journal.flush_async()

    if telegram_bot:
        telegram_bot.stop()
    stop_scheduler()
    await supervisor.close()


app = FastAPI(
    title="Agent Arena",
    description="Multi-agent futures trading service with automation control surface",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Mount routers
app.include_router(auth.router)
app.include_router(automation.router)
app.include_router(positions.router)
app.include_router(system.router)
