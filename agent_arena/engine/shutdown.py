"""Process-level shutdown for the headless runner.

SIGINT/SIGTERM and exceptions that reach the event loop's handler trigger the
emergency procedure exactly once: stop every schedule, close open positions,
flush the journal.
"""

import asyncio
import logging
import signal

from agent_arena.engine.supervisor import AgentSupervisor
from agent_arena.services.emergency_stop import run_emergency_stop

logger = logging.getLogger(__name__)


class ShutdownHandler:
    def __init__(self, supervisor: AgentSupervisor, close_positions: bool = True):
        self.supervisor = supervisor
        self.close_positions = close_positions
        self.done = asyncio.Event()
        self.result: dict | None = None
        self._shutting_down = False

    @property
    def is_shutting_down(self) -> bool:
        return self._shutting_down

    def install(self, loop: asyncio.AbstractEventLoop):
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._on_signal, sig)
            except NotImplementedError:
                logger.warning(f"Signal handlers not supported on this platform, {sig.name} not hooked")
        loop.set_exception_handler(self._on_loop_exception)

    def _on_signal(self, sig: signal.Signals):
        logger.warning(f"Received {sig.name}, shutting down")
        self.trigger(f"signal {sig.name}")

    def _on_loop_exception(self, loop: asyncio.AbstractEventLoop, context: dict):
        logger.critical(f"Uncaught exception: {context.get('message')}", exc_info=context.get("exception"))
        self.trigger("uncaught exception")

    def trigger(self, reason: str) -> asyncio.Task | None:
        """Start the shutdown procedure unless it is already running."""
        if self._shutting_down:
            logger.info(f"Shutdown already in progress, ignoring {reason}")
            return None
        self._shutting_down = True
        return asyncio.ensure_future(self.shutdown(reason))

    async def shutdown(self, reason: str):
        logger.warning(f"Shutdown triggered by {reason}")
        try:
            self.result = await run_emergency_stop(
                self.supervisor, close_positions=self.close_positions, stop_agents=True
            )
        finally:
            self.done.set()
