"""
Workflow Poller — the fixed-interval scheduling loop.

Runs WorkflowOrchestrator.run_cycle every `poll_interval_s` seconds as a
background task. Several pollers (processes or hosts) may run against the
same SQL store; job leasing and idempotency keys keep them from stepping on
each other.

Shutdown is cooperative: stop() sets an event that wakes the loop out of its
sleep, waits for the current cycle to finish, and cancels only if that takes
longer than `shutdown_timeout_s`.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Optional

from core.orchestrator import WorkflowOrchestrator

logger = structlog.get_logger()


class WorkflowPoller:

    def __init__(
        self,
        orchestrator: WorkflowOrchestrator,
        poll_interval_s: float = 60,
        shutdown_timeout_s: float = 30,
    ):
        self.orchestrator = orchestrator
        self.poll_interval_s = poll_interval_s
        self.shutdown_timeout_s = shutdown_timeout_s
        self.cycles = 0
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the polling loop as a background task."""
        if self.running:
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._poll_loop(), name="workflow_poller")
        logger.info("workflow_poller_started", interval_s=self.poll_interval_s)

    async def stop(self) -> None:
        """Gracefully stop the poller."""
        self._stop.set()
        if self._task and not self._task.done():
            try:
                await asyncio.wait_for(asyncio.shield(self._task), timeout=self.shutdown_timeout_s)
            except asyncio.TimeoutError:
                self._task.cancel()
                try:
                    await self._task
                except asyncio.CancelledError:
                    pass
        logger.info("workflow_poller_stopped", cycles=self.cycles)

    async def _poll_loop(self) -> None:
        """Main polling loop — runs until stopped."""
        while not self._stop.is_set():
            try:
                report = await self.orchestrator.run_cycle()
                self.cycles += 1
                logger.debug("poll_cycle_complete", cycle=self.cycles, **report)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("poll_cycle_error", error=str(e), exc_info=True)

            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.poll_interval_s)
            except asyncio.TimeoutError:
                pass
