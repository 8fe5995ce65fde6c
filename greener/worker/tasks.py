"""Background execution of estimation passes."""

import asyncio
import logging
from contextlib import suppress
from typing import Optional

from greener.db.session import AsyncSessionLocal
from greener.estimate.store import EstimateStore
from greener.worker.orchestrator import CancellationToken, EstimationOrchestrator, RunSummary

logger = logging.getLogger(__name__)


class TaskRunner:
    """
    Owns the process-wide orchestrator and runs passes as detached tasks.

    Triggering never blocks the caller; completion is reported through the
    orchestrator's events and ``last_summary``.
    """

    def __init__(self, orchestrator: Optional[EstimationOrchestrator] = None):
        self._orchestrator = orchestrator
        self._task: Optional[asyncio.Task] = None
        self._cancel_token: Optional[CancellationToken] = None
        self.last_summary: Optional[RunSummary] = None

    @property
    def orchestrator(self) -> EstimationOrchestrator:
        if self._orchestrator is None:
            self._orchestrator = EstimationOrchestrator(EstimateStore(AsyncSessionLocal))
        return self._orchestrator

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def trigger_estimation(self) -> bool:
        """
        Start a pass in the background.

        Returns:
            True if a pass was started, False if one is already running
        """
        if self.running or self.orchestrator.running:
            logger.info("Carbon estimation already in progress")
            return False

        self._cancel_token = CancellationToken()
        self._task = asyncio.create_task(self._run(self._cancel_token))
        logger.info("Triggered background carbon estimation")
        return True

    async def _run(self, cancel_token: CancellationToken) -> None:
        try:
            summary = await self.orchestrator.run_estimation_pass(cancel_token=cancel_token)
        except Exception:
            logger.exception("Background carbon estimation failed")
            return
        if not summary.skipped:
            self.last_summary = summary

    async def wait(self) -> Optional[RunSummary]:
        """Wait for the current background pass, if any."""
        if self._task is not None:
            await asyncio.shield(self._task)
        return self.last_summary

    async def close(self, timeout: float = 30.0) -> None:
        """Cancel cooperatively, then hard-cancel if the pass does not stop in time."""
        if not self.running:
            return

        logger.info("Stopping background carbon estimation...")
        self._cancel_token.cancel()
        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Estimation pass did not stop in time, cancelling task")
            self._task.cancel()
            with suppress(asyncio.CancelledError):
                await self._task


task_runner = TaskRunner()
