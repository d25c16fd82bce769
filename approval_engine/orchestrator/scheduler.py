"""
Background sweep runner.

Runs the auto-approval and timeout sweeps as asyncio loops inside the API
process. Several processes may run sweeps against one store; the
conditional writes keep them from acting twice on the same step.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from approval_engine.config import Settings, get_settings
from approval_engine.core.models import SweepReport
from approval_engine.orchestrator.auto_approval import AutoApprovalEvaluator
from approval_engine.orchestrator.timeouts import TimeoutSweeper

logger = logging.getLogger(__name__)


class SweepRunner:
    """
    Periodically runs background sweeps.

    Usage:
        runner = SweepRunner(auto_approval, timeouts)
        await runner.start()
        ...
        await runner.stop()
    """

    def __init__(
        self,
        auto_approval: AutoApprovalEvaluator,
        timeouts: TimeoutSweeper,
        settings: Optional[Settings] = None,
    ):
        self.auto_approval = auto_approval
        self.timeouts = timeouts
        self.settings = settings or get_settings()

        self._running = False
        self._tasks: list[asyncio.Task] = []

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the sweep loops."""
        if self._running:
            return

        self._running = True
        sweep = self.settings.sweep
        logger.info(
            f"Starting sweeps (auto-approval every {sweep.auto_approval_interval}s, "
            f"timeouts every {sweep.timeout_interval}s)"
        )

        self._tasks = [
            asyncio.create_task(
                self._loop("auto-approval", self.auto_approval.sweep, sweep.auto_approval_interval)
            ),
            asyncio.create_task(
                self._loop("timeout", self.timeouts.sweep, sweep.timeout_interval)
            ),
        ]

    async def stop(self) -> None:
        """Stop the sweep loops gracefully."""
        if not self._running:
            return

        self._running = False
        logger.info("Stopping sweeps")

        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []

    async def _loop(
        self,
        name: str,
        sweep: Callable[[], Awaitable[SweepReport]],
        interval: float,
    ) -> None:
        """Run a sweep every ``interval`` seconds until stopped."""
        while self._running:
            try:
                await sweep()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"{name} sweep failed: {e}", exc_info=True)

            await asyncio.sleep(interval)
