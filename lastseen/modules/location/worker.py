"""Background poller: drives ``SyncEngine.refresh`` on a fixed interval."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

import structlog

from modules.location.sync import SyncEngine

logger = structlog.get_logger()

# Default seconds between polls
POLL_INTERVAL = 60


class SyncPoller:
    """Explicit start/stop polling task for one engine.

    Polls run strictly one after another: the next sleep only starts once
    the previous refresh has returned, so two polls never overlap.
    """

    def __init__(
        self,
        engine: SyncEngine,
        interval: float = POLL_INTERVAL,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.engine = engine
        self.interval = interval
        self._sleep = sleep
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Poll once immediately, then every ``interval`` seconds."""
        if self.running:
            return
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Cancel the polling timer and wait for the loop to unwind."""
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        viewer_id = self.engine.session.user_id
        logger.info("sync_poller_started", viewer_id=viewer_id, interval=self.interval)
        try:
            while not self.engine.closed:
                try:
                    await self.engine.refresh()
                except Exception:
                    logger.exception("sync_poll_error", viewer_id=viewer_id)

                await self._sleep(self.interval)
        finally:
            logger.info("sync_poller_stopped", viewer_id=viewer_id)
