"""Background task that periodically removes expired keys."""

from __future__ import annotations

import asyncio
import contextlib
import logging

from keygate.core.errors import AppError
from keygate.services.key_service import KeyLifecycleService

logger = logging.getLogger(__name__)


class ExpirySweeper:
    """Runs ``KeyLifecycleService.sweep`` every ``interval_seconds``.

    A failed sweep is logged and retried on the next tick; the loop only
    stops when ``stop()`` is called.
    """

    def __init__(self, service: KeyLifecycleService, *, interval_seconds: float) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self._service = service
        self._interval = interval_seconds
        self._task: asyncio.Task[None] | None = None
        self.last_removed = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> int:
        """Sweep now; errors are logged, not raised."""

        try:
            removed = await self._service.sweep()
        except AppError as exc:
            logger.error("sweeper.failed", extra={"error_code": exc.code, "error_msg": exc.message})
            return 0
        self.last_removed = removed
        if removed:
            logger.info("sweeper.removed", extra={"removed": removed})
        return removed

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            await self.run_once()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="keygate-expiry-sweeper")
        logger.info("sweeper.started", extra={"interval_s": self._interval})

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        logger.info("sweeper.stopped")
