"""
Periodic cleanup of expired nonces and pending logins.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from .models import utcnow
from .storage import LTIStorage

logger = logging.getLogger(__name__)


class ExpirationSweeper:
    """Deletes protocol state older than ``ttl_seconds`` every ``interval_seconds``."""

    def __init__(
        self,
        storage: LTIStorage,
        ttl_seconds: int = 900,
        interval_seconds: int = 300,
        now: Callable[[], datetime] = utcnow,
    ):
        self.storage = storage
        self.ttl = timedelta(seconds=ttl_seconds)
        self.interval = interval_seconds
        self.now = now
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def sweep(self) -> tuple[int, int]:
        """Run one pass. Returns ``(nonces_deleted, logins_deleted)``."""
        nonces, logins = await self.storage.sweep_expired(self.now() - self.ttl)
        if nonces or logins:
            logger.info("Expired %d OAuth nonces and %d pending logins", nonces, logins)
        return nonces, logins

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.sweep()
            except Exception:
                # A failed pass is retried on the next interval
                logger.exception("Expiration sweep failed")

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="ltikit-expiration")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
