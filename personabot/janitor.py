import asyncio
import logging

from . import config
from .store import SessionStore

logger = logging.getLogger("personabot.janitor")


class Janitor:
    """Expires pending checkouts nobody paid, so the session can ask for a fresh one."""

    def __init__(self, store: SessionStore, ttl_ms: int | None = None, interval_ms: int | None = None):
        self.store = store
        self.ttl_ms = config.PENDING_TTL_MS if ttl_ms is None else ttl_ms
        self.interval_ms = config.JANITOR_INTERVAL_MS if interval_ms is None else interval_ms
        self._last_sweep: int | None = None

    async def sweep(self, now: int | None = None) -> int:
        now = self.store.now() if now is None else now
        self._last_sweep = now
        removed = await self.store.sweep_pending(self.ttl_ms, now=now)
        for rec in removed:
            logger.info(
                f"Pending checkout {rec.checkout_id} of {rec.session_id} expired "
                f"(age {now - rec.created_at}ms)"
            )
        return len(removed)

    async def maybe_sweep(self) -> int:
        """Request-triggered sweep, at most once per interval."""
        now = self.store.now()
        if self._last_sweep is not None and now - self._last_sweep < self.interval_ms:
            return 0
        return await self.sweep(now)

    async def run_forever(self):
        while True:
            try:
                await asyncio.sleep(self.interval_ms / 1000)
                await self.sweep()
            except asyncio.CancelledError:
                break
            except Exception as he:
                logger.warning(f"Janitor loop error: {he}")
