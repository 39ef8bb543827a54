"""
Bounded worker pool for action execution.

Two semaphores bound concurrency (global and per tenant) and a moving-window
rate limiter from ``limits`` caps how many actions a tenant may start per
period, so one tenant cannot starve the others. A throttled caller sleeps
until the window frees up.
"""
import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from limits import parse
from limits.storage import MemoryStorage
from limits.strategies import MovingWindowRateLimiter

from accubooks.config import settings

logger = logging.getLogger(__name__)

MIN_THROTTLE_SLEEP = 0.05


class WorkerPool:

    def __init__(
        self,
        size: Optional[int] = None,
        per_tenant: Optional[int] = None,
        tenant_rate_limit: Optional[str] = None,
    ):
        self.size = size or settings.WORKER_POOL_SIZE
        self.per_tenant = per_tenant or settings.TENANT_MAX_CONCURRENCY
        self.rate_item = parse(tenant_rate_limit or settings.TENANT_ACTION_RATE_LIMIT)
        self._limiter = MovingWindowRateLimiter(MemoryStorage())
        self._global = asyncio.Semaphore(self.size)
        self._tenants: Dict[str, asyncio.Semaphore] = {}
        self.throttled = 0

    def _tenant_slot(self, tenant_id: str) -> asyncio.Semaphore:
        if tenant_id not in self._tenants:
            self._tenants[tenant_id] = asyncio.Semaphore(self.per_tenant)
        return self._tenants[tenant_id]

    async def _throttle(self, tenant_id: str) -> None:
        while not self._limiter.hit(self.rate_item, "tenant_actions", tenant_id):
            self.throttled += 1
            stats = self._limiter.get_window_stats(self.rate_item, "tenant_actions", tenant_id)
            wait = max(stats.reset_time - time.time(), MIN_THROTTLE_SLEEP)
            logger.info(f"Tenant {tenant_id} hit its action rate limit, waiting {wait:.2f}s")
            await asyncio.sleep(wait)

    async def run(self, tenant_id: str, work: Callable[[], Awaitable[Any]]) -> Any:
        """Run ``work()`` once a tenant slot, a global slot and rate budget are available."""
        await self._throttle(tenant_id)
        async with self._tenant_slot(tenant_id):
            async with self._global:
                return await work()
