"""
Action Executor - runs one action attempt with timeout and idempotency.

The executor does not loop over retries itself. It performs a single
attempt and reports whether a failure is worth retrying; the orchestrator
owns the retry schedule (RetryPolicy) and defers retries through the
DelayedTaskQueue.

Idempotency: a successful result is cached under the action's idempotency
key. Replaying the key returns the cached result without touching the
sink. Replaying it with a different payload raises IdempotencyConflict.
"""
import asyncio
import hashlib
import json
import logging
from collections import OrderedDict
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Dict, List, Mapping, Optional, Tuple

from accubooks.config import settings
from accubooks.errors import ActionExecutionError, IdempotencyConflict
from .actions import ActionRegistry
from .facts import thaw
from .types import ActionResult, ActionType
from .worker_pool import WorkerPool

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff: attempt n failing waits base * factor^(n-1) minutes."""
    base_delay_minutes: int = 5
    factor: int = 2
    max_attempts: int = 4

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            base_delay_minutes=settings.RETRY_BASE_DELAY_MINUTES,
            factor=settings.RETRY_BACKOFF_FACTOR,
            max_attempts=settings.RETRY_MAX_ATTEMPTS,
        )

    def delay_for(self, attempt: int) -> timedelta:
        return timedelta(minutes=self.base_delay_minutes * self.factor ** (attempt - 1))

    def should_retry(self, attempt: int, transient: bool) -> bool:
        return transient and attempt < self.max_attempts

    @property
    def schedule(self) -> List[timedelta]:
        return [self.delay_for(n) for n in range(1, self.max_attempts)]


@dataclass(frozen=True)
class AttemptOutcome:
    result: ActionResult
    transient: bool = False
    replayed: bool = False

    @property
    def ok(self) -> bool:
        return self.result.ok


def fingerprint(*parts: Any) -> str:
    """Stable hash of JSON-able parts, used for idempotency comparisons."""
    canonical = json.dumps([thaw(p) for p in parts], sort_keys=True, default=str, separators=(",", ":"))
    return hashlib.sha256(canonical.encode()).hexdigest()


class KeyedLock:
    """One asyncio.Lock per key, dropped once nobody holds or waits on it."""

    def __init__(self):
        self._locks: Dict[str, Tuple[asyncio.Lock, int]] = {}

    @asynccontextmanager
    async def hold(self, key: str):
        lock, users = self._locks.get(key, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[key] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._locks[key]
            if users <= 1:
                del self._locks[key]
            else:
                self._locks[key] = (lock, users - 1)


class IdempotencyStore:
    """
    Successful results by idempotency key, least recently used evicted first.

    Completed actions are also recorded on the persisted execution, which
    resumes at current_action_index, so an evicted key never re-runs a
    finished step of a stored execution.
    """

    def __init__(self, max_entries: Optional[int] = None):
        self.max_entries = max_entries or settings.IDEMPOTENCY_CACHE_SIZE
        self._results: "OrderedDict[str, Tuple[str, ActionResult]]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._results)

    def get(self, key: str) -> Optional[Tuple[str, ActionResult]]:
        entry = self._results.get(key)
        if entry is not None:
            self._results.move_to_end(key)
        return entry

    def put(self, key: str, payload_fingerprint: str, result: ActionResult) -> None:
        self._results[key] = (payload_fingerprint, result)
        self._results.move_to_end(key)
        while len(self._results) > self.max_entries:
            self._results.popitem(last=False)


class ActionExecutor:

    def __init__(
        self,
        registry: ActionRegistry,
        pool: Optional[WorkerPool] = None,
        timeout_seconds: Optional[float] = None,
        store: Optional[IdempotencyStore] = None,
    ):
        self.registry = registry
        self.pool = pool or WorkerPool()
        self.timeout_seconds = timeout_seconds or settings.ACTION_TIMEOUT_SECONDS
        self.store = store or IdempotencyStore()
        self.locks = KeyedLock()

    async def attempt(
        self,
        tenant_id: str,
        action_type: ActionType,
        params: Dict[str, Any],
        context: Mapping[str, Any],
        idempotency_key: str,
    ) -> AttemptOutcome:
        """
        Perform one attempt of one action.

        Never raises for sink failures: they come back as a failed
        AttemptOutcome flagged transient or permanent.
        """
        payload = fingerprint(action_type.value, params)

        async with self.locks.hold(idempotency_key):
            cached = self.store.get(idempotency_key)
            if cached is not None:
                cached_payload, cached_result = cached
                if cached_payload != payload:
                    raise IdempotencyConflict(
                        f"Idempotency key {idempotency_key} was already used for a different action payload.",
                        idempotency_key=idempotency_key,
                        original_result=cached_result,
                    )
                logger.info(f"Replayed {action_type.value} for key {idempotency_key} from cache")
                return AttemptOutcome(result=cached_result, replayed=True)

            sink = self.registry.get(action_type)
            if sink is None:
                return AttemptOutcome(
                    result=ActionResult.failure(f"No sink is registered for {action_type.value}."),
                    transient=False,
                )

            outcome = await self._call(tenant_id, sink, action_type, params, context)
            if outcome.ok:
                self.store.put(idempotency_key, payload, outcome.result)
            return outcome

    async def _call(self, tenant_id, sink, action_type, params, context) -> AttemptOutcome:
        async def work():
            return await asyncio.wait_for(sink.execute(params, context), timeout=self.timeout_seconds)

        try:
            result = await self.pool.run(tenant_id, work)
        except asyncio.TimeoutError:
            logger.warning(f"{action_type.value} timed out after {self.timeout_seconds}s for tenant {tenant_id}")
            return AttemptOutcome(
                result=ActionResult.failure(f"Action timed out after {self.timeout_seconds} seconds."),
                transient=True,
            )
        except ActionExecutionError as e:
            logger.warning(f"{action_type.value} failed for tenant {tenant_id}: {e.explanation}")
            return AttemptOutcome(result=ActionResult.failure(e.explanation), transient=e.transient)
        except Exception as e:
            logger.error(f"{action_type.value} raised unexpectedly for tenant {tenant_id}: {e}")
            return AttemptOutcome(result=ActionResult.failure(f"Unexpected error: {e}"), transient=True)

        if not isinstance(result, ActionResult):
            return AttemptOutcome(
                result=ActionResult.failure(f"Sink for {action_type.value} returned {type(result).__name__}."),
                transient=False,
            )
        return AttemptOutcome(result=result, transient=not result.ok)
