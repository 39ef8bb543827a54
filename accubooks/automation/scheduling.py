"""
Deferred task queue driven by an injectable Clock.

Retries are not timers: they are entries with a due time. Whoever owns the
queue calls ``run_due()`` (the scheduler does so every minute, tests do so
after advancing a ManualClock), and every task whose time has come runs.
"""
import asyncio
import heapq
import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional

from accubooks.base import generate_id
from accubooks.clock import Clock

logger = logging.getLogger(__name__)


@dataclass(order=True)
class _Entry:
    due_at: datetime
    seq: int
    task_id: str = field(compare=False)
    label: str = field(compare=False)
    work: Callable[[], Awaitable[None]] = field(compare=False)


class DelayedTaskQueue:

    def __init__(self, clock: Clock):
        self.clock = clock
        self._heap: List[_Entry] = []
        self._cancelled: set = set()
        self._by_label: Dict[str, str] = {}
        self._seq = itertools.count()

    def schedule(self, due_at: datetime, work: Callable[[], Awaitable[None]], label: str = "") -> str:
        task_id = generate_id("task")
        heapq.heappush(self._heap, _Entry(due_at, next(self._seq), task_id, label, work))
        if label:
            self._by_label[label] = task_id
        logger.debug(f"Scheduled {label or task_id} for {due_at.isoformat()}")
        return task_id

    def cancel(self, task_id: str) -> bool:
        if any(e.task_id == task_id for e in self._heap) and task_id not in self._cancelled:
            self._cancelled.add(task_id)
            return True
        return False

    def cancel_label(self, label: str) -> bool:
        task_id = self._by_label.pop(label, None)
        return self.cancel(task_id) if task_id else False

    @property
    def pending(self) -> int:
        return sum(1 for e in self._heap if e.task_id not in self._cancelled)

    def next_due(self) -> Optional[datetime]:
        for entry in sorted(self._heap):
            if entry.task_id not in self._cancelled:
                return entry.due_at
        return None

    async def run_due(self) -> int:
        """Run every task due at or before ``clock.now()``. Returns how many ran."""
        now = self.clock.now()
        due: List[_Entry] = []
        while self._heap and self._heap[0].due_at <= now:
            entry = heapq.heappop(self._heap)
            if entry.label and self._by_label.get(entry.label) == entry.task_id:
                del self._by_label[entry.label]
            if entry.task_id in self._cancelled:
                self._cancelled.discard(entry.task_id)
                continue
            due.append(entry)

        if not due:
            return 0

        results = await asyncio.gather(*(entry.work() for entry in due), return_exceptions=True)
        for entry, result in zip(due, results):
            if isinstance(result, BaseException):
                logger.error(f"Deferred task {entry.label or entry.task_id} failed: {result}")
        return len(due)
