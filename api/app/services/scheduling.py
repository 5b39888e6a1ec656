"""Clocks and delayed tasks.

The tracker never reads the wall clock or starts timers directly. It receives a
`Clock` and a `DelayedTaskScheduler`, so the service can run on real time
(SystemClock + APScheduler) while tests drive both by hand
(ManualClock + ManualTaskScheduler).
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Protocol

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.schedulers.base import BaseScheduler


logger = logging.getLogger("fleetstatus.scheduling")


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class ManualClock:
    def __init__(self, start: datetime | None = None) -> None:
        if start is None:
            start = datetime(2025, 6, 2, 10, 0, tzinfo=timezone.utc)
        if start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        self._now = start

    def now(self) -> datetime:
        return self._now

    def set(self, value: datetime) -> None:
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        self._now = value

    def advance(self, seconds: float) -> datetime:
        self._now = self._now + timedelta(seconds=seconds)
        return self._now


class ScheduledTask(Protocol):
    def cancel(self) -> bool: ...


class DelayedTaskScheduler(Protocol):
    def call_later(self, delay_s: float, func: Callable[[], None]) -> ScheduledTask: ...

    def cancel_all(self) -> int: ...

    def pending(self) -> int: ...

    def shutdown(self) -> int: ...


# -----------------------------
# Deterministic scheduler (tests, replay)
# -----------------------------


@dataclass(order=True)
class _ManualEntry:
    due_at: datetime
    seq: int
    func: Callable[[], None] = field(compare=False)
    cancelled: bool = field(default=False, compare=False)

    def cancel(self) -> bool:
        if self.cancelled:
            return False
        self.cancelled = True
        return True


class ManualTaskScheduler:
    """Runs delayed tasks only when asked to, against a ManualClock."""

    def __init__(self, clock: ManualClock) -> None:
        self.clock = clock
        self._heap: List[_ManualEntry] = []
        self._seq = itertools.count()

    def call_later(self, delay_s: float, func: Callable[[], None]) -> _ManualEntry:
        due_at = self.clock.now() + timedelta(seconds=max(0.0, float(delay_s)))
        entry = _ManualEntry(due_at=due_at, seq=next(self._seq), func=func)
        heapq.heappush(self._heap, entry)
        return entry

    def pending(self) -> int:
        return sum(1 for e in self._heap if not e.cancelled)

    def cancel_all(self) -> int:
        cancelled = sum(1 for e in self._heap if e.cancel())
        self._heap.clear()
        return cancelled

    def shutdown(self) -> int:
        return self.cancel_all()

    def run_due(self) -> int:
        """Run every task whose due time has passed. Returns how many ran."""
        ran = 0
        now = self.clock.now()
        while self._heap and self._heap[0].due_at <= now:
            entry = heapq.heappop(self._heap)
            if entry.cancelled:
                continue
            entry.func()
            ran += 1
        return ran

    def advance(self, seconds: float) -> int:
        self.clock.advance(seconds)
        return self.run_due()

    def run_all(self) -> int:
        """Advance the clock to the last due task and run everything."""
        ran = 0
        while self._heap:
            entry = self._heap[0]
            if entry.due_at > self.clock.now():
                self.clock.set(entry.due_at)
            ran += self.run_due()
        return ran


# -----------------------------
# APScheduler-backed scheduler (service)
# -----------------------------


class _APSchedulerTask:
    def __init__(self, owner: "APSchedulerTaskScheduler", job_id: str) -> None:
        self._owner = owner
        self.job_id = job_id

    def cancel(self) -> bool:
        return self._owner._remove(self.job_id)


class APSchedulerTaskScheduler:
    """One-shot `date` jobs on an APScheduler scheduler.

    When no scheduler is given, a private BackgroundScheduler is created and
    started on first use; `shutdown()` stops it again.
    """

    def __init__(self, scheduler: Optional[BaseScheduler] = None, *, clock: Clock | None = None) -> None:
        self._owns_scheduler = scheduler is None
        self._scheduler = scheduler or BackgroundScheduler(timezone="UTC")
        self._clock = clock or SystemClock()
        self._lock = threading.Lock()
        self._jobs: Dict[str, _APSchedulerTask] = {}
        self._seq = itertools.count(1)

    def call_later(self, delay_s: float, func: Callable[[], None]) -> _APSchedulerTask:
        if self._owns_scheduler and not self._scheduler.running:
            self._scheduler.start()

        run_date = self._clock.now() + timedelta(seconds=max(0.0, float(delay_s)))
        job_id = f"delayed_task_{next(self._seq)}"

        def _run() -> None:
            with self._lock:
                self._jobs.pop(job_id, None)
            try:
                func()
            except Exception:
                logger.exception("delayed_task_failed", extra={"fields": {"job_id": job_id}})

        task = _APSchedulerTask(self, job_id)
        with self._lock:
            self._jobs[job_id] = task
        self._scheduler.add_job(
            func=_run,
            trigger="date",
            run_date=run_date,
            id=job_id,
            misfire_grace_time=None,
        )
        return task

    def pending(self) -> int:
        with self._lock:
            return len(self._jobs)

    def cancel_all(self) -> int:
        with self._lock:
            job_ids = list(self._jobs)
        return sum(1 for job_id in job_ids if self._remove(job_id))

    def shutdown(self) -> int:
        cancelled = self.cancel_all()
        if cancelled:
            logger.info("Cancelled pending delayed tasks (count=%s)", cancelled)
        if self._owns_scheduler and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        return cancelled

    def _remove(self, job_id: str) -> bool:
        with self._lock:
            if self._jobs.pop(job_id, None) is None:
                return False
        try:
            self._scheduler.remove_job(job_id)
        except JobLookupError:
            # Already fired.
            return False
        return True
