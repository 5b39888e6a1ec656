from __future__ import annotations

from datetime import datetime, timedelta, timezone

from apscheduler.schedulers.background import BackgroundScheduler

from api.app.services.scheduling import APSchedulerTaskScheduler, ManualClock, ManualTaskScheduler


T0 = datetime(2025, 6, 2, 10, 0, tzinfo=timezone.utc)


def test_manual_clock_defaults_to_utc() -> None:
    clock = ManualClock(datetime(2025, 1, 1, 0, 0))
    assert clock.now().tzinfo is timezone.utc

    assert clock.advance(1.5) == datetime(2025, 1, 1, 0, 0, 1, 500000, tzinfo=timezone.utc)


def test_manual_scheduler_runs_in_due_order() -> None:
    clock = ManualClock(T0)
    scheduler = ManualTaskScheduler(clock)
    ran = []

    scheduler.call_later(3, lambda: ran.append("c"))
    scheduler.call_later(1, lambda: ran.append("a"))
    scheduler.call_later(1, lambda: ran.append("b"))

    assert scheduler.run_due() == 0
    assert scheduler.advance(1) == 2
    assert ran == ["a", "b"]

    assert scheduler.run_all() == 1
    assert ran == ["a", "b", "c"]
    assert clock.now() == T0 + timedelta(seconds=3)


def test_manual_scheduler_cancel() -> None:
    clock = ManualClock(T0)
    scheduler = ManualTaskScheduler(clock)
    ran = []

    task = scheduler.call_later(1, lambda: ran.append("x"))
    scheduler.call_later(2, lambda: ran.append("y"))

    assert task.cancel() is True
    assert task.cancel() is False
    assert scheduler.pending() == 1

    assert scheduler.run_all() == 1
    assert ran == ["y"]


def test_manual_scheduler_tasks_can_schedule_more_tasks() -> None:
    clock = ManualClock(T0)
    scheduler = ManualTaskScheduler(clock)
    ran = []

    def first() -> None:
        ran.append("first")
        scheduler.call_later(5, lambda: ran.append("second"))

    scheduler.call_later(1, first)

    assert scheduler.run_all() == 2
    assert ran == ["first", "second"]
    assert clock.now() == T0 + timedelta(seconds=6)


def test_apscheduler_adapter_adds_and_cancels_date_jobs() -> None:
    # An unstarted scheduler keeps jobs pending, which is enough to check bookkeeping.
    background = BackgroundScheduler(timezone="UTC")
    adapter = APSchedulerTaskScheduler(background, clock=ManualClock(T0))

    task = adapter.call_later(5, lambda: None)
    adapter.call_later(10, lambda: None)

    jobs = background.get_jobs()
    assert len(jobs) == 2
    assert adapter.pending() == 2

    assert task.cancel() is True
    assert task.cancel() is False
    assert len(background.get_jobs()) == 1

    assert adapter.shutdown() == 1
    assert adapter.pending() == 0
    assert background.get_jobs() == []
    assert background.running is False
