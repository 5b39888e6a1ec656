from __future__ import annotations

from datetime import datetime, timedelta, timezone

from api.app.services.scheduling import ManualClock, ManualTaskScheduler
from api.app.services.status_tracker import RetryDrainResult, StatusTracker, TrackerPolicy


T0 = datetime(2025, 6, 2, 10, 0, tzinfo=timezone.utc)


def _offline_tracker(device_ids, policy: TrackerPolicy | None = None):
    clock = ManualClock(T0)
    scheduler = ManualTaskScheduler(clock)
    tracker = StatusTracker(policy=policy, clock=clock, scheduler=scheduler)
    for device_id in device_ids:
        tracker.process_message(
            {"device_id": device_id, "timestamp": "2025-06-02T10:00:00Z", "voltage": 230, "power_kw": 1.0}
        )
    clock.advance(10 * 60)
    tracker.check_offline_devices()
    return tracker, scheduler


def test_empty_queue_drain_is_a_noop() -> None:
    tracker, scheduler = _offline_tracker([])

    assert tracker.process_fallback_retries() == RetryDrainResult(dequeued=0, scheduled=0, exhausted=0)
    assert scheduler.pending() == 0


def test_item_is_reenqueued_at_most_twice() -> None:
    tracker, scheduler = _offline_tracker(["D1"])
    q = tracker.fallback_queue
    assert q.size() == 1

    attempts_seen = []
    drains = []
    for _ in range(4):
        drains.append(tracker.process_fallback_retries())
        scheduler.run_all()
        head = q.peek()
        attempts_seen.append(head.payload.retry_attempt if head is not None else None)

    assert [d.scheduled for d in drains] == [1, 1, 1, 0]
    assert [d.dequeued for d in drains] == [1, 1, 1, 0]
    assert attempts_seen == [1, 2, None, None]
    assert q.get_retry_count("D1") == 3
    assert q.size() == 0
    assert q.get_stats()["processed"] == 3


def test_drain_after_cap_drops_item() -> None:
    tracker, scheduler = _offline_tracker(["D1"], TrackerPolicy(retry_max_attempts=1))

    first = tracker.process_fallback_retries()
    scheduler.run_all()

    # The only attempt was spent, so nothing comes back.
    assert first.scheduled == 1
    assert tracker.fallback_queue.size() == 0
    assert tracker.process_fallback_retries().dequeued == 0


def test_exhausted_items_are_counted() -> None:
    tracker, _ = _offline_tracker(["D1", "D2"], TrackerPolicy(retry_max_attempts=0))

    result = tracker.process_fallback_retries()

    assert result == RetryDrainResult(dequeued=2, scheduled=0, exhausted=2)
    assert tracker.fallback_queue.size() == 0


def test_drain_is_capped_per_run() -> None:
    ids = [f"dev-{i:03d}" for i in range(150)]
    tracker, scheduler = _offline_tracker(ids)
    assert tracker.fallback_queue.size() == 150

    result = tracker.process_fallback_retries()

    assert result.dequeued == 100
    assert result.scheduled == 100
    assert tracker.fallback_queue.size() == 50
    assert scheduler.pending() == 100


def test_reenqueues_are_staggered_by_position() -> None:
    tracker, scheduler = _offline_tracker(["a", "b", "c"])
    tracker.process_fallback_retries()

    assert scheduler.advance(0.5) == 0
    assert scheduler.advance(0.5) == 1
    assert tracker.fallback_queue.size() == 1
    assert tracker.fallback_queue.peek().payload.device_id == "a"

    assert scheduler.advance(2) == 2
    assert [tracker.fallback_queue.dequeue().payload.device_id for _ in range(3)] == ["a", "b", "c"]


def test_custom_stagger() -> None:
    tracker, scheduler = _offline_tracker(["a", "b"], TrackerPolicy(retry_stagger_s=10))
    tracker.process_fallback_retries()

    assert scheduler.advance(9) == 0
    assert scheduler.advance(1) == 1
    assert scheduler.advance(10) == 1


def test_shutdown_cancels_pending_reenqueues() -> None:
    tracker, scheduler = _offline_tracker(["a", "b", "c"])
    tracker.process_fallback_retries()
    assert scheduler.pending() == 3

    cancelled = tracker.shutdown()

    assert cancelled == 3
    assert scheduler.pending() == 0
    assert scheduler.advance(timedelta(minutes=5).total_seconds()) == 0
    assert tracker.fallback_queue.size() == 0
