from __future__ import annotations

from datetime import datetime, timedelta, timezone

from api.app.models import DeviceState, DeviceStatus
from api.app.services.metrics import device_status_counts, format_runtime, summary_lines
from api.app.services.scheduling import ManualClock, ManualTaskScheduler
from api.app.services.status_tracker import StatusTracker


T0 = datetime(2025, 6, 2, 10, 0, tzinfo=timezone.utc)


def test_status_counts_always_list_every_status() -> None:
    counts = device_status_counts(
        [
            DeviceState(id="a", status=DeviceStatus.ONLINE),
            DeviceState(id="b", status=DeviceStatus.ONLINE),
            DeviceState(id="c", status=DeviceStatus.FAULTY),
        ]
    )

    assert counts == {"ONLINE": 2, "OFFLINE": 0, "FLAPPING": 0, "FAULTY": 1, "UNKNOWN": 0}
    assert sum(counts.values()) == 3


def test_format_runtime() -> None:
    assert format_runtime(T0, T0 + timedelta(seconds=12.345)) == "12.35s"
    assert format_runtime(T0, T0 - timedelta(seconds=1)) == "0.00s"


def test_snapshot_reflects_tracker_activity() -> None:
    clock = ManualClock(T0)
    tracker = StatusTracker(clock=clock, scheduler=ManualTaskScheduler(clock))

    tracker.process_message({"device_id": "D1", "timestamp": "2025-06-02T10:00:00Z", "voltage": 10})
    tracker.process_message({"device_id": "D2", "timestamp": "2025-06-02T10:00:00Z", "voltage": 230})
    clock.advance(90)

    snap = tracker.get_metrics()

    assert snap["totalMessages"] == 2
    assert snap["faulty"] == 1
    assert snap["fallbacks"] == 0
    assert snap["flapping"] == 0
    assert snap["deviceCount"] == 2
    assert snap["startTime"] == "2025-06-02T10:00:00+00:00"
    assert snap["runtime"] == "90.00s"
    assert snap["deviceStatusCounts"]["FAULTY"] == 1
    assert snap["deviceStatusCounts"]["ONLINE"] == 1
    assert list(snap["queueStats"]) == ["fallback", "tamperCheck", "quarantine"]
    assert snap["queueStats"]["quarantine"] == {
        "name": "quarantine",
        "pending": 1,
        "processed": 0,
        "retryCount": 0,
    }


def test_reset_metrics_keeps_devices_and_queues() -> None:
    clock = ManualClock(T0)
    tracker = StatusTracker(clock=clock, scheduler=ManualTaskScheduler(clock))
    tracker.process_message({"device_id": "D1", "timestamp": "2025-06-02T10:00:00Z", "voltage": 10})

    clock.advance(60)
    tracker.reset_metrics()
    snap = tracker.get_metrics()

    assert snap["totalMessages"] == 0
    assert snap["faulty"] == 0
    assert snap["runtime"] == "0.00s"
    assert snap["deviceCount"] == 1
    assert snap["queueStats"]["quarantine"]["pending"] == 1


def test_summary_lines_render_counts_and_queues() -> None:
    clock = ManualClock(T0)
    tracker = StatusTracker(clock=clock, scheduler=ManualTaskScheduler(clock))
    tracker.process_message({"device_id": "D1", "timestamp": "2025-06-02T10:00:00Z", "voltage": 10})

    lines = summary_lines(tracker.get_metrics())

    assert lines[0] == "Total messages processed: 1"
    assert "Total devices tracked: 1" in lines
    assert "  faulty: 1" in lines
    assert "  FAULTY: 1" in lines
    assert "  quarantine: 1 pending, 0 processed" in lines
    assert "  fallback: 0 pending, 0 processed" in lines
