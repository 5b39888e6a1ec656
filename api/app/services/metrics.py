"""Read-side aggregation over the tracker's device table and queues."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping

from ..models import DeviceState, DeviceStatus, TrackerCounters
from .queue import RemediationQueue


# Reporting order of the status distribution.
_STATUS_ORDER = (
    DeviceStatus.ONLINE,
    DeviceStatus.OFFLINE,
    DeviceStatus.FLAPPING,
    DeviceStatus.FAULTY,
    DeviceStatus.UNKNOWN,
)


def device_status_counts(devices: Iterable[DeviceState]) -> Dict[str, int]:
    counts: Dict[str, int] = {s.value: 0 for s in _STATUS_ORDER}
    for d in devices:
        counts[d.status.value] = counts.get(d.status.value, 0) + 1
    return counts


def format_runtime(started_at: datetime, now: datetime) -> str:
    seconds = max(0.0, (now - started_at).total_seconds())
    return f"{seconds:.2f}s"


def metrics_snapshot(
    *,
    counters: TrackerCounters,
    devices: List[DeviceState],
    queues: Mapping[str, RemediationQueue],
    now: datetime,
) -> Dict[str, Any]:
    """JSON-ready metrics document served by the metrics boundary."""

    return {
        "totalMessages": counters.total_messages,
        "fallbacks": counters.fallbacks,
        "flapping": counters.flapping,
        "faulty": counters.faulty,
        "startTime": counters.started_at.isoformat(),
        "runtime": format_runtime(counters.started_at, now),
        "deviceCount": len(devices),
        "deviceStatusCounts": device_status_counts(devices),
        "queueStats": {key: q.get_stats() for key, q in queues.items()},
    }


def summary_lines(snapshot: Mapping[str, Any]) -> List[str]:
    lines = [
        f"Total messages processed: {snapshot['totalMessages']}",
        f"Total devices tracked: {snapshot['deviceCount']}",
        "Trigger counts:",
        f"  fallbacks (OFFLINE): {snapshot['fallbacks']}",
        f"  flapping: {snapshot['flapping']}",
        f"  faulty: {snapshot['faulty']}",
        "Device status distribution:",
    ]
    for status, count in snapshot["deviceStatusCounts"].items():
        lines.append(f"  {status}: {count}")

    lines.append("Queue status:")
    for key, stats in snapshot["queueStats"].items():
        lines.append(f"  {key}: {stats['pending']} pending, {stats['processed']} processed")
    return lines
