from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional


class DeviceStatus(str, enum.Enum):
    UNKNOWN = "UNKNOWN"
    ONLINE = "ONLINE"
    OFFLINE = "OFFLINE"
    FLAPPING = "FLAPPING"
    FAULTY = "FAULTY"


class FaultReason(str, enum.Enum):
    """Why a telemetry payload failed validation (first failing check wins)."""

    VOLTAGE_NOT_NUMERIC = "voltage_not_numeric"
    VOLTAGE_BELOW_MINIMUM = "voltage_below_minimum"
    TIMESTAMP_NOT_STRING = "timestamp_not_string"
    TIMESTAMP_CORRUPTED = "timestamp_corrupted"
    TIMESTAMP_UNPARSEABLE = "timestamp_unparseable"


@dataclass
class DeviceState:
    id: str
    status: DeviceStatus = DeviceStatus.UNKNOWN
    last_seen: Optional[datetime] = None
    status_changed_at: Optional[datetime] = None
    last_message: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class TelemetryMessage:
    device_id: str
    timestamp: datetime
    voltage: float | int
    power_kw: Any = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RemediationEvent:
    device_id: str
    reason: str
    timestamp: str
    retry_attempt: Optional[int] = None


@dataclass(frozen=True)
class QueueItem:
    id: str
    enqueued_at: str
    payload: RemediationEvent


@dataclass
class TrackerCounters:
    started_at: datetime
    total_messages: int = 0
    fallbacks: int = 0
    flapping: int = 0
    faulty: int = 0

    def reset(self, *, started_at: datetime) -> None:
        self.started_at = started_at
        self.total_messages = 0
        self.fallbacks = 0
        self.flapping = 0
        self.faulty = 0
