from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .models import DeviceState


class _CamelModel(BaseModel):
    # The metrics boundary speaks camelCase JSON.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class IngestAck(BaseModel):
    status: str = "processed"


class QueueStatsOut(_CamelModel):
    name: str
    pending: int
    processed: int
    retry_count: int


class QueueStatsByNameOut(_CamelModel):
    fallback: QueueStatsOut
    tamper_check: QueueStatsOut
    quarantine: QueueStatsOut


class DeviceStatusCountsOut(BaseModel):
    ONLINE: int = 0
    OFFLINE: int = 0
    FLAPPING: int = 0
    FAULTY: int = 0
    UNKNOWN: int = 0


class MetricsOut(_CamelModel):
    total_messages: int
    fallbacks: int
    flapping: int
    faulty: int
    start_time: datetime
    runtime: str
    device_count: int
    device_status_counts: DeviceStatusCountsOut
    queue_stats: QueueStatsByNameOut


class DeviceOut(_CamelModel):
    id: str
    status: str
    last_seen: Optional[datetime]
    status_changed_at: Optional[datetime]
    last_message: Optional[Dict[str, Any]] = None

    @classmethod
    def from_state(cls, device: DeviceState) -> "DeviceOut":
        return cls(
            id=device.id,
            status=device.status.value,
            last_seen=device.last_seen,
            status_changed_at=device.status_changed_at,
            last_message=device.last_message,
        )


class SweepOut(_CamelModel):
    marked_offline: List[str] = Field(default_factory=list)
    count: int = 0


class RetryDrainOut(_CamelModel):
    dequeued: int
    scheduled: int
    exhausted: int
