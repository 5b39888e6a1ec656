"""Device liveness/quality state machine.

StatusTracker owns the device table and the three remediation queues:

- quarantine:   devices whose latest message failed validation (FAULTY)
- tamper_check: devices that came back within the flapping window (FLAPPING)
- fallback:     devices that went silent past the offline threshold (OFFLINE)

Public operations are serialized with a re-entrant lock; the service calls
them from the HTTP thread pool and from scheduler threads.
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional

from ..config import Settings
from ..models import (
    DeviceState,
    DeviceStatus,
    FaultReason,
    RemediationEvent,
    TelemetryMessage,
    TrackerCounters,
)
from ..observability import record_status_transition_metric, record_telemetry_message_metric
from .metrics import device_status_counts, metrics_snapshot
from .queue import RemediationQueue
from .scheduling import APSchedulerTaskScheduler, Clock, DelayedTaskScheduler, SystemClock
from .validation import (
    DEFAULT_CORRUPTED_TIMESTAMP,
    DEFAULT_MIN_VOLTAGE,
    device_key,
    parse_telemetry,
)


logger = logging.getLogger("fleetstatus.tracker")

FAULTY_REASON = "Invalid voltage or timestamp"
OFFLINE_REASON = "No data for more than 5 minutes"
FLAPPING_REASON = "Device came online within 2 minutes of going offline"


@dataclass(frozen=True)
class TrackerPolicy:
    offline_after_s: int = 300
    flapping_window_s: int = 120
    min_voltage: float = DEFAULT_MIN_VOLTAGE
    corrupted_timestamp: str = DEFAULT_CORRUPTED_TIMESTAMP
    sweep_never_seen_devices: bool = True
    retry_max_attempts: int = 3
    retry_max_per_drain: int = 100
    retry_stagger_s: float = 1.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "TrackerPolicy":
        return cls(
            offline_after_s=settings.offline_after_s,
            flapping_window_s=settings.flapping_window_s,
            min_voltage=settings.min_voltage,
            corrupted_timestamp=settings.corrupted_timestamp,
            sweep_never_seen_devices=settings.sweep_never_seen_devices,
            retry_max_attempts=settings.fallback_retry_max_attempts,
            retry_max_per_drain=settings.fallback_retry_max_per_drain,
            retry_stagger_s=settings.fallback_retry_stagger_s,
        )


@dataclass(frozen=True)
class RetryDrainResult:
    dequeued: int
    scheduled: int
    exhausted: int


class StatusTracker:
    def __init__(
        self,
        *,
        policy: TrackerPolicy | None = None,
        clock: Clock | None = None,
        scheduler: DelayedTaskScheduler | None = None,
    ) -> None:
        self.policy = policy or TrackerPolicy()
        self.clock = clock or SystemClock()
        self.scheduler = scheduler or APSchedulerTaskScheduler(clock=self.clock)

        self._lock = threading.RLock()
        self._devices: Dict[str, DeviceState] = {}

        self.fallback_queue = RemediationQueue("fallback", clock=self.clock)
        self.tamper_check_queue = RemediationQueue("tamperCheck", clock=self.clock)
        self.quarantine_queue = RemediationQueue("quarantine", clock=self.clock)

        self.counters = TrackerCounters(started_at=self.clock.now())

    @property
    def queues(self) -> Dict[str, RemediationQueue]:
        return {
            "fallback": self.fallback_queue,
            "tamperCheck": self.tamper_check_queue,
            "quarantine": self.quarantine_queue,
        }

    # -----------------------------
    # Ingestion
    # -----------------------------

    def is_message_faulty(self, payload: Mapping[str, Any]) -> bool:
        return isinstance(self._parse(payload), FaultReason)

    def process_message(self, payload: Mapping[str, Any]) -> DeviceStatus:
        """Apply one telemetry message and return the device's resulting status.

        Semantically invalid payloads never raise; they mark the device FAULTY
        and land on the quarantine queue. A payload that is not a mapping at all
        is a structural error and raises TypeError.
        """

        if not isinstance(payload, Mapping):
            raise TypeError(f"telemetry payload must be a mapping, got {type(payload).__name__}")

        with self._lock:
            self.counters.total_messages += 1

            result = self._parse(payload)
            if isinstance(result, FaultReason):
                record_telemetry_message_metric(outcome="faulty")
                device_id = device_key(payload.get("device_id"))
                self._handle_faulty_device(device_id, FAULTY_REASON, fault=result)
                return DeviceStatus.FAULTY

            record_telemetry_message_metric(outcome="valid")
            return self._apply_valid_message(result)

    def _parse(self, payload: Mapping[str, Any]) -> TelemetryMessage | FaultReason:
        return parse_telemetry(
            payload,
            min_voltage=self.policy.min_voltage,
            corrupted_timestamp=self.policy.corrupted_timestamp,
        )

    def _apply_valid_message(self, msg: TelemetryMessage) -> DeviceStatus:
        device = self._get_or_create_device(msg.device_id)
        device.last_seen = msg.timestamp
        device.last_message = dict(msg.raw)

        if device.status is DeviceStatus.OFFLINE:
            # OFFLINE always sets status_changed_at, so it is never None here.
            changed_at = device.status_changed_at or msg.timestamp
            offline_for = msg.timestamp - changed_at
            if offline_for <= timedelta(seconds=self.policy.flapping_window_s):
                self._handle_flapping_device(device.id)
            else:
                device.status = DeviceStatus.ONLINE
                device.status_changed_at = msg.timestamp
                logger.info(
                    "device_recovered",
                    extra={
                        "fields": {
                            "device_id": device.id,
                            "offline_for_s": round(offline_for.total_seconds(), 3),
                        }
                    },
                )
        else:
            # Only the first valid message stamps status_changed_at on this path;
            # recovering from FAULTY/FLAPPING keeps the earlier stamp.
            device.status = DeviceStatus.ONLINE
            if device.status_changed_at is None:
                device.status_changed_at = msg.timestamp

        return device.status

    # -----------------------------
    # Sweep
    # -----------------------------

    def check_offline_devices(self) -> List[str]:
        """Mark silent devices OFFLINE and route them to the fallback queue.

        Returns the ids that transitioned during this sweep.
        """

        with self._lock:
            now = self.clock.now()
            threshold = now - timedelta(seconds=self.policy.offline_after_s)

            marked: List[str] = []
            for device_id, device in list(self._devices.items()):
                if device.status is DeviceStatus.OFFLINE:
                    continue
                if device.last_seen is None:
                    if not self.policy.sweep_never_seen_devices:
                        continue
                elif device.last_seen >= threshold:
                    continue
                self._handle_offline_device(device_id)
                marked.append(device_id)

            if marked:
                logger.info(
                    "offline_sweep",
                    extra={"fields": {"devices_checked": len(self._devices), "marked_offline": len(marked)}},
                )
            return marked

    # -----------------------------
    # Fallback retry drain
    # -----------------------------

    def process_fallback_retries(self) -> RetryDrainResult:
        """Drain the fallback queue with bounded retries.

        Each dequeued item spends one retry attempt for its device. While
        attempts remain, a delayed re-enqueue is scheduled, staggered by the
        item's position in this drain. Exhausted items are dropped.
        """

        max_attempts = self.policy.retry_max_attempts
        dequeued = 0
        scheduled = 0
        exhausted = 0

        with self._lock:
            while self.fallback_queue.size() > 0 and dequeued < self.policy.retry_max_per_drain:
                item = self.fallback_queue.dequeue()
                if item is None:
                    break

                event = item.payload
                if self.fallback_queue.retry(event.device_id, max_attempts):
                    delay_s = self.policy.retry_stagger_s * (dequeued + 1)
                    self.scheduler.call_later(delay_s, self._make_reenqueue(event, max_attempts))
                    scheduled += 1
                else:
                    exhausted += 1
                    logger.debug(
                        "fallback_retry_exhausted",
                        extra={"fields": {"device_id": event.device_id, "item_id": item.id}},
                    )
                dequeued += 1

        result = RetryDrainResult(dequeued=dequeued, scheduled=scheduled, exhausted=exhausted)
        if dequeued:
            logger.info("fallback_retry_drain", extra={"fields": dataclasses.asdict(result)})
        return result

    def _make_reenqueue(self, event: RemediationEvent, max_attempts: int):
        def _reenqueue() -> None:
            with self._lock:
                attempts = self.fallback_queue.get_retry_count(event.device_id)
                logger.info(
                    "fallback_retry",
                    extra={
                        "fields": {
                            "device_id": event.device_id,
                            "attempt": attempts,
                            "max_attempts": max_attempts,
                        }
                    },
                )
                if attempts < max_attempts:
                    self.fallback_queue.enqueue(dataclasses.replace(event, retry_attempt=attempts))

        return _reenqueue

    def shutdown(self) -> int:
        """Cancel pending delayed re-enqueues. Returns how many were cancelled."""
        return self.scheduler.shutdown()

    # -----------------------------
    # Read side
    # -----------------------------

    def get_device(self, device_id: str) -> Optional[DeviceState]:
        with self._lock:
            device = self._devices.get(device_id)
            return dataclasses.replace(device) if device is not None else None

    def list_devices(self) -> List[DeviceState]:
        with self._lock:
            return [dataclasses.replace(d) for _, d in sorted(self._devices.items())]

    def get_device_status_counts(self) -> Dict[str, int]:
        with self._lock:
            return device_status_counts(self._devices.values())

    def get_metrics(self) -> Dict[str, Any]:
        with self._lock:
            return metrics_snapshot(
                counters=self.counters,
                devices=list(self._devices.values()),
                queues=self.queues,
                now=self.clock.now(),
            )

    def reset_metrics(self) -> None:
        with self._lock:
            self.counters.reset(started_at=self.clock.now())

    # -----------------------------
    # Transitions
    # -----------------------------

    def _get_or_create_device(self, device_id: str) -> DeviceState:
        device = self._devices.get(device_id)
        if device is None:
            device = DeviceState(id=device_id)
            self._devices[device_id] = device
        return device

    def _event(self, device_id: str, reason: str, now: datetime) -> RemediationEvent:
        return RemediationEvent(device_id=device_id, reason=reason, timestamp=now.isoformat())

    def _handle_offline_device(self, device_id: str) -> None:
        now = self.clock.now()
        device = self._get_or_create_device(device_id)
        device.status = DeviceStatus.OFFLINE
        device.status_changed_at = now

        self.fallback_queue.enqueue(self._event(device_id, OFFLINE_REASON, now))
        self.counters.fallbacks += 1
        record_status_transition_metric(status=DeviceStatus.OFFLINE.value, queue="fallback")
        logger.info(
            "Device %s marked OFFLINE - sent to fallback queue",
            device_id,
            extra={"fields": {"device_id": device_id, "last_seen": device.last_seen}},
        )

    def _handle_flapping_device(self, device_id: str) -> None:
        now = self.clock.now()
        device = self._get_or_create_device(device_id)
        device.status = DeviceStatus.FLAPPING
        device.status_changed_at = now

        self.tamper_check_queue.enqueue(self._event(device_id, FLAPPING_REASON, now))
        self.counters.flapping += 1
        record_status_transition_metric(status=DeviceStatus.FLAPPING.value, queue="tamperCheck")
        logger.info(
            "Device %s marked FLAPPING - sent to tamper check queue",
            device_id,
            extra={"fields": {"device_id": device_id}},
        )

    def _handle_faulty_device(self, device_id: str, reason: str, *, fault: FaultReason) -> None:
        now = self.clock.now()
        device = self._get_or_create_device(device_id)
        device.status = DeviceStatus.FAULTY
        device.status_changed_at = now

        self.quarantine_queue.enqueue(self._event(device_id, reason, now))
        self.counters.faulty += 1
        record_status_transition_metric(status=DeviceStatus.FAULTY.value, queue="quarantine")
        logger.info(
            "Device %s marked FAULTY - sent to quarantine queue",
            device_id,
            extra={"fields": {"device_id": device_id, "fault": fault.value}},
        )
