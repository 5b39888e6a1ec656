from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Any, Mapping, Union

from ..models import FaultReason, TelemetryMessage


DEFAULT_MIN_VOLTAGE = 50.0
DEFAULT_CORRUPTED_TIMESTAMP = "bad-timestamp"
MISSING_DEVICE_ID = "unknown-device"


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp into an aware UTC datetime.

    Raises ValueError when the string is not a valid instant, including
    offsets that push it outside the datetime range once converted to UTC.
    """
    raw = value.strip()
    if raw.endswith("Z") or raw.endswith("z"):
        raw = raw[:-1] + "+00:00"
    dt = datetime.fromisoformat(raw)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    try:
        return dt.astimezone(timezone.utc)
    except OverflowError as exc:
        raise ValueError(f"timestamp out of range: {value!r}") from exc


def device_key(value: Any) -> str:
    if value is None:
        return MISSING_DEVICE_ID
    if isinstance(value, str):
        return value
    return str(value)


def _is_number(value: Any) -> bool:
    # Infinity and NaN count as not numeric, unlike a plain typeof-number check.
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return not isinstance(value, float) or math.isfinite(value)


def parse_telemetry(
    payload: Mapping[str, Any],
    *,
    min_voltage: float = DEFAULT_MIN_VOLTAGE,
    corrupted_timestamp: str = DEFAULT_CORRUPTED_TIMESTAMP,
) -> Union[TelemetryMessage, FaultReason]:
    """Validate one telemetry payload.

    Checks run in a fixed order and the first failure is returned:
    voltage type, voltage floor, timestamp type, corruption sentinel, then
    timestamp parsing. `power_kw` is carried through untouched.
    """

    voltage = payload.get("voltage")
    if not _is_number(voltage):
        return FaultReason.VOLTAGE_NOT_NUMERIC
    if voltage < min_voltage:
        return FaultReason.VOLTAGE_BELOW_MINIMUM

    timestamp = payload.get("timestamp")
    if not isinstance(timestamp, str):
        return FaultReason.TIMESTAMP_NOT_STRING
    if timestamp == corrupted_timestamp:
        return FaultReason.TIMESTAMP_CORRUPTED

    try:
        ts = parse_timestamp(timestamp)
    except ValueError:
        return FaultReason.TIMESTAMP_UNPARSEABLE

    return TelemetryMessage(
        device_id=device_key(payload.get("device_id")),
        timestamp=ts,
        voltage=voltage,
        power_kw=payload.get("power_kw"),
        raw=dict(payload),
    )


def is_message_faulty(
    payload: Mapping[str, Any],
    *,
    min_voltage: float = DEFAULT_MIN_VOLTAGE,
    corrupted_timestamp: str = DEFAULT_CORRUPTED_TIMESTAMP,
) -> bool:
    result = parse_telemetry(payload, min_voltage=min_voltage, corrupted_timestamp=corrupted_timestamp)
    return isinstance(result, FaultReason)
