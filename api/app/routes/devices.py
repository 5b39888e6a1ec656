from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, HTTPException

from ..dependencies import get_tracker
from ..schemas import DeviceOut, MetricsOut, QueueStatsByNameOut
from ..services.status_tracker import StatusTracker

router = APIRouter(prefix="/api/v1", tags=["devices"])


@router.get("/metrics", response_model=MetricsOut)
def get_metrics(tracker: StatusTracker = Depends(get_tracker)) -> dict:
    return tracker.get_metrics()


@router.get("/devices", response_model=List[DeviceOut])
def list_devices(tracker: StatusTracker = Depends(get_tracker)) -> List[DeviceOut]:
    return [DeviceOut.from_state(d) for d in tracker.list_devices()]


@router.get("/devices/{device_id}", response_model=DeviceOut)
def get_device(device_id: str, tracker: StatusTracker = Depends(get_tracker)) -> DeviceOut:
    device = tracker.get_device(device_id)
    if device is None:
        raise HTTPException(status_code=404, detail="Device not found")
    return DeviceOut.from_state(device)


@router.get("/queues", response_model=QueueStatsByNameOut)
def get_queue_stats(tracker: StatusTracker = Depends(get_tracker)) -> dict:
    return {key: q.get_stats() for key, q in tracker.queues.items()}
