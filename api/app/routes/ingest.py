from __future__ import annotations

import json

from fastapi import APIRouter, Depends, HTTPException, Request, status

from ..dependencies import get_tracker
from ..schemas import IngestAck
from ..services.status_tracker import StatusTracker


router = APIRouter(prefix="/api/v1", tags=["ingest"])


def _invalid_payload(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail={"error": {"code": "INVALID_PAYLOAD", "message": message}},
    )


@router.post("/telemetry", response_model=IngestAck)
async def ingest_telemetry(request: Request, tracker: StatusTracker = Depends(get_tracker)) -> IngestAck:
    """Ingest one telemetry message.

    Only structurally unreadable bodies are rejected. Messages with bad voltage
    or timestamps are still acknowledged; the tracker routes the device to the
    quarantine queue instead.
    """

    body = await request.body()
    try:
        payload = json.loads(body)
    except ValueError as exc:
        raise _invalid_payload("Request body is not valid JSON.") from exc

    if not isinstance(payload, dict):
        raise _invalid_payload("Telemetry message must be a JSON object.")

    tracker.process_message(payload)
    return IngestAck()
