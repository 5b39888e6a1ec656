from __future__ import annotations

import hmac

from fastapi import Depends, Header, HTTPException, Request, status

from .config import Settings
from .services.status_tracker import StatusTracker


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_tracker(request: Request) -> StatusTracker:
    return request.app.state.tracker


def require_admin(
    settings: Settings = Depends(get_settings),
    x_admin_key: str | None = Header(default=None, alias="X-Admin-Key"),
) -> None:
    """Admin authorization gate.

    Modes
    - ADMIN_AUTH_MODE=key  (default): require X-Admin-Key and compare with ADMIN_API_KEY
    - ADMIN_AUTH_MODE=none           : trust the network perimeter
    """

    if settings.admin_auth_mode == "none":
        return

    if (
        not x_admin_key
        or not settings.admin_api_key
        or not hmac.compare_digest(x_admin_key, settings.admin_api_key)
    ):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin key")
