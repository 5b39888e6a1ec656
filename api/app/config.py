from __future__ import annotations

import os
from dataclasses import dataclass
from typing import List, Literal


def _get_bool(name: str, default: bool = False) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return v.strip().lower() in {"1", "true", "yes", "y", "on"}


def _get_float(name: str, default: float) -> float:
    v = os.getenv(name)
    if v is None or v.strip() == "":
        return default
    return float(v)


def _get_int(name: str, default: int) -> int:
    v = os.getenv(name)
    if v is None or v.strip() == "":
        return default
    return int(v)


def _get_list(name: str, default: List[str]) -> List[str]:
    v = os.getenv(name)
    if v is None or v.strip() == "":
        return default
    return [s.strip() for s in v.split(",") if s.strip()]


AdminAuthMode = Literal["key", "none"]


@dataclass(frozen=True)
class Settings:
    app_env: str
    log_level: str
    log_format: str
    enable_otel: bool

    # Background jobs
    enable_scheduler: bool
    offline_check_interval_s: int
    fallback_retry_interval_s: int

    # API surface toggles
    enable_docs: bool
    enable_ingest_routes: bool
    enable_read_routes: bool
    enable_admin_routes: bool

    # Auth posture
    admin_auth_mode: AdminAuthMode
    admin_api_key: str

    # CORS
    cors_allow_origins: List[str]

    # Safety limits
    max_request_body_bytes: int

    # Status tracking policy
    offline_after_s: int
    flapping_window_s: int
    min_voltage: float
    corrupted_timestamp: str
    sweep_never_seen_devices: bool

    # Fallback retry drain
    fallback_retry_max_attempts: int
    fallback_retry_max_per_drain: int
    fallback_retry_stagger_s: float


def load_settings() -> Settings:
    app_env = (os.getenv("APP_ENV", "dev").strip() or "dev").lower()

    enable_admin_routes = _get_bool("ENABLE_ADMIN_ROUTES", True)

    admin_auth_mode_raw = os.getenv("ADMIN_AUTH_MODE", "key").strip().lower() or "key"
    if admin_auth_mode_raw not in {"key", "none"}:
        raise RuntimeError("ADMIN_AUTH_MODE must be one of: key, none")
    admin_auth_mode: AdminAuthMode = admin_auth_mode_raw  # type: ignore[assignment]

    if not enable_admin_routes:
        admin_auth_mode = "none"

    admin_api_key = (os.getenv("ADMIN_API_KEY") or "").strip()
    if enable_admin_routes and admin_auth_mode == "key" and not admin_api_key:
        if app_env == "dev":
            admin_api_key = "dev-admin-key"
        else:
            raise RuntimeError("ADMIN_API_KEY must be set when ADMIN_AUTH_MODE=key")

    offline_after_s = _get_int("OFFLINE_AFTER_S", 300)
    if offline_after_s <= 0:
        raise RuntimeError("OFFLINE_AFTER_S must be > 0")

    flapping_window_s = _get_int("FLAPPING_WINDOW_S", 120)
    if flapping_window_s < 0:
        raise RuntimeError("FLAPPING_WINDOW_S must be >= 0")

    corrupted_timestamp = os.getenv("CORRUPTED_TIMESTAMP", "bad-timestamp")

    cors_default = ["*"] if app_env == "dev" else []

    return Settings(
        app_env=app_env,
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        log_format=os.getenv("LOG_FORMAT", "text"),
        enable_otel=_get_bool("ENABLE_OTEL", False),
        enable_scheduler=_get_bool("ENABLE_SCHEDULER", True),
        offline_check_interval_s=max(1, _get_int("OFFLINE_CHECK_INTERVAL_S", 30)),
        fallback_retry_interval_s=max(1, _get_int("FALLBACK_RETRY_INTERVAL_S", 60)),
        enable_docs=_get_bool("ENABLE_DOCS", app_env == "dev"),
        enable_ingest_routes=_get_bool("ENABLE_INGEST_ROUTES", True),
        enable_read_routes=_get_bool("ENABLE_READ_ROUTES", True),
        enable_admin_routes=enable_admin_routes,
        admin_auth_mode=admin_auth_mode,
        admin_api_key=admin_api_key,
        cors_allow_origins=_get_list("CORS_ALLOW_ORIGINS", cors_default),
        max_request_body_bytes=_get_int("MAX_REQUEST_BODY_BYTES", 64_000),
        offline_after_s=offline_after_s,
        flapping_window_s=flapping_window_s,
        min_voltage=_get_float("MIN_VOLTAGE", 50.0),
        corrupted_timestamp=corrupted_timestamp,
        sweep_never_seen_devices=_get_bool("SWEEP_NEVER_SEEN_DEVICES", True),
        fallback_retry_max_attempts=max(0, _get_int("FALLBACK_RETRY_MAX_ATTEMPTS", 3)),
        fallback_retry_max_per_drain=max(0, _get_int("FALLBACK_RETRY_MAX_PER_DRAIN", 100)),
        fallback_retry_stagger_s=max(0.0, _get_float("FALLBACK_RETRY_STAGGER_S", 1.0)),
    )


settings = load_settings()
