from __future__ import annotations

import json
import logging
import os
import time
import uuid
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response


# -----------------------------
# Request context (request_id)
# -----------------------------


request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


@dataclass
class _OtelRuntime:
    http_requests_total: Any | None = None
    http_request_duration_ms: Any | None = None
    telemetry_messages_total: Any | None = None
    status_transitions_total: Any | None = None
    job_duration_ms: Any | None = None


_otel_runtime: _OtelRuntime | None = None


def _utc_iso(ts: float | None = None) -> str:
    dt = datetime.fromtimestamp(ts or time.time(), tz=timezone.utc)
    return dt.isoformat()


def get_request_id() -> Optional[str]:
    return request_id_ctx.get()


def _extract_request_id(request: Request) -> str:
    rid = request.headers.get("X-Request-ID") or request.headers.get("X-Correlation-ID")
    if rid:
        return rid.strip()
    return uuid.uuid4().hex


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Attach a request_id to each request.

    The id is accepted from upstream (X-Request-ID / X-Correlation-ID) or
    generated, stored in a ContextVar so logs can include it, and echoed back in
    the X-Request-ID response header. Each request is logged on "fleetstatus.http".
    """

    async def dispatch(self, request: Request, call_next: Callable[[Request], Any]) -> Response:
        rid = _extract_request_id(request)
        token_rid = request_id_ctx.set(rid)

        start = time.perf_counter()
        try:
            try:
                response = await call_next(request)
            except Exception:
                duration_ms = int((time.perf_counter() - start) * 1000)
                logging.getLogger("fleetstatus.http").exception(
                    "request_error",
                    extra={
                        "httpRequest": _http_request_payload(request, status=500, duration_ms=duration_ms),
                        "fields": {"duration_ms": duration_ms},
                    },
                )
                record_http_request_metric(
                    method=request.method,
                    route=_route_template(request),
                    status_code=500,
                    duration_ms=duration_ms,
                )
                raise

            response.headers["X-Request-ID"] = rid

            duration_ms = int((time.perf_counter() - start) * 1000)
            logging.getLogger("fleetstatus.http").info(
                "request",
                extra={
                    "httpRequest": _http_request_payload(
                        request, status=response.status_code, duration_ms=duration_ms
                    ),
                    "fields": {"duration_ms": duration_ms},
                },
            )
            record_http_request_metric(
                method=request.method,
                route=_route_template(request),
                status_code=response.status_code,
                duration_ms=duration_ms,
            )
            return response
        finally:
            request_id_ctx.reset(token_rid)


def _http_request_payload(request: Request, *, status: int, duration_ms: int) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "requestMethod": request.method,
        "requestUrl": request.url.path,
        "status": status,
        "latency": f"{duration_ms / 1000:.3f}s",
    }
    if request.client:
        payload["remoteIp"] = request.client.host
    user_agent = request.headers.get("user-agent")
    if user_agent:
        payload["userAgent"] = user_agent
    return payload


def _route_template(request: Request) -> str:
    route = request.scope.get("route")
    path = getattr(route, "path", None)
    if isinstance(path, str) and path:
        return path
    return request.url.path


def record_http_request_metric(*, method: str, route: str, status_code: int, duration_ms: float) -> None:
    runtime = _otel_runtime
    if runtime is None:
        return

    attrs = {
        "http.method": method.upper(),
        "http.route": route or "/",
        "http.status_code": int(status_code),
    }
    if runtime.http_requests_total is not None:
        runtime.http_requests_total.add(1, attributes=attrs)
    if runtime.http_request_duration_ms is not None:
        runtime.http_request_duration_ms.record(float(duration_ms), attributes=attrs)


def record_telemetry_message_metric(*, outcome: str) -> None:
    runtime = _otel_runtime
    if runtime is None or runtime.telemetry_messages_total is None:
        return
    runtime.telemetry_messages_total.add(1, attributes={"outcome": outcome})


def record_status_transition_metric(*, status: str, queue: str | None) -> None:
    runtime = _otel_runtime
    if runtime is None or runtime.status_transitions_total is None:
        return

    runtime.status_transitions_total.add(
        1,
        attributes={
            "status": status,
            "queue": queue or "none",
        },
    )


def record_job_metric(*, job: str, duration_ms: float, success: bool) -> None:
    runtime = _otel_runtime
    if runtime is None or runtime.job_duration_ms is None:
        return

    runtime.job_duration_ms.record(
        float(duration_ms),
        attributes={
            "job": job,
            "success": bool(success),
        },
    )


# -----------------------------
# Logging
# -----------------------------


class ContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:  # pragma: no cover
        record.request_id = get_request_id()
        return True


@dataclass
class JsonLogConfig:
    service_name: str = "fleet-status-tracker"


class JsonFormatter(logging.Formatter):
    """One JSON object per record with request_id and structured `fields`."""

    def __init__(self, config: JsonLogConfig) -> None:
        super().__init__()
        self.config = config

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": _utc_iso(record.created),
            "severity": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.config.service_name,
        }

        rid = getattr(record, "request_id", None)
        if rid:
            payload["request_id"] = rid

        fields = getattr(record, "fields", None)
        if isinstance(fields, dict):
            payload["fields"] = fields

        http_request = getattr(record, "httpRequest", None)
        if isinstance(http_request, dict):
            payload["httpRequest"] = http_request

        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)

        return json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str)


def configure_logging(*, level: int, log_format: str) -> None:
    """Configure app logging.

    - log_format="json": structured JSON, one object per line
    - log_format="text": standard human-readable
    """

    root = logging.getLogger()
    root.setLevel(level)

    # Replace handlers to avoid duplicate logs when called multiple times.
    root.handlers.clear()

    handler = logging.StreamHandler()
    handler.addFilter(ContextFilter())
    if log_format.strip().lower() == "json":
        handler.setFormatter(JsonFormatter(JsonLogConfig()))
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s"))

    root.addHandler(handler)


# -----------------------------
# OpenTelemetry (optional)
# -----------------------------


def maybe_instrument_opentelemetry(
    *,
    enabled: bool,
    app,
    service_name: str,
    service_version: str,
    environment: str,
) -> None:
    """Optionally instrument FastAPI and tracker counters with OpenTelemetry.

    Best-effort: missing dependencies or exporter errors are logged and never
    prevent the API from starting. Exporters are configured via OTEL_* env vars;
    in dev without an endpoint, console exporters are used.
    """

    global _otel_runtime

    if not enabled:
        _otel_runtime = None
        return

    log = logging.getLogger("fleetstatus.otel")

    try:
        from opentelemetry import metrics, trace
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
        from opentelemetry.sdk.metrics import MeterProvider
        from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor, SimpleSpanProcessor
    except Exception:  # pragma: no cover
        log.warning(
            "OpenTelemetry is enabled (ENABLE_OTEL=1) but dependencies are not installed. "
            "Install the optional 'otel' extra.",
            extra={"fields": {"hint": "pip install -e '.[otel]'"}},
        )
        return

    resource = Resource.create(
        {
            "service.name": service_name,
            "service.version": service_version,
            "deployment.environment": environment,
        }
    )

    provider = TracerProvider(resource=resource)
    trace.set_tracer_provider(provider)

    traces_endpoint = os.getenv("OTEL_EXPORTER_OTLP_TRACES_ENDPOINT") or os.getenv(
        "OTEL_EXPORTER_OTLP_ENDPOINT"
    )
    if traces_endpoint:
        try:
            from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter

            provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter()))
            log.info(
                "OpenTelemetry trace exporter enabled",
                extra={"fields": {"endpoint": traces_endpoint}},
            )
        except Exception:  # pragma: no cover
            log.exception("Failed to configure OTLP exporter; traces will be dropped")
    elif environment == "dev":
        try:
            from opentelemetry.sdk.trace.export import ConsoleSpanExporter

            provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
            log.info("OpenTelemetry console exporter enabled (dev)")
        except Exception:  # pragma: no cover
            log.exception("Failed to configure console exporter; traces will be dropped")
    else:
        log.warning(
            "ENABLE_OTEL=1 but no OTEL exporter endpoint is configured; traces will be dropped",
            extra={"fields": {"hint": "Set OTEL_EXPORTER_OTLP_ENDPOINT"}},
        )

    metric_readers: list[Any] = []
    metrics_endpoint = os.getenv("OTEL_EXPORTER_OTLP_METRICS_ENDPOINT") or os.getenv(
        "OTEL_EXPORTER_OTLP_ENDPOINT"
    )
    if metrics_endpoint:
        try:
            from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter

            metric_readers.append(PeriodicExportingMetricReader(OTLPMetricExporter()))
        except Exception:  # pragma: no cover
            log.exception("Failed to configure OTLP metric exporter; metrics will be dropped")
    elif environment == "dev":
        try:
            from opentelemetry.sdk.metrics.export import ConsoleMetricExporter

            metric_readers.append(PeriodicExportingMetricReader(ConsoleMetricExporter()))
        except Exception:  # pragma: no cover
            log.exception("Failed to configure console metric exporter; metrics will be dropped")

    try:
        metric_provider = MeterProvider(resource=resource, metric_readers=metric_readers)
        metrics.set_meter_provider(metric_provider)
    except Exception:  # pragma: no cover
        log.exception("Failed to initialize OpenTelemetry metrics provider")
        metric_provider = None

    meter = metrics.get_meter(service_name, service_version) if metric_provider is not None else None
    if meter is not None:
        _otel_runtime = _OtelRuntime(
            http_requests_total=meter.create_counter(
                "fleetstatus.http.server.requests",
                unit="{request}",
                description="HTTP request count by route/method/status.",
            ),
            http_request_duration_ms=meter.create_histogram(
                "fleetstatus.http.server.duration",
                unit="ms",
                description="HTTP request latency by route/method/status.",
            ),
            telemetry_messages_total=meter.create_counter(
                "fleetstatus.telemetry.messages",
                unit="{message}",
                description="Telemetry messages by valid/faulty outcome.",
            ),
            status_transitions_total=meter.create_counter(
                "fleetstatus.device.transitions",
                unit="{event}",
                description="Device status transitions routed to remediation queues.",
            ),
            job_duration_ms=meter.create_histogram(
                "fleetstatus.job.duration",
                unit="ms",
                description="Offline sweep and fallback retry drain duration.",
            ),
        )
    else:
        _otel_runtime = None

    try:
        FastAPIInstrumentor.instrument_app(app, tracer_provider=provider)
    except Exception:  # pragma: no cover
        log.exception("Failed to instrument FastAPI with OpenTelemetry")
