from __future__ import annotations

import json
import logging
import os
import re
import time
import uuid
from typing import Any, Mapping, Optional, Tuple

LOGGER_NAME = "weather_gateway"

_APPID_RE = re.compile(r"(appid=)[^&]+", re.IGNORECASE)


def configure_logging() -> None:
    """Configure application logging.

    We intentionally emit **JSON lines** so GCP Cloud Logging parses them into
    `jsonPayload` fields automatically.
    """

    level_name = os.getenv("LOG_LEVEL", "INFO").upper().strip()
    level = getattr(logging, level_name, logging.INFO)

    # Dedicated logger so Uvicorn's logging config doesn't clobber our JSON formatting.
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(message)s"))

    # Replace handlers so repeated imports don't duplicate logs.
    logger.handlers.clear()
    logger.addHandler(handler)
    logger.propagate = False


def mask_api_key(url: str) -> str:
    """Replace the provider key in a URL so it can be logged."""
    return _APPID_RE.sub(r"\1[API_KEY]", url or "")


def mask_secret(secret: str | None) -> str | None:
    if not secret:
        return None
    if len(secret) <= 8:
        return "***"
    return f"{secret[:4]}...{secret[-2:]}"


def parse_cloud_trace_context(headers: Mapping[str, str]) -> Tuple[Optional[str], Optional[str]]:
    """Parse the Cloud Trace header.

    Cloud Run (and other GCP services) often forward `X-Cloud-Trace-Context`:
    "TRACE_ID/SPAN_ID;o=TRACE_TRUE".
    """

    raw = headers.get("x-cloud-trace-context")
    if not raw:
        return None, None

    parts = raw.split("/")
    trace_id = parts[0].strip() if parts and parts[0].strip() else None
    span_id: Optional[str] = None
    if len(parts) > 1:
        span_part = parts[1].split(";")[0].strip()
        span_id = span_part or None
    return trace_id, span_id


def _cloud_trace_resource(trace_id: Optional[str]) -> Optional[str]:
    if not trace_id:
        return None
    project = (
        os.getenv("GOOGLE_CLOUD_PROJECT")
        or os.getenv("GCP_PROJECT")
        or os.getenv("PROJECT_ID")
        or ""
    ).strip()
    if not project:
        return None
    return f"projects/{project}/traces/{trace_id}"


def request_id_from_headers(headers: Mapping[str, str]) -> str:
    """Determine a request ID.

    Preference order:
      1) X-Request-Id (reverse proxies)
      2) X-Correlation-Id (some enterprise setups)
      3) generated UUID4
    """

    rid = headers.get("x-request-id") or headers.get("x-correlation-id")
    return (rid.strip() if rid else "") or str(uuid.uuid4())


def client_identifier(headers: Mapping[str, str], peer: Optional[str]) -> str:
    """Rate-limit identifier: first X-Forwarded-For hop, else the socket peer."""

    xff = headers.get("x-forwarded-for")
    first = xff.split(",")[0].strip() if xff else ""
    return first or peer or "unknown"


def log_event(event: str, *, severity: str = "INFO", **fields: Any) -> None:
    logger = logging.getLogger(LOGGER_NAME)
    payload: dict[str, Any] = {"severity": severity, "event": event}
    payload.update({k: v for k, v in fields.items() if v is not None})
    level = getattr(logging, severity, logging.INFO)
    logger.log(level, json.dumps(payload, ensure_ascii=False, default=str))


def log_http_request(
    *,
    request_id: str,
    method: str,
    url: str,
    path: str,
    status: int,
    latency_ms: float,
    remote_ip: str,
    user_agent: str,
    trace_id: Optional[str] = None,
    span_id: Optional[str] = None,
    limited: bool = False,
    error_type: Optional[str] = None,
    severity: str = "INFO",
) -> None:
    """Emit a Cloud Logging-friendly structured request log."""

    logger = logging.getLogger(LOGGER_NAME)

    payload: dict[str, Any] = {
        "severity": severity,
        "message": "http_request",
        "service": os.getenv("K_SERVICE", "weather-gateway"),
        "revision": os.getenv("K_REVISION", ""),
        "request_id": request_id,
        "path": path,
        "limited": limited,
        "latency_ms": round(latency_ms, 2),
        "httpRequest": {
            "requestMethod": method,
            "requestUrl": url,
            "status": status,
            # Cloud Logging expects a duration string, e.g. "0.123s".
            "latency": f"{latency_ms / 1000.0:.3f}s",
            "remoteIp": remote_ip,
            "userAgent": user_agent,
        },
    }

    if error_type:
        payload["error_type"] = error_type

    trace = _cloud_trace_resource(trace_id)
    if trace:
        payload["logging.googleapis.com/trace"] = trace
    if span_id:
        payload["logging.googleapis.com/spanId"] = span_id

    level = getattr(logging, severity, logging.INFO)
    logger.log(level, json.dumps(payload, ensure_ascii=False))


def log_upstream_fetch(
    *,
    kind: str,
    url: str,
    outcome: str,
    latency_ms: float,
    status: Optional[int] = None,
    cache_hit: bool = False,
) -> None:
    log_event(
        "upstream_fetch",
        severity="INFO" if outcome == "ok" else "WARNING",
        kind=kind,
        url=mask_api_key(url),
        outcome=outcome,
        status=status,
        cache_hit=cache_hit,
        latency_ms=round(latency_ms, 2),
    )


class Timer:
    """Tiny helper for timing blocks."""

    def __init__(self) -> None:
        self._t0 = time.perf_counter()

    def ms(self) -> float:
        return (time.perf_counter() - self._t0) * 1000.0
