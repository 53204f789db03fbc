from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import settings
from .diagnostics import run_key_check
from .errors import GatewayError, too_many_requests
from .gateway import Rejection, classify, endpoint_kind_for_path
from .observability import (
    Timer,
    client_identifier,
    configure_logging,
    log_event,
    log_http_request,
    mask_secret,
    parse_cloud_trace_context,
    request_id_from_headers,
)
from .otel import record_http_request_metric, record_rate_limited_metric, setup_otel
from .ratelimit import TwoTierRateLimiter
from .upstream import UpstreamOk, WeatherForwarder, result_to_error

_CSP_API = "default-src 'none'; frame-ancestors 'none'"

_CSP_SWAGGER = (
    # Swagger UI needs inline/eval for its bundled scripts/styles.
    "default-src 'self'; img-src 'self' data: https://fastapi.tiangolo.com; connect-src 'self'; "
    "script-src 'self' 'unsafe-inline' 'unsafe-eval' https://cdn.jsdelivr.net; "
    "style-src 'self' 'unsafe-inline' https://cdn.jsdelivr.net; "
    "object-src 'none'; base-uri 'self'; frame-ancestors 'none'"
)

_DOCS_PREFIXES = ("/api/swagger", "/api/redoc", "/api/openapi")
_UNLIMITED_PATHS = {"/api/health", "/api/diagnostics"}


def _csp_for_path(path: str) -> str:
    if (path or "").startswith(_DOCS_PREFIXES):
        return _CSP_SWAGGER
    return _CSP_API


def check_startup_config(forwarder: WeatherForwarder | None = None) -> None:
    """Refuse to start a long-running server without a usable provider key."""

    fw = forwarder or _forwarder
    err = fw.config_error()
    if err is None:
        logger.info(json.dumps({"severity": "INFO", "event": "config.ok", "api_key": mask_secret(fw.api_key)}))
        return
    log_event("config.invalid", severity="ERROR", error=err.error, message=err.message)
    if settings.fatal_config_errors:
        raise err


@asynccontextmanager
async def lifespan(_app: FastAPI):
    """FastAPI lifespan: validate configuration before serving traffic."""

    check_startup_config()
    yield
    _forwarder.close()


app = FastAPI(
    title="Weather Gateway",
    version=settings.version,
    docs_url="/api/swagger",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
    lifespan=lifespan,
)

# Configure JSON logging early so Cloud Run/Cloud Logging parses fields.
configure_logging()
setup_otel(app)

logger = logging.getLogger("weather_gateway")

_limiter = TwoTierRateLimiter.from_settings(settings)
_forwarder = WeatherForwarder.from_settings(settings)


def _should_rate_limit(path: str) -> bool:
    """Decide whether a path is subject to the rate limiter.

    Default scope `proxy` limits only the four upstream-backed endpoints;
    `api` extends it to every API route except health/diagnostics/docs.
    """

    p = path or ""
    if not p.startswith("/api/") or p in _UNLIMITED_PATHS or p.startswith(_DOCS_PREFIXES):
        return False
    if settings.rate_limit_scope == "api":
        return True
    return endpoint_kind_for_path(p) is not None


def _cors_headers() -> dict[str, str]:
    return {"Access-Control-Allow-Origin": settings.cors_allow_origin}


def _preflight_headers() -> dict[str, str]:
    headers = _cors_headers()
    headers["Access-Control-Allow-Methods"] = "GET, OPTIONS"
    headers["Access-Control-Allow-Headers"] = "Content-Type, Authorization"
    headers["Access-Control-Max-Age"] = str(settings.cors_max_age_s)
    return headers


def _envelope_headers(request: Request) -> dict[str, str]:
    headers = _cors_headers()
    rid = getattr(request.state, "request_id", None)
    if rid:
        headers["X-Request-Id"] = rid
    headers["X-Content-Type-Options"] = "nosniff"
    headers["X-Frame-Options"] = "DENY"
    headers["Referrer-Policy"] = "no-referrer"
    headers["Content-Security-Policy"] = _csp_for_path(request.url.path)
    headers["Cache-Control"] = "no-store"
    return headers


@app.middleware("http")
async def _request_middleware(request: Request, call_next):
    """Attach request ID, answer CORS preflight, rate-limit, emit structured logs."""

    timer = Timer()
    lowered = {k.lower(): v for k, v in request.headers.items()}
    rid = request_id_from_headers(lowered)
    request.state.request_id = rid

    remote_ip = client_identifier(lowered, request.client.host if request.client else None)
    user_agent = request.headers.get("user-agent", "")
    trace_id, span_id = parse_cloud_trace_context(lowered)
    path = request.url.path

    def _log(status: int, **kwargs: Any) -> None:
        latency_ms = timer.ms()
        record_http_request_metric(method=request.method, path=path, status_code=status, latency_ms=latency_ms)
        log_http_request(
            request_id=rid,
            method=request.method,
            url=str(request.url),
            path=path,
            status=status,
            latency_ms=latency_ms,
            remote_ip=remote_ip,
            user_agent=user_agent,
            trace_id=trace_id,
            span_id=span_id,
            **kwargs,
        )

    # ---- CORS preflight ----
    if request.method == "OPTIONS":
        headers = _preflight_headers()
        headers["X-Request-Id"] = rid
        _log(204)
        return Response(status_code=204, headers=headers)

    # ---- Rate limiting ----
    if settings.rate_limit_enabled and _should_rate_limit(path):
        decision = _limiter.check_rate_limit(remote_ip)
        if not decision.allowed:
            err = too_many_requests(decision.retry_after_s, decision.scope)
            record_rate_limited_metric(scope=decision.scope)
            _log(429, limited=True, error_type="RateLimitError", severity="WARNING")
            headers = _envelope_headers(request)
            headers["Retry-After"] = str(decision.retry_after_s)
            return JSONResponse(status_code=429, content=err.to_body(), headers=headers)

    # ---- Normal request execution ----
    try:
        response = await call_next(request)
    except Exception as e:
        _log(500, error_type=type(e).__name__, severity="ERROR")
        raise

    response.headers["X-Request-Id"] = rid
    for key, value in _cors_headers().items():
        response.headers.setdefault(key, value)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    response.headers.setdefault("Content-Security-Policy", _csp_for_path(path))
    if request.headers.get("x-forwarded-proto") == "https":
        response.headers.setdefault("Strict-Transport-Security", "max-age=31536000; includeSubDomains")
    # Proxied weather responses set their own max-age; everything else is uncached.
    response.headers.setdefault("Cache-Control", "no-store")

    status_code = int(response.status_code)
    _log(status_code, severity="INFO" if status_code < 500 else "ERROR")
    return response


@app.exception_handler(GatewayError)
async def _gateway_error_handler(request: Request, exc: GatewayError):
    severity = "WARNING" if exc.status_code < 500 else "ERROR"
    log_event(
        "gateway.error",
        severity=severity,
        request_id=getattr(request.state, "request_id", None),
        path=request.url.path,
        error_type=type(exc).__name__,
        status=exc.status_code,
        error=exc.error,
        message=exc.message,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_body(), headers=_envelope_headers(request))


@app.exception_handler(StarletteHTTPException)
async def _http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Keep the `{error: ...}` envelope for routing errors (404/405)."""
    if exc.status_code == 404:
        error = "Endpoint not found"
    elif exc.status_code == 405:
        error = "Method not allowed"
    else:
        error = str(exc.detail)
    headers = _envelope_headers(request)
    if exc.headers:
        headers.update(exc.headers)
    return JSONResponse(status_code=exc.status_code, content={"error": error}, headers=headers)


@app.exception_handler(Exception)
async def _unhandled_exception_handler(request: Request, exc: Exception):
    """Return a safe JSON 500 (and keep request correlation + security headers)."""
    logger.exception("Unhandled error on %s", request.url.path)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"},
        headers=_envelope_headers(request),
    )


# ---- Health ----
class HealthResponse(BaseModel):
    status: str = Field("OK", description="Always OK while the process is up")
    timestamp: str
    api_key_configured: bool
    version: str


@app.get("/api/health", response_model=HealthResponse)
def health() -> HealthResponse:
    """Liveness + config presence. Always 200 while the process is up."""
    return HealthResponse(
        timestamp=datetime.now(timezone.utc).isoformat(),
        api_key_configured=bool(_forwarder.api_key),
        version=app.version,
    )


# ---- Diagnostics (operator-only) ----
@app.get("/api/diagnostics")
def diagnostics() -> dict[str, Any]:
    """Masked key info, effective limits and a live provider round-trip."""
    if not settings.allow_diagnostics:
        raise StarletteHTTPException(status_code=404)
    return run_key_check(_forwarder, settings)


# ---- Proxy ----
@app.get("/api/{path:path}")
def proxy(path: str, request: Request) -> Response:
    """Forward one of the four weather/geocoding endpoints to the provider.

    Path matching is substring-based, so `/api/geocoding` and `/api/geo/direct`
    reach the same upstream call.
    """

    _forwarder.ensure_configured()

    classified = classify(
        request.url.path,
        dict(request.query_params),
        default_lang=settings.default_lang,
        default_limit=settings.geocoding_default_limit,
        max_limit=settings.geocoding_max_limit,
    )
    if isinstance(classified, Rejection):
        raise classified.to_error()

    result, cache_hit = _forwarder.fetch(classified)
    if not isinstance(result, UpstreamOk):
        raise result_to_error(result, path=request.url.path)

    headers = {"X-Cache": "HIT" if cache_hit else "MISS"}
    if settings.cache_enabled and settings.cache_max_age_s > 0:
        headers["Cache-Control"] = f"public, max-age={settings.cache_max_age_s}"
    return Response(content=result.body, media_type="application/json", headers=headers)
