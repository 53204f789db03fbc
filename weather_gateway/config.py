from __future__ import annotations

import os
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from .version import get_version

# Load a local .env for developer convenience.
# - Does NOT override already-set environment variables (CI/Cloud Run wins)
# - Safe: if .env doesn't exist, no-op
load_dotenv: Callable[..., object] | None
try:
    from dotenv import load_dotenv as _load_dotenv  # python-dotenv
except Exception:  # pragma: no cover
    load_dotenv = None
else:
    load_dotenv = _load_dotenv

_REPO_ROOT = Path(__file__).resolve().parents[1]  # repo root (where .env lives)
_ENV_PATH = _REPO_ROOT / ".env"
if load_dotenv is not None and _ENV_PATH.exists():
    load_dotenv(dotenv_path=_ENV_PATH, override=False)


def _env_str(name: str, default: str) -> str:
    v = os.getenv(name)
    return v if v is not None and v.strip() != "" else default


def _env_int(name: str, default: int) -> int:
    v = os.getenv(name)
    if v is None:
        return default
    try:
        return int(v.strip())
    except Exception:
        return default


def _env_float(name: str, default: float) -> float:
    v = os.getenv(name)
    if v is None:
        return default
    try:
        return float(v.strip())
    except Exception:
        return default


def _env_bool(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return v.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


_ALLOWED_GATEWAY_MODES = {"server", "function"}
_ALLOWED_RATE_LIMIT_SCOPES = {"proxy", "api"}
_ALLOWED_TRACE_EXPORTERS = {"auto", "otlp", "gcp_trace", "none"}

DEFAULT_DATA_BASE_URL = "https://api.openweathermap.org/data/2.5"
DEFAULT_GEO_BASE_URL = "https://api.openweathermap.org/geo/1.0"


@dataclass(frozen=True)
class Settings:
    """Central configuration for the gateway.

    Goals:
      - one required secret (the provider API key), never sent by clients
      - both rate-limit tiers tunable without a code change
      - configurable via environment variables (and a local .env)
    """

    # ---- Build / runtime ----
    version: str
    gateway_mode: str  # server | function

    # ---- Upstream provider ----
    owm_api_key: str | None
    owm_api_key_min_length: int
    owm_data_base_url: str
    owm_geo_base_url: str
    upstream_timeout_s: float
    default_lang: str
    geocoding_default_limit: int
    geocoding_max_limit: int

    # ---- Response cache ----
    cache_enabled: bool
    cache_max_age_s: int
    cache_max_entries: int

    # ---- Rate limiting ----
    rate_limit_enabled: bool
    rate_limit_scope: str  # proxy | api
    rate_limit_window_s: int
    rate_limit_max_requests: int
    global_rate_limit_max_requests: int  # 0 disables the global tier
    rate_limit_max_identifiers: int

    # ---- CORS ----
    cors_allow_origin: str
    cors_max_age_s: int

    # Operator-only key/connectivity report (never enable on a public URL)
    allow_diagnostics: bool

    # ---- OpenTelemetry ----
    otel_enabled: bool
    otel_exporter_otlp_endpoint: str | None
    otel_service_name: str
    otel_traces_exporter: str

    @property
    def api_key_configured(self) -> bool:
        return bool(self.owm_api_key)

    @property
    def fatal_config_errors(self) -> bool:
        """Long-running servers refuse to start without a usable key."""
        return self.gateway_mode == "server"


def load_settings() -> Settings:
    gateway_mode = _env_str("GATEWAY_MODE", "server").lower().strip()
    if gateway_mode not in _ALLOWED_GATEWAY_MODES:
        gateway_mode = "server"

    owm_api_key = (os.getenv("OWM_API_KEY") or "").strip() or None
    owm_api_key_min_length = max(1, _env_int("OWM_API_KEY_MIN_LENGTH", 20))
    owm_data_base_url = _env_str("OWM_DATA_BASE_URL", DEFAULT_DATA_BASE_URL).rstrip("/")
    owm_geo_base_url = _env_str("OWM_GEO_BASE_URL", DEFAULT_GEO_BASE_URL).rstrip("/")
    upstream_timeout_s = _env_float("UPSTREAM_TIMEOUT_S", 8.0)
    if upstream_timeout_s <= 0:
        upstream_timeout_s = 8.0
    default_lang = _env_str("DEFAULT_LANG", "en").strip().lower()

    geocoding_max_limit = max(1, _env_int("GEOCODING_MAX_LIMIT", 5))
    geocoding_default_limit = min(max(1, _env_int("GEOCODING_DEFAULT_LIMIT", 5)), geocoding_max_limit)

    cache_enabled = _env_bool("CACHE_ENABLED", True)
    cache_max_age_s = max(0, _env_int("CACHE_MAX_AGE_S", 600))  # 10 minutes
    cache_max_entries = max(1, _env_int("CACHE_MAX_ENTRIES", 512))

    rate_limit_enabled = _env_bool("RATE_LIMIT_ENABLED", True)
    rate_limit_scope = _env_str("RATE_LIMIT_SCOPE", "proxy").lower().strip()
    if rate_limit_scope not in _ALLOWED_RATE_LIMIT_SCOPES:
        rate_limit_scope = "proxy"
    rate_limit_window_s = max(1, _env_int("RATE_LIMIT_WINDOW_S", 60))
    rate_limit_max_requests = max(1, _env_int("RATE_LIMIT_MAX_REQUESTS", 60))
    global_rate_limit_max_requests = max(0, _env_int("GLOBAL_RATE_LIMIT_MAX_REQUESTS", 1000))
    rate_limit_max_identifiers = max(1, _env_int("RATE_LIMIT_MAX_IDENTIFIERS", 10_000))

    cors_allow_origin = _env_str("CORS_ALLOW_ORIGIN", "*")
    cors_max_age_s = max(0, _env_int("CORS_MAX_AGE_S", 86_400))

    allow_diagnostics = _env_bool("ALLOW_DIAGNOSTICS", False)

    otel_enabled = _env_bool("OTEL_ENABLED", False)
    otel_exporter_otlp_endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT") or None
    otel_service_name = _env_str("OTEL_SERVICE_NAME", "weather-gateway")
    otel_traces_exporter = _env_str("OTEL_TRACES_EXPORTER", "auto").lower().strip()
    if otel_traces_exporter not in _ALLOWED_TRACE_EXPORTERS:
        otel_traces_exporter = "auto"

    return Settings(
        version=_env_str("APP_VERSION", get_version()),
        gateway_mode=gateway_mode,
        owm_api_key=owm_api_key,
        owm_api_key_min_length=owm_api_key_min_length,
        owm_data_base_url=owm_data_base_url,
        owm_geo_base_url=owm_geo_base_url,
        upstream_timeout_s=upstream_timeout_s,
        default_lang=default_lang,
        geocoding_default_limit=geocoding_default_limit,
        geocoding_max_limit=geocoding_max_limit,
        cache_enabled=cache_enabled,
        cache_max_age_s=cache_max_age_s,
        cache_max_entries=cache_max_entries,
        rate_limit_enabled=rate_limit_enabled,
        rate_limit_scope=rate_limit_scope,
        rate_limit_window_s=rate_limit_window_s,
        rate_limit_max_requests=rate_limit_max_requests,
        global_rate_limit_max_requests=global_rate_limit_max_requests,
        rate_limit_max_identifiers=rate_limit_max_identifiers,
        cors_allow_origin=cors_allow_origin,
        cors_max_age_s=cors_max_age_s,
        allow_diagnostics=allow_diagnostics,
        otel_enabled=otel_enabled,
        otel_exporter_otlp_endpoint=otel_exporter_otlp_endpoint,
        otel_service_name=otel_service_name,
        otel_traces_exporter=otel_traces_exporter,
    )


settings = load_settings()
