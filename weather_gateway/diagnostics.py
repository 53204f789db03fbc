from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from .config import Settings
from .gateway import EndpointKind, ProxyRequest
from .upstream import PayloadInvalid, ProviderError, TransportFailure, UpstreamOk, WeatherForwarder

# Coordinates used by the live key check (Tokyo).
PROBE_LAT = "35"
PROBE_LON = "139"


def _summarize_current(payload: Any) -> dict[str, Any]:
    data = payload if isinstance(payload, dict) else {}
    weather_list = data.get("weather")
    weather = weather_list[0] if isinstance(weather_list, list) and weather_list else {}
    main = data.get("main") if isinstance(data.get("main"), dict) else {}
    sys_block = data.get("sys") if isinstance(data.get("sys"), dict) else {}
    return {
        "city": data.get("name"),
        "country": sys_block.get("country"),
        "description": weather.get("description") if isinstance(weather, dict) else None,
        "temp": main.get("temp"),
        "feels_like": main.get("feels_like"),
        "humidity": main.get("humidity"),
    }


def run_key_check(forwarder: WeatherForwarder, s: Settings) -> dict[str, Any]:
    """Report on the configured key and try one live current-weather call.

    The key itself never appears in the report: only its length and a short
    prefix. The probe bypasses the response cache.
    """

    key = forwarder.api_key or ""
    config_err = forwarder.config_error()
    report: dict[str, Any] = {
        "success": False,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "api_key": {
            "configured": bool(key),
            "length": len(key),
            "prefix": key[:4] if len(key) > 8 else None,
            "valid_format": config_err is None,
        },
        "limits": {
            "rate_limit_enabled": s.rate_limit_enabled,
            "rate_limit_scope": s.rate_limit_scope,
            "rate_limit_window_s": s.rate_limit_window_s,
            "rate_limit_max_requests": s.rate_limit_max_requests,
            "global_rate_limit_max_requests": s.global_rate_limit_max_requests,
            "cache_max_age_s": s.cache_max_age_s if s.cache_enabled else 0,
            "upstream_timeout_s": forwarder.timeout_s,
        },
    }
    if config_err is not None:
        report["error"] = config_err.to_body()
        return report

    probe = ProxyRequest(
        kind=EndpointKind.CURRENT,
        params={"lat": PROBE_LAT, "lon": PROBE_LON, "lang": forwarder.default_lang},
    )
    result = forwarder.forward(forwarder.build_url(probe), kind="diagnostics")
    if isinstance(result, UpstreamOk):
        report["success"] = True
        report["message"] = "API key is valid and working"
        report["data"] = _summarize_current(result.payload)
    elif isinstance(result, ProviderError):
        report["error"] = {"error": "API Test Failed", "status": result.code, "message": result.message}
    elif isinstance(result, PayloadInvalid):
        report["error"] = {
            "error": "JSON Parse Error",
            "status": result.status,
            "responsePreview": result.raw_preview[:200],
        }
    elif isinstance(result, TransportFailure):
        report["error"] = {"error": "Failed to reach weather API", "message": result.cause}
    return report
