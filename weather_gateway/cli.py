from __future__ import annotations

import argparse
import json

from .config import settings
from .diagnostics import run_key_check
from .gateway import Rejection, classify
from .observability import mask_api_key
from .upstream import WeatherForwarder

_KIND_PATHS = {
    "current": "/api/weather/current",
    "forecast": "/api/weather/forecast",
    "air-pollution": "/api/weather/air-pollution",
    "geocoding": "/api/geo/direct",
}


def cmd_serve(host: str, port: int, reload: bool) -> None:
    import uvicorn

    uvicorn.run("weather_gateway.main:app", host=host, port=port, reload=reload, log_config=None)


def cmd_check_key() -> int:
    forwarder = WeatherForwarder.from_settings(settings)
    try:
        report = run_key_check(forwarder, settings)
    finally:
        forwarder.close()
    print(json.dumps(report, indent=2, ensure_ascii=False))
    return 0 if report.get("success") else 2


def cmd_build_url(
    kind: str,
    *,
    lat: str | None,
    lon: str | None,
    q: str | None,
    lang: str | None,
    limit: str | None,
) -> int:
    params = {k: v for k, v in {"lat": lat, "lon": lon, "q": q, "lang": lang, "limit": limit}.items() if v}
    classified = classify(
        _KIND_PATHS[kind],
        params,
        default_lang=settings.default_lang,
        default_limit=settings.geocoding_default_limit,
        max_limit=settings.geocoding_max_limit,
    )
    if isinstance(classified, Rejection):
        print(f"ERROR: {classified.error}: {classified.message or classified.reason}")
        return 1

    forwarder = WeatherForwarder.from_settings(settings)
    try:
        print(mask_api_key(forwarder.build_url(classified)))
    finally:
        forwarder.close()
    return 0


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="weather-gateway", description="Weather Gateway CLI")
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_serve = sub.add_parser("serve", help="Run the gateway with uvicorn.")
    p_serve.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1).")
    p_serve.add_argument("--port", type=int, default=3000, help="Bind port (default: 3000).")
    p_serve.add_argument("--reload", action="store_true", help="Auto-reload on code changes (development only).")

    sub.add_parser("check-key", help="Validate OWM_API_KEY with one live current-weather call.")

    p_url = sub.add_parser("build-url", help="Print the upstream URL for a request (API key masked).")
    p_url.add_argument("--kind", choices=sorted(_KIND_PATHS), required=True)
    p_url.add_argument("--lat", default=None)
    p_url.add_argument("--lon", default=None)
    p_url.add_argument("--q", default=None, help="Place name (geocoding only).")
    p_url.add_argument("--lang", default=None)
    p_url.add_argument("--limit", default=None, help="Max geocoding results.")

    args = parser.parse_args(argv)
    if args.cmd == "serve":
        cmd_serve(args.host, int(args.port), bool(args.reload))
    elif args.cmd == "check-key":
        raise SystemExit(cmd_check_key())
    elif args.cmd == "build-url":
        raise SystemExit(
            cmd_build_url(
                args.kind,
                lat=args.lat,
                lon=args.lon,
                q=args.q,
                lang=args.lang,
                limit=args.limit,
            )
        )


if __name__ == "__main__":
    main()
