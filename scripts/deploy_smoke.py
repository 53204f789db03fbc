from __future__ import annotations

import argparse
import json
import time
from dataclasses import dataclass
from typing import Any, Callable
from urllib import error, request


DEFAULT_LAT = "40.7128"
DEFAULT_LON = "-74.006"
DEFAULT_CITY = "London"


@dataclass(frozen=True)
class HttpResponse:
    status: int
    json_body: Any | None
    text: str


@dataclass(frozen=True)
class CheckResult:
    name: str
    ok: bool
    status: int
    detail: str


FetchFn = Callable[[str, str, dict[str, str], float], HttpResponse]


def _fetch_http(method: str, url: str, headers: dict[str, str], timeout_s: float) -> HttpResponse:
    req = request.Request(url=url, method=method.upper(), headers=dict(headers))

    raw = ""
    status = 0
    try:
        with request.urlopen(req, timeout=timeout_s) as resp:
            status = int(resp.status)
            raw = resp.read().decode("utf-8", errors="replace")
    except error.HTTPError as e:
        status = int(e.code)
        raw = e.read().decode("utf-8", errors="replace")
    except Exception as e:  # pragma: no cover - network failures are environment-specific
        return HttpResponse(status=0, json_body=None, text=f"{type(e).__name__}: {e}")

    parsed: Any | None = None
    if raw.strip():
        try:
            parsed = json.loads(raw)
        except Exception:
            parsed = None

    return HttpResponse(status=status, json_body=parsed, text=raw)


def _short_text(value: str, *, max_len: int = 180) -> str:
    text = " ".join((value or "").split())
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."


def _result(name: str, ok: bool, status: int, detail: str) -> CheckResult:
    return CheckResult(name=name, ok=ok, status=int(status), detail=detail)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def run_smoke(
    *,
    base_url: str,
    lat: str,
    lon: str,
    city: str,
    timeout_s: float,
    fetch: FetchFn | None = None,
) -> tuple[list[CheckResult], bool]:
    do_fetch = fetch or _fetch_http
    url_base = base_url.rstrip("/")
    headers = {"Accept": "application/json"}

    checks: list[CheckResult] = []

    def call(path: str) -> HttpResponse:
        return do_fetch("GET", f"{url_base}{path}", headers, timeout_s)

    health = call("/api/health")
    health_body = health.json_body if isinstance(health.json_body, dict) else {}
    if health.status == 200 and health_body.get("status") == "OK":
        checks.append(
            _result(
                "GET /api/health",
                bool(health_body.get("api_key_configured")),
                health.status,
                f"api_key_configured={health_body.get('api_key_configured')} version={health_body.get('version')}",
            )
        )
    else:
        checks.append(
            _result(
                "GET /api/health",
                False,
                health.status,
                f"expected 200 + {{status:OK}}, got body={_short_text(health.text)}",
            )
        )

    current = call(f"/api/weather/current?lat={lat}&lon={lon}")
    current_body = current.json_body if isinstance(current.json_body, dict) else {}
    temp = (current_body.get("main") or {}).get("temp") if isinstance(current_body.get("main"), dict) else None
    weather = current_body.get("weather")
    description = weather[0].get("description") if isinstance(weather, list) and weather and isinstance(weather[0], dict) else None
    if current.status == 200 and _is_number(temp) and isinstance(description, str):
        checks.append(_result("GET /api/weather/current", True, current.status, f"temp={temp} description={description}"))
    else:
        checks.append(
            _result(
                "GET /api/weather/current",
                False,
                current.status,
                f"expected numeric main.temp + string weather[0].description, got body={_short_text(current.text)}",
            )
        )

    geo = call(f"/api/geo/direct?q={city}&limit=1")
    places = geo.json_body
    geo_ok = (
        geo.status == 200
        and isinstance(places, list)
        and len(places) <= 1
        and all(isinstance(p, dict) and {"name", "lat", "lon"} <= set(p) for p in places)
    )
    if geo_ok:
        name = places[0].get("name") if places else None
        checks.append(_result("GET /api/geo/direct", True, geo.status, f"results={len(places)} first={name}"))
    else:
        checks.append(
            _result(
                "GET /api/geo/direct",
                False,
                geo.status,
                f"expected array of <=1 places with name/lat/lon, got body={_short_text(geo.text)}",
            )
        )

    missing = call(f"/api/weather/current?lat={lat}")
    missing_body = missing.json_body if isinstance(missing.json_body, dict) else {}
    if missing.status == 400 and "lon" in str(missing_body.get("message") or ""):
        checks.append(_result("Missing parameter rejected", True, missing.status, "400 names lon"))
    else:
        checks.append(
            _result(
                "Missing parameter rejected",
                False,
                missing.status,
                f"expected 400 naming lon, got body={_short_text(missing.text)}",
            )
        )

    ok = all(c.ok for c in checks)
    return checks, ok


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Run post-deploy smoke checks against the weather gateway.")
    parser.add_argument("--base-url", required=True, help="Base service URL (for example https://...run.app)")
    parser.add_argument("--lat", default=DEFAULT_LAT, help="Latitude for the current-weather check.")
    parser.add_argument("--lon", default=DEFAULT_LON, help="Longitude for the current-weather check.")
    parser.add_argument("--city", default=DEFAULT_CITY, help="Place name for the geocoding check.")
    parser.add_argument("--timeout-s", type=float, default=8.0, help="Per-request timeout in seconds.")
    parser.add_argument("--retries", type=int, default=1, help="Retry full smoke suite up to N times on failure.")
    parser.add_argument("--retry-delay-s", type=float, default=2.0, help="Delay between retry attempts.")
    args = parser.parse_args(argv)

    print(f"Smoke target URL: {args.base_url.rstrip('/')}")

    attempts = max(1, int(args.retries))
    last_checks: list[CheckResult] = []
    for idx in range(1, attempts + 1):
        checks, ok = run_smoke(
            base_url=args.base_url,
            lat=args.lat,
            lon=args.lon,
            city=args.city,
            timeout_s=float(args.timeout_s),
        )
        last_checks = checks
        if ok:
            break
        if idx < attempts:
            time.sleep(max(0.0, float(args.retry_delay_s)))

    passed = sum(1 for c in last_checks if c.ok)
    total = len(last_checks)
    for check in last_checks:
        label = "PASS" if check.ok else "FAIL"
        print(f"[{label}] {check.name}: status={check.status} {check.detail}")

    print(f"Smoke summary: {passed}/{total} checks passed")
    if passed != total:
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
