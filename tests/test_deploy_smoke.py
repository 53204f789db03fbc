from __future__ import annotations

from conftest import CURRENT_WEATHER, PLACES
from scripts.deploy_smoke import HttpResponse, run_smoke


def _path(url: str) -> str:
    marker = "://"
    if marker in url:
        rest = url.split(marker, 1)[1]
        slash = rest.find("/")
        return "/" if slash < 0 else rest[slash:]
    return url


def _healthy_responses() -> dict[str, HttpResponse]:
    return {
        "/api/health": HttpResponse(
            status=200,
            json_body={"status": "OK", "api_key_configured": True, "version": "0.1.0"},
            text='{"status":"OK"}',
        ),
        "/api/weather/current?lat=40.7128&lon=-74.006": HttpResponse(status=200, json_body=CURRENT_WEATHER, text="{}"),
        "/api/geo/direct?q=London&limit=1": HttpResponse(status=200, json_body=PLACES[:1], text="[]"),
        "/api/weather/current?lat=40.7128": HttpResponse(
            status=400,
            json_body={
                "error": "Missing required parameters",
                "message": "Latitude and longitude are required (missing: lon)",
            },
            text="{}",
        ),
    }


def _run(responses: dict[str, HttpResponse]):
    seen: list[str] = []

    def fetch(method: str, url: str, _headers: dict[str, str], _timeout: float) -> HttpResponse:
        assert method == "GET"
        seen.append(_path(url))
        return responses[_path(url)]

    checks, ok = run_smoke(
        base_url="https://weather.example.com/",
        lat="40.7128",
        lon="-74.006",
        city="London",
        timeout_s=2.0,
        fetch=fetch,
    )
    return checks, ok, seen


def test_run_smoke_success():
    checks, ok, seen = _run(_healthy_responses())

    assert ok is True
    assert all(c.ok for c in checks)
    assert len(checks) == 4
    assert seen[0] == "/api/health"


def test_run_smoke_fails_when_key_is_not_configured():
    responses = _healthy_responses()
    responses["/api/health"] = HttpResponse(
        status=200,
        json_body={"status": "OK", "api_key_configured": False, "version": "0.1.0"},
        text="{}",
    )

    checks, ok, _seen = _run(responses)

    assert ok is False
    assert any(c.name == "GET /api/health" and not c.ok for c in checks)


def test_run_smoke_fails_on_upstream_error_envelope():
    responses = _healthy_responses()
    responses["/api/weather/current?lat=40.7128&lon=-74.006"] = HttpResponse(
        status=401,
        json_body={"error": "Weather API error", "status": 401, "message": "Invalid API key."},
        text='{"error":"Weather API error"}',
    )

    checks, ok, _seen = _run(responses)

    assert ok is False
    failed = [c for c in checks if not c.ok]
    assert [c.name for c in failed] == ["GET /api/weather/current"]
    assert failed[0].status == 401


def test_run_smoke_fails_when_missing_parameter_is_accepted():
    responses = _healthy_responses()
    responses["/api/weather/current?lat=40.7128"] = HttpResponse(status=200, json_body=CURRENT_WEATHER, text="{}")

    checks, ok, _seen = _run(responses)

    assert ok is False
    assert any(c.name == "Missing parameter rejected" and not c.ok for c in checks)
