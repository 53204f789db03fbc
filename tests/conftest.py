"""pytest configuration.

This repo is intentionally usable without installing the package into a virtualenv.

When running `pytest` directly from the repo root, we want `import weather_gateway`
to resolve to `./weather_gateway`. Some environments / runners do not automatically
add the repo root to `sys.path`, so we force it here.

Every test talks to a fake OpenWeatherMap served through `httpx.MockTransport`;
nothing reaches the network.
"""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any

import httpx
import pytest


REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))


TEST_API_KEY = "0123456789abcdef0123456789abcdef"

CURRENT_WEATHER = {
    "coord": {"lon": -74.006, "lat": 40.7128},
    "weather": [{"id": 800, "main": "Clear", "description": "clear sky", "icon": "01d"}],
    "main": {"temp": 21.4, "feels_like": 21.0, "humidity": 48, "pressure": 1017},
    "name": "New York",
    "sys": {"country": "US"},
    "cod": 200,
}

FORECAST = {"cod": "200", "cnt": 1, "list": [{"dt": 1700000000, "main": {"temp": 18.2}}], "city": {"name": "New York"}}

AIR_POLLUTION = {"coord": {"lon": -74.006, "lat": 40.7128}, "list": [{"main": {"aqi": 2}, "components": {"pm2_5": 7.1}}]}

PLACES = [
    {"name": "London", "lat": 51.5073, "lon": -0.1276, "country": "GB"},
    {"name": "London", "lat": 42.9834, "lon": -81.233, "country": "CA"},
    {"name": "London", "lat": 37.129, "lon": -84.0833, "country": "US", "state": "Kentucky"},
]


class FakeProvider:
    """Answers like OpenWeatherMap and records every request it sees.

    Individual tests override `responder` to simulate failures.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.responder: Any = None

    @property
    def calls(self) -> int:
        return len(self.requests)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.responder is not None:
            return self.responder(request)
        return self.default_response(request)

    def default_response(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.endswith("/data/2.5/weather"):
            return httpx.Response(200, json=CURRENT_WEATHER)
        if path.endswith("/data/2.5/forecast"):
            return httpx.Response(200, json=FORECAST)
        if path.endswith("/data/2.5/air_pollution"):
            return httpx.Response(200, json=AIR_POLLUTION)
        if path.endswith("/geo/1.0/direct"):
            limit = int(request.url.params.get("limit", "5"))
            return httpx.Response(200, content=json.dumps(PLACES[:limit]).encode("utf-8"))
        return httpx.Response(404, json={"cod": "404", "message": "Internal error"})

    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self))


@pytest.fixture()
def fake_provider() -> FakeProvider:
    return FakeProvider()
