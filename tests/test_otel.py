from __future__ import annotations

import importlib
import os

import pytest
from fastapi.testclient import TestClient

from conftest import TEST_API_KEY
from weather_gateway.upstream import WeatherForwarder

try:
    from opentelemetry import trace
    from opentelemetry.sdk.trace.export import SimpleSpanProcessor
    from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
except Exception:  # pragma: no cover
    pytest.skip("OpenTelemetry packages are not installed", allow_module_level=True)


_ENV_KEYS = [
    "OWM_API_KEY",
    "GATEWAY_MODE",
    "OTEL_ENABLED",
    "OTEL_SERVICE_NAME",
    "OTEL_EXPORTER_OTLP_ENDPOINT",
    "OTEL_TRACES_EXPORTER",
    "K_SERVICE",
]


@pytest.fixture(autouse=True)
def _restore_env_after_test():
    before = {k: os.environ.get(k) for k in _ENV_KEYS}
    yield
    for key, value in before.items():
        if value is None:
            os.environ.pop(key, None)
            continue
        os.environ[key] = value


def _reload_app(provider) -> object:
    os.environ["OWM_API_KEY"] = TEST_API_KEY
    os.environ["GATEWAY_MODE"] = "function"
    os.environ["OTEL_ENABLED"] = "1"
    os.environ["OTEL_SERVICE_NAME"] = "weather-gateway-test"
    os.environ.pop("OTEL_EXPORTER_OTLP_ENDPOINT", None)
    os.environ.pop("OTEL_TRACES_EXPORTER", None)
    os.environ.pop("K_SERVICE", None)

    import weather_gateway.config as config
    import weather_gateway.main as main
    import weather_gateway.otel as otel

    importlib.reload(config)
    importlib.reload(otel)
    importlib.reload(main)

    main._forwarder = WeatherForwarder.from_settings(main.settings, client=provider.client())
    return main


def test_trace_exporter_mode_resolution():
    os.environ["OTEL_ENABLED"] = "1"
    os.environ["OTEL_SERVICE_NAME"] = "weather-gateway-test"
    os.environ.pop("OTEL_EXPORTER_OTLP_ENDPOINT", None)
    os.environ["OTEL_TRACES_EXPORTER"] = "auto"
    os.environ.pop("K_SERVICE", None)

    import weather_gateway.config as config
    import weather_gateway.otel as otel

    importlib.reload(config)
    importlib.reload(otel)
    assert otel._resolve_trace_exporter_mode() == "none"

    os.environ["OTEL_EXPORTER_OTLP_ENDPOINT"] = "http://collector:4318/v1/traces"
    importlib.reload(config)
    importlib.reload(otel)
    assert otel._resolve_trace_exporter_mode() == "otlp"

    os.environ.pop("OTEL_EXPORTER_OTLP_ENDPOINT", None)
    os.environ["K_SERVICE"] = "weather-gateway-stage"
    importlib.reload(config)
    importlib.reload(otel)
    assert otel._resolve_trace_exporter_mode() == "gcp_trace"


def test_proxy_request_emits_upstream_span_and_preserves_request_id(fake_provider):
    main = _reload_app(fake_provider)

    exporter = InMemorySpanExporter()
    provider = trace.get_tracer_provider()
    if not hasattr(provider, "add_span_processor"):
        pytest.skip("Tracer provider does not support span processors in this environment")
    provider.add_span_processor(SimpleSpanProcessor(exporter))

    client = TestClient(main.app)
    rid = "req-otel-123"
    resp = client.get("/api/weather/current?lat=1&lon=2", headers={"X-Request-Id": rid})

    assert resp.status_code == 200, resp.text
    assert resp.headers.get("x-request-id") == rid

    spans = [s for s in exporter.get_finished_spans() if s.name == "upstream.fetch"]
    assert spans
    assert spans[-1].attributes.get("upstream.kind") == "current"
