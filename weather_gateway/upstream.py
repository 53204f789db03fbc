from __future__ import annotations

import json
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Union
from urllib.parse import quote, urlencode

import httpx

from .config import Settings
from .errors import (
    GatewayError,
    PayloadError,
    TransportError,
    UpstreamError,
    malformed_api_key,
    missing_api_key,
)
from .gateway import EndpointKind, ProxyRequest
from .observability import Timer, log_upstream_fetch, mask_api_key
from .otel import record_upstream_metric, span

UNITS = "metric"

_DATA_PATHS = {
    EndpointKind.CURRENT: "/weather",
    EndpointKind.FORECAST: "/forecast",
    EndpointKind.AIR_POLLUTION: "/air_pollution",
}
_GEO_PATH = "/direct"

_PREVIEW_CHARS = 500


# ---- Tagged upstream results ----
@dataclass(frozen=True)
class UpstreamOk:
    status: int
    body: bytes
    payload: Any


@dataclass(frozen=True)
class ProviderError:
    code: int
    message: str
    details: Any = None


@dataclass(frozen=True)
class TransportFailure:
    cause: str


@dataclass(frozen=True)
class PayloadInvalid:
    status: int
    raw_preview: str


UpstreamResult = Union[UpstreamOk, ProviderError, TransportFailure, PayloadInvalid]


def _outcome(result: UpstreamResult) -> str:
    if isinstance(result, UpstreamOk):
        return "ok"
    if isinstance(result, ProviderError):
        return "provider_error"
    if isinstance(result, TransportFailure):
        return "transport_failure"
    return "payload_invalid"


class ResponseCache:
    """In-process TTL cache for successful upstream bodies.

    Keyed by the upstream URL minus the API key. Oldest entries are evicted
    first once `max_entries` is reached.
    """

    def __init__(self, *, max_age_s: int = 600, max_entries: int = 512) -> None:
        self.max_age_s = int(max_age_s)
        self.max_entries = max(1, int(max_entries))
        self._entries: OrderedDict[str, tuple[float, bytes]] = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str, now: float) -> bytes | None:
        with self._lock:
            hit = self._entries.get(key)
            if hit is None:
                return None
            stored_at, body = hit
            if now - stored_at >= self.max_age_s:
                del self._entries[key]
                return None
            return body

    def put(self, key: str, body: bytes, now: float) -> None:
        if self.max_age_s <= 0:
            return
        with self._lock:
            self._entries.pop(key, None)
            self._entries[key] = (now, body)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


def _preview(resp: httpx.Response) -> Any:
    text = resp.text or ""
    try:
        return json.loads(text)
    except ValueError:
        return text[:_PREVIEW_CHARS]


def _embedded_error(payload: Any) -> ProviderError | None:
    """OpenWeatherMap sometimes reports failures as `cod` inside an HTTP 200 body."""

    if not isinstance(payload, dict) or "cod" not in payload:
        return None
    raw = str(payload.get("cod")).strip()
    if raw == "200":
        return None
    code = int(raw) if raw.isdigit() else 500
    message = str(payload.get("message") or f"Weather provider reported error code {raw}")
    return ProviderError(code=code, message=message, details=payload)


class WeatherForwarder:
    """Turns a validated `ProxyRequest` into exactly one provider GET.

    No retries: every failure is returned as a tagged result and surfaced to
    the caller, who may start a fresh (rate-limited) request.
    """

    def __init__(
        self,
        *,
        api_key: str | None,
        data_base_url: str,
        geo_base_url: str,
        timeout_s: float = 8.0,
        api_key_min_length: int = 20,
        default_lang: str = "en",
        cache: ResponseCache | None = None,
        client: httpx.Client | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.api_key = api_key
        self.data_base_url = data_base_url.rstrip("/")
        self.geo_base_url = geo_base_url.rstrip("/")
        self.timeout_s = float(timeout_s)
        self.api_key_min_length = int(api_key_min_length)
        self.default_lang = default_lang
        self.cache = cache
        self._clock = clock
        self._client = client or httpx.Client(
            timeout=httpx.Timeout(self.timeout_s, connect=min(self.timeout_s, 5.0)),
            headers={"Accept": "application/json"},
        )

    @classmethod
    def from_settings(cls, s: Settings, *, client: httpx.Client | None = None) -> "WeatherForwarder":
        cache = ResponseCache(max_age_s=s.cache_max_age_s, max_entries=s.cache_max_entries) if s.cache_enabled else None
        return cls(
            api_key=s.owm_api_key,
            data_base_url=s.owm_data_base_url,
            geo_base_url=s.owm_geo_base_url,
            timeout_s=s.upstream_timeout_s,
            api_key_min_length=s.owm_api_key_min_length,
            default_lang=s.default_lang,
            cache=cache,
            client=client,
        )

    # ---- configuration ----
    def config_error(self) -> GatewayError | None:
        key = self.api_key or ""
        if not key:
            return missing_api_key()
        if len(key) < self.api_key_min_length or any(ch.isspace() for ch in key):
            return malformed_api_key(len(key), self.api_key_min_length)
        return None

    def ensure_configured(self) -> None:
        err = self.config_error()
        if err is not None:
            raise err

    # ---- URL building ----
    def upstream_params(self, req: ProxyRequest) -> list[tuple[str, str]]:
        p = req.params
        lang = p.get("lang") or self.default_lang
        if req.kind is EndpointKind.GEOCODING:
            pairs = [("q", p["q"]), ("limit", p.get("limit") or "5")]
        else:
            pairs = [("lat", p["lat"]), ("lon", p["lon"])]
        pairs += [("units", UNITS), ("lang", lang)]
        return pairs

    def _endpoint(self, kind: EndpointKind) -> str:
        if kind is EndpointKind.GEOCODING:
            return f"{self.geo_base_url}{_GEO_PATH}"
        return f"{self.data_base_url}{_DATA_PATHS[kind]}"

    def cache_key(self, req: ProxyRequest) -> str:
        return f"{self._endpoint(req.kind)}?{urlencode(self.upstream_params(req), quote_via=quote)}"

    def build_url(self, req: ProxyRequest) -> str:
        pairs = self.upstream_params(req) + [("appid", self.api_key or "")]
        return f"{self._endpoint(req.kind)}?{urlencode(pairs, quote_via=quote)}"

    # ---- fetching ----
    def forward(self, url: str, *, kind: str = "") -> UpstreamResult:
        timer = Timer()
        with span("upstream.fetch", {"upstream.kind": kind}):
            result = self._forward(url)
        latency_ms = timer.ms()
        status = None
        if isinstance(result, UpstreamOk):
            status = result.status
        elif isinstance(result, ProviderError):
            status = result.code
        elif isinstance(result, PayloadInvalid):
            status = result.status
        record_upstream_metric(latency_ms=latency_ms, kind=kind, outcome=_outcome(result))
        log_upstream_fetch(kind=kind, url=url, outcome=_outcome(result), latency_ms=latency_ms, status=status)
        return result

    def _forward(self, url: str) -> UpstreamResult:
        try:
            resp = self._client.get(url)
        except httpx.HTTPError as e:
            return TransportFailure(cause=mask_api_key(f"{type(e).__name__}: {e}"))

        if not resp.is_success:
            details = _preview(resp)
            message = ""
            if isinstance(details, dict):
                message = str(details.get("message") or "")
            if not message:
                message = f"OpenWeatherMap API error: {resp.status_code} {resp.reason_phrase}".strip()
            return ProviderError(code=resp.status_code, message=message, details=details)

        try:
            payload = json.loads(resp.content)
        except ValueError:
            return PayloadInvalid(status=resp.status_code, raw_preview=(resp.text or "")[:_PREVIEW_CHARS])

        embedded = _embedded_error(payload)
        if embedded is not None:
            return embedded
        return UpstreamOk(status=resp.status_code, body=resp.content, payload=payload)

    def fetch(self, req: ProxyRequest) -> tuple[UpstreamResult, bool]:
        """Cache-aware fetch. Returns `(result, cache_hit)`."""

        key = self.cache_key(req)
        if self.cache is not None:
            body = self.cache.get(key, self._clock())
            if body is not None:
                log_upstream_fetch(kind=req.kind.value, url=key, outcome="ok", latency_ms=0.0, cache_hit=True)
                return UpstreamOk(status=200, body=body, payload=None), True

        result = self.forward(self.build_url(req), kind=req.kind.value)
        if self.cache is not None and isinstance(result, UpstreamOk):
            self.cache.put(key, result.body, self._clock())
        return result, False

    def close(self) -> None:
        self._client.close()


def result_to_error(result: ProviderError | TransportFailure | PayloadInvalid, *, path: str) -> GatewayError:
    """Map a failed upstream result to the outward error envelope."""

    if isinstance(result, ProviderError):
        status = result.code if 400 <= result.code <= 599 else 500
        return UpstreamError(
            status_code=status,
            error="Weather API error",
            message=result.message,
            details=result.details,
            upstream_status=result.code,
        )
    if isinstance(result, PayloadInvalid):
        return PayloadError(
            status_code=500,
            error="Invalid response from weather API",
            message=f"The weather provider returned a body that is not valid JSON (HTTP {result.status})",
        )
    return TransportError(
        status_code=500,
        error="Failed to fetch data",
        message=f"Could not reach the weather provider ({result.cause})",
        path=path,
    )
