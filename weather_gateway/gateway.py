from __future__ import annotations

import math
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum

from .errors import ClientError


class EndpointKind(str, Enum):
    CURRENT = "current"
    FORECAST = "forecast"
    AIR_POLLUTION = "air-pollution"
    GEOCODING = "geocoding"

    @property
    def needs_location(self) -> bool:
        return self is not EndpointKind.GEOCODING


# Substring match, first hit wins.
_PATH_MARKERS: tuple[tuple[str, EndpointKind], ...] = (
    ("/weather/current", EndpointKind.CURRENT),
    ("/weather/forecast", EndpointKind.FORECAST),
    ("/weather/air-pollution", EndpointKind.AIR_POLLUTION),
    ("/geo/direct", EndpointKind.GEOCODING),
    ("/geocoding", EndpointKind.GEOCODING),
)

_LANG_RE = re.compile(r"^[A-Za-z]{2,3}(?:[_-][A-Za-z]{2,4})?$")


@dataclass(frozen=True)
class ProxyRequest:
    kind: EndpointKind
    params: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class Rejection:
    reason: str  # InvalidEndpoint | MissingParameters | InvalidParameters
    error: str
    message: str | None = None
    status_code: int = 400

    def to_error(self) -> ClientError:
        return ClientError(
            status_code=self.status_code,
            error=self.error,
            message=self.message,
            reason=self.reason,
        )


def endpoint_kind_for_path(path: str) -> EndpointKind | None:
    p = path or ""
    for marker, kind in _PATH_MARKERS:
        if marker in p:
            return kind
    return None


def _param(params: Mapping[str, str], name: str) -> str:
    v = params.get(name)
    return v.strip() if isinstance(v, str) else ""


def _coordinate(raw: str, name: str, bound: float) -> str | Rejection:
    try:
        value = float(raw)
    except ValueError:
        value = math.nan
    if not math.isfinite(value) or abs(value) > bound:
        return Rejection(
            reason="InvalidParameters",
            error="Invalid parameters",
            message=f"{name} must be a number between -{bound:g} and {bound:g} (got {raw!r})",
        )
    return raw


def _classify_location(kind: EndpointKind, params: Mapping[str, str], default_lang: str) -> ProxyRequest | Rejection:
    lat = _param(params, "lat")
    lon = _param(params, "lon")
    missing = [name for name, value in (("lat", lat), ("lon", lon)) if not value]
    if missing:
        return Rejection(
            reason="MissingParameters",
            error="Missing required parameters",
            message=f"Latitude and longitude are required (missing: {', '.join(missing)})",
        )

    checked_lat = _coordinate(lat, "lat", 90)
    if isinstance(checked_lat, Rejection):
        return checked_lat
    checked_lon = _coordinate(lon, "lon", 180)
    if isinstance(checked_lon, Rejection):
        return checked_lon

    lang = _param(params, "lang") or default_lang
    if not _LANG_RE.match(lang):
        return Rejection(
            reason="InvalidParameters",
            error="Invalid parameters",
            message=f"lang must be a language code such as 'en' or 'pt_br' (got {lang!r})",
        )

    return ProxyRequest(kind=kind, params={"lat": checked_lat, "lon": checked_lon, "lang": lang.lower()})


def _classify_geocoding(
    params: Mapping[str, str], default_lang: str, default_limit: int, max_limit: int
) -> ProxyRequest | Rejection:
    q = _param(params, "q")
    if not q:
        return Rejection(
            reason="MissingParameters",
            error="Missing required parameters",
            message="City name is required (missing: q)",
        )

    raw_limit = _param(params, "limit")
    limit = default_limit
    if raw_limit:
        try:
            limit = int(raw_limit)
        except ValueError:
            limit = 0
        if not 1 <= limit <= max_limit:
            return Rejection(
                reason="InvalidParameters",
                error="Invalid parameters",
                message=f"limit must be an integer between 1 and {max_limit} (got {raw_limit!r})",
            )

    lang = _param(params, "lang") or default_lang
    if not _LANG_RE.match(lang):
        lang = default_lang

    return ProxyRequest(
        kind=EndpointKind.GEOCODING,
        params={"q": q, "limit": str(limit), "lang": lang.lower()},
    )


def classify(
    path: str,
    params: Mapping[str, str],
    *,
    default_lang: str = "en",
    default_limit: int = 5,
    max_limit: int = 5,
) -> ProxyRequest | Rejection:
    """Map an inbound path + query string to a validated `ProxyRequest`.

    Returns a `Rejection` (never raises) so the caller decides how to surface it.
    """

    kind = endpoint_kind_for_path(path)
    if kind is None:
        return Rejection(reason="InvalidEndpoint", error="Invalid endpoint")
    if kind.needs_location:
        return _classify_location(kind, params, default_lang)
    return _classify_geocoding(params, default_lang, default_limit, max_limit)
