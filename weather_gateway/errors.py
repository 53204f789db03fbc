from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(eq=False)
class GatewayError(Exception):
    """Base class for every failure that leaves the gateway as a JSON envelope.

    `error` is the short, stable label the UI keys off; the optional fields are
    only serialized when set.
    """

    status_code: int
    error: str
    message: str | None = None
    details: Any = None

    def __str__(self) -> str:
        return self.message or self.error

    def extra(self) -> dict[str, Any]:
        return {}

    def to_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.error}
        if self.message is not None:
            body["message"] = self.message
        body.update(self.extra())
        if self.details is not None:
            body["details"] = self.details
        return body


@dataclass(eq=False)
class ConfigurationError(GatewayError):
    help: str = "Set OWM_API_KEY to a valid OpenWeatherMap API key and restart the service."

    def extra(self) -> dict[str, Any]:
        return {"help": self.help}


@dataclass(eq=False)
class ClientError(GatewayError):
    reason: str = "InvalidParameters"


@dataclass(eq=False)
class RateLimitError(GatewayError):
    retry_after: int = 1
    scope: str = "client"

    def extra(self) -> dict[str, Any]:
        return {"retry_after": int(self.retry_after)}


@dataclass(eq=False)
class UpstreamError(GatewayError):
    upstream_status: int = 500

    def extra(self) -> dict[str, Any]:
        return {"status": int(self.upstream_status)}


@dataclass(eq=False)
class TransportError(GatewayError):
    path: str = ""

    def extra(self) -> dict[str, Any]:
        return {"path": self.path}


@dataclass(eq=False)
class PayloadError(GatewayError):
    hint: str = "The weather provider returned a non-JSON response; check the upstream base URL and try again later."

    def extra(self) -> dict[str, Any]:
        return {"hint": self.hint}


def missing_api_key() -> ConfigurationError:
    return ConfigurationError(
        status_code=500,
        error="API key not configured",
        message="The OWM_API_KEY environment variable is not set",
    )


def malformed_api_key(length: int, min_length: int) -> ConfigurationError:
    return ConfigurationError(
        status_code=500,
        error="API key appears invalid",
        message=f"OWM_API_KEY is {length} characters long; expected at least {min_length} with no whitespace",
        help="Copy the key from your OpenWeatherMap account page (API keys tab) without quotes or spaces.",
    )


def too_many_requests(retry_after: int, scope: str) -> RateLimitError:
    who = "the service" if scope == "global" else "this client"
    return RateLimitError(
        status_code=429,
        error="Too many requests",
        message=f"Rate limit exceeded for {who}. Please try again in {int(retry_after)} seconds.",
        retry_after=int(retry_after),
        scope=scope,
    )
