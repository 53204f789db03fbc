from __future__ import annotations

import math
import threading
import time
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from typing import Protocol

from .config import Settings


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    retry_after_s: int = 0
    scope: str = ""  # "" | global | client


_ALLOW = RateDecision(allowed=True)


def _retry_after(seconds: float) -> int:
    return max(1, math.ceil(seconds))


class RateLimitStore(Protocol):
    """Counter backend used by the gateway.

    `check` must not mutate state; `record` is only called for admitted
    requests. A shared external counter can implement the same two calls for
    multi-instance deployments.
    """

    def check(self, identifier: str, now: float) -> RateDecision: ...

    def record(self, identifier: str, now: float) -> None: ...


@dataclass
class GlobalWindowCounter:
    """Fixed window shared by every identifier. `max_requests=0` disables it."""

    window_s: int = 60
    max_requests: int = 1000
    count: int = 0
    window_start: float = 0.0

    def _roll(self, now: float) -> None:
        if now >= self.window_start + self.window_s:
            self.window_start = now
            self.count = 0

    def check(self, now: float) -> RateDecision:
        if self.max_requests <= 0:
            return _ALLOW
        if now >= self.window_start + self.window_s:
            return _ALLOW
        if self.count >= self.max_requests:
            return RateDecision(
                allowed=False,
                retry_after_s=_retry_after(self.window_start + self.window_s - now),
                scope="global",
            )
        return _ALLOW

    def record(self, now: float) -> None:
        if self.max_requests <= 0:
            return
        self._roll(now)
        self.count += 1


@dataclass
class SlidingWindowRateLimiter:
    """Small in-process rate limiter keyed by client identifier.

    Note: this is per-instance. In Cloud Run (or any scaled deployment), each
    instance enforces its own window.
    """

    window_s: int = 60
    max_requests: int = 60
    max_identifiers: int = 10_000

    def __post_init__(self) -> None:
        # Insertion order doubles as recency order (move_to_end on every record).
        self._hits: OrderedDict[str, deque[float]] = OrderedDict()
        self._last_sweep = 0.0

    def _prune(self, q: deque[float], now: float) -> None:
        while q and now - q[0] >= self.window_s:
            q.popleft()

    def check(self, identifier: str, now: float) -> RateDecision:
        q = self._hits.get(identifier)
        if not q:
            return _ALLOW
        self._prune(q, now)
        if len(q) >= self.max_requests:
            return RateDecision(
                allowed=False,
                retry_after_s=_retry_after(self.window_s - (now - q[0])),
                scope="client",
            )
        return _ALLOW

    def record(self, identifier: str, now: float) -> None:
        q = self._hits.get(identifier)
        if q is None:
            q = deque()
            self._hits[identifier] = q
        else:
            self._hits.move_to_end(identifier)
        self._prune(q, now)
        q.append(now)

        if now - self._last_sweep >= self.window_s:
            self.sweep(now)
        while len(self._hits) > self.max_identifiers:
            self._hits.popitem(last=False)

    def sweep(self, now: float) -> int:
        """Drop identifiers with no hits left in the window. Returns the count removed."""

        self._last_sweep = now
        stale = []
        for key, q in self._hits.items():
            self._prune(q, now)
            if not q:
                stale.append(key)
        for key in stale:
            del self._hits[key]
        return len(stale)

    def tracked(self) -> int:
        return len(self._hits)


@dataclass
class TwoTierRateLimiter:
    """Global cap first, then the per-identifier window.

    Rejected requests are not recorded in either tier. Check and record
    happen under one lock.
    """

    global_counter: GlobalWindowCounter
    per_client: SlidingWindowRateLimiter
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @classmethod
    def from_settings(cls, s: Settings) -> "TwoTierRateLimiter":
        return cls(
            global_counter=GlobalWindowCounter(
                window_s=s.rate_limit_window_s,
                max_requests=s.global_rate_limit_max_requests,
            ),
            per_client=SlidingWindowRateLimiter(
                window_s=s.rate_limit_window_s,
                max_requests=s.rate_limit_max_requests,
                max_identifiers=s.rate_limit_max_identifiers,
            ),
        )

    def check(self, identifier: str, now: float) -> RateDecision:
        decision = self.global_counter.check(now)
        if not decision.allowed:
            return decision
        return self.per_client.check(identifier, now)

    def record(self, identifier: str, now: float) -> None:
        self.per_client.record(identifier, now)
        self.global_counter.record(now)

    def check_rate_limit(self, identifier: str, now: float | None = None) -> RateDecision:
        ts = time.time() if now is None else float(now)
        with self._lock:
            decision = self.check(identifier, ts)
            if decision.allowed:
                self.record(identifier, ts)
            return decision
