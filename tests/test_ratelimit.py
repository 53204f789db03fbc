from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

from weather_gateway.ratelimit import GlobalWindowCounter, SlidingWindowRateLimiter, TwoTierRateLimiter


def _limiter(*, per_client: int = 3, global_max: int = 0, window_s: int = 60, max_identifiers: int = 100):
    return TwoTierRateLimiter(
        global_counter=GlobalWindowCounter(window_s=window_s, max_requests=global_max),
        per_client=SlidingWindowRateLimiter(window_s=window_s, max_requests=per_client, max_identifiers=max_identifiers),
    )


def test_per_client_max_is_admitted_and_next_is_throttled():
    limiter = _limiter(per_client=3)

    for i in range(3):
        assert limiter.check_rate_limit("1.2.3.4", now=100.0 + i).allowed

    decision = limiter.check_rate_limit("1.2.3.4", now=103.0)
    assert decision.allowed is False
    assert decision.scope == "client"
    # Oldest hit at t=100 leaves the window at t=160.
    assert decision.retry_after_s == 57


def test_identifiers_are_independent():
    limiter = _limiter(per_client=1)

    assert limiter.check_rate_limit("a", now=0.0).allowed
    assert limiter.check_rate_limit("b", now=0.0).allowed
    assert not limiter.check_rate_limit("a", now=1.0).allowed


def test_window_slides_and_old_hits_expire():
    limiter = _limiter(per_client=2, window_s=10)

    assert limiter.check_rate_limit("a", now=0.0).allowed
    assert limiter.check_rate_limit("a", now=5.0).allowed
    assert not limiter.check_rate_limit("a", now=9.0).allowed
    # The t=0 hit is out of the window at t=10.
    assert limiter.check_rate_limit("a", now=10.0).allowed
    assert not limiter.check_rate_limit("a", now=11.0).allowed


def test_throttled_requests_do_not_consume_quota():
    limiter = _limiter(per_client=1, window_s=10)

    assert limiter.check_rate_limit("a", now=0.0).allowed
    for t in (1.0, 2.0, 3.0, 9.5):
        assert not limiter.check_rate_limit("a", now=t).allowed

    # Had the rejections been recorded, t=10 would still be blocked.
    assert limiter.check_rate_limit("a", now=10.0).allowed
    assert limiter.global_counter.count == 0  # global tier disabled


def test_global_tier_blocks_across_identifiers_and_resets():
    limiter = _limiter(per_client=100, global_max=3, window_s=60)

    for i, ip in enumerate(["a", "b", "c"]):
        assert limiter.check_rate_limit(ip, now=1000.0 + i).allowed

    decision = limiter.check_rate_limit("d", now=1010.0)
    assert decision.allowed is False
    assert decision.scope == "global"
    # Window opened at t=1000, so it ends at t=1060.
    assert decision.retry_after_s == 50

    assert limiter.check_rate_limit("d", now=1060.0).allowed
    assert limiter.global_counter.count == 1


def test_global_tier_is_checked_before_per_client():
    limiter = _limiter(per_client=1, global_max=1)

    assert limiter.check_rate_limit("a", now=0.0).allowed
    decision = limiter.check_rate_limit("a", now=1.0)
    assert decision.scope == "global"


def test_retry_after_is_at_least_one_second():
    limiter = _limiter(per_client=1, window_s=10)

    assert limiter.check_rate_limit("a", now=0.0).allowed
    decision = limiter.check_rate_limit("a", now=9.999)
    assert decision.retry_after_s == 1


def test_sweep_evicts_idle_identifiers():
    per_client = SlidingWindowRateLimiter(window_s=10, max_requests=5)
    per_client.record("a", 0.0)
    per_client.record("b", 5.0)

    removed = per_client.sweep(12.0)

    assert removed == 1
    assert per_client.tracked() == 1


def test_identifier_cap_evicts_least_recent():
    per_client = SlidingWindowRateLimiter(window_s=60, max_requests=5, max_identifiers=2)
    per_client.record("a", 0.0)
    per_client.record("b", 1.0)
    per_client.record("a", 2.0)
    per_client.record("c", 3.0)

    assert per_client.tracked() == 2
    # "b" was the least recently seen.
    assert per_client.check("b", 4.0).allowed
    assert len(per_client._hits["a"]) == 2


def test_concurrent_requests_cannot_overshoot_the_limit():
    limiter = _limiter(per_client=5)

    with ThreadPoolExecutor(max_workers=16) as pool:
        decisions = list(pool.map(lambda _: limiter.check_rate_limit("same-ip", now=50.0), range(64)))

    assert sum(1 for d in decisions if d.allowed) == 5
