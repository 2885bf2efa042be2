from __future__ import annotations

import random
from concurrent.futures import ThreadPoolExecutor

import pytest

from cv_crawler.config import RateLimitPolicy
from cv_crawler.errors import RateLimitExceeded
from cv_crawler.infra import RateLimiter, SQLiteBudget, SQLiteManager


def _policy(**overrides) -> RateLimitPolicy:
    base = {
        "max_requests_per_minute": 10,
        "max_requests_per_hour": 100,
        "max_requests_per_day": 500,
        "delay_between_requests": 0.0,
        "randomize_delay": False,
        "delay_variance": 0.0,
        "burst_limit": 0,
    }
    base.update(overrides)
    return RateLimitPolicy(**base)


def _burst(limiter: RateLimiter, calls: int) -> tuple[list, list]:
    accepted, rejected = [], []

    def attempt():
        try:
            return limiter.reserve()
        except RateLimitExceeded as exc:
            return exc

    with ThreadPoolExecutor(max_workers=calls) as pool:
        for outcome in pool.map(lambda _: attempt(), range(calls)):
            (rejected if isinstance(outcome, RateLimitExceeded) else accepted).append(outcome)
    return accepted, rejected


def test_fifteen_concurrent_calls_reject_policy(monotonic) -> None:
    limiter = RateLimiter("portal", _policy(on_limit="reject"), clock=monotonic, sleep=monotonic.sleep)
    accepted, rejected = _burst(limiter, 15)
    assert len(accepted) == 10
    assert all(reservation.wait == 0 for reservation in accepted)
    assert len(rejected) == 5
    assert all(exc.retry_after == pytest.approx(60.0) for exc in rejected)
    assert limiter.usage()["minute"] == 10


def test_fifteen_concurrent_calls_delay_policy(monotonic) -> None:
    limiter = RateLimiter("portal", _policy(on_limit="delay"), clock=monotonic, sleep=monotonic.sleep)
    accepted, rejected = _burst(limiter, 15)
    assert rejected == []
    immediate = [reservation for reservation in accepted if reservation.wait == 0]
    delayed = [reservation for reservation in accepted if reservation.wait > 0]
    assert len(immediate) == 10
    assert len(delayed) == 5
    assert min(reservation.slot for reservation in delayed) >= monotonic() + 60


def test_rolling_window_never_exceeds_limit(monotonic) -> None:
    limiter = RateLimiter("portal", _policy(), clock=monotonic, sleep=monotonic.sleep)
    slots = [limiter.acquire().slot for _ in range(35)]
    for slot in slots:
        in_window = [other for other in slots if slot - 60 < other <= slot]
        assert len(in_window) <= 10


def test_wait_beyond_max_wait_is_rejected(monotonic) -> None:
    limiter = RateLimiter("portal", _policy(max_wait=30.0), clock=monotonic, sleep=monotonic.sleep)
    for _ in range(10):
        limiter.reserve()
    with pytest.raises(RateLimitExceeded) as excinfo:
        limiter.reserve()
    assert excinfo.value.reason == "budget"


def test_pacing_and_burst_then_cooldown(monotonic) -> None:
    policy = _policy(
        max_requests_per_minute=50,
        delay_between_requests=5.0,
        burst_limit=2,
        cooldown_period=100.0,
        max_wait=1000.0,
    )
    limiter = RateLimiter("portal", policy, clock=monotonic, sleep=monotonic.sleep)
    first = limiter.reserve()
    second = limiter.reserve()
    third = limiter.reserve()
    assert (first.wait, second.wait, third.wait) == (0, 0, 0)
    assert second.burst and third.burst
    fourth = limiter.reserve()
    assert fourth.wait >= 100.0
    assert limiter.cooling_down


def test_acquire_sleeps_for_the_wait(monotonic) -> None:
    limiter = RateLimiter(
        "portal",
        _policy(delay_between_requests=4.0),
        clock=monotonic,
        sleep=monotonic.sleep,
        rng=random.Random(1),
    )
    limiter.acquire()
    limiter.acquire()
    assert monotonic.sleeps == [4.0]


def test_sqlite_budget_is_shared_across_connections(tmp_path, monotonic) -> None:
    db_path = tmp_path / "budget.db"
    managers = [SQLiteManager(), SQLiteManager()]
    try:
        limiters = [
            RateLimiter(
                "portal",
                _policy(on_limit="reject"),
                clock=monotonic,
                sleep=monotonic.sleep,
                store=SQLiteBudget(manager, db_path),
            )
            for manager in managers
        ]

        def attempt(index: int):
            try:
                return limiters[index % 2].reserve()
            except RateLimitExceeded as exc:
                return exc

        with ThreadPoolExecutor(max_workers=6) as pool:
            outcomes = list(pool.map(attempt, range(15)))
        assert sum(not isinstance(outcome, RateLimitExceeded) for outcome in outcomes) == 10
        assert limiters[0].usage()["minute"] == 10
        assert limiters[1].usage()["minute"] == 10
    finally:
        for manager in managers:
            manager.close_all()


def test_sqlite_budget_keeps_cooldown_after_rejection(tmp_path, monotonic) -> None:
    manager = SQLiteManager()
    try:
        policy = _policy(
            max_requests_per_minute=50,
            delay_between_requests=5.0,
            burst_limit=1,
            cooldown_period=100.0,
            on_limit="reject",
        )
        budget = SQLiteBudget(manager, tmp_path / "budget.db")
        limiter = RateLimiter("portal", policy, clock=monotonic, sleep=monotonic.sleep, store=budget)
        limiter.reserve()
        limiter.reserve()
        with pytest.raises(RateLimitExceeded) as excinfo:
            limiter.reserve()
        assert excinfo.value.reason == "cooldown"
        restarted = RateLimiter("portal", policy, clock=monotonic, sleep=monotonic.sleep, store=budget)
        assert restarted.cooling_down
    finally:
        manager.close_all()
