from __future__ import annotations

import random

import pytest

from cv_crawler.config import ProxyConfig, ProxyRotation
from cv_crawler.infra import ProxyRotator


def _proxies(count: int = 3) -> list[ProxyConfig]:
    return [ProxyConfig(host=f"10.0.0.{index}", port=8080) for index in range(1, count + 1)]


def test_round_robin_cycles_through_proxies(clock) -> None:
    rotator = ProxyRotator(_proxies(), clock=clock)
    hosts = [rotator.get_next_proxy().host for _ in range(4)]
    assert hosts == ["10.0.0.1", "10.0.0.2", "10.0.0.3", "10.0.0.1"]


def test_failures_put_proxy_into_cooldown(clock) -> None:
    rotator = ProxyRotator(_proxies(2), clock=clock)
    key = "http://10.0.0.1:8080"
    results = [rotator.record_outcome(key, success=False) for _ in range(5)]
    assert results == [False, False, False, False, True]

    hosts = {rotator.get_next_proxy().host for _ in range(4)}
    assert hosts == {"10.0.0.2"}

    clock.advance(seconds=301)
    hosts = {rotator.get_next_proxy().host for _ in range(4)}
    assert hosts == {"10.0.0.1", "10.0.0.2"}


def test_success_resets_consecutive_failures(clock) -> None:
    rotator = ProxyRotator(_proxies(1), clock=clock)
    key = "http://10.0.0.1:8080"
    for _ in range(4):
        rotator.record_outcome(key, success=False)
    rotator.record_outcome(key, success=True, response_ms=120.0)
    assert rotator.record_outcome(key, success=False) is False
    stats = rotator.stats(key)
    assert stats.consecutive_failures == 1
    assert stats.failure_count == 5
    assert stats.success_count == 1


def test_all_proxies_cooling_returns_none(clock) -> None:
    rotator = ProxyRotator(_proxies(1), failure_threshold=1, clock=clock)
    rotator.record_outcome("http://10.0.0.1:8080", success=False)
    assert rotator.get_next_proxy() is None
    assert not rotator.has_available_proxy()


def test_inactive_proxy_is_skipped(clock) -> None:
    proxies = _proxies(2)
    proxies[0].is_active = False
    rotator = ProxyRotator(proxies, clock=clock)
    assert {rotator.get_next_proxy().host for _ in range(3)} == {"10.0.0.2"}


def test_least_used_prefers_fewest_attempts(clock) -> None:
    rotator = ProxyRotator(_proxies(2), strategy=ProxyRotation.LEAST_USED, clock=clock)
    rotator.record_outcome("http://10.0.0.1:8080", success=True)
    rotator.record_outcome("http://10.0.0.1:8080", success=True)
    assert rotator.get_next_proxy().host == "10.0.0.2"


def test_performance_based_prefers_fast_reliable_proxy(clock) -> None:
    rotator = ProxyRotator(_proxies(2), strategy=ProxyRotation.PERFORMANCE_BASED, clock=clock)
    rotator.record_outcome("http://10.0.0.1:8080", success=True, response_ms=900.0)
    rotator.record_outcome("http://10.0.0.2:8080", success=True, response_ms=100.0)
    assert rotator.get_next_proxy().host == "10.0.0.2"


def test_random_strategy_only_returns_usable(clock) -> None:
    rotator = ProxyRotator(
        _proxies(3), strategy=ProxyRotation.RANDOM, failure_threshold=1, clock=clock, rng=random.Random(7)
    )
    rotator.record_outcome("http://10.0.0.3:8080", success=False)
    hosts = {rotator.get_next_proxy().host for _ in range(20)}
    assert "10.0.0.3" not in hosts


def test_none_strategy_disables_rotation(clock) -> None:
    rotator = ProxyRotator(_proxies(), strategy=ProxyRotation.NONE, clock=clock)
    assert rotator.get_next_proxy() is None


def test_duplicate_proxy_rejected(clock) -> None:
    rotator = ProxyRotator(_proxies(1), clock=clock)
    with pytest.raises(ValueError):
        rotator.add_proxy(ProxyConfig(host="10.0.0.1", port=8080))
    assert rotator.remove_proxy("http://10.0.0.1:8080")
    assert rotator.empty


def test_state_survives_export_and_import(clock) -> None:
    rotator = ProxyRotator(_proxies(2), clock=clock)
    rotator.record_outcome("http://10.0.0.1:8080", success=True, response_ms=200.0)
    state = rotator.export_state()

    restored = ProxyRotator(_proxies(2), clock=clock)
    restored.import_state(state)
    stats = restored.stats("http://10.0.0.1:8080")
    assert stats.success_count == 1
    assert stats.avg_response_ms == pytest.approx(200.0)
