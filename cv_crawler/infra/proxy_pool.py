"""Per-source proxy rotation with health tracking."""

from __future__ import annotations

import random
from datetime import datetime, timedelta
from threading import Lock
from typing import Callable, Iterable, List, Optional

from pydantic import BaseModel

from ..config import ProxyConfig, ProxyRotation
from ..entities import utcnow


class ProxyStats(BaseModel):
    """Rolling counters kept for one proxy."""

    success_count: int = 0
    failure_count: int = 0
    consecutive_failures: int = 0
    avg_response_ms: float = 0.0
    last_used: datetime | None = None
    cooldown_until: datetime | None = None

    @property
    def attempts(self) -> int:
        return self.success_count + self.failure_count

    @property
    def success_rate(self) -> float:
        return self.success_count / (self.attempts or 1)

    @property
    def performance(self) -> float:
        return self.success_rate / (self.avg_response_ms or 1000.0)


class ProxyRotator:
    """Pick proxies for one source using a single rotation strategy."""

    def __init__(
        self,
        proxies: Iterable[ProxyConfig] | None = None,
        strategy: ProxyRotation = ProxyRotation.ROUND_ROBIN,
        failure_threshold: int = 5,
        cooldown_seconds: float = 300.0,
        clock: Callable[[], datetime] = utcnow,
        rng: random.Random | None = None,
    ) -> None:
        self._lock = Lock()
        self._index = 0
        self._proxies: List[ProxyConfig] = []
        self._stats: dict[str, ProxyStats] = {}
        self.strategy = strategy
        self.failure_threshold = failure_threshold
        self.cooldown = timedelta(seconds=cooldown_seconds)
        self._clock = clock
        self._rng = rng or random.Random()
        for proxy in proxies or ():
            self.add_proxy(proxy)

    @property
    def empty(self) -> bool:
        return not self._proxies

    def set_strategy(self, strategy: ProxyRotation) -> None:
        with self._lock:
            self.strategy = strategy
            self._index = 0

    def add_proxy(self, proxy: ProxyConfig) -> None:
        with self._lock:
            if any(existing.key == proxy.key for existing in self._proxies):
                raise ValueError(f"Proxy already registered: {proxy.key}")
            self._proxies.append(proxy)
            self._stats.setdefault(proxy.key, ProxyStats())

    def remove_proxy(self, key: str) -> bool:
        with self._lock:
            before = len(self._proxies)
            self._proxies = [proxy for proxy in self._proxies if proxy.key != key]
            self._stats.pop(key, None)
            return len(self._proxies) != before

    def proxies(self) -> list[ProxyConfig]:
        with self._lock:
            return list(self._proxies)

    # ------------------------------------------------------------------
    def get_next_proxy(self) -> Optional[ProxyConfig]:
        """Return an active, non-cooling proxy, or None when none qualifies."""

        with self._lock:
            if self.strategy is ProxyRotation.NONE or not self._proxies:
                return None
            now = self._clock()
            if self.strategy is ProxyRotation.ROUND_ROBIN:
                chosen = self._round_robin(now)
            else:
                candidates = [proxy for proxy in self._proxies if self._usable(proxy, now)]
                if not candidates:
                    return None
                if self.strategy is ProxyRotation.RANDOM:
                    chosen = self._rng.choice(candidates)
                elif self.strategy is ProxyRotation.LEAST_USED:
                    chosen = min(candidates, key=lambda p: self._stats[p.key].attempts)
                else:
                    chosen = max(candidates, key=lambda p: self._stats[p.key].performance)
            if chosen is not None:
                self._stats[chosen.key].last_used = now
            return chosen

    def record_outcome(self, key: str, success: bool, response_ms: float | None = None) -> bool:
        """Update counters; return True when this failure put the proxy into cooldown."""

        with self._lock:
            stats = self._stats.get(key)
            if stats is None:
                return False
            if response_ms is not None:
                samples = stats.attempts
                stats.avg_response_ms = (stats.avg_response_ms * samples + response_ms) / (samples + 1)
            if success:
                stats.success_count += 1
                stats.consecutive_failures = 0
                return False
            stats.failure_count += 1
            stats.consecutive_failures += 1
            if stats.consecutive_failures >= self.failure_threshold:
                stats.cooldown_until = self._clock() + self.cooldown
                stats.consecutive_failures = 0
                return True
            return False

    def has_available_proxy(self) -> bool:
        with self._lock:
            now = self._clock()
            return any(self._usable(proxy, now) for proxy in self._proxies)

    def stats(self, key: str) -> ProxyStats | None:
        with self._lock:
            stats = self._stats.get(key)
            return stats.model_copy() if stats else None

    def export_state(self) -> dict[str, dict]:
        with self._lock:
            return {key: stats.model_dump(mode="json") for key, stats in self._stats.items()}

    def import_state(self, state: dict[str, dict]) -> None:
        with self._lock:
            for key, payload in state.items():
                if key in self._stats:
                    self._stats[key] = ProxyStats.model_validate(payload)

    # ------------------------------------------------------------------
    def _usable(self, proxy: ProxyConfig, now: datetime) -> bool:
        if not proxy.is_active:
            return False
        cooldown_until = self._stats[proxy.key].cooldown_until
        return cooldown_until is None or cooldown_until <= now

    def _round_robin(self, now: datetime) -> Optional[ProxyConfig]:
        size = len(self._proxies)
        for offset in range(size):
            position = (self._index + offset) % size
            proxy = self._proxies[position]
            if self._usable(proxy, now):
                self._index = position + 1
                return proxy
        return None


__all__ = ["ProxyRotator", "ProxyStats"]
