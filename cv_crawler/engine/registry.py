"""Source registry: configuration, availability, health, rate limits and proxies."""

from __future__ import annotations

import random
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from threading import Lock, RLock
from typing import Callable, Iterable

import structlog
from pydantic import BaseModel, Field

from ..config import HealthConfig, ProxyConfig, ProxyRotation, SourceConfig
from ..entities import utcnow
from ..errors import RateLimitExceeded, SourceNotFound, SourceUnavailable
from ..infra import ProxyRotator, RateLimiter, Reservation, SQLiteBudget, SQLiteManager


class SourceStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    ERROR = "error"
    MAINTENANCE = "maintenance"
    DEPRECATED = "deprecated"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


class SourceHealth(BaseModel):
    status: HealthStatus = HealthStatus.UNKNOWN
    consecutive_failures: int = 0
    consecutive_successes: int = 0
    last_checked: datetime | None = None
    response_time: float | None = None
    error_message: str | None = None


class SourceStatistics(BaseModel):
    total_scraped: int = 0
    successful: int = 0
    failed: int = 0
    success_rate: int = 0
    avg_response_time: float = 0.0
    last_scraped_at: datetime | None = None
    last_success_at: datetime | None = None
    last_failure_at: datetime | None = None


class SourceState(BaseModel):
    """Mutable runtime state persisted alongside each source config."""

    source_id: str
    status: SourceStatus = SourceStatus.ACTIVE
    health: SourceHealth = Field(default_factory=SourceHealth)
    statistics: SourceStatistics = Field(default_factory=SourceStatistics)
    proxies: dict[str, dict] = Field(default_factory=dict)
    updated_at: datetime = Field(default_factory=utcnow)


@dataclass(slots=True)
class Permit:
    """Permission to issue one request to a source."""

    source_id: str
    proxy: ProxyConfig | None
    reservation: Reservation

    @property
    def proxy_key(self) -> str | None:
        return self.proxy.key if self.proxy else None


@dataclass
class _SourceHandle:
    config: SourceConfig
    state: SourceState
    limiter: RateLimiter
    rotator: ProxyRotator
    lock: RLock = field(default_factory=RLock)


class SourceRegistry:
    """Own source configs and the per-source limiter, rotator and health machine."""

    def __init__(
        self,
        storage: SQLiteManager,
        db_path: Path,
        health: HealthConfig | None = None,
        sources: Iterable[SourceConfig] = (),
        clock: Callable[[], datetime] = utcnow,
        timer: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.storage = storage
        self.db_path = db_path
        self.health_config = health or HealthConfig()
        self._clock = clock
        self._timer = timer
        self._sleep = sleep
        self._rng = rng
        self._handles: dict[str, _SourceHandle] = {}
        self._lock = Lock()
        self.logger = structlog.get_logger("cv_crawler.registry").bind(component="registry")
        self._budget = SQLiteBudget(storage, db_path)
        for source in sources:
            self.register(source)

    # ------------------------------------------------------------------
    def register(self, config: SourceConfig) -> SourceState:
        state = self._load_state(config.source_id)
        rotator = ProxyRotator(
            config.proxies,
            strategy=config.proxy_rotation,
            failure_threshold=self.health_config.proxy_failure_threshold,
            cooldown_seconds=self.health_config.proxy_cooldown,
            clock=self._clock,
            rng=self._rng,
        )
        if state.proxies:
            rotator.import_state(state.proxies)
        limiter = RateLimiter(
            config.source_id,
            config.rate_limit,
            clock=self._timer,
            sleep=self._sleep,
            rng=self._rng,
            store=self._budget,
        )
        if not config.is_enabled and state.status is SourceStatus.ACTIVE:
            state.status = SourceStatus.PAUSED
        elif config.is_enabled and state.status is SourceStatus.PAUSED:
            state.status = self._enabled_status(state)
        with self._lock:
            self._handles[config.source_id] = _SourceHandle(config, state, limiter, rotator)
        self._save_state(state, rotator)
        return state

    def unregister(self, source_id: str) -> None:
        with self._lock:
            self._handles.pop(source_id, None)

    def get(self, source_id: str) -> SourceConfig:
        return self._handle(source_id).config

    def state(self, source_id: str) -> SourceState:
        handle = self._handle(source_id)
        with handle.lock:
            return handle.state.model_copy(deep=True)

    def sources(self) -> list[SourceConfig]:
        with self._lock:
            return [handle.config for handle in self._handles.values()]

    def __contains__(self, source_id: object) -> bool:
        return source_id in self._handles

    # -- availability ----------------------------------------------------
    def is_available(self, source_id: str, now: datetime | None = None) -> bool:
        handle = self._handle(source_id)
        config = handle.config
        if not config.is_active or not config.is_enabled:
            return False
        if config.maintenance.is_active(now or self._clock()):
            return False
        return handle.state.status not in (SourceStatus.ERROR, SourceStatus.PAUSED, SourceStatus.DEPRECATED)

    def active_sources(self) -> list[SourceConfig]:
        now = self._clock()
        available = [source for source in self.sources() if self.is_available(source.source_id, now)]
        return sorted(available, key=lambda source: source.priority, reverse=True)

    def set_enabled(self, source_id: str, enabled: bool) -> SourceState:
        handle = self._handle(source_id)
        with handle.lock:
            handle.config = handle.config.model_copy(update={"is_enabled": enabled})
            handle.state.status = self._enabled_status(handle.state) if enabled else SourceStatus.PAUSED
            self._save_state(handle.state, handle.rotator)
            self.logger.info("source_toggled", source=source_id, enabled=enabled)
            return handle.state.model_copy(deep=True)

    @staticmethod
    def _enabled_status(state: SourceState) -> SourceStatus:
        # An unhealthy source stays in ERROR until its health recovers.
        if state.health.status is HealthStatus.UNHEALTHY:
            return SourceStatus.ERROR
        return SourceStatus.ACTIVE

    # -- proxies ---------------------------------------------------------
    def add_proxy(self, source_id: str, proxy: ProxyConfig) -> None:
        handle = self._handle(source_id)
        with handle.lock:
            handle.rotator.add_proxy(proxy)
            handle.config = handle.config.model_copy(update={"proxies": [*handle.config.proxies, proxy]})
            self._save_state(handle.state, handle.rotator)

    def remove_proxy(self, source_id: str, key: str) -> bool:
        handle = self._handle(source_id)
        with handle.lock:
            removed = handle.rotator.remove_proxy(key)
            if removed:
                proxies = [proxy for proxy in handle.config.proxies if proxy.key != key]
                handle.config = handle.config.model_copy(update={"proxies": proxies})
                self._save_state(handle.state, handle.rotator)
            return removed

    def set_rotation(self, source_id: str, strategy: ProxyRotation) -> None:
        handle = self._handle(source_id)
        with handle.lock:
            handle.rotator.set_strategy(strategy)
            handle.config = handle.config.model_copy(update={"proxy_rotation": strategy})

    def get_next_proxy(self, source_id: str) -> ProxyConfig | None:
        return self._handle(source_id).rotator.get_next_proxy()

    def rotator(self, source_id: str) -> ProxyRotator:
        return self._handle(source_id).rotator

    def limiter(self, source_id: str) -> RateLimiter:
        return self._handle(source_id).limiter

    # -- request permission ------------------------------------------------
    def acquire(self, source_id: str, block: bool = True) -> Permit:
        """Reserve a rate-limit slot and pick a proxy for the next request.

        Raises ``SourceUnavailable`` when the source cannot be used at all and
        ``RateLimitExceeded`` when the limiter rejects the call.
        """

        handle = self._handle(source_id)
        if not self.is_available(source_id):
            raise SourceUnavailable(f"Source {source_id} is not available")
        rotator = handle.rotator
        proxy_required = (
            not rotator.empty and rotator.strategy is not ProxyRotation.NONE and not handle.config.allow_direct
        )
        if proxy_required and not rotator.has_available_proxy():
            raise SourceUnavailable(f"Source {source_id} has no usable proxy and direct access is disabled")
        try:
            reservation = handle.limiter.acquire() if block else handle.limiter.reserve()
        except RateLimitExceeded:
            self.logger.warning("rate_limit_rejected", source=source_id)
            raise
        # Picked only once the slot is ours, so a rejected call leaves the rotation untouched.
        proxy = rotator.get_next_proxy()
        if proxy is None and proxy_required:
            raise SourceUnavailable(f"Source {source_id} has no usable proxy and direct access is disabled")
        return Permit(source_id=source_id, proxy=proxy, reservation=reservation)

    # -- outcomes --------------------------------------------------------
    def record_outcome(
        self,
        source_id: str,
        success: bool,
        response_ms: float | None = None,
        error: str | None = None,
    ) -> SourceState:
        """Update scrape statistics and drive the health state machine."""

        handle = self._handle(source_id)
        now = self._clock()
        with handle.lock:
            stats = handle.state.statistics
            stats.total_scraped += 1
            stats.last_scraped_at = now
            if success:
                stats.successful += 1
                stats.last_success_at = now
            else:
                stats.failed += 1
                stats.last_failure_at = now
            if response_ms is not None:
                stats.avg_response_time = (
                    stats.avg_response_time * (stats.total_scraped - 1) + response_ms
                ) / stats.total_scraped
            stats.success_rate = round(stats.successful / stats.total_scraped * 100)
            self._apply_health(handle, success, now, response_ms, error)
            self._save_state(handle.state, handle.rotator)
            return handle.state.model_copy(deep=True)

    def record_proxy_outcome(
        self, source_id: str, proxy_key: str, success: bool, response_ms: float | None = None
    ) -> bool:
        handle = self._handle(source_id)
        cooled = handle.rotator.record_outcome(proxy_key, success, response_ms)
        if cooled:
            self.logger.warning("proxy_cooldown", source=source_id, proxy=proxy_key)
        with handle.lock:
            self._save_state(handle.state, handle.rotator)
        return cooled

    def health_check(self, source_id: str, probe: Callable[[SourceConfig], float]) -> SourceHealth:
        """Run an out-of-band probe; it never spends the request budget."""

        handle = self._handle(source_id)
        now = self._clock()
        try:
            response_ms = probe(handle.config)
        except Exception as exc:  # noqa: BLE001
            with handle.lock:
                self._apply_health(handle, False, now, None, str(exc) or exc.__class__.__name__)
                self._save_state(handle.state, handle.rotator)
                self.logger.warning("health_check_failed", source=source_id, error=str(exc))
                return handle.state.health.model_copy()
        with handle.lock:
            self._apply_health(handle, True, now, response_ms, None)
            self._save_state(handle.state, handle.rotator)
            return handle.state.health.model_copy()

    def overall_statistics(self) -> dict[str, float | int]:
        states = [self.state(source.source_id) for source in self.sources()]
        total = sum(state.statistics.total_scraped for state in states)
        successful = sum(state.statistics.successful for state in states)
        return {
            "total_sources": len(states),
            "active_sources": len(self.active_sources()),
            "unhealthy_sources": sum(1 for state in states if state.health.status is HealthStatus.UNHEALTHY),
            "total_scraped": total,
            "total_successful": successful,
            "success_rate": round(successful / total * 100) if total else 0,
            "avg_success_rate": (
                round(sum(state.statistics.success_rate for state in states) / len(states), 2) if states else 0.0
            ),
        }

    # ------------------------------------------------------------------
    def _apply_health(
        self,
        handle: _SourceHandle,
        success: bool,
        now: datetime,
        response_ms: float | None,
        error: str | None,
    ) -> None:
        health = handle.state.health
        config = self.health_config
        previous = health.status
        health.last_checked = now
        if response_ms is not None:
            health.response_time = response_ms
        if success:
            health.consecutive_successes += 1
            health.consecutive_failures = 0
            health.error_message = None
            if health.status is HealthStatus.UNKNOWN:
                health.status = HealthStatus.HEALTHY
            elif health.status is not HealthStatus.HEALTHY and health.consecutive_successes >= config.recover_after:
                health.status = HealthStatus.HEALTHY
                if handle.state.status is SourceStatus.ERROR:
                    handle.state.status = SourceStatus.ACTIVE
        else:
            health.consecutive_failures += 1
            health.consecutive_successes = 0
            health.error_message = error
            if health.consecutive_failures >= config.unhealthy_after:
                health.status = HealthStatus.UNHEALTHY
                handle.state.status = SourceStatus.ERROR
            elif health.consecutive_failures >= config.degraded_after and health.status is not HealthStatus.UNHEALTHY:
                health.status = HealthStatus.DEGRADED
        if health.status is not previous:
            self.logger.info(
                "source_health_changed",
                source=handle.config.source_id,
                previous=previous.value,
                current=health.status.value,
                status=handle.state.status.value,
            )

    def _handle(self, source_id: str) -> _SourceHandle:
        with self._lock:
            handle = self._handles.get(source_id)
        if handle is None:
            raise SourceNotFound(f"Unknown source: {source_id}")
        return handle

    def _load_state(self, source_id: str) -> SourceState:
        with self.storage.transaction(self.db_path) as conn:
            row = conn.execute("SELECT payload FROM source_state WHERE source_id = ?", (source_id,)).fetchone()
        if row is None:
            return SourceState(source_id=source_id)
        return SourceState.model_validate_json(row["payload"])

    def _save_state(self, state: SourceState, rotator: ProxyRotator) -> None:
        state.proxies = rotator.export_state()
        state.updated_at = self._clock()
        with self.storage.transaction(self.db_path) as conn:
            conn.execute(
                "INSERT OR REPLACE INTO source_state(source_id, payload, updated_at) VALUES (?, ?, ?)",
                (state.source_id, state.model_dump_json(), state.updated_at.isoformat()),
            )


__all__ = [
    "HealthStatus",
    "Permit",
    "SourceHealth",
    "SourceRegistry",
    "SourceState",
    "SourceStatistics",
    "SourceStatus",
]
