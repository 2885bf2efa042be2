"""Per-source request budget enforcement."""

from __future__ import annotations

import random
import time
from bisect import bisect_right
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import Callable, ContextManager, Iterator, Protocol

from pydantic import BaseModel, Field

from ..config import RateLimitPolicy
from ..errors import RateLimitExceeded
from .storage import SQLiteManager

WINDOWS: tuple[tuple[str, float, str], ...] = (
    ("minute", 60.0, "max_requests_per_minute"),
    ("hour", 3600.0, "max_requests_per_hour"),
    ("day", 86400.0, "max_requests_per_day"),
)


@dataclass(slots=True)
class Reservation:
    """A granted request slot. ``wait`` is how long the caller must hold off."""

    source_id: str
    slot: float
    wait: float
    burst: bool


class LimiterState(BaseModel):
    """Everything a limiter remembers between calls. Times are clock seconds."""

    reservations: list[float] = Field(default_factory=list)
    next_paced_at: float | None = None
    burst_used: int = 0
    cooldown_until: float = 0.0


class BudgetStore(Protocol):
    def hold(self, source_id: str) -> ContextManager[LimiterState]: ...


class InMemoryBudget:
    """Limiter state for a single process."""

    def __init__(self) -> None:
        self._states: dict[str, LimiterState] = {}
        self._lock = Lock()

    @contextmanager
    def hold(self, source_id: str) -> Iterator[LimiterState]:
        with self._lock:
            yield self._states.setdefault(source_id, LimiterState())


class SQLiteBudget:
    """Limiter state in the shared database, so every worker process draws on one budget.

    Each ``hold`` reads, mutates and writes the state inside one ``BEGIN IMMEDIATE``
    transaction, which makes reserving a slot atomic across processes. Callers
    must use a wall clock (``time.time``) so slots compare between processes.
    """

    def __init__(self, storage: SQLiteManager, db_path: Path) -> None:
        self.storage = storage
        self.db_path = db_path
        self.storage.connect(db_path)

    @contextmanager
    def hold(self, source_id: str) -> Iterator[LimiterState]:
        with self.storage.transaction(self.db_path, immediate=True) as conn:
            row = conn.execute("SELECT payload FROM rate_limit_state WHERE source_id = ?", (source_id,)).fetchone()
            state = LimiterState.model_validate_json(row["payload"]) if row else LimiterState()
            yield state
            conn.execute(
                "INSERT OR REPLACE INTO rate_limit_state(source_id, payload) VALUES (?, ?)",
                (source_id, state.model_dump_json()),
            )


class RateLimiter:
    """Sliding-window budget plus paced, jittered spacing with a burst allowance.

    Every slot is reserved while holding the source's state in its budget store,
    so concurrent callers can never be handed the same slot and the per-window
    counts never exceed the policy. Once ``burst_limit`` back-to-back requests
    have skipped the pacing delay, the next one pushes the source into a
    ``cooldown_period``.
    """

    def __init__(
        self,
        source_id: str,
        policy: RateLimitPolicy,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
        rng: random.Random | None = None,
        store: BudgetStore | None = None,
    ) -> None:
        self.source_id = source_id
        self.policy = policy
        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()
        self._store = store or InMemoryBudget()

    def update_policy(self, policy: RateLimitPolicy) -> None:
        self.policy = policy

    # ------------------------------------------------------------------
    def reserve(self) -> Reservation:
        """Atomically claim the next slot or raise ``RateLimitExceeded``."""

        rejected: RateLimitExceeded | None = None
        with self._store.hold(self.source_id) as state:
            now = self._clock()
            self._prune(state, now)
            policy = self.policy
            start = max(now, state.cooldown_until)
            if state.reservations:
                start = max(start, state.reservations[-1])
            slot = self._earliest_slot(state, start)
            reason = "budget" if slot > start else ("cooldown" if start > now else "pacing")

            use_burst = False
            cooldown_until: float | None = None
            paced = state.next_paced_at
            if paced is not None and slot < paced:
                if policy.burst_limit == 0:
                    slot = self._earliest_slot(state, paced)
                    reason = "pacing"
                elif state.burst_used < policy.burst_limit:
                    use_burst = True
                else:
                    cooldown_until = slot + policy.cooldown_period
                    slot = self._earliest_slot(state, max(paced, cooldown_until))
                    reason = "cooldown"

            wait = slot - now
            if cooldown_until is not None:
                state.cooldown_until = cooldown_until
                state.burst_used = 0
            if wait > 0 and (policy.on_limit == "reject" or wait > policy.max_wait):
                rejected = RateLimitExceeded(self.source_id, wait, reason)
            else:
                state.reservations.append(slot)
                if use_burst:
                    state.burst_used += 1
                elif cooldown_until is None:
                    state.burst_used = 0
                state.next_paced_at = slot + self._jittered_delay()
        if rejected is not None:
            raise rejected
        return Reservation(self.source_id, slot, max(0.0, wait), use_burst)

    def acquire(self) -> Reservation:
        """Reserve a slot and block until it is due."""

        reservation = self.reserve()
        if reservation.wait > 0:
            self._sleep(reservation.wait)
        return reservation

    def usage(self) -> dict[str, int]:
        with self._store.hold(self.source_id) as state:
            now = self._clock()
            self._prune(state, now)
            return {
                name: len(state.reservations) - bisect_right(state.reservations, now - size)
                for name, size, _ in WINDOWS
            }

    @property
    def cooling_down(self) -> bool:
        with self._store.hold(self.source_id) as state:
            return state.cooldown_until > self._clock()

    # ------------------------------------------------------------------
    @staticmethod
    def _prune(state: LimiterState, now: float) -> None:
        cutoff = bisect_right(state.reservations, now - WINDOWS[-1][1])
        if cutoff:
            del state.reservations[:cutoff]

    def _earliest_slot(self, state: LimiterState, start: float) -> float:
        # Reservations are sorted and never later than ``start``.
        reservations = state.reservations
        slot = start
        while True:
            candidate = slot
            for _, size, attr in WINDOWS:
                limit = getattr(self.policy, attr)
                in_window = len(reservations) - bisect_right(reservations, candidate - size)
                if in_window >= limit:
                    candidate = max(candidate, reservations[-limit] + size)
            if candidate == slot:
                return slot
            slot = candidate

    def _jittered_delay(self) -> float:
        delay = self.policy.delay_between_requests
        if self.policy.randomize_delay and self.policy.delay_variance:
            delay += self._rng.uniform(-self.policy.delay_variance, self.policy.delay_variance)
        return max(0.0, delay)


__all__ = ["BudgetStore", "InMemoryBudget", "LimiterState", "RateLimiter", "Reservation", "SQLiteBudget", "WINDOWS"]
