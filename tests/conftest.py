"""Shared fixtures: isolated home directory, deterministic clocks and wired services."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Iterable

import pytest

from cv_crawler.config import (
    ConfigLocator,
    ConfigRepository,
    GlobalConfig,
    RateLimitPolicy,
    SourceConfig,
)
from cv_crawler.engine import (
    DedupEngine,
    JobController,
    LogSink,
    QualityScorer,
    RecordStore,
    ReportGenerator,
    SourceRegistry,
)
from cv_crawler.entities import CVRecord, SourceRef
from cv_crawler.infra import SQLiteManager

START = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Wall clock that only moves when told to."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now += timedelta(**delta)
        return self.now


class FakeMonotonic:
    """Monotonic clock paired with a sleep that advances it instead of blocking."""

    def __init__(self) -> None:
        self.value = 1000.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.value

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.value += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def monotonic() -> FakeMonotonic:
    return FakeMonotonic()


@pytest.fixture
def home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.setenv("CV_CRAWLER_HOME", str(tmp_path))
    return tmp_path


@pytest.fixture
def temp_config_repository(home: Path) -> Iterable[ConfigRepository]:
    yield ConfigRepository(ConfigLocator(project_root=home))


@pytest.fixture
def storage() -> Iterable[SQLiteManager]:
    manager = SQLiteManager()
    yield manager
    manager.close_all()


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "data" / "pipeline.db"


@pytest.fixture
def sample_source_config() -> Callable[..., SourceConfig]:
    def _builder(**overrides: Any) -> SourceConfig:
        base: dict[str, Any] = {
            "source_id": "portal",
            "base_url": "https://portal.example.com",
            "search_url": "https://portal.example.com/api/profiles",
            "rate_limit": RateLimitPolicy(
                max_requests_per_minute=100,
                max_requests_per_hour=1000,
                max_requests_per_day=5000,
                delay_between_requests=0.0,
                randomize_delay=False,
                delay_variance=0.0,
                burst_limit=0,
            ),
            "selectors": {
                "items": "results",
                "external_id": "id",
                "full_name": "name",
                "contact.email": "email",
                "contact.phone": "phone",
                "current_company": "company",
                "skills.technical": "skills",
            },
        }
        base.update(overrides)
        return SourceConfig(**base)

    return _builder


@pytest.fixture
def make_record(clock: FakeClock) -> Callable[..., CVRecord]:
    def _builder(source_id: str = "portal", external_id: str | None = None, **fields: Any) -> CVRecord:
        scraped_at = fields.pop("scraped_at", clock())
        payload: dict[str, Any] = {
            "source": SourceRef(source_id=source_id, external_id=external_id, scraped_at=scraped_at),
            "created_at": clock(),
            "updated_at": clock(),
        }
        payload.update(fields)
        return CVRecord.model_validate(payload)

    return _builder


@pytest.fixture
def global_config() -> GlobalConfig:
    return GlobalConfig()


@pytest.fixture
def log_sink(storage: SQLiteManager, db_path: Path, clock: FakeClock) -> LogSink:
    return LogSink(storage, db_path, clock=clock)


@pytest.fixture
def registry(
    storage: SQLiteManager, db_path: Path, clock: FakeClock, monotonic: FakeMonotonic
) -> SourceRegistry:
    return SourceRegistry(storage, db_path, clock=clock, timer=monotonic, sleep=monotonic.sleep)


@pytest.fixture
def jobs(
    storage: SQLiteManager, db_path: Path, registry: SourceRegistry, log_sink: LogSink, clock: FakeClock
) -> JobController:
    return JobController(storage, db_path, registry, log_sink, clock=clock)


@pytest.fixture
def store(storage: SQLiteManager, db_path: Path) -> RecordStore:
    return RecordStore(storage, db_path)


@pytest.fixture
def scorer(clock: FakeClock) -> QualityScorer:
    return QualityScorer(clock=clock)


@pytest.fixture
def dedup(store: RecordStore, scorer: QualityScorer, log_sink: LogSink, clock: FakeClock) -> DedupEngine:
    return DedupEngine(store, log_sink=log_sink, refresh=scorer.process, clock=clock)


@pytest.fixture
def reports(
    storage: SQLiteManager,
    db_path: Path,
    store: RecordStore,
    scorer: QualityScorer,
    log_sink: LogSink,
    clock: FakeClock,
) -> ReportGenerator:
    return ReportGenerator(storage, db_path, store, scorer, log_sink, clock=clock)
