"""Pydantic models used across the CV crawler configuration flow."""

from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator


class SourceType(str, Enum):
    """Categories of registered CV sources."""

    JOB_PORTAL = "job_portal"
    SOCIAL_MEDIA = "social_media"
    COMPANY_CAREER = "company_career"
    AGGREGATOR = "aggregator"
    API = "api"
    CUSTOM = "custom"


class ScheduleType(str, Enum):
    """Scheduler modes for sources, jobs and maintenance tasks."""

    CRON = "cron"
    INTERVAL = "interval"
    ONCE = "once"


class ScheduleConfig(BaseModel):
    """Configuration describing when something should run."""

    type: ScheduleType = Field(default=ScheduleType.ONCE)
    value: Any = Field(
        default=None,
        description="Cron expression, interval seconds or ISO datetime, depending on type.",
    )

    @model_validator(mode="after")
    def _validate_value(self) -> "ScheduleConfig":
        if self.type is ScheduleType.CRON and not isinstance(self.value, str):
            raise ValueError("Cron schedule requires string expression")
        if self.type is ScheduleType.INTERVAL and not isinstance(self.value, (int, float, dict)):
            raise ValueError("Interval schedule requires seconds (int/float) or kwargs dict")
        if (
            self.type is ScheduleType.ONCE
            and self.value is not None
            and not isinstance(self.value, str)
        ):
            raise ValueError("Once schedule expects ISO datetime string or null")
        return self


class RateLimitPolicy(BaseModel):
    """Per-source request budget. Durations are seconds."""

    max_requests_per_minute: int = 10
    max_requests_per_hour: int = 100
    max_requests_per_day: int = 500
    delay_between_requests: float = 6.0
    randomize_delay: bool = True
    delay_variance: float = 2.0
    burst_limit: int = 3
    cooldown_period: float = 300.0
    on_limit: Literal["delay", "reject"] = "delay"
    max_wait: float = 600.0

    @model_validator(mode="after")
    def _validate_policy(self) -> "RateLimitPolicy":
        for name in ("max_requests_per_minute", "max_requests_per_hour", "max_requests_per_day"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be >= 1")
        if self.delay_between_requests < 0 or self.delay_variance < 0:
            raise ValueError("Delays must be non-negative")
        if self.delay_variance > self.delay_between_requests:
            raise ValueError("delay_variance cannot exceed delay_between_requests")
        if self.burst_limit < 0 or self.cooldown_period < 0:
            raise ValueError("burst_limit and cooldown_period must be >= 0")
        return self


class ProxyConfig(BaseModel):
    """Outbound proxy owned by a source."""

    host: str
    port: int
    protocol: Literal["http", "https", "socks4", "socks5"] = "http"
    username: str | None = None
    password: str | None = None
    is_active: bool = True

    @property
    def key(self) -> str:
        return f"{self.protocol}://{self.host}:{self.port}"

    @property
    def url(self) -> str:
        if self.username:
            auth = self.username if not self.password else f"{self.username}:{self.password}"
            return f"{self.protocol}://{auth}@{self.host}:{self.port}"
        return self.key


class ProxyRotation(str, Enum):
    NONE = "none"
    ROUND_ROBIN = "round_robin"
    RANDOM = "random"
    LEAST_USED = "least_used"
    PERFORMANCE_BASED = "performance_based"


class MaintenanceWindow(BaseModel):
    """Planned downtime; only blocks a source between start and end."""

    is_under_maintenance: bool = False
    start: datetime | None = None
    end: datetime | None = None
    reason: str | None = None

    def is_active(self, now: datetime) -> bool:
        if not self.is_under_maintenance:
            return False
        if self.start is not None and now < self.start:
            return False
        if self.end is not None and now > self.end:
            return False
        return True


class SourceConfig(BaseModel):
    """Full definition of a registered CV source."""

    source_id: str
    name: str = ""
    type: SourceType = SourceType.JOB_PORTAL
    base_url: str
    search_url: str | None = None
    page_param: str = "page"
    is_active: bool = True
    is_enabled: bool = True
    priority: int = Field(default=0, ge=0, le=100)
    rate_limit: RateLimitPolicy = Field(default_factory=RateLimitPolicy)
    proxies: list[ProxyConfig] = Field(default_factory=list)
    proxy_rotation: ProxyRotation = ProxyRotation.ROUND_ROBIN
    allow_direct: bool = True
    maintenance: MaintenanceWindow = Field(default_factory=MaintenanceWindow)
    selectors: dict[str, str] = Field(default_factory=dict)
    request_headers: dict[str, str] = Field(default_factory=dict)
    schedule: ScheduleConfig | None = None
    tags: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _validate_source(self) -> "SourceConfig":
        if not self.source_id.strip():
            raise ValueError("source_id cannot be empty")
        if not self.base_url:
            raise ValueError("base_url cannot be empty")
        if not self.name:
            self.name = self.source_id
        return self

    def page_url(self, page: int) -> str:
        base = self.search_url or self.base_url
        separator = "&" if "?" in base else "?"
        return f"{base}{separator}{self.page_param}={page}"


class JobConfig(BaseModel):
    """Execution knobs for a scraping job. Durations are seconds."""

    max_pages: int = 10
    max_results: int | None = None
    request_timeout: float = 30.0
    timeout: float = 3600.0
    retry_attempts: int = 3
    retry_delay: float = 5.0
    failure_tolerance: float = Field(default=0.5, ge=0.0, le=1.0)
    max_error_rate: float = Field(default=0.5, ge=0.0, le=1.0)
    min_error_sample: int = 20

    @model_validator(mode="after")
    def _validate_limits(self) -> "JobConfig":
        if self.max_pages < 1:
            raise ValueError("max_pages must be >= 1")
        if self.retry_attempts < 1:
            raise ValueError("retry_attempts must be >= 1")
        return self


class JobFilters(BaseModel):
    keywords: list[str] = Field(default_factory=list)
    locations: list[str] = Field(default_factory=list)
    skills: list[str] = Field(default_factory=list)
    experience_levels: list[str] = Field(default_factory=list)
    date_from: date | None = None
    date_to: date | None = None


class ConflictPolicy(str, Enum):
    """How a merge treats a field both records populate with different values."""

    FLAG = "flag"
    KEEP_CANONICAL = "keep_canonical"
    PREFER_INCOMING = "prefer_incoming"
    PREFER_RECENT = "prefer_recent"


class DedupConfig(BaseModel):
    auto_merge_threshold: float = Field(default=0.85, ge=0.0, le=1.0)
    fuzzy_min_similarity: float = Field(default=0.8, ge=0.0, le=1.0)
    conflict_policy: ConflictPolicy = ConflictPolicy.FLAG
    field_policies: dict[str, ConflictPolicy] = Field(default_factory=dict)
    candidate_limit: int = 50

    def policy_for(self, field: str) -> ConflictPolicy:
        return self.field_policies.get(field, self.conflict_policy)


DEFAULT_COMPLETENESS_WEIGHTS: dict[str, int] = {
    "full_name": 10,
    "contact.email": 15,
    "contact.phone": 10,
    "headline": 10,
    "summary": 10,
    "experience": 15,
    "education": 10,
    "skills.technical": 10,
    "current_title": 5,
    "current_company": 5,
}


class QualityConfig(BaseModel):
    completeness_weights: dict[str, int] = Field(
        default_factory=lambda: dict(DEFAULT_COMPLETENESS_WEIGHTS)
    )
    freshness_decay_per_day: float = 2.0
    fresh_days: int = 30
    complete_threshold: int = 80

    @field_validator("completeness_weights")
    @classmethod
    def _non_empty_weights(cls, value: dict[str, int]) -> dict[str, int]:
        if not value or sum(value.values()) <= 0:
            raise ValueError("completeness_weights needs a positive total weight")
        if any(weight < 0 for weight in value.values()):
            raise ValueError("completeness weights must be non-negative")
        return value


class HealthConfig(BaseModel):
    degraded_after: int = 2
    unhealthy_after: int = 5
    recover_after: int = 3
    proxy_failure_threshold: int = 5
    proxy_cooldown: float = 300.0
    check_interval: float = 300.0

    @model_validator(mode="after")
    def _validate_thresholds(self) -> "HealthConfig":
        if not 1 <= self.degraded_after <= self.unhealthy_after:
            raise ValueError("degraded_after must be between 1 and unhealthy_after")
        if self.recover_after < 1 or self.proxy_failure_threshold < 1:
            raise ValueError("recover_after and proxy_failure_threshold must be >= 1")
        return self


class RetentionConfig(BaseModel):
    short_days: int = 7
    long_days: int = 30

    @model_validator(mode="after")
    def _validate_days(self) -> "RetentionConfig":
        if self.short_days < 1 or self.long_days < self.short_days:
            raise ValueError("long_days must be >= short_days >= 1")
        return self


class ReportConfig(BaseModel):
    schedule: ScheduleConfig = Field(
        default_factory=lambda: ScheduleConfig(type=ScheduleType.CRON, value="0 2 * * *")
    )
    trend_days: int = 30
    field_aggregation: Literal["mean", "weighted"] = "mean"
    source_aggregation: Literal["weighted", "mean"] = "weighted"
    missing_field_threshold: float = 80.0
    stale_after_days: int = 30
    duplicate_rate_threshold: float = 10.0


class GlobalConfig(BaseModel):
    """Global controls shared across sources."""

    database_path: Path = Field(default=Path("data/pipeline.db"))
    thread_pool_workers: int = 16
    rescore_interval: float = 86400.0
    log_purge_interval: float = 3600.0
    dedup: DedupConfig = Field(default_factory=DedupConfig)
    quality: QualityConfig = Field(default_factory=QualityConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    retention: RetentionConfig = Field(default_factory=RetentionConfig)
    reports: ReportConfig = Field(default_factory=ReportConfig)
    job_defaults: JobConfig = Field(default_factory=JobConfig)

    @field_validator("database_path", mode="before")
    @classmethod
    def _coerce_path(cls, value: Any) -> Path:
        return Path(value)

    def resolved_database_path(self, base_dir: Path) -> Path:
        if not self.database_path.is_absolute():
            return (base_dir / self.database_path).resolve()
        return self.database_path


__all__ = [
    "ConflictPolicy",
    "DEFAULT_COMPLETENESS_WEIGHTS",
    "DedupConfig",
    "GlobalConfig",
    "HealthConfig",
    "JobConfig",
    "JobFilters",
    "MaintenanceWindow",
    "ProxyConfig",
    "ProxyRotation",
    "QualityConfig",
    "RateLimitPolicy",
    "ReportConfig",
    "RetentionConfig",
    "ScheduleConfig",
    "ScheduleType",
    "SourceConfig",
    "SourceType",
]
