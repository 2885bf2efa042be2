"""Persisted pipeline entities: CV records, jobs, log entries and quality reports."""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from .config import JobConfig, JobFilters, ScheduleConfig


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


# ----------------------------------------------------------------------
# CV records
# ----------------------------------------------------------------------
class RecordStatus(str, Enum):
    NEW = "new"
    PROCESSED = "processed"
    VALIDATED = "validated"
    ENRICHED = "enriched"
    DUPLICATE = "duplicate"
    ARCHIVED = "archived"


class ContactInfo(BaseModel):
    email: str | None = None
    phone: str | None = None
    linkedin: str | None = None
    location: str | None = None


class ExperienceEntry(BaseModel):
    company: str | None = None
    title: str | None = None
    start_date: date | None = None
    end_date: date | None = None
    is_current: bool = False
    description: str | None = None


class EducationEntry(BaseModel):
    institution: str | None = None
    degree: str | None = None
    field_of_study: str | None = None
    end_year: int | None = None


class Skills(BaseModel):
    technical: list[str] = Field(default_factory=list)
    soft: list[str] = Field(default_factory=list)
    tools: list[str] = Field(default_factory=list)
    frameworks: list[str] = Field(default_factory=list)
    databases: list[str] = Field(default_factory=list)
    cloud: list[str] = Field(default_factory=list)

    def all_skills(self) -> list[str]:
        return [
            *self.technical,
            *self.soft,
            *self.tools,
            *self.frameworks,
            *self.databases,
            *self.cloud,
        ]


class SourceRef(BaseModel):
    """Provenance of a record; identity is (source_id, external_id)."""

    source_id: str
    external_id: str | None = None
    url: str | None = None
    scraped_at: datetime = Field(default_factory=utcnow)

    @property
    def key(self) -> tuple[str, str]:
        return (self.source_id, self.external_id or "")


class FieldConflict(BaseModel):
    field: str
    canonical_value: Any = None
    incoming_value: Any = None
    incoming_record_id: str
    resolution: str
    detected_at: datetime = Field(default_factory=utcnow)


class DedupState(BaseModel):
    fingerprint: str | None = None
    # True when another live record already holds this fingerprint.
    shares_fingerprint: bool = False
    duplicate_of: str | None = None
    confidence: float | None = None
    match_fields: list[str] = Field(default_factory=list)
    review_candidate: str | None = None
    last_checked_at: datetime | None = None
    conflicts: list[FieldConflict] = Field(default_factory=list)


class ValidationIssue(BaseModel):
    field: str
    message: str
    severity: str = "error"


class QualityState(BaseModel):
    completeness: float = 0.0
    freshness: float = 0.0
    overall_score: float = 0.0
    accuracy: float = 0.0
    validation_errors: list[ValidationIssue] = Field(default_factory=list)
    last_validated_at: datetime | None = None


class EnrichmentState(BaseModel):
    experience_level: str | None = None
    total_experience_years: float | None = None
    compensation_band: str | None = None
    insights: dict[str, Any] = Field(default_factory=dict)
    enriched_at: datetime | None = None


class CVRecord(BaseModel):
    id: str = Field(default_factory=new_id)
    full_name: str | None = None
    headline: str | None = None
    summary: str | None = None
    current_title: str | None = None
    current_company: str | None = None
    contact: ContactInfo = Field(default_factory=ContactInfo)
    experience: list[ExperienceEntry] = Field(default_factory=list)
    education: list[EducationEntry] = Field(default_factory=list)
    skills: Skills = Field(default_factory=Skills)
    keywords: list[str] = Field(default_factory=list)
    source: SourceRef
    additional_sources: list[SourceRef] = Field(default_factory=list)
    raw_payload: dict[str, Any] = Field(default_factory=dict)
    dedup: DedupState = Field(default_factory=DedupState)
    quality: QualityState = Field(default_factory=QualityState)
    enrichment: EnrichmentState = Field(default_factory=EnrichmentState)
    status: RecordStatus = RecordStatus.NEW
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def data_age_days(self, now: datetime | None = None) -> int:
        now = now or utcnow()
        return max(0, (now - self.source.scraped_at).days)

    def is_fresh(self, now: datetime | None = None, fresh_days: int = 30) -> bool:
        return self.data_age_days(now) <= fresh_days

    def has_complete_data(self, threshold: float = 80) -> bool:
        return self.quality.completeness >= threshold

    def field_value(self, path: str) -> Any:
        value: Any = self
        for part in path.split("."):
            if value is None:
                return None
            value = getattr(value, part, None)
        return value


# ----------------------------------------------------------------------
# Jobs
# ----------------------------------------------------------------------
class JobStatus(str, Enum):
    PENDING = "pending"
    QUEUED = "queued"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class SourceRunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (SourceRunStatus.COMPLETED, SourceRunStatus.FAILED, SourceRunStatus.SKIPPED)


class JobType(str, Enum):
    FULL = "full"
    INCREMENTAL = "incremental"
    TARGETED = "targeted"
    REPAIR = "repair"
    VALIDATION = "validation"


class JobPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"


class JobStatistics(BaseModel):
    total_processed: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    duplicates: int = 0
    rate_limited: int = 0
    pages_scraped: int = 0
    avg_response_time: float = 0.0
    response_samples: int = 0

    def record_response(self, response_ms: float) -> None:
        self.response_samples += 1
        n = self.response_samples
        self.avg_response_time = (self.avg_response_time * (n - 1) + response_ms) / n

    def merge(self, other: "JobStatistics") -> None:
        for name in (
            "total_processed",
            "successful",
            "failed",
            "skipped",
            "duplicates",
            "rate_limited",
            "pages_scraped",
        ):
            setattr(self, name, getattr(self, name) + getattr(other, name))
        samples = self.response_samples + other.response_samples
        if samples:
            self.avg_response_time = (
                self.avg_response_time * self.response_samples
                + other.avg_response_time * other.response_samples
            ) / samples
        self.response_samples = samples


class SourceRun(BaseModel):
    source_id: str
    status: SourceRunStatus = SourceRunStatus.PENDING
    statistics: JobStatistics = Field(default_factory=JobStatistics)
    checkpoint_page: int = 0
    total_pages: int = 0
    started_at: datetime | None = None
    completed_at: datetime | None = None
    last_error: str | None = None


class JobProgress(BaseModel):
    current_page: int = 0
    total_pages: int = 0
    percentage: float = 0.0
    eta_seconds: float | None = None
    current_source: str | None = None
    last_activity: datetime | None = None
    page_durations: list[float] = Field(default_factory=list)


class ErrorSummary(BaseModel):
    error_type: str
    count: int = 1
    last_occurred: datetime = Field(default_factory=utcnow)
    sample_message: str | None = None


class StatusChange(BaseModel):
    status: JobStatus
    at: datetime = Field(default_factory=utcnow)


class Job(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str = ""
    type: JobType = JobType.FULL
    priority: JobPriority = JobPriority.NORMAL
    status: JobStatus = JobStatus.PENDING
    previous_status: JobStatus | None = None
    sources: list[SourceRun] = Field(default_factory=list)
    config: JobConfig = Field(default_factory=JobConfig)
    filters: JobFilters = Field(default_factory=JobFilters)
    statistics: JobStatistics = Field(default_factory=JobStatistics)
    progress: JobProgress = Field(default_factory=JobProgress)
    errors: dict[str, ErrorSummary] = Field(default_factory=dict)
    schedule: ScheduleConfig | None = None
    parent_job: str | None = None
    history: list[StatusChange] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    paused_at: datetime | None = None
    resumed_at: datetime | None = None
    cancelled_at: datetime | None = None
    completed_at: datetime | None = None
    active_seconds: float = 0.0

    def source_run(self, source_id: str) -> SourceRun | None:
        return next((run for run in self.sources if run.source_id == source_id), None)

    @property
    def success_rate(self) -> int:
        total = self.statistics.total_processed
        return round(self.statistics.successful / total * 100) if total else 0

    @property
    def failure_rate(self) -> int:
        total = self.statistics.total_processed
        return round(self.statistics.failed / total * 100) if total else 0

    def elapsed_seconds(self, now: datetime | None = None) -> float:
        """Wall-clock time spent running, excluding paused stretches."""

        elapsed = self.active_seconds
        if self.status is JobStatus.RUNNING:
            since = self.resumed_at or self.started_at
            if since is not None:
                elapsed += ((now or utcnow()) - since).total_seconds()
        return elapsed


# ----------------------------------------------------------------------
# Log entries
# ----------------------------------------------------------------------
class LogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    FATAL = "fatal"


class ErrorDetail(BaseModel):
    type: str
    message: str
    status_code: int | None = None
    retryable: bool = False
    stack: str | None = None


class RetryInfo(BaseModel):
    attempt: int
    max_attempts: int
    next_delay: float | None = None


class LogEntry(BaseModel):
    id: str = Field(default_factory=new_id)
    job_id: str | None = None
    source_id: str | None = None
    type: str = "info"
    operation: str
    level: LogLevel = LogLevel.INFO
    message: str = ""
    target: dict[str, Any] = Field(default_factory=dict)
    error: ErrorDetail | None = None
    performance: dict[str, float] = Field(default_factory=dict)
    retry: RetryInfo | None = None
    context: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)
    expires_at: datetime | None = None


# ----------------------------------------------------------------------
# Quality reports
# ----------------------------------------------------------------------
class IssueType(str, Enum):
    MISSING_FIELD = "missing_field"
    INVALID_FORMAT = "invalid_format"
    INCONSISTENT_DATA = "inconsistent_data"
    DUPLICATE_ENTRY = "duplicate_entry"
    STALE_DATA = "stale_data"
    PARSE_ERROR = "parse_error"
    INCOMPLETE_EXTRACTION = "incomplete_extraction"
    OTHER = "other"


class Severity(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    INFO = "info"

    @property
    def rank(self) -> int:
        return list(Severity).index(self)


class IssueStatus(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"


class QualityIssue(BaseModel):
    id: str = Field(default_factory=new_id)
    type: IssueType
    severity: Severity
    field: str | None = None
    source_id: str | None = None
    description: str
    affected_records: int = 0
    examples: list[str] = Field(default_factory=list)
    auto_fixable: bool = False
    status: IssueStatus = IssueStatus.OPEN
    detected_at: datetime = Field(default_factory=utcnow)
    resolved_at: datetime | None = None

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.type.value, self.field or "", self.source_id or "")


class CommonError(BaseModel):
    error: str
    count: int = 0
    examples: list[str] = Field(default_factory=list)


class FieldMetrics(BaseModel):
    field: str
    total_records: int = 0
    filled_records: int = 0
    empty_records: int = 0
    valid_records: int = 0
    invalid_records: int = 0
    completeness: float = 0.0
    accuracy: float = 0.0
    common_errors: list[CommonError] = Field(default_factory=list)


class SourceMetrics(BaseModel):
    source_id: str
    total_records: int = 0
    quality_score: float = 0.0
    completeness: float = 0.0
    accuracy: float = 0.0
    freshness: float = 0.0
    duplicate_rate: float = 0.0
    error_rate: float = 0.0


class OverallMetrics(BaseModel):
    total_records: int = 0
    quality_score: float = 0.0
    completeness: float = 0.0
    accuracy: float = 0.0
    freshness: float = 0.0
    validity: float = 0.0
    duplicate_rate: float = 0.0


class TrendPoint(BaseModel):
    day: date
    quality_score: float
    completeness: float
    accuracy: float
    total_records: int
    total_issues: int


class Recommendation(BaseModel):
    priority: Severity
    category: str
    title: str
    description: str


class ReportScope(BaseModel):
    source_ids: list[str] = Field(default_factory=list)
    date_from: datetime | None = None
    date_to: datetime | None = None


class ReportDelta(BaseModel):
    report_id: str
    baseline_id: str
    quality_change: float
    completeness_change: float
    accuracy_change: float
    freshness_change: float
    record_change: int
    issue_change: int
    issues_resolved: int
    issues_introduced: int


class QualityReport(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str = ""
    report_type: str = "custom"
    scope: ReportScope = Field(default_factory=ReportScope)
    status: str = "completed"
    generated_at: datetime = Field(default_factory=utcnow)
    overall: OverallMetrics = Field(default_factory=OverallMetrics)
    sources: list[SourceMetrics] = Field(default_factory=list)
    fields: list[FieldMetrics] = Field(default_factory=list)
    issues: list[QualityIssue] = Field(default_factory=list)
    trends: list[TrendPoint] = Field(default_factory=list)
    recommendations: list[Recommendation] = Field(default_factory=list)
    comparison: ReportDelta | None = None

    @property
    def open_issues(self) -> list[QualityIssue]:
        return [issue for issue in self.issues if issue.status is IssueStatus.OPEN]

    @property
    def critical_issues(self) -> int:
        return sum(1 for issue in self.open_issues if issue.severity is Severity.CRITICAL)

    @property
    def high_issues(self) -> int:
        return sum(1 for issue in self.open_issues if issue.severity is Severity.HIGH)

    def issue_summary(self) -> dict[str, int]:
        summary = {"total": len(self.issues), "open": 0, "resolved": 0, "auto_fixable": 0}
        summary.update({severity.value: 0 for severity in Severity})
        for issue in self.issues:
            summary[issue.status.value] += 1
            summary[issue.severity.value] += 1
            if issue.auto_fixable:
                summary["auto_fixable"] += 1
        return summary


__all__ = [
    "CVRecord",
    "CommonError",
    "ContactInfo",
    "DedupState",
    "EducationEntry",
    "EnrichmentState",
    "ErrorDetail",
    "ErrorSummary",
    "ExperienceEntry",
    "FieldConflict",
    "FieldMetrics",
    "IssueStatus",
    "IssueType",
    "Job",
    "JobPriority",
    "JobProgress",
    "JobStatistics",
    "JobStatus",
    "JobType",
    "LogEntry",
    "LogLevel",
    "OverallMetrics",
    "QualityIssue",
    "QualityReport",
    "QualityState",
    "Recommendation",
    "RecordStatus",
    "ReportDelta",
    "ReportScope",
    "RetryInfo",
    "Severity",
    "Skills",
    "SourceMetrics",
    "SourceRef",
    "SourceRun",
    "SourceRunStatus",
    "StatusChange",
    "TrendPoint",
    "ValidationIssue",
    "new_id",
    "utcnow",
]
