"""Configuration package exports."""

from .loader import ConfigLocator, ConfigRepository
from .models import (
    DEFAULT_COMPLETENESS_WEIGHTS,
    ConflictPolicy,
    DedupConfig,
    GlobalConfig,
    HealthConfig,
    JobConfig,
    JobFilters,
    MaintenanceWindow,
    ProxyConfig,
    ProxyRotation,
    QualityConfig,
    RateLimitPolicy,
    ReportConfig,
    RetentionConfig,
    ScheduleConfig,
    ScheduleType,
    SourceConfig,
    SourceType,
)

__all__ = [
    "ConfigLocator",
    "ConfigRepository",
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
