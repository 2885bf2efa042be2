"""Engine components: sources, jobs, dedup, quality scoring, logs and reports."""

from .adapters import ExtractedCandidate, FetchResult, HttpFetcher, JsonExtractor, candidate_to_record
from .dedup import DedupDecision, DedupEngine, MatchResult, ReviewItem
from .jobs import JobController
from .logsink import LogSink
from .quality import QualityScorer
from .record_store import RecordPage, RecordQuery, RecordStore
from .registry import HealthStatus, Permit, SourceRegistry, SourceState, SourceStatus
from .reports import ReportGenerator
from .thread_pool import ThreadPoolManager

__all__ = [
    "DedupDecision",
    "DedupEngine",
    "ExtractedCandidate",
    "FetchResult",
    "HealthStatus",
    "HttpFetcher",
    "JobController",
    "JsonExtractor",
    "LogSink",
    "MatchResult",
    "Permit",
    "QualityScorer",
    "RecordPage",
    "RecordQuery",
    "RecordStore",
    "ReportGenerator",
    "ReviewItem",
    "SourceRegistry",
    "SourceState",
    "SourceStatus",
    "ThreadPoolManager",
    "candidate_to_record",
]
