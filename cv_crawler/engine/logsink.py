"""Append-only structured event log with level-based retention."""

from __future__ import annotations

import traceback
from collections import Counter
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable

import structlog

from ..config import RetentionConfig
from ..entities import ErrorDetail, LogEntry, LogLevel, RetryInfo, utcnow
from ..errors import FetchError, PipelineError
from ..infra.storage import SQLiteManager

_SHORT_LIVED = (LogLevel.DEBUG, LogLevel.INFO)


def _iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def error_detail(exc: BaseException, include_stack: bool = True) -> ErrorDetail:
    """Describe an exception the way log entries store it."""

    if isinstance(exc, PipelineError):
        error_type = exc.error_type
    else:
        error_type = exc.__class__.__name__
    stack = None
    if include_stack and exc.__traceback__ is not None:
        stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    return ErrorDetail(
        type=error_type,
        message=str(exc) or exc.__class__.__name__,
        status_code=getattr(exc, "status_code", None),
        retryable=bool(getattr(exc, "retryable", False)),
        stack=stack,
    )


class LogSink:
    """Persist one LogEntry per pipeline step and expire them per retention policy."""

    def __init__(
        self,
        storage: SQLiteManager,
        db_path: Path,
        retention: RetentionConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.storage = storage
        self.db_path = db_path
        self.retention = retention or RetentionConfig()
        self._clock = clock
        self.logger = structlog.get_logger("cv_crawler.logsink")
        self.storage.connect(db_path)

    # ------------------------------------------------------------------
    def append(self, entry: LogEntry) -> LogEntry:
        if entry.expires_at is None:
            days = self.retention.short_days if entry.level in _SHORT_LIVED else self.retention.long_days
            entry.expires_at = entry.timestamp + timedelta(days=days)
        with self.storage.transaction(self.db_path) as conn:
            conn.execute(
                "INSERT INTO log_entries(id, job_id, source_id, operation, level, type, error_type, timestamp, expires_at, payload)"
                " VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    entry.id,
                    entry.job_id,
                    entry.source_id,
                    entry.operation,
                    entry.level.value,
                    entry.type,
                    entry.error.type if entry.error else None,
                    _iso(entry.timestamp),
                    _iso(entry.expires_at),
                    entry.model_dump_json(),
                ),
            )
        self.logger.debug(
            "log_entry",
            operation=entry.operation,
            level=entry.level.value,
            job_id=entry.job_id,
            source=entry.source_id,
            message=entry.message,
        )
        return entry

    def log(
        self,
        operation: str,
        message: str = "",
        *,
        level: LogLevel = LogLevel.INFO,
        job_id: str | None = None,
        source_id: str | None = None,
        type: str | None = None,
        target: dict[str, Any] | None = None,
        error: BaseException | ErrorDetail | None = None,
        performance: dict[str, float] | None = None,
        retry: RetryInfo | None = None,
        context: dict[str, Any] | None = None,
    ) -> LogEntry:
        if isinstance(error, BaseException):
            error = error_detail(error)
        entry = LogEntry(
            job_id=job_id,
            source_id=source_id,
            type=type or ("error" if error else level.value),
            operation=operation,
            level=level,
            message=message,
            target=target or {},
            error=error,
            performance=performance or {},
            retry=retry,
            context=context or {},
            timestamp=self._clock(),
        )
        return self.append(entry)

    # -- per-step helpers ------------------------------------------------
    def request(self, job_id: str | None, source_id: str, url: str, proxy: str | None = None) -> LogEntry:
        return self.log(
            "fetch",
            f"GET {url}",
            level=LogLevel.DEBUG,
            job_id=job_id,
            source_id=source_id,
            type="request",
            target={"url": url},
            context={"proxy": proxy} if proxy else None,
        )

    def response(
        self, job_id: str | None, source_id: str, url: str, status_code: int, response_ms: float
    ) -> LogEntry:
        return self.log(
            "fetch",
            f"{status_code} {url}",
            job_id=job_id,
            source_id=source_id,
            type="response",
            target={"url": url},
            performance={"response_ms": response_ms},
            context={"status_code": status_code},
        )

    def error(
        self,
        operation: str,
        exc: BaseException,
        *,
        job_id: str | None = None,
        source_id: str | None = None,
        target: dict[str, Any] | None = None,
        retry: RetryInfo | None = None,
    ) -> LogEntry:
        retryable = isinstance(exc, FetchError) and exc.retryable
        return self.log(
            operation,
            str(exc) or exc.__class__.__name__,
            level=LogLevel.WARN if retryable and retry is not None else LogLevel.ERROR,
            job_id=job_id,
            source_id=source_id,
            target=target,
            error=exc,
            retry=retry,
        )

    def retry(
        self, job_id: str | None, source_id: str, url: str, exc: BaseException, info: RetryInfo
    ) -> LogEntry:
        return self.log(
            "retry",
            f"Retrying {url} after {exc.__class__.__name__}",
            level=LogLevel.WARN,
            job_id=job_id,
            source_id=source_id,
            type="retry",
            target={"url": url},
            error=error_detail(exc, include_stack=False),
            retry=info,
        )

    def extraction(
        self, job_id: str | None, source_id: str, url: str, extracted: int, missing: list[str] | None = None
    ) -> LogEntry:
        if missing:
            return self.log(
                "extract",
                f"Extracted {extracted} candidates, missing {', '.join(missing)}",
                level=LogLevel.WARN,
                job_id=job_id,
                source_id=source_id,
                type="incomplete_extraction",
                target={"url": url},
                error=ErrorDetail(type="incomplete_extraction", message=", ".join(missing)),
                context={"extracted": extracted},
            )
        return self.log(
            "extract",
            f"Extracted {extracted} candidates",
            job_id=job_id,
            source_id=source_id,
            type="extraction",
            target={"url": url},
            context={"extracted": extracted},
        )

    def dedup_decision(
        self,
        job_id: str | None,
        source_id: str,
        record_id: str,
        action: str,
        canonical_id: str | None = None,
        confidence: float | None = None,
    ) -> LogEntry:
        return self.log(
            "dedup",
            f"{action} {record_id}",
            job_id=job_id,
            source_id=source_id,
            type="dedup",
            target={"record_id": record_id},
            context={"action": action, "canonical_id": canonical_id, "confidence": confidence},
        )

    def proxy_switch(
        self, job_id: str | None, source_id: str, previous: str | None, current: str | None, reason: str
    ) -> LogEntry:
        return self.log(
            "proxy_switch",
            f"{previous or 'direct'} -> {current or 'direct'} ({reason})",
            level=LogLevel.WARN,
            job_id=job_id,
            source_id=source_id,
            type="proxy_switch",
            context={"previous": previous, "current": current, "reason": reason},
        )

    def rate_limit(self, job_id: str | None, source_id: str, retry_after: float, reason: str) -> LogEntry:
        return self.log(
            "rate_limit",
            f"Rate limited ({reason}); retry after {retry_after:.1f}s",
            level=LogLevel.WARN,
            job_id=job_id,
            source_id=source_id,
            type="rate_limit",
            performance={"retry_after": retry_after},
            context={"reason": reason},
        )

    # -- queries ---------------------------------------------------------
    def search(
        self,
        *,
        job_id: str | None = None,
        source_id: str | None = None,
        level: LogLevel | None = None,
        operation: str | None = None,
        error_type: str | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int | None = 100,
    ) -> list[LogEntry]:
        clauses: list[str] = []
        params: list[Any] = []
        for column, value in (
            ("job_id", job_id),
            ("source_id", source_id),
            ("level", level.value if level else None),
            ("operation", operation),
            ("error_type", error_type),
        ):
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)
        if since is not None:
            clauses.append("timestamp >= ?")
            params.append(_iso(since))
        if until is not None:
            clauses.append("timestamp <= ?")
            params.append(_iso(until))
        sql = "SELECT payload FROM log_entries"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY timestamp DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        with self.storage.transaction(self.db_path) as conn:
            rows = conn.execute(sql, params).fetchall()
        return [LogEntry.model_validate_json(row["payload"]) for row in rows]

    def by_job(self, job_id: str, level: LogLevel | None = None, limit: int | None = 100) -> list[LogEntry]:
        return self.search(job_id=job_id, level=level, limit=limit)

    def count(self, **filters: Any) -> int:
        return len(self.search(limit=None, **filters))

    def error_summary(self, job_id: str) -> list[dict[str, Any]]:
        """Group a job's error entries by error type, newest sample first."""

        grouped: dict[str, dict[str, Any]] = {}
        for entry in self.search(job_id=job_id, limit=None):
            if entry.error is None:
                continue
            bucket = grouped.get(entry.error.type)
            if bucket is None:
                grouped[entry.error.type] = {
                    "error_type": entry.error.type,
                    "count": 1,
                    "last_seen": entry.timestamp,
                    "sample_message": entry.error.message,
                }
            else:
                bucket["count"] += 1
        return sorted(grouped.values(), key=lambda item: item["count"], reverse=True)

    def performance_stats(self, job_id: str) -> dict[str, float]:
        samples = [
            entry.performance["response_ms"]
            for entry in self.search(job_id=job_id, operation="fetch", limit=None)
            if "response_ms" in entry.performance
        ]
        if not samples:
            return {"requests": 0, "avg_response_ms": 0.0, "min_response_ms": 0.0, "max_response_ms": 0.0}
        return {
            "requests": len(samples),
            "avg_response_ms": round(sum(samples) / len(samples), 2),
            "min_response_ms": min(samples),
            "max_response_ms": max(samples),
        }

    def statistics(self, since: datetime | None = None, until: datetime | None = None) -> dict[str, Any]:
        entries = self.search(since=since, until=until, limit=None)
        by_level = Counter(entry.level.value for entry in entries)
        by_operation = Counter(entry.operation for entry in entries)
        by_source = Counter(entry.source_id for entry in entries if entry.source_id)
        errors = sum(by_level[level.value] for level in (LogLevel.ERROR, LogLevel.FATAL))
        return {
            "total": len(entries),
            "errors": errors,
            "error_rate": round(errors / len(entries) * 100, 2) if entries else 0.0,
            "by_level": dict(by_level),
            "by_operation": dict(by_operation),
            "by_source": dict(by_source),
        }

    def purge_expired(self, now: datetime | None = None) -> int:
        cutoff = _iso(now or self._clock())
        with self.storage.transaction(self.db_path) as conn:
            cursor = conn.execute("DELETE FROM log_entries WHERE expires_at <= ?", (cutoff,))
            removed = cursor.rowcount
        if removed:
            self.logger.info("log_entries_purged", removed=removed)
        return removed


__all__ = ["LogSink", "error_detail"]
