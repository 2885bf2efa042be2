from __future__ import annotations

from datetime import timedelta

from cv_crawler.entities import LogLevel, RetryInfo
from cv_crawler.errors import PermanentFetchError, TransientFetchError


def test_retention_depends_on_level(log_sink, clock) -> None:
    info = log_sink.log("fetch", "ok")
    error = log_sink.log("fetch", "boom", level=LogLevel.ERROR)
    assert info.expires_at == clock() + timedelta(days=7)
    assert error.expires_at == clock() + timedelta(days=30)


def test_purge_removes_only_expired_entries(log_sink, clock) -> None:
    log_sink.log("fetch", "debug detail", level=LogLevel.DEBUG)
    log_sink.log("fetch", "failure", level=LogLevel.ERROR)
    clock.advance(days=8)
    assert log_sink.purge_expired() == 1
    remaining = log_sink.search()
    assert [entry.level for entry in remaining] == [LogLevel.ERROR]
    clock.advance(days=30)
    assert log_sink.purge_expired() == 1
    assert log_sink.search() == []


def test_error_entries_carry_details(log_sink) -> None:
    exc = PermanentFetchError("Upstream returned 403", status_code=403, error_type="auth_error")
    entry = log_sink.error("fetch", exc, job_id="job-1", source_id="portal", target={"url": "https://x"})
    assert entry.level is LogLevel.ERROR
    assert entry.error.type == "auth_error"
    assert entry.error.status_code == 403
    assert entry.error.retryable is False


def test_retry_entries_are_warnings(log_sink) -> None:
    exc = TransientFetchError("timed out", error_type="timeout")
    entry = log_sink.retry("job-1", "portal", "https://x", exc, RetryInfo(attempt=1, max_attempts=3, next_delay=5.0))
    assert entry.level is LogLevel.WARN
    assert entry.retry.next_delay == 5.0
    assert entry.error.retryable is True


def test_incomplete_extraction_is_flagged(log_sink) -> None:
    entry = log_sink.extraction("job-1", "portal", "https://x", 3, missing=["contact.email"])
    assert entry.type == "incomplete_extraction"
    assert entry.level is LogLevel.WARN
    assert log_sink.extraction("job-1", "portal", "https://x", 3).type == "extraction"


def test_search_filters_and_orders_newest_first(log_sink, clock) -> None:
    log_sink.request("job-1", "portal", "https://x/1")
    clock.advance(seconds=1)
    log_sink.response("job-1", "portal", "https://x/1", 200, 120.0)
    clock.advance(seconds=1)
    log_sink.request("job-2", "board", "https://y/1")

    job_entries = log_sink.by_job("job-1")
    assert [entry.type for entry in job_entries] == ["response", "request"]
    assert log_sink.count(source_id="board") == 1
    assert log_sink.count(level=LogLevel.DEBUG) == 2
    assert len(log_sink.search(since=clock() - timedelta(seconds=1))) == 2


def test_error_summary_groups_by_type(log_sink) -> None:
    for _ in range(3):
        log_sink.error("fetch", TransientFetchError("timed out", error_type="timeout"), job_id="job-1")
    log_sink.error("extract", PermanentFetchError("bad payload", error_type="parse_error"), job_id="job-1")
    log_sink.log("fetch", "fine", job_id="job-1")

    summary = log_sink.error_summary("job-1")
    assert [(item["error_type"], item["count"]) for item in summary] == [("timeout", 3), ("parse_error", 1)]


def test_performance_and_statistics(log_sink) -> None:
    log_sink.response("job-1", "portal", "https://x/1", 200, 100.0)
    log_sink.response("job-1", "portal", "https://x/2", 200, 300.0)
    log_sink.error("fetch", PermanentFetchError("gone", error_type="not_found"), job_id="job-1", source_id="portal")

    perf = log_sink.performance_stats("job-1")
    assert perf["requests"] == 2
    assert perf["avg_response_ms"] == 200.0

    stats = log_sink.statistics()
    assert stats["total"] == 3
    assert stats["errors"] == 1
    assert stats["by_source"] == {"portal": 3}
