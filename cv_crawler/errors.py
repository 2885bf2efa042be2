"""Exception hierarchy and failure classification for the pipeline."""

from __future__ import annotations

import httpx


class PipelineError(Exception):
    """Base class for all pipeline failures."""

    error_type = "pipeline_error"


class InvalidTransition(PipelineError):
    error_type = "invalid_transition"

    def __init__(self, job_id: str, current: str, target: str) -> None:
        super().__init__(f"Job {job_id}: cannot move from {current} to {target}")
        self.job_id = job_id
        self.current = current
        self.target = target


class JobNotFound(PipelineError):
    error_type = "job_not_found"


class SourceNotFound(PipelineError):
    error_type = "source_not_found"


class SourceUnavailable(PipelineError):
    error_type = "source_unavailable"


class RecordNotFound(PipelineError):
    error_type = "record_not_found"


class ReportNotFound(PipelineError):
    error_type = "report_not_found"


class RateLimitExceeded(PipelineError):
    error_type = "rate_limited"

    def __init__(self, source_id: str, retry_after: float, reason: str = "budget") -> None:
        super().__init__(f"Rate limit hit for {source_id} ({reason}); retry after {retry_after:.1f}s")
        self.source_id = source_id
        self.retry_after = retry_after
        self.reason = reason


class FetchError(PipelineError):
    """Failure reported by the fetch adapter."""

    error_type = "fetch_error"
    retryable = False

    def __init__(self, message: str, *, status_code: int | None = None, error_type: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        if error_type:
            self.error_type = error_type


class TransientFetchError(FetchError):
    error_type = "transient"
    retryable = True


class PermanentFetchError(FetchError):
    error_type = "permanent"
    retryable = False


class ProxyError(TransientFetchError):
    """The proxy, not the source, failed; rotate and retry."""

    error_type = "proxy_error"


class ExtractionError(PipelineError):
    """A required field could not be parsed out of a payload."""

    error_type = "parse_error"
    retryable = False


_TRANSIENT_STATUS = {408, 425, 429}


def classify_status(status_code: int) -> FetchError | None:
    """Map an HTTP status to the matching fetch error, or None on success."""

    if status_code < 400:
        return None
    if status_code >= 500 or status_code in _TRANSIENT_STATUS:
        return TransientFetchError(
            f"Upstream returned {status_code}",
            status_code=status_code,
            error_type="rate_limited" if status_code == 429 else f"http_{status_code}",
        )
    if status_code in (401, 403):
        kind = "auth_error"
    elif status_code == 404:
        kind = "not_found"
    else:
        kind = f"http_{status_code}"
    return PermanentFetchError(f"Upstream returned {status_code}", status_code=status_code, error_type=kind)


def classify_exception(exc: BaseException) -> FetchError:
    """Wrap transport-level exceptions into retryable/permanent fetch errors."""

    if isinstance(exc, FetchError):
        return exc
    if isinstance(exc, httpx.ProxyError):
        return ProxyError(str(exc) or "proxy failure")
    if isinstance(exc, httpx.TimeoutException):
        return TransientFetchError(str(exc) or "timeout", error_type="timeout")
    if isinstance(exc, (httpx.ConnectError, httpx.ReadError, httpx.RemoteProtocolError)):
        return TransientFetchError(str(exc) or "connection error", error_type="connection_error")
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return TransientFetchError(str(exc) or exc.__class__.__name__, error_type="connection_error")
    return PermanentFetchError(str(exc) or exc.__class__.__name__, error_type=exc.__class__.__name__.lower())


__all__ = [
    "ExtractionError",
    "FetchError",
    "InvalidTransition",
    "JobNotFound",
    "PermanentFetchError",
    "PipelineError",
    "ProxyError",
    "RateLimitExceeded",
    "RecordNotFound",
    "ReportNotFound",
    "SourceNotFound",
    "SourceUnavailable",
    "TransientFetchError",
    "classify_exception",
    "classify_status",
]
