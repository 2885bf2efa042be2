"""Job lifecycle: state machine, per-source sub-status, progress and error aggregation."""

from __future__ import annotations

from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable

import structlog

from ..config import JobConfig, JobFilters, ScheduleConfig
from ..entities import (
    ErrorSummary,
    Job,
    JobPriority,
    JobProgress,
    JobStatistics,
    JobStatus,
    JobType,
    SourceRun,
    SourceRunStatus,
    StatusChange,
    utcnow,
)
from ..errors import InvalidTransition, JobNotFound, PipelineError, SourceNotFound
from ..infra.storage import SQLiteManager
from .logsink import LogSink
from .registry import SourceRegistry

TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.QUEUED, JobStatus.CANCELLED}),
    JobStatus.QUEUED: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED}),
    JobStatus.RUNNING: frozenset(
        {JobStatus.PAUSED, JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
    ),
    JobStatus.PAUSED: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}

ETA_WINDOW = 20


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return target in TRANSITIONS[current]


def overall_status(runs: Iterable[SourceRun], tolerance: float) -> JobStatus:
    """Terminal status of a job from its per-source sub-statuses."""

    runs = list(runs)
    failed = sum(1 for run in runs if run.status is SourceRunStatus.FAILED)
    if not runs or failed == 0:
        return JobStatus.COMPLETED
    return JobStatus.COMPLETED if failed / len(runs) < tolerance else JobStatus.FAILED


class JobController:
    """Persisted job state machine. Every mutation is a load-modify-save transaction."""

    def __init__(
        self,
        storage: SQLiteManager,
        db_path: Path,
        registry: SourceRegistry,
        log_sink: LogSink | None = None,
        defaults: JobConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.storage = storage
        self.db_path = db_path
        self.registry = registry
        self.log_sink = log_sink
        self.defaults = defaults or JobConfig()
        self._clock = clock
        self.logger = structlog.get_logger("cv_crawler.jobs").bind(component="jobs")
        self.storage.connect(db_path)

    # -- creation --------------------------------------------------------
    def create_job(
        self,
        source_ids: Iterable[str],
        config: JobConfig | None = None,
        filters: JobFilters | None = None,
        *,
        name: str = "",
        type: JobType = JobType.FULL,
        priority: JobPriority = JobPriority.NORMAL,
        schedule: ScheduleConfig | None = None,
        tags: Iterable[str] = (),
        parent_job: str | None = None,
    ) -> Job:
        source_ids = list(dict.fromkeys(source_ids))
        if not source_ids:
            raise PipelineError("A job needs at least one source")
        for source_id in source_ids:
            if source_id not in self.registry:
                raise SourceNotFound(f"Unknown source: {source_id}")
        config = config or self.defaults.model_copy()
        now = self._clock()
        job = Job(
            name=name or f"job-{now:%Y%m%d-%H%M%S}",
            type=type,
            priority=priority,
            sources=[SourceRun(source_id=source_id, total_pages=config.max_pages) for source_id in source_ids],
            config=config,
            filters=filters or JobFilters(),
            schedule=schedule,
            parent_job=parent_job,
            tags=list(tags),
            created_at=now,
            history=[StatusChange(status=JobStatus.PENDING, at=now)],
        )
        job.progress.total_pages = sum(run.total_pages for run in job.sources)
        with self.storage.transaction(self.db_path) as conn:
            self._write(conn, job)
        self.logger.info("job_created", job_id=job.id, sources=source_ids, type=type.value)
        return job

    def retry_job(self, job_id: str) -> Job:
        """Queue a child of a failed job that resumes each source from its checkpoint."""

        parent = self.get(job_id)
        if parent.status is not JobStatus.FAILED:
            raise InvalidTransition(job_id, parent.status.value, "retry")
        child = self.create_job(
            [run.source_id for run in parent.sources],
            parent.config.model_copy(),
            parent.filters.model_copy(),
            name=f"{parent.name} (retry)",
            type=parent.type,
            priority=parent.priority,
            tags=parent.tags,
            parent_job=parent.id,
        )

        def inherit(job: Job) -> None:
            for run in job.sources:
                previous = parent.source_run(run.source_id)
                if previous is None:
                    continue
                run.checkpoint_page = previous.checkpoint_page
                if previous.status is SourceRunStatus.COMPLETED:
                    run.status = SourceRunStatus.COMPLETED
                    run.total_pages = previous.total_pages
                    run.statistics = previous.statistics.model_copy()
            self._refresh_progress(job)

        self._mutate(child.id, inherit)
        return self.enqueue(child.id)

    # -- lifecycle -------------------------------------------------------
    def enqueue(self, job_id: str) -> Job:
        return self._mutate(job_id, lambda job: self._transition(job, JobStatus.QUEUED))

    def start(self, job_id: str) -> Job:
        def apply(job: Job) -> None:
            self._transition(job, JobStatus.RUNNING)
            job.started_at = job.started_at or self._clock()

        return self._mutate(job_id, apply)

    def pause(self, job_id: str) -> Job:
        return self._mutate(job_id, lambda job: self._transition(job, JobStatus.PAUSED))

    def resume(self, job_id: str) -> Job:
        def apply(job: Job) -> None:
            if job.status is not JobStatus.PAUSED:
                raise InvalidTransition(job.id, job.status.value, "resume")
            self._transition(job, JobStatus.RUNNING)

        return self._mutate(job_id, apply)

    def cancel(self, job_id: str) -> Job:
        return self._mutate(job_id, lambda job: self._transition(job, JobStatus.CANCELLED))

    def fail(self, job_id: str, error_type: str, message: str) -> Job:
        def apply(job: Job) -> None:
            self._transition(job, JobStatus.FAILED)
            self._add_error(job, error_type, message)

        job = self._mutate(job_id, apply)
        self._log("job_failed", job, error_type=error_type, message=message)
        return job

    def finalize(self, job_id: str) -> Job:
        """Close a running job once every source has reached a terminal sub-status."""

        def apply(job: Job) -> None:
            pending = [run.source_id for run in job.sources if not run.status.is_terminal]
            if pending:
                raise PipelineError(f"Job {job.id} still has unfinished sources: {', '.join(pending)}")
            self._transition(job, overall_status(job.sources, job.config.failure_tolerance))

        job = self._mutate(job_id, apply)
        self._log("job_finished", job, status=job.status.value)
        return job

    def should_continue(self, job_id: str) -> bool:
        """Cooperative checkpoint for workers; enforces wall-clock and error-rate budgets."""

        job = self.get(job_id)
        if job.status is not JobStatus.RUNNING:
            return False
        now = self._clock()
        if job.elapsed_seconds(now) > job.config.timeout:
            self._fail_if_running(job_id, "timeout", f"Job exceeded {job.config.timeout:.0f}s wall-clock budget")
            return False
        stats = job.statistics
        if stats.total_processed >= job.config.min_error_sample and stats.total_processed:
            if stats.failed / stats.total_processed > job.config.max_error_rate:
                self._fail_if_running(
                    job_id,
                    "error_rate_exceeded",
                    f"{stats.failed}/{stats.total_processed} units failed",
                )
                return False
        return True

    # -- per-source progress ---------------------------------------------
    def start_source(self, job_id: str, source_id: str) -> SourceRun:
        def apply(job: Job) -> None:
            run = self._run(job, source_id)
            run.status = SourceRunStatus.RUNNING
            run.started_at = run.started_at or self._clock()
            job.progress.current_source = source_id

        job = self._mutate(job_id, apply)
        return self._run(job, source_id)

    def record_page(
        self,
        job_id: str,
        source_id: str,
        page: int,
        duration: float,
        delta: JobStatistics | None = None,
    ) -> JobProgress:
        """Checkpoint a finished page and fold its statistics into the job."""

        def apply(job: Job) -> None:
            run = self._run(job, source_id)
            run.checkpoint_page = max(run.checkpoint_page, page)
            if delta is not None:
                run.statistics.merge(delta)
                job.statistics.merge(delta)
            job.progress.page_durations = (job.progress.page_durations + [duration])[-ETA_WINDOW:]
            job.progress.current_source = source_id
            job.progress.last_activity = self._clock()
            self._refresh_progress(job)

        return self._mutate(job_id, apply).progress

    def record_stats(self, job_id: str, source_id: str, delta: JobStatistics) -> None:
        def apply(job: Job) -> None:
            self._run(job, source_id).statistics.merge(delta)
            job.statistics.merge(delta)

        self._mutate(job_id, apply)

    def record_error(self, job_id: str, error_type: str, message: str, source_id: str | None = None) -> None:
        def apply(job: Job) -> None:
            self._add_error(job, error_type, message)
            if source_id is not None:
                self._run(job, source_id).last_error = message

        self._mutate(job_id, apply)

    def finish_source(
        self, job_id: str, source_id: str, status: SourceRunStatus, error: str | None = None
    ) -> SourceRun:
        if not status.is_terminal:
            raise PipelineError(f"{status.value} is not a terminal source status")

        def apply(job: Job) -> None:
            run = self._run(job, source_id)
            run.status = status
            run.completed_at = self._clock()
            if error:
                run.last_error = error
            if status is SourceRunStatus.COMPLETED:
                run.total_pages = min(run.total_pages, run.checkpoint_page)
            self._refresh_progress(job)

        job = self._mutate(job_id, apply)
        return self._run(job, source_id)

    # -- queries ---------------------------------------------------------
    def get(self, job_id: str) -> Job:
        with self.storage.transaction(self.db_path) as conn:
            return self._read(conn, job_id)

    def get_progress(self, job_id: str) -> JobProgress:
        return self.get(job_id).progress

    def get_error_summary(self, job_id: str) -> list[ErrorSummary]:
        job = self.get(job_id)
        return sorted(job.errors.values(), key=lambda summary: summary.count, reverse=True)

    def list_jobs(self, status: JobStatus | None = None, limit: int = 50) -> list[Job]:
        sql = "SELECT payload FROM jobs"
        params: list[object] = []
        if status is not None:
            sql += " WHERE status = ?"
            params.append(status.value)
        sql += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)
        with self.storage.transaction(self.db_path) as conn:
            rows = conn.execute(sql, params).fetchall()
        return [Job.model_validate_json(row["payload"]) for row in rows]

    def active_jobs(self) -> list[Job]:
        with self.storage.transaction(self.db_path) as conn:
            rows = conn.execute(
                "SELECT payload FROM jobs WHERE status IN (?, ?, ?) ORDER BY created_at",
                (JobStatus.QUEUED.value, JobStatus.RUNNING.value, JobStatus.PAUSED.value),
            ).fetchall()
        return [Job.model_validate_json(row["payload"]) for row in rows]

    # ------------------------------------------------------------------
    def _transition(self, job: Job, target: JobStatus) -> None:
        if not can_transition(job.status, target):
            raise InvalidTransition(job.id, job.status.value, target.value)
        now = self._clock()
        current = job.status
        if current is JobStatus.RUNNING:
            since = job.resumed_at or job.started_at
            if since is not None:
                job.active_seconds += max(0.0, (now - since).total_seconds())
        if target is JobStatus.PAUSED:
            job.paused_at = now
        elif target is JobStatus.RUNNING and current is JobStatus.PAUSED:
            job.resumed_at = now
        elif target is JobStatus.RUNNING:
            job.resumed_at = None
        elif target is JobStatus.CANCELLED:
            job.cancelled_at = now
        elif target in (JobStatus.COMPLETED, JobStatus.FAILED):
            job.completed_at = now
        job.previous_status = current
        job.status = target
        job.history.append(StatusChange(status=target, at=now))
        self.logger.info("job_transition", job_id=job.id, previous=current.value, current=target.value)

    def _fail_if_running(self, job_id: str, error_type: str, message: str) -> None:
        try:
            self.fail(job_id, error_type, message)
        except InvalidTransition:
            # Another worker or an operator already moved the job on.
            pass

    def _add_error(self, job: Job, error_type: str, message: str) -> None:
        now = self._clock()
        summary = job.errors.get(error_type)
        if summary is None:
            job.errors[error_type] = ErrorSummary(
                error_type=error_type, count=1, last_occurred=now, sample_message=message
            )
        else:
            summary.count += 1
            summary.last_occurred = now

    def _refresh_progress(self, job: Job) -> None:
        progress = job.progress
        progress.total_pages = sum(run.total_pages for run in job.sources)
        progress.current_page = sum(min(run.checkpoint_page, run.total_pages) for run in job.sources)
        if progress.total_pages:
            progress.percentage = round(progress.current_page / progress.total_pages * 100, 2)
        else:
            progress.percentage = 100.0
        remaining = max(0, progress.total_pages - progress.current_page)
        if progress.page_durations:
            average = sum(progress.page_durations) / len(progress.page_durations)
            progress.eta_seconds = round(average * remaining, 2)
        else:
            progress.eta_seconds = None

    def _run(self, job: Job, source_id: str) -> SourceRun:
        run = job.source_run(source_id)
        if run is None:
            raise SourceNotFound(f"Job {job.id} does not include source {source_id}")
        return run

    def _mutate(self, job_id: str, apply: Callable[[Job], None]) -> Job:
        with self.storage.transaction(self.db_path, immediate=True) as conn:
            job = self._read(conn, job_id)
            apply(job)
            self._write(conn, job)
        return job

    def _read(self, conn, job_id: str) -> Job:
        row = conn.execute("SELECT payload FROM jobs WHERE id = ?", (job_id,)).fetchone()
        if row is None:
            raise JobNotFound(f"Unknown job: {job_id}")
        return Job.model_validate_json(row["payload"])

    def _write(self, conn, job: Job) -> None:
        conn.execute(
            "INSERT OR REPLACE INTO jobs(id, status, priority, parent_job, created_at, payload) VALUES (?, ?, ?, ?, ?, ?)",
            (
                job.id,
                job.status.value,
                job.priority.value,
                job.parent_job,
                job.created_at.astimezone(timezone.utc).isoformat(),
                job.model_dump_json(),
            ),
        )

    def _log(self, operation: str, job: Job, **context: object) -> None:
        if self.log_sink is not None:
            self.log_sink.log(operation, f"Job {job.id} is {job.status.value}", job_id=job.id, context=context)


__all__ = ["ETA_WINDOW", "JobController", "TRANSITIONS", "can_transition", "overall_status"]
