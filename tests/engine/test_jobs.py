from __future__ import annotations

import pytest

from cv_crawler.config import JobConfig
from cv_crawler.entities import JobStatistics, JobStatus, SourceRunStatus
from cv_crawler.errors import InvalidTransition, PipelineError, SourceNotFound


@pytest.fixture
def three_sources(registry, sample_source_config) -> list[str]:
    ids = ["alpha", "beta", "gamma"]
    for source_id in ids:
        registry.register(sample_source_config(source_id=source_id))
    return ids


def _running(jobs, source_ids, **config):
    job = jobs.create_job(source_ids, JobConfig(**config) if config else None)
    jobs.enqueue(job.id)
    return jobs.start(job.id)


def test_create_job_starts_pending(jobs, three_sources) -> None:
    job = jobs.create_job(three_sources, JobConfig(max_pages=4))
    assert job.status is JobStatus.PENDING
    assert [run.source_id for run in job.sources] == three_sources
    assert job.progress.total_pages == 12
    assert jobs.get(job.id).id == job.id


def test_create_job_rejects_unknown_source(jobs, three_sources) -> None:
    with pytest.raises(SourceNotFound):
        jobs.create_job(["alpha", "nowhere"])
    with pytest.raises(PipelineError):
        jobs.create_job([])


def test_lifecycle_walks_the_state_machine(jobs, three_sources) -> None:
    job = _running(jobs, three_sources)
    assert job.status is JobStatus.RUNNING
    assert jobs.pause(job.id).status is JobStatus.PAUSED
    assert jobs.resume(job.id).status is JobStatus.RUNNING
    cancelled = jobs.cancel(job.id)
    assert cancelled.status is JobStatus.CANCELLED
    assert cancelled.previous_status is JobStatus.RUNNING
    assert [change.status for change in cancelled.history] == [
        JobStatus.PENDING,
        JobStatus.QUEUED,
        JobStatus.RUNNING,
        JobStatus.PAUSED,
        JobStatus.RUNNING,
        JobStatus.CANCELLED,
    ]


def test_invalid_transition_leaves_job_untouched(jobs, three_sources) -> None:
    job = jobs.create_job(three_sources)
    with pytest.raises(InvalidTransition):
        jobs.start(job.id)
    jobs.enqueue(job.id)
    jobs.cancel(job.id)
    before = jobs.get(job.id)
    with pytest.raises(InvalidTransition):
        jobs.resume(job.id)
    after = jobs.get(job.id)
    assert after.status is JobStatus.CANCELLED
    assert len(after.history) == len(before.history)


def test_resume_requires_paused(jobs, three_sources) -> None:
    job = _running(jobs, three_sources)
    with pytest.raises(InvalidTransition):
        jobs.resume(job.id)


def test_one_failed_source_within_tolerance_completes(jobs, three_sources) -> None:
    job = _running(jobs, three_sources, failure_tolerance=0.5)
    jobs.finish_source(job.id, "alpha", SourceRunStatus.FAILED, error="auth_error")
    jobs.finish_source(job.id, "beta", SourceRunStatus.COMPLETED)
    jobs.finish_source(job.id, "gamma", SourceRunStatus.COMPLETED)
    finished = jobs.finalize(job.id)
    assert finished.status is JobStatus.COMPLETED
    assert finished.source_run("alpha").status is SourceRunStatus.FAILED
    assert finished.source_run("alpha").last_error == "auth_error"
    assert finished.completed_at is not None


def test_too_many_failed_sources_fail_the_job(jobs, three_sources) -> None:
    job = _running(jobs, three_sources, failure_tolerance=0.5)
    jobs.finish_source(job.id, "alpha", SourceRunStatus.FAILED)
    jobs.finish_source(job.id, "beta", SourceRunStatus.FAILED)
    jobs.finish_source(job.id, "gamma", SourceRunStatus.COMPLETED)
    assert jobs.finalize(job.id).status is JobStatus.FAILED


def test_finalize_waits_for_every_source(jobs, three_sources) -> None:
    job = _running(jobs, three_sources)
    jobs.finish_source(job.id, "alpha", SourceRunStatus.COMPLETED)
    with pytest.raises(PipelineError):
        jobs.finalize(job.id)
    assert jobs.get(job.id).status is JobStatus.RUNNING


def test_progress_and_eta(jobs, three_sources) -> None:
    job = _running(jobs, ["alpha"], max_pages=10)
    jobs.start_source(job.id, "alpha")
    jobs.record_page(job.id, "alpha", 1, 2.0, JobStatistics(total_processed=5, successful=5, pages_scraped=1))
    progress = jobs.record_page(job.id, "alpha", 2, 4.0, JobStatistics(total_processed=5, successful=4, failed=1))
    assert progress.current_page == 2
    assert progress.percentage == 20.0
    assert progress.eta_seconds == pytest.approx(24.0)
    assert progress.current_source == "alpha"

    current = jobs.get(job.id)
    assert current.statistics.total_processed == 10
    assert current.success_rate == 90
    assert current.source_run("alpha").checkpoint_page == 2

    jobs.finish_source(job.id, "alpha", SourceRunStatus.COMPLETED)
    assert jobs.get_progress(job.id).percentage == 100.0


def test_retry_job_resumes_from_checkpoints(jobs, three_sources) -> None:
    job = _running(jobs, three_sources, failure_tolerance=0.2)
    jobs.record_page(job.id, "alpha", 3, 1.0)
    jobs.finish_source(job.id, "alpha", SourceRunStatus.FAILED)
    jobs.record_page(job.id, "beta", 2, 1.0)
    jobs.finish_source(job.id, "beta", SourceRunStatus.COMPLETED)
    jobs.finish_source(job.id, "gamma", SourceRunStatus.SKIPPED)
    assert jobs.finalize(job.id).status is JobStatus.FAILED

    child = jobs.retry_job(job.id)
    assert child.parent_job == job.id
    assert child.status is JobStatus.QUEUED
    assert child.source_run("alpha").checkpoint_page == 3
    assert child.source_run("alpha").status is SourceRunStatus.PENDING
    assert child.source_run("beta").status is SourceRunStatus.COMPLETED
    assert child.source_run("gamma").status is SourceRunStatus.PENDING


def test_retry_requires_failed_job(jobs, three_sources) -> None:
    job = _running(jobs, three_sources)
    with pytest.raises(InvalidTransition):
        jobs.retry_job(job.id)


def test_should_continue_enforces_timeout(jobs, three_sources, clock) -> None:
    job = _running(jobs, three_sources, timeout=60.0)
    clock.advance(seconds=30)
    assert jobs.should_continue(job.id)
    clock.advance(seconds=31)
    assert not jobs.should_continue(job.id)
    failed = jobs.get(job.id)
    assert failed.status is JobStatus.FAILED
    assert "timeout" in failed.errors


def test_paused_time_does_not_count_towards_timeout(jobs, three_sources, clock) -> None:
    job = _running(jobs, three_sources, timeout=60.0)
    clock.advance(seconds=30)
    jobs.pause(job.id)
    assert not jobs.should_continue(job.id)
    clock.advance(hours=2)
    jobs.resume(job.id)
    clock.advance(seconds=20)
    assert jobs.should_continue(job.id)


def test_should_continue_enforces_error_rate(jobs, three_sources) -> None:
    job = _running(jobs, three_sources, max_error_rate=0.5, min_error_sample=20)
    jobs.record_stats(job.id, "alpha", JobStatistics(total_processed=10, failed=9))
    assert jobs.should_continue(job.id)
    jobs.record_stats(job.id, "alpha", JobStatistics(total_processed=10, failed=5))
    assert not jobs.should_continue(job.id)
    assert "error_rate_exceeded" in jobs.get(job.id).errors


def test_error_summary_is_grouped_by_type(jobs, three_sources) -> None:
    job = _running(jobs, three_sources)
    jobs.record_error(job.id, "timeout", "read timed out", source_id="alpha")
    jobs.record_error(job.id, "timeout", "read timed out again", source_id="beta")
    jobs.record_error(job.id, "parse_error", "missing name")
    summary = jobs.get_error_summary(job.id)
    assert [(item.error_type, item.count) for item in summary] == [("timeout", 2), ("parse_error", 1)]
    assert summary[0].sample_message == "read timed out"
    assert jobs.get(job.id).source_run("beta").last_error == "read timed out again"


def test_list_jobs_filters_by_status(jobs, three_sources, clock) -> None:
    first = jobs.create_job(["alpha"])
    clock.advance(seconds=1)
    second = jobs.create_job(["beta"])
    jobs.enqueue(second.id)
    assert [job.id for job in jobs.list_jobs()] == [second.id, first.id]
    assert [job.id for job in jobs.list_jobs(status=JobStatus.PENDING)] == [first.id]
    assert [job.id for job in jobs.active_jobs()] == [second.id]
