"""Job orchestrator wiring sources, fetch/extract, scoring, dedup and progress together."""

from __future__ import annotations

import time
from concurrent.futures import Future, as_completed
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

import structlog

from .config import GlobalConfig, JobFilters, SourceConfig
from .engine import (
    DedupEngine,
    JobController,
    LogSink,
    QualityScorer,
    RecordStore,
    ReportGenerator,
    SourceRegistry,
    ThreadPoolManager,
    candidate_to_record,
)
from .engine.adapters import Extractor, FetchResult, Fetcher, JsonExtractor
from .engine.normalize import clean_record
from .entities import (
    CVRecord,
    Job,
    JobStatistics,
    JobStatus,
    ReportScope,
    RetryInfo,
    SourceRunStatus,
    utcnow,
)
from .errors import (
    ExtractionError,
    FetchError,
    InvalidTransition,
    PipelineError,
    RateLimitExceeded,
    SourceUnavailable,
)
from .logging_conf import source_logger


@dataclass(slots=True)
class PageOutcome:
    """Result of fetching and ingesting one page of a source."""

    statistics: JobStatistics
    extracted: int


def matches_filters(record: CVRecord, filters: JobFilters) -> bool:
    """True when an enriched record satisfies every populated job filter."""

    keywords = set(record.keywords)
    if filters.skills and not keywords & {skill.strip().lower() for skill in filters.skills}:
        return False
    if filters.experience_levels and record.enrichment.experience_level not in filters.experience_levels:
        return False
    if filters.locations:
        location = (record.contact.location or "").lower()
        if not any(wanted.lower() in location for wanted in filters.locations):
            return False
    if filters.keywords:
        text = " ".join(
            part for part in (record.headline, record.summary, record.current_title, *record.keywords) if part
        ).lower()
        if not any(keyword.lower() in text for keyword in filters.keywords):
            return False
    scraped = record.source.scraped_at.date()
    if filters.date_from and scraped < filters.date_from:
        return False
    if filters.date_to and scraped > filters.date_to:
        return False
    return True


class Orchestrator:
    """Central coordinator running jobs source by source with checkpoints."""

    def __init__(
        self,
        global_config: GlobalConfig,
        registry: SourceRegistry,
        jobs: JobController,
        store: RecordStore,
        dedup: DedupEngine,
        scorer: QualityScorer,
        log_sink: LogSink,
        reports: ReportGenerator,
        fetcher: Fetcher,
        extractor: Extractor | None = None,
        thread_pool: ThreadPoolManager | None = None,
        scheduler=None,
        clock: Callable[[], datetime] = utcnow,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.global_config = global_config
        self.registry = registry
        self.jobs = jobs
        self.store = store
        self.dedup = dedup
        self.scorer = scorer
        self.log_sink = log_sink
        self.reports = reports
        self.fetcher = fetcher
        self.extractor = extractor or JsonExtractor()
        self.thread_pool = thread_pool or ThreadPoolManager(global_config.thread_pool_workers)
        self.scheduler = scheduler
        self._clock = clock
        self._monotonic = monotonic
        self._sleep = sleep
        self.logger = structlog.get_logger("cv_crawler.orchestrator").bind(component="orchestrator")

    # -- jobs ------------------------------------------------------------
    def run_job(self, job_id: str) -> Job:
        """Drive a job to completion, resuming any source from its checkpoint."""

        job = self.jobs.get(job_id)
        if job.status is JobStatus.PENDING:
            job = self.jobs.enqueue(job_id)
        if job.status is JobStatus.QUEUED:
            job = self.jobs.start(job_id)
        elif job.status is JobStatus.PAUSED:
            job = self.jobs.resume(job_id)
        elif job.status is not JobStatus.RUNNING:
            raise InvalidTransition(job_id, job.status.value, JobStatus.RUNNING.value)

        self.logger.info("job_started", job_id=job_id, sources=[run.source_id for run in job.sources])
        futures: list[Future[None]] = []
        for run in job.sources:
            if run.status.is_terminal:
                continue
            executor = self.thread_pool.get(run.source_id)
            futures.append(executor.submit(self._run_source, job_id, run.source_id))
        for future in as_completed(futures):
            future.result()

        job = self.jobs.get(job_id)
        if job.status is JobStatus.RUNNING and all(run.status.is_terminal for run in job.sources):
            job = self.jobs.finalize(job_id)
        self.logger.info("job_returned", job_id=job_id, status=job.status.value)
        return job

    def run_job_async(self, job_id: str) -> Future[Job]:
        return self.thread_pool.get().submit(self.run_job, job_id)

    def run_scheduled(self, template_id: str) -> Job:
        """Spawn and run one occurrence of a recurring job template."""

        template = self.jobs.get(template_id)
        child = self.jobs.create_job(
            [run.source_id for run in template.sources],
            template.config.model_copy(),
            template.filters.model_copy(),
            name=f"{template.name} @ {self._clock():%Y-%m-%d %H:%M}",
            type=template.type,
            priority=template.priority,
            tags=template.tags,
            parent_job=template.id,
        )
        return self.run_job(child.id)

    # -- per source ------------------------------------------------------
    def _run_source(self, job_id: str, source_id: str) -> None:
        source = self.registry.get(source_id)
        log = source_logger(source_id)
        run = self.jobs.start_source(job_id, source_id)
        job = self.jobs.get(job_id)
        collected = run.statistics.successful
        page = run.checkpoint_page + 1
        log.info("source_started", job_id=job_id, from_page=page, total_pages=run.total_pages)
        while page <= run.total_pages:
            if not self.jobs.should_continue(job_id):
                log.info("source_interrupted", job_id=job_id, page=page)
                return
            remaining = None
            if job.config.max_results is not None:
                remaining = job.config.max_results - collected
            started = self._monotonic()
            try:
                outcome = self._process_page(job, source, page, remaining)
            except SourceUnavailable as exc:
                self._stop_source(job_id, source_id, SourceRunStatus.SKIPPED, exc)
                return
            except RateLimitExceeded as exc:
                self.log_sink.rate_limit(job_id, source_id, exc.retry_after, exc.reason)
                self.jobs.record_stats(job_id, source_id, JobStatistics(rate_limited=1))
                self._stop_source(job_id, source_id, SourceRunStatus.SKIPPED, exc)
                return
            except PipelineError as exc:
                self._stop_source(job_id, source_id, SourceRunStatus.FAILED, exc)
                return
            duration = self._monotonic() - started
            self.jobs.record_page(job_id, source_id, page, duration, outcome.statistics)
            collected += outcome.statistics.successful
            log.info(
                "page_finished",
                job_id=job_id,
                page=page,
                extracted=outcome.extracted,
                successful=outcome.statistics.successful,
                duplicates=outcome.statistics.duplicates,
            )
            if outcome.extracted == 0:
                break
            if job.config.max_results is not None and collected >= job.config.max_results:
                break
            page += 1
        self.jobs.finish_source(job_id, source_id, SourceRunStatus.COMPLETED)
        log.info("source_completed", job_id=job_id, records=collected)

    def _stop_source(self, job_id: str, source_id: str, status: SourceRunStatus, exc: PipelineError) -> None:
        message = str(exc) or exc.__class__.__name__
        self.jobs.record_error(job_id, exc.error_type, message, source_id=source_id)
        self.jobs.finish_source(job_id, source_id, status, error=message)
        source_logger(source_id).warning(
            "source_stopped", job_id=job_id, status=status.value, error_type=exc.error_type, error=message
        )

    def _process_page(self, job: Job, source: SourceConfig, page: int, remaining: int | None) -> PageOutcome:
        url = source.page_url(page)
        result = self._fetch_with_retry(job, source, url)
        stats = JobStatistics(pages_scraped=1)
        stats.record_response(result.elapsed_ms)
        try:
            candidates = self.extractor.extract(result.text, source.selectors)
        except ExtractionError as exc:
            self.log_sink.error("extract", exc, job_id=job.id, source_id=source.source_id, target={"url": url})
            self.jobs.record_error(job.id, exc.error_type, str(exc), source_id=source.source_id)
            stats.total_processed += 1
            stats.failed += 1
            return PageOutcome(stats, extracted=0)

        wanted = {target for target in source.selectors if target not in JsonExtractor.RESERVED}
        found = set().union(*(candidate.fields for candidate in candidates)) if candidates else set()
        missing = sorted(wanted - found) if candidates else []
        self.log_sink.extraction(job.id, source.source_id, url, len(candidates), missing)

        for candidate in candidates:
            if remaining is not None and stats.successful >= remaining:
                break
            stats.total_processed += 1
            try:
                record = candidate_to_record(candidate, source.source_id, result.url, scraped_at=self._clock())
            except ExtractionError as exc:
                stats.failed += 1
                self.log_sink.error("extract", exc, job_id=job.id, source_id=source.source_id, target={"url": url})
                self.jobs.record_error(job.id, exc.error_type, str(exc), source_id=source.source_id)
                continue
            clean_record(record)
            self.scorer.process(record)
            if not matches_filters(record, job.filters):
                stats.skipped += 1
                continue
            decision = self.dedup.resolve(record, job.id)
            if decision.action == "merged":
                stats.duplicates += 1
            stats.successful += 1
        return PageOutcome(stats, extracted=len(candidates))

    def _fetch_with_retry(self, job: Job, source: SourceConfig, url: str) -> FetchResult:
        attempts = job.config.retry_attempts
        failed_proxy: str | None = None
        for attempt in range(1, attempts + 1):
            permit = self.registry.acquire(source.source_id)
            if failed_proxy is not None and permit.proxy_key != failed_proxy:
                self.log_sink.proxy_switch(job.id, source.source_id, failed_proxy, permit.proxy_key, "proxy_failure")
            failed_proxy = None
            self.log_sink.request(job.id, source.source_id, url, permit.proxy_key)
            try:
                result = self.fetcher.fetch(
                    url, source.request_headers, permit.proxy, timeout=job.config.request_timeout
                )
            except FetchError as exc:
                self.registry.record_outcome(source.source_id, False, error=str(exc) or exc.error_type)
                if permit.proxy_key is not None and exc.retryable:
                    self.registry.record_proxy_outcome(source.source_id, permit.proxy_key, False)
                    failed_proxy = permit.proxy_key
                if not exc.retryable or attempt == attempts:
                    self.log_sink.error("fetch", exc, job_id=job.id, source_id=source.source_id, target={"url": url})
                    raise
                delay = job.config.retry_delay * 2 ** (attempt - 1)
                self.log_sink.retry(
                    job.id,
                    source.source_id,
                    url,
                    exc,
                    RetryInfo(attempt=attempt, max_attempts=attempts, next_delay=delay),
                )
                self.jobs.record_error(job.id, exc.error_type, str(exc), source_id=source.source_id)
                self._sleep(delay)
                continue
            self.registry.record_outcome(source.source_id, True, result.elapsed_ms)
            if permit.proxy_key is not None:
                self.registry.record_proxy_outcome(source.source_id, permit.proxy_key, True, result.elapsed_ms)
            self.log_sink.response(job.id, source.source_id, url, result.status_code, result.elapsed_ms)
            return result
        raise PipelineError(f"No fetch attempt was made for {url}")

    # -- maintenance -----------------------------------------------------
    def health_check_all(self) -> dict[str, str]:
        """Heartbeat every registered source without touching its request budget."""

        results: dict[str, str] = {}
        for source in self.registry.sources():
            health = self.registry.health_check(source.source_id, self.fetcher.probe)  # type: ignore[attr-defined]
            results[source.source_id] = health.status.value
        self.logger.info("health_checks_finished", results=results)
        return results

    def rescore_records(self) -> int:
        return self.scorer.rescore_all(self.store)

    def purge_logs(self) -> int:
        return self.log_sink.purge_expired()

    def generate_scheduled_report(self) -> str:
        report = self.reports.generate(ReportScope(), report_type="daily", name=f"daily-{self._clock():%Y-%m-%d}")
        return report.id

    def register_schedules(self) -> None:
        """Register recurring jobs, reports, re-scoring, log purging and heartbeats."""

        if self.scheduler is None:
            raise PipelineError("No scheduler configured")
        config = self.global_config
        self.scheduler.schedule_task("reports", config.reports.schedule, self.generate_scheduled_report)
        self.scheduler.schedule_interval("rescore", config.rescore_interval, self.rescore_records)
        self.scheduler.schedule_interval("log-purge", config.log_purge_interval, self.purge_logs)
        self.scheduler.schedule_interval("health", config.health.check_interval, self.health_check_all)
        for job in self.jobs.list_jobs(status=JobStatus.PENDING, limit=1000):
            if job.schedule is not None:
                self.scheduler.schedule_job(job.id, job.schedule, self.run_scheduled)
        self.scheduler.start()

    def shutdown(self) -> None:
        if self.scheduler is not None:
            self.scheduler.shutdown()
        self.thread_pool.shutdown(wait=True)
        close = getattr(self.fetcher, "close", None)
        if close is not None:
            close()


__all__ = ["Orchestrator", "PageOutcome", "matches_filters"]
