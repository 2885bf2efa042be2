"""Typer CLI entrypoint for the CV crawler."""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Sequence

import typer
from typer import BadParameter
from rich import box
from rich.console import Console
from rich.table import Table

from .config import ConfigRepository, GlobalConfig, JobConfig, JobFilters, ScheduleConfig, ScheduleType
from .engine import (
    DedupEngine,
    HttpFetcher,
    JobController,
    LogSink,
    QualityScorer,
    RecordQuery,
    RecordStore,
    ReportGenerator,
    SourceRegistry,
    ThreadPoolManager,
)
from .entities import CVRecord, Job, JobStatus, LogEntry, LogLevel, QualityReport, RecordStatus, ReportScope
from .errors import PipelineError
from .infra import SQLiteManager
from .logging_conf import configure_logging, log_path, tail_log
from .orchestrator import Orchestrator
from .scheduler import APSchedulerAdapter

app = typer.Typer(help="CV crawler command line tool", no_args_is_help=True, rich_markup_mode=None)
source_app = typer.Typer(name="source", help="Source management", no_args_is_help=True, rich_markup_mode=None)
job_app = typer.Typer(name="job", help="Job lifecycle commands", no_args_is_help=True, rich_markup_mode=None)
records_app = typer.Typer(name="records", help="Query stored CV records", no_args_is_help=True, rich_markup_mode=None)
dedup_app = typer.Typer(name="dedup", help="Duplicate review queue", no_args_is_help=True, rich_markup_mode=None)
report_app = typer.Typer(name="report", help="Quality reports", no_args_is_help=True, rich_markup_mode=None)
log_app = typer.Typer(name="log", help="Pipeline log stream", no_args_is_help=True, rich_markup_mode=None)
scheduler_app = typer.Typer(name="scheduler", help="Recurring work", no_args_is_help=True, rich_markup_mode=None)

console = Console()


@dataclass
class AppState:
    repository: ConfigRepository
    global_config: GlobalConfig
    storage: SQLiteManager
    registry: SourceRegistry
    jobs: JobController
    store: RecordStore
    scorer: QualityScorer
    dedup: DedupEngine
    log_sink: LogSink
    reports: ReportGenerator
    scheduler: APSchedulerAdapter
    orchestrator: Orchestrator


def build_state(verbose: bool) -> AppState:
    configure_logging(verbose=verbose)
    repository = ConfigRepository()
    global_config = repository.load_global_config()
    storage = SQLiteManager()
    db_path = repository.database_path()

    log_sink = LogSink(storage, db_path, global_config.retention)
    registry = SourceRegistry(storage, db_path, global_config.health, repository.list_sources())
    jobs = JobController(storage, db_path, registry, log_sink, global_config.job_defaults)
    store = RecordStore(storage, db_path)
    scorer = QualityScorer(global_config.quality)
    dedup = DedupEngine(store, global_config.dedup, log_sink, refresh=scorer.process)
    reports = ReportGenerator(storage, db_path, store, scorer, log_sink, global_config.reports)
    scheduler = APSchedulerAdapter()
    orchestrator = Orchestrator(
        global_config,
        registry,
        jobs,
        store,
        dedup,
        scorer,
        log_sink,
        reports,
        fetcher=HttpFetcher(timeout=global_config.job_defaults.request_timeout),
        thread_pool=ThreadPoolManager(global_config.thread_pool_workers),
        scheduler=scheduler,
    )
    return AppState(
        repository=repository,
        global_config=global_config,
        storage=storage,
        registry=registry,
        jobs=jobs,
        store=store,
        scorer=scorer,
        dedup=dedup,
        log_sink=log_sink,
        reports=reports,
        scheduler=scheduler,
        orchestrator=orchestrator,
    )


def _get_state(ctx: typer.Context) -> AppState:
    state = ctx.obj
    if state is None:
        state = build_state(verbose=False)
        ctx.obj = state
    return state


def _abort(exc: Exception) -> None:
    console.print(f"Error: {exc}", style="red")
    raise typer.Exit(code=1)


def _parse_datetime_option(value: Optional[str], option_name: str) -> datetime | None:
    if value is None:
        return None
    text = value.strip()
    normalized = text[:-1] + "+00:00" if text.endswith("Z") else text
    try:
        candidate = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise BadParameter(f"{option_name} expects an ISO8601 timestamp, e.g. 2024-10-14T08:00+00:00") from exc
    if candidate.tzinfo is None:
        return candidate.replace(tzinfo=timezone.utc)
    return candidate.astimezone(timezone.utc)


def _format_ts(value: datetime | None) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S") if value else "-"


# -- renderers -----------------------------------------------------------
def _render_sources_table(state: AppState) -> Table:
    sources = state.registry.sources()
    table = Table(title=f"Sources · {len(sources)} registered", box=box.SIMPLE_HEAD)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Type", style="magenta")
    table.add_column("Status", style="green")
    table.add_column("Health", style="yellow")
    table.add_column("Priority", justify="right")
    table.add_column("Success %", justify="right")
    for source in sources:
        source_state = state.registry.state(source.source_id)
        table.add_row(
            source.source_id,
            source.type.value,
            source_state.status.value,
            source_state.health.status.value,
            str(source.priority),
            str(source_state.statistics.success_rate),
        )
    return table


def _render_jobs_table(jobs: Sequence[Job]) -> Table:
    table = Table(title="Jobs", box=box.SIMPLE_HEAD)
    table.add_column("Job ID", style="cyan", no_wrap=True)
    table.add_column("Name")
    table.add_column("Status", style="green")
    table.add_column("Sources", overflow="fold")
    table.add_column("Progress", justify="right")
    table.add_column("Created", style="dim")
    for job in jobs:
        table.add_row(
            job.id,
            job.name,
            job.status.value,
            ", ".join(f"{run.source_id}:{run.status.value}" for run in job.sources),
            f"{job.progress.percentage:.1f}%",
            _format_ts(job.created_at),
        )
    return table


def _render_records_table(records: Iterable[CVRecord], title: str) -> Table:
    table = Table(title=title, box=box.SIMPLE_HEAD)
    table.add_column("Record ID", style="cyan", no_wrap=True)
    table.add_column("Name")
    table.add_column("Email")
    table.add_column("Level", style="magenta")
    table.add_column("Quality", justify="right")
    table.add_column("Status", style="green")
    table.add_column("Source", style="dim")
    for record in records:
        table.add_row(
            record.id,
            record.full_name or "-",
            record.contact.email or "-",
            record.enrichment.experience_level or "-",
            f"{record.quality.overall_score:.1f}",
            record.status.value,
            record.source.source_id,
        )
    return table


def _render_report(report: QualityReport) -> None:
    overall = report.overall
    summary = Table(title=f"{report.name} · {report.id}", box=box.SIMPLE_HEAD)
    summary.add_column("Metric", style="cyan")
    summary.add_column("Value", justify="right")
    summary.add_row("Records", str(overall.total_records))
    summary.add_row("Quality score", f"{overall.quality_score:.2f}")
    summary.add_row("Completeness", f"{overall.completeness:.2f}")
    summary.add_row("Accuracy", f"{overall.accuracy:.2f}")
    summary.add_row("Freshness", f"{overall.freshness:.2f}")
    summary.add_row("Validity", f"{overall.validity:.2f}")
    summary.add_row("Duplicate rate", f"{overall.duplicate_rate:.2f}")
    summary.add_row("Critical issues", str(report.critical_issues))
    summary.add_row("High issues", str(report.high_issues))
    console.print(summary)
    if report.issues:
        issues = Table(title="Issues", box=box.SIMPLE_HEAD)
        issues.add_column("Issue ID", style="dim", no_wrap=True)
        issues.add_column("Type", style="magenta")
        issues.add_column("Severity", style="red")
        issues.add_column("Field")
        issues.add_column("Source")
        issues.add_column("Affected", justify="right")
        issues.add_column("Status", style="green")
        for issue in report.issues:
            issues.add_row(
                issue.id,
                issue.type.value,
                issue.severity.value,
                issue.field or "-",
                issue.source_id or "-",
                str(issue.affected_records),
                issue.status.value,
            )
        console.print(issues)
    for recommendation in report.recommendations:
        console.print(f"[{recommendation.priority.value}] {recommendation.title}: {recommendation.description}")


def _render_log_entries(entries: Iterable[LogEntry]) -> Table:
    table = Table(title="Log entries", box=box.SIMPLE_HEAD)
    table.add_column("Time", style="dim", no_wrap=True)
    table.add_column("Level", style="yellow")
    table.add_column("Operation", style="magenta")
    table.add_column("Source")
    table.add_column("Message", overflow="fold")
    for entry in entries:
        table.add_row(
            _format_ts(entry.timestamp), entry.level.value, entry.operation, entry.source_id or "-", entry.message
        )
    return table


app.add_typer(source_app, name="source")
app.add_typer(job_app, name="job")
app.add_typer(records_app, name="records")
app.add_typer(dedup_app, name="dedup")
app.add_typer(report_app, name="report")
app.add_typer(log_app, name="log")
app.add_typer(scheduler_app, name="scheduler")


@app.callback()
def main(
    ctx: typer.Context, verbose: bool = typer.Option(False, "--verbose", help="Enable debug logging", is_flag=True)
) -> None:
    ctx.obj = build_state(verbose)


# -- source ----------------------------------------------------------------
@source_app.command("list", help="List registered sources with status and health.")
def source_list(ctx: typer.Context) -> None:
    state = _get_state(ctx)
    if not state.registry.sources():
        console.print("No sources configured. Add YAML files under data/sources/.", style="yellow")
        raise typer.Exit(code=0)
    console.print(_render_sources_table(state))


@source_app.command("health", help="Run a heartbeat against one or all sources.")
def source_health(ctx: typer.Context, source_id: Optional[str] = typer.Argument(None)) -> None:
    state = _get_state(ctx)
    try:
        if source_id:
            health = state.registry.health_check(source_id, state.orchestrator.fetcher.probe)
            results = {source_id: health.status.value}
        else:
            results = state.orchestrator.health_check_all()
    except PipelineError as exc:
        _abort(exc)
    table = Table(title="Health", box=box.SIMPLE_HEAD)
    table.add_column("Source", style="cyan")
    table.add_column("Health", style="yellow")
    table.add_column("Response ms", justify="right")
    table.add_column("Error", overflow="fold")
    for key, status in results.items():
        health = state.registry.state(key).health
        table.add_row(key, status, f"{health.response_time or 0:.0f}", health.error_message or "-")
    console.print(table)


@source_app.command("enable", help="Enable a source.")
def source_enable(ctx: typer.Context, source_id: str) -> None:
    state = _get_state(ctx)
    try:
        source_state = state.registry.set_enabled(source_id, True)
    except PipelineError as exc:
        _abort(exc)
    console.print(f"{source_id} is {source_state.status.value}", style="green")


@source_app.command("disable", help="Disable (pause) a source.")
def source_disable(ctx: typer.Context, source_id: str) -> None:
    state = _get_state(ctx)
    try:
        source_state = state.registry.set_enabled(source_id, False)
    except PipelineError as exc:
        _abort(exc)
    console.print(f"{source_id} is {source_state.status.value}", style="yellow")


# -- job -------------------------------------------------------------------
@job_app.command("create", help="Create a job against one or more sources.")
def job_create(
    ctx: typer.Context,
    sources: List[str] = typer.Option(..., "--source", "-s", help="Source id; repeat for several."),
    name: str = typer.Option("", "--name", help="Job name."),
    max_pages: Optional[int] = typer.Option(None, "--max-pages", help="Pages per source."),
    max_results: Optional[int] = typer.Option(None, "--max-results", help="Stop a source after N records."),
    skills: List[str] = typer.Option([], "--skill", help="Only keep records with this skill."),
    levels: List[str] = typer.Option([], "--level", help="Only keep this experience level."),
    cron: Optional[str] = typer.Option(None, "--cron", help="Recurring cron expression."),
    interval: Optional[float] = typer.Option(None, "--interval", help="Recurring interval in seconds."),
    run: bool = typer.Option(False, "--run", help="Run the job right away.", is_flag=True),
) -> None:
    state = _get_state(ctx)
    overrides = {"max_pages": max_pages, "max_results": max_results}
    config = JobConfig.model_validate(
        {**state.global_config.job_defaults.model_dump(), **{k: v for k, v in overrides.items() if v is not None}}
    )
    schedule = None
    if cron:
        schedule = ScheduleConfig(type=ScheduleType.CRON, value=cron)
    elif interval:
        schedule = ScheduleConfig(type=ScheduleType.INTERVAL, value=interval)
    try:
        job = state.jobs.create_job(
            sources,
            config,
            JobFilters(skills=skills, experience_levels=levels),
            name=name,
            schedule=schedule,
        )
        console.print(f"Created job {job.id}", style="green")
        if run:
            job = state.orchestrator.run_job(job.id)
            console.print(f"Job {job.id} finished as {job.status.value}")
    except PipelineError as exc:
        _abort(exc)


@job_app.command("run", help="Run (or resume) a job until it finishes.")
def job_run(ctx: typer.Context, job_id: str) -> None:
    state = _get_state(ctx)
    try:
        job = state.orchestrator.run_job(job_id)
    except PipelineError as exc:
        _abort(exc)
    console.print(_render_jobs_table([job]))


@job_app.command("pause", help="Pause a running job.")
def job_pause(ctx: typer.Context, job_id: str) -> None:
    state = _get_state(ctx)
    try:
        job = state.jobs.pause(job_id)
    except PipelineError as exc:
        _abort(exc)
    console.print(f"Job {job.id} is {job.status.value}")


@job_app.command("resume", help="Resume a paused job.")
def job_resume(ctx: typer.Context, job_id: str) -> None:
    state = _get_state(ctx)
    try:
        job = state.jobs.resume(job_id)
    except PipelineError as exc:
        _abort(exc)
    console.print(f"Job {job.id} is {job.status.value}")


@job_app.command("cancel", help="Cancel a job.")
def job_cancel(ctx: typer.Context, job_id: str) -> None:
    state = _get_state(ctx)
    try:
        job = state.jobs.cancel(job_id)
    except PipelineError as exc:
        _abort(exc)
    console.print(f"Job {job.id} is {job.status.value}")


@job_app.command("retry", help="Queue a retry of a failed job from its checkpoints.")
def job_retry(ctx: typer.Context, job_id: str) -> None:
    state = _get_state(ctx)
    try:
        job = state.jobs.retry_job(job_id)
    except PipelineError as exc:
        _abort(exc)
    console.print(f"Queued retry {job.id} for {job_id}", style="green")


@job_app.command("progress", help="Show job progress.")
def job_progress(ctx: typer.Context, job_id: str) -> None:
    state = _get_state(ctx)
    try:
        job = state.jobs.get(job_id)
    except PipelineError as exc:
        _abort(exc)
    progress = job.progress
    eta = f"{progress.eta_seconds:.0f}s" if progress.eta_seconds is not None else "-"
    console.print(
        f"{job.id} [{job.status.value}] {progress.current_page}/{progress.total_pages} pages "
        f"({progress.percentage:.1f}%), ETA {eta}"
    )
    table = Table(box=box.SIMPLE_HEAD)
    table.add_column("Source", style="cyan")
    table.add_column("Status", style="green")
    table.add_column("Checkpoint", justify="right")
    table.add_column("Records", justify="right")
    table.add_column("Last error", overflow="fold")
    for run in job.sources:
        table.add_row(
            run.source_id,
            run.status.value,
            f"{run.checkpoint_page}/{run.total_pages}",
            str(run.statistics.successful),
            run.last_error or "-",
        )
    console.print(table)


@job_app.command("errors", help="Show the aggregated error summary of a job.")
def job_errors(ctx: typer.Context, job_id: str) -> None:
    state = _get_state(ctx)
    try:
        summaries = state.jobs.get_error_summary(job_id)
    except PipelineError as exc:
        _abort(exc)
    if not summaries:
        console.print("No errors recorded.", style="dim")
        return
    table = Table(title=f"Errors · {job_id}", box=box.SIMPLE_HEAD)
    table.add_column("Type", style="red")
    table.add_column("Count", justify="right")
    table.add_column("Last seen", style="dim")
    table.add_column("Sample", overflow="fold")
    for summary in summaries:
        table.add_row(summary.error_type, str(summary.count), _format_ts(summary.last_occurred), summary.sample_message)
    console.print(table)


@job_app.command("list", help="List jobs, newest first.")
def job_list(
    ctx: typer.Context,
    status: Optional[JobStatus] = typer.Option(None, "--status", help="Filter by status."),
    limit: int = typer.Option(50, "--limit"),
) -> None:
    state = _get_state(ctx)
    jobs = state.jobs.list_jobs(status, limit)
    if not jobs:
        console.print("No jobs yet.", style="dim")
        return
    console.print(_render_jobs_table(jobs))


# -- records -----------------------------------------------------------------
@records_app.command("query", help="Page through stored records.")
def records_query(
    ctx: typer.Context,
    status: Optional[RecordStatus] = typer.Option(None, "--status"),
    level: Optional[str] = typer.Option(None, "--level", help="Experience level."),
    skills: List[str] = typer.Option([], "--skill"),
    min_quality: Optional[float] = typer.Option(None, "--min-quality"),
    date_from: Optional[str] = typer.Option(None, "--from", help="ISO8601 start of the scrape window."),
    date_to: Optional[str] = typer.Option(None, "--to", help="ISO8601 end of the scrape window."),
    page: int = typer.Option(1, "--page"),
    page_size: int = typer.Option(20, "--page-size"),
) -> None:
    state = _get_state(ctx)
    query = RecordQuery(
        status=status,
        experience_level=level,
        skills=skills,
        min_quality=min_quality,
        date_from=_parse_datetime_option(date_from, "--from"),
        date_to=_parse_datetime_option(date_to, "--to"),
        page=page,
        page_size=page_size,
    )
    result = state.store.query_records(query)
    if not result.items:
        console.print("No records match.", style="dim")
        return
    console.print(_render_records_table(result.items, f"Records · page {result.page}/{result.pages} · {result.total} total"))


# -- dedup -------------------------------------------------------------------
@dedup_app.command("reviews", help="List open duplicate reviews.")
def dedup_reviews(ctx: typer.Context, limit: int = typer.Option(50, "--limit")) -> None:
    state = _get_state(ctx)
    reviews = state.dedup.pending_reviews(limit)
    if not reviews:
        console.print("Review queue is empty.", style="dim")
        return
    table = Table(title="Pending reviews", box=box.SIMPLE_HEAD)
    table.add_column("Record", style="cyan", no_wrap=True)
    table.add_column("Candidate", style="magenta", no_wrap=True)
    table.add_column("Confidence", justify="right")
    table.add_column("Matched on")
    for review in reviews:
        table.add_row(review.record_id, review.candidate_id, f"{review.confidence:.2f}", ", ".join(review.match_fields))
    console.print(table)


@dedup_app.command("resolve", help="Merge or dismiss a flagged record.")
def dedup_resolve(
    ctx: typer.Context,
    record_id: str,
    merge: bool = typer.Option(True, "--merge/--dismiss", help="Merge into the candidate or keep separate."),
) -> None:
    state = _get_state(ctx)
    try:
        record = state.dedup.resolve_review(record_id, merge)
    except PipelineError as exc:
        _abort(exc)
    console.print(f"{'Merged' if merge else 'Dismissed'}: {record.id}", style="green")


# -- report ------------------------------------------------------------------
@report_app.command("generate", help="Generate a quality report.")
def report_generate(
    ctx: typer.Context,
    sources: List[str] = typer.Option([], "--source", "-s"),
    report_type: str = typer.Option("custom", "--type"),
    name: Optional[str] = typer.Option(None, "--name"),
    date_from: Optional[str] = typer.Option(None, "--from"),
    date_to: Optional[str] = typer.Option(None, "--to"),
) -> None:
    state = _get_state(ctx)
    scope = ReportScope(
        source_ids=sources,
        date_from=_parse_datetime_option(date_from, "--from"),
        date_to=_parse_datetime_option(date_to, "--to"),
    )
    report = state.reports.generate(scope, report_type=report_type, name=name)
    _render_report(report)


@report_app.command("compare", help="Compare a report against a baseline.")
def report_compare(ctx: typer.Context, report_id: str, baseline_id: str) -> None:
    state = _get_state(ctx)
    try:
        delta = state.reports.compare(report_id, baseline_id)
    except PipelineError as exc:
        _abort(exc)
    table = Table(title=f"{report_id} vs {baseline_id}", box=box.SIMPLE_HEAD)
    table.add_column("Metric", style="cyan")
    table.add_column("Change", justify="right")
    for key, value in delta.model_dump(exclude={"report_id", "baseline_id"}).items():
        table.add_row(key, f"{value:+}")
    console.print(table)


@report_app.command("show", help="Show a report (latest when no id is given).")
def report_show(ctx: typer.Context, report_id: Optional[str] = typer.Argument(None)) -> None:
    state = _get_state(ctx)
    try:
        report = state.reports.get(report_id) if report_id else state.reports.latest()
    except PipelineError as exc:
        _abort(exc)
    if report is None:
        console.print("No reports generated yet.", style="dim")
        return
    _render_report(report)


@report_app.command("trends", help="Daily quality trend over recent reports.")
def report_trends(
    ctx: typer.Context,
    days: int = typer.Option(30, "--days"),
    sources: List[str] = typer.Option([], "--source", "-s"),
) -> None:
    state = _get_state(ctx)
    points = state.reports.trends(days, sources)
    if not points:
        console.print("No reports in range.", style="dim")
        return
    table = Table(title=f"Trends · last {days} days", box=box.SIMPLE_HEAD)
    table.add_column("Day", style="cyan")
    table.add_column("Quality", justify="right")
    table.add_column("Completeness", justify="right")
    table.add_column("Accuracy", justify="right")
    table.add_column("Records", justify="right")
    table.add_column("Issues", justify="right")
    for point in points:
        table.add_row(
            point.day.isoformat(),
            f"{point.quality_score:.2f}",
            f"{point.completeness:.2f}",
            f"{point.accuracy:.2f}",
            str(point.total_records),
            str(point.total_issues),
        )
    console.print(table)


# -- log ---------------------------------------------------------------------
@log_app.command("show", help="Search the structured log stream, or tail a log file.")
def log_show(
    ctx: typer.Context,
    job_id: Optional[str] = typer.Option(None, "--job"),
    source_id: Optional[str] = typer.Option(None, "--source"),
    level: Optional[LogLevel] = typer.Option(None, "--level"),
    limit: int = typer.Option(100, "--limit"),
    file: bool = typer.Option(False, "--file", help="Tail the JSON log file instead.", is_flag=True),
) -> None:
    state = _get_state(ctx)
    if file:
        path = log_path(source_id)
        lines = tail_log(path, limit)
        if not lines:
            console.print("No log lines yet.", style="dim")
            return
        console.print("".join(lines))
        return
    entries = state.log_sink.search(job_id=job_id, source_id=source_id, level=level, limit=limit)
    if not entries:
        console.print("No log entries match.", style="dim")
        return
    console.print(_render_log_entries(entries))


@log_app.command("purge", help="Delete log entries past their retention.")
def log_purge(ctx: typer.Context) -> None:
    state = _get_state(ctx)
    removed = state.log_sink.purge_expired()
    console.print(f"Purged {removed} expired log entries.")


# -- scheduler -----------------------------------------------------------------
@scheduler_app.command("start", help="Start the scheduler and block until interrupted.")
def scheduler_start(ctx: typer.Context) -> None:
    state = _get_state(ctx)
    state.orchestrator.register_schedules()
    table = Table(title="Scheduled entries", box=box.SIMPLE_HEAD)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Next run", style="green")
    table.add_column("Trigger", style="magenta", overflow="fold")
    for entry in state.scheduler.list_jobs():
        table.add_row(str(entry["id"]), str(entry["next_run_time"] or "-"), str(entry["trigger"]))
    console.print(table)
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        console.print("Stopping scheduler...", style="yellow")
    finally:
        state.orchestrator.shutdown()


def cli() -> None:
    app()


if __name__ == "__main__":  # pragma: no cover
    cli()
