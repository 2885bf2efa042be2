"""Quality report generation, comparison, trends and issue tracking."""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Iterable

import structlog

from ..config import ReportConfig
from ..entities import (
    CommonError,
    CVRecord,
    FieldMetrics,
    IssueStatus,
    IssueType,
    LogLevel,
    OverallMetrics,
    QualityIssue,
    QualityReport,
    Recommendation,
    RecordStatus,
    ReportDelta,
    ReportScope,
    Severity,
    SourceMetrics,
    TrendPoint,
    utcnow,
)
from ..errors import PipelineError, ReportNotFound
from ..infra.storage import SQLiteManager
from .aggregation import mean, percentage, weighted_average
from .logsink import LogSink
from .quality import QualityScorer, is_present, validate_field
from .record_store import RecordStore

EXAMPLE_LIMIT = 5
AUTO_FIXABLE_FIELDS = {"contact.email", "contact.phone", "full_name"}


def _bump(severity: Severity) -> Severity:
    order = list(Severity)
    return order[max(0, order.index(severity) - 1)]


class ReportGenerator:
    """Aggregate records and log entries into persisted quality reports."""

    def __init__(
        self,
        storage: SQLiteManager,
        db_path: Path,
        store: RecordStore,
        scorer: QualityScorer,
        log_sink: LogSink | None = None,
        config: ReportConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.storage = storage
        self.db_path = db_path
        self.store = store
        self.scorer = scorer
        self.log_sink = log_sink
        self.config = config or ReportConfig()
        self._clock = clock
        self.logger = structlog.get_logger("cv_crawler.reports").bind(component="reports")
        self.storage.connect(db_path)

    # ------------------------------------------------------------------
    def generate(
        self,
        scope: ReportScope | None = None,
        report_type: str = "custom",
        name: str | None = None,
        compare_with_previous: bool = True,
    ) -> QualityReport:
        scope = scope or ReportScope()
        now = self._clock()
        records = list(
            self.store.iter_records(
                source_ids=scope.source_ids or None,
                date_from=scope.date_from,
                date_to=scope.date_to,
            )
        )
        live = [record for record in records if record.status is not RecordStatus.DUPLICATE]
        duplicates = len(records) - len(live)

        report = QualityReport(
            name=name or f"Quality Report {now.isoformat(timespec='seconds')}",
            report_type=report_type,
            scope=scope,
            generated_at=now,
        )
        report.fields = self._field_metrics(live)
        report.sources = self._source_metrics(records, scope, now)
        report.overall = self._overall_metrics(report, len(live), duplicates, len(records))
        report.issues = self._detect_issues(report, live, duplicates, scope, now)
        report.recommendations = self._recommendations(report)

        previous = self.latest(report_type) if compare_with_previous else None
        history = self.list_reports(since=now - timedelta(days=self.config.trend_days))
        report.trends = self._trend_points([*history, report])
        if previous is not None:
            report.comparison = self._delta(report, previous)
        self._save(report)
        self.logger.info(
            "report_generated",
            report_id=report.id,
            records=report.overall.total_records,
            issues=len(report.issues),
            quality=report.overall.quality_score,
        )
        return report

    def compare(self, report_id: str, baseline_id: str) -> ReportDelta:
        return self._delta(self.get(report_id), self.get(baseline_id))

    def trends(self, days: int | None = None, source_ids: Iterable[str] = ()) -> list[TrendPoint]:
        since = self._clock() - timedelta(days=days or self.config.trend_days)
        wanted = set(source_ids)
        reports = [
            report
            for report in self.list_reports(since=since)
            if not wanted or wanted.intersection(report.scope.source_ids)
        ]
        return self._trend_points(reports)

    def resolve_issue(self, report_id: str, issue_id: str) -> QualityReport:
        report = self.get(report_id)
        issue = next((item for item in report.issues if item.id == issue_id), None)
        if issue is None:
            raise PipelineError(f"Issue {issue_id} not found in report {report_id}")
        if issue.status is IssueStatus.OPEN:
            issue.status = IssueStatus.RESOLVED
            issue.resolved_at = self._clock()
            self._save(report)
        return report

    def get(self, report_id: str) -> QualityReport:
        with self.storage.transaction(self.db_path) as conn:
            row = conn.execute("SELECT payload FROM quality_reports WHERE id = ?", (report_id,)).fetchone()
        if row is None:
            raise ReportNotFound(f"Unknown report: {report_id}")
        return QualityReport.model_validate_json(row["payload"])

    def latest(self, report_type: str | None = None) -> QualityReport | None:
        sql = "SELECT payload FROM quality_reports"
        params: tuple[str, ...] = ()
        if report_type:
            sql += " WHERE report_type = ?"
            params = (report_type,)
        with self.storage.transaction(self.db_path) as conn:
            row = conn.execute(sql + " ORDER BY generated_at DESC LIMIT 1", params).fetchone()
        return QualityReport.model_validate_json(row["payload"]) if row else None

    def list_reports(self, since: datetime | None = None, limit: int | None = None) -> list[QualityReport]:
        sql = "SELECT payload FROM quality_reports"
        params: list[object] = []
        if since is not None:
            sql += " WHERE generated_at >= ?"
            params.append(since.astimezone(timezone.utc).isoformat())
        sql += " ORDER BY generated_at"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        with self.storage.transaction(self.db_path) as conn:
            rows = conn.execute(sql, params).fetchall()
        return [QualityReport.model_validate_json(row["payload"]) for row in rows]

    # -- metrics ---------------------------------------------------------
    def _field_metrics(self, records: list[CVRecord]) -> list[FieldMetrics]:
        metrics: list[FieldMetrics] = []
        for path in self.scorer.config.completeness_weights:
            entry = FieldMetrics(field=path, total_records=len(records))
            errors: dict[str, CommonError] = {}
            for record in records:
                value = record.field_value(path)
                if not is_present(value):
                    entry.empty_records += 1
                    continue
                entry.filled_records += 1
                message = validate_field(path, value)
                if message is None:
                    entry.valid_records += 1
                    continue
                entry.invalid_records += 1
                bucket = errors.setdefault(message, CommonError(error=message))
                bucket.count += 1
                if len(bucket.examples) < EXAMPLE_LIMIT:
                    bucket.examples.append(record.id)
            entry.completeness = percentage(entry.filled_records, entry.total_records)
            entry.accuracy = percentage(entry.valid_records, entry.filled_records)
            entry.common_errors = sorted(errors.values(), key=lambda item: item.count, reverse=True)
            metrics.append(entry)
        return metrics

    def _source_metrics(self, records: list[CVRecord], scope: ReportScope, now: datetime) -> list[SourceMetrics]:
        grouped: dict[str, list[CVRecord]] = defaultdict(list)
        for record in records:
            grouped[record.source.source_id].append(record)
        metrics: list[SourceMetrics] = []
        for source_id in sorted(grouped):
            group = grouped[source_id]
            live = [record for record in group if record.status is not RecordStatus.DUPLICATE]
            metrics.append(
                SourceMetrics(
                    source_id=source_id,
                    total_records=len(live),
                    quality_score=mean(record.quality.overall_score for record in live),
                    completeness=mean(record.quality.completeness for record in live),
                    accuracy=mean(record.quality.accuracy for record in live),
                    freshness=mean(self.scorer.freshness(record, now) for record in live),
                    duplicate_rate=percentage(len(group) - len(live), len(group)),
                    error_rate=self._source_error_rate(source_id, scope),
                )
            )
        return metrics

    def _source_error_rate(self, source_id: str, scope: ReportScope) -> float:
        if self.log_sink is None:
            return 0.0
        entries = self.log_sink.search(source_id=source_id, since=scope.date_from, until=scope.date_to, limit=None)
        failed = sum(1 for entry in entries if entry.level in (LogLevel.ERROR, LogLevel.FATAL))
        return percentage(failed, len(entries))

    def _overall_metrics(
        self, report: QualityReport, live: int, duplicates: int, total: int
    ) -> OverallMetrics:
        sources = report.sources

        # Source metrics are weighted by record count unless configured otherwise.
        def aggregate(name: str) -> float:
            if self.config.source_aggregation == "weighted":
                return weighted_average(sources, name, "total_records")
            return mean(getattr(source, name) for source in sources if source.total_records)

        if self.config.field_aggregation == "weighted":
            validity = weighted_average(report.fields, "accuracy", "filled_records")
        else:
            validity = mean(item.accuracy for item in report.fields)
        return OverallMetrics(
            total_records=live,
            quality_score=aggregate("quality_score"),
            completeness=aggregate("completeness"),
            accuracy=aggregate("accuracy"),
            freshness=aggregate("freshness"),
            validity=validity,
            duplicate_rate=percentage(duplicates, total),
        )

    # -- issues ----------------------------------------------------------
    def _detect_issues(
        self,
        report: QualityReport,
        records: list[CVRecord],
        duplicates: int,
        scope: ReportScope,
        now: datetime,
    ) -> list[QualityIssue]:
        issues: list[QualityIssue] = []
        by_id = {record.id: record for record in records}
        weights = self.scorer.config.completeness_weights
        heaviest = max(weights.values())

        for field in report.fields:
            if field.total_records and field.completeness < self.config.missing_field_threshold:
                if field.completeness < 30:
                    severity = Severity.HIGH
                elif field.completeness < 60:
                    severity = Severity.MEDIUM
                else:
                    severity = Severity.LOW
                if weights.get(field.field) == heaviest:
                    severity = _bump(severity)
                examples = [r.id for r in records if not is_present(r.field_value(field.field))][:EXAMPLE_LIMIT]
                issues.append(
                    QualityIssue(
                        type=IssueType.MISSING_FIELD,
                        severity=severity,
                        field=field.field,
                        description=f"{field.field} is filled in only {field.completeness}% of records",
                        affected_records=field.empty_records,
                        examples=examples,
                        detected_at=now,
                    )
                )
            if field.invalid_records:
                issues.append(
                    QualityIssue(
                        type=IssueType.INVALID_FORMAT,
                        severity=Severity.HIGH if field.accuracy < 70 else Severity.MEDIUM,
                        field=field.field,
                        description=f"{field.invalid_records} {field.field} values fail format checks",
                        affected_records=field.invalid_records,
                        examples=[ex for error in field.common_errors for ex in error.examples][:EXAMPLE_LIMIT],
                        auto_fixable=field.field in AUTO_FIXABLE_FIELDS,
                        detected_at=now,
                    )
                )

        duplicate_rate = report.overall.duplicate_rate
        if duplicate_rate > self.config.duplicate_rate_threshold:
            issues.append(
                QualityIssue(
                    type=IssueType.DUPLICATE_ENTRY,
                    severity=Severity.HIGH if duplicate_rate > 2 * self.config.duplicate_rate_threshold else Severity.MEDIUM,
                    description=f"{duplicate_rate}% of ingested records were duplicates",
                    affected_records=duplicates,
                    auto_fixable=True,
                    detected_at=now,
                )
            )

        stale = [
            record for record in records if record.data_age_days(now) > self.config.stale_after_days
        ]
        if stale:
            issues.append(
                QualityIssue(
                    type=IssueType.STALE_DATA,
                    severity=Severity.MEDIUM if len(stale) * 2 > len(records) else Severity.LOW,
                    description=f"{len(stale)} records are older than {self.config.stale_after_days} days",
                    affected_records=len(stale),
                    examples=[record.id for record in stale[:EXAMPLE_LIMIT]],
                    detected_at=now,
                )
            )

        conflicted = [
            record
            for record in by_id.values()
            if any(conflict.resolution == "flagged" for conflict in record.dedup.conflicts)
        ]
        if conflicted:
            issues.append(
                QualityIssue(
                    type=IssueType.INCONSISTENT_DATA,
                    severity=Severity.MEDIUM,
                    description=f"{len(conflicted)} merged records carry unresolved field conflicts",
                    affected_records=len(conflicted),
                    examples=[record.id for record in conflicted[:EXAMPLE_LIMIT]],
                    detected_at=now,
                )
            )

        issues.extend(self._log_issues(scope, now))
        issues.sort(key=lambda issue: (issue.severity.rank, -issue.affected_records))
        return issues

    def _log_issues(self, scope: ReportScope, now: datetime) -> list[QualityIssue]:
        if self.log_sink is None:
            return []
        issues: list[QualityIssue] = []
        for issue_type, severity in (
            (IssueType.PARSE_ERROR, Severity.MEDIUM),
            (IssueType.INCOMPLETE_EXTRACTION, Severity.LOW),
        ):
            for source_id in scope.source_ids or [None]:
                entries = self.log_sink.search(
                    source_id=source_id,
                    error_type=issue_type.value,
                    since=scope.date_from,
                    until=scope.date_to,
                    limit=None,
                )
                if not entries:
                    continue
                issues.append(
                    QualityIssue(
                        type=issue_type,
                        severity=severity,
                        source_id=source_id,
                        description=f"{len(entries)} {issue_type.value.replace('_', ' ')} events logged",
                        affected_records=len(entries),
                        examples=[entry.message for entry in entries[:EXAMPLE_LIMIT]],
                        detected_at=now,
                    )
                )
        return issues

    def _recommendations(self, report: QualityReport) -> list[Recommendation]:
        recommendations: list[Recommendation] = []
        for issue in report.issues:
            if issue.severity.rank > Severity.HIGH.rank and issue.type is not IssueType.DUPLICATE_ENTRY:
                continue
            if issue.type is IssueType.MISSING_FIELD:
                recommendations.append(
                    Recommendation(
                        priority=issue.severity,
                        category="scraping",
                        title=f"Improve extraction of {issue.field}",
                        description=f"Review source selectors; {issue.affected_records} records lack {issue.field}.",
                    )
                )
            elif issue.type is IssueType.INVALID_FORMAT:
                recommendations.append(
                    Recommendation(
                        priority=issue.severity,
                        category="validation",
                        title=f"Clean malformed {issue.field} values",
                        description=f"{issue.affected_records} values fail validation and should be re-cleaned.",
                    )
                )
            elif issue.type is IssueType.DUPLICATE_ENTRY:
                recommendations.append(
                    Recommendation(
                        priority=issue.severity,
                        category="data_quality",
                        title="Work through the dedup review queue",
                        description=issue.description,
                    )
                )
        if report.overall.total_records and report.overall.freshness < 50:
            recommendations.append(
                Recommendation(
                    priority=Severity.MEDIUM,
                    category="scraping",
                    title="Schedule an incremental re-scrape",
                    description=f"Average freshness is {report.overall.freshness}.",
                )
            )
        return recommendations

    # ------------------------------------------------------------------
    @staticmethod
    def _trend_points(reports: Iterable[QualityReport]) -> list[TrendPoint]:
        grouped: dict = defaultdict(list)
        for report in reports:
            grouped[report.generated_at.astimezone(timezone.utc).date()].append(report)
        points: list[TrendPoint] = []
        for day in sorted(grouped):
            group = grouped[day]
            points.append(
                TrendPoint(
                    day=day,
                    quality_score=mean(report.overall.quality_score for report in group),
                    completeness=mean(report.overall.completeness for report in group),
                    accuracy=mean(report.overall.accuracy for report in group),
                    total_records=sum(report.overall.total_records for report in group),
                    total_issues=sum(len(report.issues) for report in group),
                )
            )
        return points

    @staticmethod
    def _delta(report: QualityReport, baseline: QualityReport) -> ReportDelta:
        current_open = {issue.key for issue in report.open_issues}
        baseline_open = {issue.key for issue in baseline.open_issues}
        return ReportDelta(
            report_id=report.id,
            baseline_id=baseline.id,
            quality_change=round(report.overall.quality_score - baseline.overall.quality_score, 2),
            completeness_change=round(report.overall.completeness - baseline.overall.completeness, 2),
            accuracy_change=round(report.overall.accuracy - baseline.overall.accuracy, 2),
            freshness_change=round(report.overall.freshness - baseline.overall.freshness, 2),
            record_change=report.overall.total_records - baseline.overall.total_records,
            issue_change=len(report.issues) - len(baseline.issues),
            issues_resolved=len(baseline_open - current_open),
            issues_introduced=len(current_open - baseline_open),
        )

    def _save(self, report: QualityReport) -> None:
        with self.storage.transaction(self.db_path) as conn:
            conn.execute(
                "INSERT OR REPLACE INTO quality_reports(id, report_type, generated_at, payload) VALUES (?, ?, ?, ?)",
                (
                    report.id,
                    report.report_type,
                    report.generated_at.astimezone(timezone.utc).isoformat(),
                    report.model_dump_json(),
                ),
            )


__all__ = ["ReportGenerator"]
