"""Per-record quality scoring, validation and enrichment."""

from __future__ import annotations

import re
from datetime import date, datetime
from typing import Any, Callable

import structlog

from ..config import QualityConfig
from ..entities import CVRecord, RecordStatus, ValidationIssue, utcnow
from ..errors import RecordNotFound
from .record_store import RecordStore

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PHONE_PATTERN = re.compile(r"^[\d\s\-\+\(\)]+$")
NAME_LENGTH = (2, 100)

EXPERIENCE_LEVELS: tuple[tuple[float, str], ...] = (
    (1, "entry"),
    (3, "junior"),
    (6, "mid"),
    (10, "senior"),
    (15, "lead"),
)
COMPENSATION_BANDS = {
    "entry": "USD 30000-45000",
    "junior": "USD 45000-65000",
    "mid": "USD 65000-90000",
    "senior": "USD 90000-130000",
    "lead": "USD 130000-170000",
    "executive": "USD 170000+",
}


def is_present(value: Any) -> bool:
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, (list, tuple, set, dict)):
        return bool(value)
    return True


def experience_level(years: float) -> str:
    for ceiling, level in EXPERIENCE_LEVELS:
        if years < ceiling:
            return level
    return "executive"


def total_experience_years(record: CVRecord, today: date) -> float:
    days = 0
    for entry in record.experience:
        end = today if entry.is_current else entry.end_date
        if entry.start_date and end and end > entry.start_date:
            days += (end - entry.start_date).days
    return round(days / 30 / 12, 1)


def validate_field(path: str, value: Any) -> str | None:
    """Return an error message when a populated field fails its format rule."""

    if path == "contact.email" and not EMAIL_PATTERN.match(str(value)):
        return "invalid email format"
    if path == "contact.phone" and not PHONE_PATTERN.match(str(value)):
        return "invalid phone format"
    if path == "full_name" and not NAME_LENGTH[0] <= len(str(value).strip()) <= NAME_LENGTH[1]:
        return f"name must be {NAME_LENGTH[0]}-{NAME_LENGTH[1]} characters"
    if path == "experience":
        for index, entry in enumerate(value):
            if not entry.company or not entry.title:
                return f"experience[{index}] needs company and title"
    return None


class QualityScorer:
    """Compute completeness, freshness and overall scores plus validation accuracy."""

    def __init__(self, config: QualityConfig | None = None, clock: Callable[[], datetime] = utcnow) -> None:
        self.config = config or QualityConfig()
        self._clock = clock
        self.logger = structlog.get_logger("cv_crawler.quality").bind(component="quality")

    # -- scores ----------------------------------------------------------
    def completeness(self, record: CVRecord) -> float:
        weights = self.config.completeness_weights
        total = sum(weights.values())
        filled = sum(weight for path, weight in weights.items() if is_present(record.field_value(path)))
        return round(filled / total * 100, 2)

    def freshness(self, record: CVRecord, now: datetime | None = None) -> float:
        days = record.data_age_days(now or self._clock())
        return max(0.0, 100.0 - self.config.freshness_decay_per_day * days)

    @staticmethod
    def overall(completeness: float, freshness: float) -> float:
        # Accuracy is tracked separately and deliberately left out of the overall score.
        return round((completeness + freshness) / 2, 2)

    def validate(self, record: CVRecord) -> tuple[list[ValidationIssue], float]:
        """Run the format rules; return the failures and the % of rules passed."""

        issues: list[ValidationIssue] = []
        checks = 0
        email = record.contact.email
        checks += 1
        if not is_present(email):
            issues.append(ValidationIssue(field="contact.email", message="email is required"))
        elif message := validate_field("contact.email", email):
            issues.append(ValidationIssue(field="contact.email", message=message))
        if is_present(record.contact.phone):
            checks += 1
            if message := validate_field("contact.phone", record.contact.phone):
                issues.append(ValidationIssue(field="contact.phone", message=message))
        checks += 1
        if message := validate_field("full_name", record.full_name or ""):
            issues.append(ValidationIssue(field="full_name", message=message))
        for index, entry in enumerate(record.experience):
            checks += 1
            if not entry.company or not entry.title:
                issues.append(
                    ValidationIssue(
                        field=f"experience[{index}]",
                        message="experience entry needs company and title",
                        severity="warning",
                    )
                )
        accuracy = round((checks - len(issues)) / checks * 100, 2)
        return issues, accuracy

    # -- mutation --------------------------------------------------------
    def enrich(self, record: CVRecord, now: datetime | None = None) -> CVRecord:
        now = now or self._clock()
        enrichment = record.enrichment
        if record.experience:
            years = total_experience_years(record, now.date())
            enrichment.total_experience_years = years
            enrichment.experience_level = experience_level(years)
            enrichment.compensation_band = COMPENSATION_BANDS[enrichment.experience_level]
        skills = record.skills.all_skills()
        record.keywords = sorted(set(record.keywords) | {skill.strip().lower() for skill in skills if skill.strip()})
        enrichment.insights = {
            "skill_count": len(skills),
            "top_skills": record.skills.technical[:5],
            "missing_sections": [
                path for path in self.config.completeness_weights if not is_present(record.field_value(path))
            ],
        }
        enrichment.enriched_at = now
        return record

    def score(self, record: CVRecord, now: datetime | None = None) -> CVRecord:
        now = now or self._clock()
        quality = record.quality
        quality.completeness = self.completeness(record)
        quality.freshness = self.freshness(record, now)
        quality.overall_score = self.overall(quality.completeness, quality.freshness)
        quality.validation_errors, quality.accuracy = self.validate(record)
        quality.last_validated_at = now
        return record

    def process(self, record: CVRecord) -> CVRecord:
        """Enrich and score a record, advancing its status unless it is a duplicate."""

        now = self._clock()
        self.enrich(record, now)
        self.score(record, now)
        if record.status not in (RecordStatus.DUPLICATE, RecordStatus.ARCHIVED):
            if record.quality.validation_errors:
                record.status = RecordStatus.PROCESSED
            elif record.enrichment.experience_level:
                record.status = RecordStatus.ENRICHED
            else:
                record.status = RecordStatus.VALIDATED
        record.updated_at = now
        return record

    def revalidate(self, store: RecordStore, record_id: str) -> CVRecord:
        with store.transaction(immediate=True):
            record = store.get(record_id)
            self.process(record)
            store.save(record)
        return record

    def rescore_all(self, store: RecordStore) -> int:
        """Recompute scores for every live record so freshness decay is reflected."""

        updated = 0
        for record_id in store.ids():
            try:
                self.revalidate(store, record_id)
            except RecordNotFound:
                continue
            updated += 1
        self.logger.info("rescore_finished", records=updated)
        return updated


__all__ = [
    "COMPENSATION_BANDS",
    "EMAIL_PATTERN",
    "PHONE_PATTERN",
    "QualityScorer",
    "experience_level",
    "is_present",
    "total_experience_years",
    "validate_field",
]
