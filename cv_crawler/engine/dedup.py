"""Duplicate detection and non-destructive merging of CV records."""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from difflib import SequenceMatcher
from typing import Any, Callable

import structlog
from pydantic import BaseModel

from ..config import ConflictPolicy, DedupConfig
from ..entities import CVRecord, FieldConflict, RecordStatus, SourceRef, utcnow
from ..errors import PipelineError, RecordNotFound
from .logsink import LogSink
from .normalize import (
    clean_record,
    current_company,
    fingerprint,
    normalize_company,
    normalize_email,
    normalize_name,
    normalize_phone,
)
from .record_store import RecordStore

EMAIL_CONFIDENCE = 1.0
PHONE_CONFIDENCE = 0.9
FUZZY_CEILING = 0.69

# Scalar fields a merge reconciles; list sections are only filled when empty.
MERGE_FIELDS = (
    "full_name",
    "headline",
    "summary",
    "current_title",
    "current_company",
    "contact.email",
    "contact.phone",
    "contact.linkedin",
    "contact.location",
)
SKILL_SECTIONS = ("technical", "soft", "tools", "frameworks", "databases", "cloud")


@dataclass(slots=True)
class MatchResult:
    candidate_id: str
    confidence: float
    match_fields: list[str] = field(default_factory=list)


@dataclass(slots=True)
class DedupDecision:
    """Outcome of resolving one incoming record."""

    action: str  # inserted | merged | flagged
    record: CVRecord
    canonical_id: str
    match: MatchResult | None = None


class ReviewItem(BaseModel):
    record_id: str
    candidate_id: str
    confidence: float
    match_fields: list[str]
    status: str
    created_at: datetime
    resolved_at: datetime | None = None


def similarity(left: str | None, right: str | None) -> float:
    if not left or not right:
        return 0.0
    return SequenceMatcher(None, left, right).ratio()


def _get(record: CVRecord, path: str) -> Any:
    return record.field_value(path)


def _set(record: CVRecord, path: str, value: Any) -> None:
    target: Any = record
    parts = path.split(".")
    for part in parts[:-1]:
        target = getattr(target, part)
    setattr(target, parts[-1], value)


def _comparable(value: Any) -> Any:
    return value.strip().lower() if isinstance(value, str) else value


def _latest_scrape(record: CVRecord) -> datetime:
    return max([record.source.scraped_at, *(ref.scraped_at for ref in record.additional_sources)])


class DedupEngine:
    """Fingerprint, match and merge incoming CV records against the store."""

    def __init__(
        self,
        store: RecordStore,
        config: DedupConfig | None = None,
        log_sink: LogSink | None = None,
        refresh: Callable[[CVRecord], CVRecord] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.config = config or DedupConfig()
        self.log_sink = log_sink
        self.refresh = refresh
        self._clock = clock
        self.logger = structlog.get_logger("cv_crawler.dedup").bind(component="dedup")

    # -- matching --------------------------------------------------------
    def find_match(self, record: CVRecord) -> MatchResult | None:
        """Best live candidate for ``record``; email beats phone beats fuzzy."""

        email = normalize_email(record.contact.email)
        candidate = self.store.find_canonical("email", email, exclude_id=record.id)
        if candidate is not None:
            return MatchResult(candidate.id, EMAIL_CONFIDENCE, ["email"])
        phone = normalize_phone(record.contact.phone)
        candidate = self.store.find_canonical("phone", phone, exclude_id=record.id)
        if candidate is not None:
            return MatchResult(candidate.id, PHONE_CONFIDENCE, ["phone"])
        return self._fuzzy_match(record)

    def _fuzzy_match(self, record: CVRecord) -> MatchResult | None:
        name_key = normalize_name(record.full_name)
        company_key = normalize_company(current_company(record))
        best: MatchResult | None = None
        for candidate in self.store.fuzzy_candidates(
            name_key, company_key, exclude_id=record.id, limit=self.config.candidate_limit
        ):
            name_score = similarity(name_key, normalize_name(candidate.full_name))
            company_score = similarity(company_key, normalize_company(current_company(candidate)))
            if min(name_score, company_score) < self.config.fuzzy_min_similarity:
                continue
            confidence = round(FUZZY_CEILING * (name_score + company_score) / 2, 4)
            if best is None or confidence > best.confidence:
                best = MatchResult(candidate.id, confidence, ["full_name", "current_company"])
        return best

    # -- resolution ------------------------------------------------------
    def resolve(self, record: CVRecord, job_id: str | None = None) -> DedupDecision:
        """Insert ``record`` as canonical, merge it into a match, or flag it for review.

        Lookup and write happen in one immediate transaction. When a concurrent
        writer claimed the fingerprint first, the insert fails on the unique index
        and the record is matched again against the now-visible winner, under the
        same auto-merge threshold.
        """

        clean_record(record)
        now = self._clock()
        record.dedup.fingerprint = fingerprint(record)
        record.dedup.last_checked_at = now
        try:
            decision = self._resolve_once(record, now)
        except sqlite3.IntegrityError:
            self.logger.info("fingerprint_clash", record_id=record.id)
            record.dedup.review_candidate = None
            record.dedup.confidence = None
            record.dedup.match_fields = []
            record.dedup.shares_fingerprint = False
            decision = self._resolve_once(record, now)
        self.logger.info(
            "dedup_decision",
            record_id=record.id,
            action=decision.action,
            canonical_id=decision.canonical_id,
            confidence=decision.match.confidence if decision.match else None,
        )
        if self.log_sink is not None:
            self.log_sink.dedup_decision(
                job_id,
                record.source.source_id,
                record.id,
                decision.action,
                canonical_id=decision.canonical_id,
                confidence=decision.match.confidence if decision.match else None,
            )
        return decision

    def _resolve_once(self, record: CVRecord, now: datetime) -> DedupDecision:
        with self.store.transaction(immediate=True):
            match = self.find_match(record)
            if match is not None and match.confidence >= self.config.auto_merge_threshold:
                canonical = self._merge_into(match.candidate_id, record, match, now, insert_incoming=True)
                return DedupDecision("merged", record, canonical.id, match)
            if match is not None:
                record.dedup.review_candidate = match.candidate_id
                record.dedup.confidence = match.confidence
                record.dedup.match_fields = list(match.match_fields)
                # A flagged record may carry the candidate's fingerprint; it must not claim it.
                holder = self.store.find_canonical("fingerprint", record.dedup.fingerprint, exclude_id=record.id)
                record.dedup.shares_fingerprint = holder is not None
            if record.status is RecordStatus.NEW:
                record.status = RecordStatus.PROCESSED
            self.store.insert(record)
            if match is None:
                return DedupDecision("inserted", record, record.id)
            self._open_review(record.id, match, now)
            return DedupDecision("flagged", record, record.id, match)

    def merge(self, canonical_id: str, duplicate_id: str) -> CVRecord:
        """Manually fold ``duplicate_id`` into ``canonical_id``."""

        if canonical_id == duplicate_id:
            raise PipelineError("Cannot merge a record into itself")
        now = self._clock()
        with self.store.transaction(immediate=True):
            duplicate = self.store.get(duplicate_id)
            owner = duplicate.dedup.duplicate_of
            if owner is not None and owner != canonical_id:
                raise PipelineError(f"Record {duplicate_id} is already merged into {owner}")
            match = MatchResult(canonical_id, 1.0, ["manual"])
            canonical = self._merge_into(canonical_id, duplicate, match, now, insert_incoming=False)
            # Records already folded into the loser now point at the new canonical.
            for child in self.store.duplicates_of(duplicate_id):
                child.dedup.duplicate_of = canonical.id
                child.updated_at = now
                self.store.save(child)
            self._close_review(duplicate_id, "merged", now)
        self.logger.info("manual_merge", canonical_id=canonical_id, duplicate_id=duplicate_id)
        return canonical

    def _merge_into(
        self,
        canonical_id: str,
        incoming: CVRecord,
        match: MatchResult,
        now: datetime,
        *,
        insert_incoming: bool,
    ) -> CVRecord:
        canonical = self.store.get(canonical_id)
        if canonical.status is RecordStatus.DUPLICATE:
            raise PipelineError(f"Record {canonical_id} is itself a duplicate")
        self.merge_records(canonical, incoming, now)
        incoming.status = RecordStatus.DUPLICATE
        incoming.dedup.duplicate_of = canonical.id
        incoming.dedup.confidence = match.confidence
        incoming.dedup.match_fields = list(match.match_fields)
        incoming.dedup.review_candidate = None
        incoming.dedup.last_checked_at = now
        incoming.updated_at = now
        if self.refresh is not None:
            self.refresh(canonical)
        self.store.save(canonical)
        if insert_incoming:
            self.store.insert(incoming)
        else:
            self.store.save(incoming)
        return canonical

    def merge_records(self, canonical: CVRecord, incoming: CVRecord, now: datetime | None = None) -> CVRecord:
        """Fold ``incoming`` into ``canonical`` in place; applying it twice changes nothing more."""

        now = now or self._clock()
        incoming_is_newer = incoming.source.scraped_at > _latest_scrape(canonical)
        known = {canonical.source.key}
        sources: list[SourceRef] = []
        for ref in [*canonical.additional_sources, incoming.source, *incoming.additional_sources]:
            if ref.key not in known:
                known.add(ref.key)
                sources.append(ref)
        canonical.additional_sources = sources
        canonical.keywords = sorted(set(canonical.keywords) | set(incoming.keywords))
        canonical.created_at = min(canonical.created_at, incoming.created_at)

        for path in MERGE_FIELDS:
            ours, theirs = _get(canonical, path), _get(incoming, path)
            if theirs in (None, ""):
                continue
            if ours in (None, ""):
                _set(canonical, path, theirs)
                continue
            if _comparable(ours) == _comparable(theirs):
                continue
            policy = self.config.policy_for(path)
            take_incoming = policy is ConflictPolicy.PREFER_INCOMING or (
                policy is ConflictPolicy.PREFER_RECENT and incoming_is_newer
            )
            if take_incoming:
                _set(canonical, path, theirs)
            self._record_conflict(canonical, incoming, path, ours, theirs, policy, take_incoming, now)

        if not canonical.experience and incoming.experience:
            canonical.experience = [entry.model_copy() for entry in incoming.experience]
        if not canonical.education and incoming.education:
            canonical.education = [entry.model_copy() for entry in incoming.education]
        for section in SKILL_SECTIONS:
            merged = list(getattr(canonical.skills, section))
            seen = {skill.lower() for skill in merged}
            for skill in getattr(incoming.skills, section):
                if skill.lower() not in seen:
                    seen.add(skill.lower())
                    merged.append(skill)
            setattr(canonical.skills, section, merged)
        canonical.updated_at = now
        return canonical

    def _record_conflict(
        self,
        canonical: CVRecord,
        incoming: CVRecord,
        path: str,
        ours: Any,
        theirs: Any,
        policy: ConflictPolicy,
        took_incoming: bool,
        now: datetime,
    ) -> None:
        if policy is ConflictPolicy.FLAG:
            resolution = "flagged"
        elif took_incoming:
            resolution = "took_incoming"
        else:
            resolution = "kept_canonical"
        conflicts = [
            conflict
            for conflict in canonical.dedup.conflicts
            if not (conflict.field == path and conflict.incoming_record_id == incoming.id)
        ]
        conflicts.append(
            FieldConflict(
                field=path,
                canonical_value=ours,
                incoming_value=theirs,
                incoming_record_id=incoming.id,
                resolution=resolution,
                detected_at=now,
            )
        )
        canonical.dedup.conflicts = conflicts

    # -- review queue ----------------------------------------------------
    def pending_reviews(self, limit: int = 50) -> list[ReviewItem]:
        with self.store.transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM dedup_reviews WHERE status = 'open' ORDER BY confidence DESC, created_at LIMIT ?",
                (limit,),
            ).fetchall()
        return [self._review(row) for row in rows]

    def resolve_review(self, record_id: str, merge: bool) -> CVRecord:
        """Merge a flagged record into its candidate, or dismiss the match."""

        now = self._clock()
        with self.store.transaction(immediate=True) as conn:
            row = conn.execute(
                "SELECT * FROM dedup_reviews WHERE record_id = ? AND status = 'open'", (record_id,)
            ).fetchone()
            if row is None:
                raise RecordNotFound(f"No open review for record {record_id}")
            if merge:
                return self.merge(row["candidate_id"], record_id)
            record = self.store.get(record_id)
            record.dedup.review_candidate = None
            record.updated_at = now
            self.store.save(record)
            self._close_review(record_id, "dismissed", now)
            return record

    def _open_review(self, record_id: str, match: MatchResult, now: datetime) -> None:
        with self.store.transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO dedup_reviews(record_id, candidate_id, confidence, match_fields, status, created_at)"
                " VALUES (?, ?, ?, ?, 'open', ?)",
                (
                    record_id,
                    match.candidate_id,
                    match.confidence,
                    json.dumps(match.match_fields),
                    now.astimezone(timezone.utc).isoformat(),
                ),
            )

    def _close_review(self, record_id: str, status: str, now: datetime) -> None:
        with self.store.transaction() as conn:
            conn.execute(
                "UPDATE dedup_reviews SET status = ?, resolved_at = ? WHERE record_id = ? AND status = 'open'",
                (status, now.astimezone(timezone.utc).isoformat(), record_id),
            )

    @staticmethod
    def _review(row: sqlite3.Row) -> ReviewItem:
        return ReviewItem(
            record_id=row["record_id"],
            candidate_id=row["candidate_id"],
            confidence=row["confidence"],
            match_fields=json.loads(row["match_fields"]),
            status=row["status"],
            created_at=datetime.fromisoformat(row["created_at"]),
            resolved_at=datetime.fromisoformat(row["resolved_at"]) if row["resolved_at"] else None,
        )


__all__ = ["DedupDecision", "DedupEngine", "MatchResult", "ReviewItem", "similarity"]
