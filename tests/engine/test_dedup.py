from __future__ import annotations

from datetime import timedelta

import pytest

from cv_crawler.config import ConflictPolicy, DedupConfig
from cv_crawler.engine import DedupEngine
from cv_crawler.engine.dedup import similarity
from cv_crawler.entities import RecordStatus
from cv_crawler.errors import PipelineError, RecordNotFound


def test_same_email_across_sources_is_merged(dedup, store, make_record, log_sink) -> None:
    first = make_record("source1", "a-1", full_name="Jane Doe", contact={"email": "jane@example.com"})
    second = make_record("source2", "b-7", full_name="Jane Doe", contact={"email": " Jane@Example.COM "})

    assert dedup.resolve(first).action == "inserted"
    decision = dedup.resolve(second)

    assert decision.action == "merged"
    assert decision.canonical_id == first.id
    assert decision.match.confidence == 1.0
    assert decision.match.match_fields == ["email"]

    duplicate = store.get(second.id)
    assert duplicate.status is RecordStatus.DUPLICATE
    assert duplicate.dedup.duplicate_of == first.id
    assert duplicate.dedup.confidence == 1.0

    canonical = store.get(first.id)
    assert canonical.status is not RecordStatus.DUPLICATE
    assert [ref.source_id for ref in canonical.additional_sources] == ["source2"]
    assert len(log_sink.search(operation="dedup")) == 2


def test_phone_match_merges_with_lower_confidence(dedup, store, make_record) -> None:
    first = make_record("source1", "1", full_name="Ali Khan", contact={"email": "ali@example.com", "phone": "+1-555-0100"})
    second = make_record("source2", "2", full_name="Ali Khan", contact={"phone": "+1 555 0100"})
    dedup.resolve(first)
    decision = dedup.resolve(second)
    assert decision.action == "merged"
    assert decision.match.confidence == 0.9
    assert store.get(second.id).dedup.duplicate_of == first.id


def test_records_without_contact_have_no_fingerprint(dedup, make_record) -> None:
    record = make_record(full_name="Nameless Person")
    decision = dedup.resolve(record)
    assert decision.action == "inserted"
    assert decision.record.dedup.fingerprint is None


def test_merge_is_idempotent(dedup, make_record, clock) -> None:
    canonical = make_record("source1", "1", full_name="Jane Doe", keywords=["python", "sql"])
    incoming = make_record(
        "source2",
        "2",
        full_name="Jane Doe",
        headline="Data engineer",
        keywords=["sql", "airflow"],
        skills={"technical": ["Python", "Airflow"]},
    )
    dedup.merge_records(canonical, incoming)
    once = canonical.model_dump(exclude={"updated_at"})
    dedup.merge_records(canonical, incoming)
    assert canonical.model_dump(exclude={"updated_at"}) == once
    assert canonical.keywords == ["airflow", "python", "sql"]
    assert canonical.headline == "Data engineer"
    assert len(canonical.additional_sources) == 1


def test_conflicting_values_are_flagged_not_overwritten(dedup, store, make_record) -> None:
    first = make_record(
        "source1", "1", full_name="Jane Doe", current_title="Engineer", contact={"email": "jane@example.com"}
    )
    second = make_record(
        "source2", "2", full_name="Jane Doe", current_title="Manager", contact={"email": "jane@example.com"}
    )
    dedup.resolve(first)
    dedup.resolve(second)
    canonical = store.get(first.id)
    assert canonical.current_title == "Engineer"
    conflicts = [conflict for conflict in canonical.dedup.conflicts if conflict.field == "current_title"]
    assert len(conflicts) == 1
    assert conflicts[0].incoming_value == "Manager"
    assert conflicts[0].resolution == "flagged"


def test_field_policy_can_prefer_incoming(store, scorer, make_record) -> None:
    engine = DedupEngine(
        store,
        DedupConfig(field_policies={"current_title": ConflictPolicy.PREFER_INCOMING}),
        refresh=scorer.process,
    )
    first = make_record("source1", "1", current_title="Engineer", contact={"email": "jane@example.com"})
    second = make_record("source2", "2", current_title="Manager", contact={"email": "jane@example.com"})
    engine.resolve(first)
    engine.resolve(second)
    canonical = store.get(first.id)
    assert canonical.current_title == "Manager"
    assert canonical.dedup.conflicts[0].resolution == "took_incoming"


def test_prefer_recent_takes_the_newer_value(store, make_record, clock) -> None:
    engine = DedupEngine(store, DedupConfig(conflict_policy=ConflictPolicy.PREFER_RECENT), clock=clock)
    first = make_record(
        "source1",
        "1",
        headline="Old headline",
        contact={"email": "jane@example.com"},
        scraped_at=clock() - timedelta(days=10),
    )
    second = make_record("source2", "2", headline="New headline", contact={"email": "jane@example.com"})
    engine.resolve(first)
    engine.resolve(second)
    canonical = store.get(first.id)
    assert canonical.headline == "New headline"
    assert canonical.dedup.conflicts[0].resolution == "took_incoming"


def test_prefer_recent_keeps_canonical_when_incoming_is_older(store, make_record, clock) -> None:
    engine = DedupEngine(store, DedupConfig(conflict_policy=ConflictPolicy.PREFER_RECENT), clock=clock)
    first = make_record("source1", "1", headline="Current headline", contact={"email": "jane@example.com"})
    second = make_record(
        "source2",
        "2",
        headline="Stale headline",
        contact={"email": "jane@example.com"},
        scraped_at=clock() - timedelta(days=10),
    )
    engine.resolve(first)
    engine.resolve(second)
    canonical = store.get(first.id)
    assert canonical.headline == "Current headline"
    assert canonical.dedup.conflicts[0].resolution == "kept_canonical"


def _phone_pair(make_record):
    first = make_record("source1", "1", full_name="Ali Khan", contact={"phone": "+1-555-0100"})
    second = make_record("source2", "2", full_name="Ali Khan", contact={"phone": "+1 555 0100"})
    return first, second


def test_below_threshold_match_with_shared_fingerprint_is_flagged(store, make_record) -> None:
    engine = DedupEngine(store, DedupConfig(auto_merge_threshold=0.95))
    first, second = _phone_pair(make_record)
    engine.resolve(first)
    decision = engine.resolve(second)

    assert decision.action == "flagged"
    assert decision.match.confidence == 0.9
    assert decision.match.match_fields == ["phone"]
    stored = store.get(second.id)
    assert stored.status is not RecordStatus.DUPLICATE
    assert stored.dedup.fingerprint == store.get(first.id).dedup.fingerprint
    assert stored.dedup.shares_fingerprint
    assert [review.record_id for review in engine.pending_reviews()] == [second.id]

    engine.resolve_review(second.id, merge=False)
    assert store.get(second.id).status is not RecordStatus.DUPLICATE
    assert store.get(first.id).status is not RecordStatus.DUPLICATE


def _stale_first_lookup(engine, monkeypatch) -> list[str]:
    """Make the first lookup miss, as if another writer committed right after it."""

    real_find = engine.find_match
    calls: list[str] = []

    def find_match(record):
        calls.append(record.id)
        return None if len(calls) == 1 else real_find(record)

    monkeypatch.setattr(engine, "find_match", find_match)
    return calls


def test_fingerprint_clash_is_merged_with_the_real_match(store, make_record, monkeypatch) -> None:
    engine = DedupEngine(store, DedupConfig())
    first = make_record("source1", "1", full_name="Jane Doe", contact={"email": "jane@example.com"})
    second = make_record("source2", "2", full_name="Jane Doe", contact={"email": "jane@example.com"})
    engine.resolve(first)
    calls = _stale_first_lookup(engine, monkeypatch)

    decision = engine.resolve(second)

    assert calls == [second.id, second.id]
    assert decision.action == "merged"
    assert decision.canonical_id == first.id
    assert decision.match.confidence == 1.0
    assert decision.match.match_fields == ["email"]
    assert store.get(second.id).dedup.duplicate_of == first.id


def test_fingerprint_clash_below_threshold_goes_to_review(store, make_record, monkeypatch) -> None:
    engine = DedupEngine(store, DedupConfig(auto_merge_threshold=0.95))
    first, second = _phone_pair(make_record)
    engine.resolve(first)
    calls = _stale_first_lookup(engine, monkeypatch)

    decision = engine.resolve(second)

    assert len(calls) == 2
    assert decision.action == "flagged"
    assert decision.match.confidence == 0.9
    stored = store.get(second.id)
    assert stored.status is not RecordStatus.DUPLICATE
    assert stored.dedup.duplicate_of is None
    assert stored.dedup.review_candidate == first.id


def _fuzzy_pair(make_record):
    first = make_record(
        "source1", "1", full_name="Jonathan Smith", current_company="Acme Inc", contact={"email": "jon@acme.com"}
    )
    second = make_record(
        "source2", "2", full_name="Jonathan Smyth", current_company="Acme", contact={"email": "jsmyth@mail.com"}
    )
    return first, second


def test_fuzzy_match_goes_to_review(dedup, store, make_record) -> None:
    first, second = _fuzzy_pair(make_record)
    dedup.resolve(first)
    decision = dedup.resolve(second)

    assert decision.action == "flagged"
    assert decision.match.candidate_id == first.id
    assert decision.match.confidence < 0.7
    stored = store.get(second.id)
    assert stored.status is not RecordStatus.DUPLICATE
    assert stored.dedup.review_candidate == first.id

    reviews = dedup.pending_reviews()
    assert [review.record_id for review in reviews] == [second.id]
    assert reviews[0].match_fields == ["full_name", "current_company"]


def test_resolve_review_merges(dedup, store, make_record) -> None:
    first, second = _fuzzy_pair(make_record)
    dedup.resolve(first)
    dedup.resolve(second)
    canonical = dedup.resolve_review(second.id, merge=True)
    assert canonical.id == first.id
    assert store.get(second.id).status is RecordStatus.DUPLICATE
    assert dedup.pending_reviews() == []
    with pytest.raises(RecordNotFound):
        dedup.resolve_review(second.id, merge=True)


def test_resolve_review_dismisses(dedup, store, make_record) -> None:
    first, second = _fuzzy_pair(make_record)
    dedup.resolve(first)
    dedup.resolve(second)
    record = dedup.resolve_review(second.id, merge=False)
    assert record.dedup.review_candidate is None
    assert store.get(second.id).status is not RecordStatus.DUPLICATE
    assert dedup.pending_reviews() == []


def test_unrelated_people_are_not_matched(dedup, make_record) -> None:
    dedup.resolve(make_record("source1", "1", full_name="Maria Garcia", current_company="Initech"))
    decision = dedup.resolve(make_record("source2", "2", full_name="Peter Gibbons", current_company="Initrode"))
    assert decision.action == "inserted"


def test_manual_merge_rejects_self_merge(dedup, make_record) -> None:
    record = make_record(contact={"email": "solo@example.com"})
    dedup.resolve(record)
    with pytest.raises(PipelineError):
        dedup.merge(record.id, record.id)


def test_similarity_handles_missing_values() -> None:
    assert similarity(None, "acme") == 0.0
    assert similarity("acme", "acme") == 1.0
