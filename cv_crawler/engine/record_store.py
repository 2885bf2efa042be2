"""SQLite-backed CV record store with indexed identity columns."""

from __future__ import annotations

import json
import math
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from pydantic import BaseModel, Field

from ..entities import CVRecord, RecordStatus
from ..errors import RecordNotFound
from ..infra.storage import SQLiteManager
from .normalize import current_company, normalize_company, normalize_email, normalize_name, normalize_phone


def _iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


class RecordQuery(BaseModel):
    """Filters accepted by ``query_records``."""

    status: RecordStatus | None = None
    experience_level: str | None = None
    skills: list[str] = Field(default_factory=list)
    min_quality: float | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    source_ids: list[str] = Field(default_factory=list)
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=20, ge=1, le=500)


class RecordPage(BaseModel):
    items: list[CVRecord]
    total: int
    page: int
    page_size: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.page_size) if self.total else 0


class RecordStore:
    """Persist CVRecords as JSON payloads next to their lookup keys."""

    def __init__(self, storage: SQLiteManager, db_path: Path) -> None:
        self.storage = storage
        self.db_path = db_path
        self.storage.connect(db_path)

    def transaction(self, immediate: bool = False):
        return self.storage.transaction(self.db_path, immediate=immediate)

    # -- writes ----------------------------------------------------------
    def insert(self, record: CVRecord) -> CVRecord:
        """Insert a new record; raises ``sqlite3.IntegrityError`` on a live fingerprint clash."""

        with self.transaction() as conn:
            conn.execute(
                "INSERT INTO cv_records(id, fingerprint, email, phone, name_key, company_key, status, source_id,"
                " experience_level, overall_score, keywords, scraped_at, created_at, payload)"
                " VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                self._row(record),
            )
        return record

    def save(self, record: CVRecord) -> CVRecord:
        with self.transaction() as conn:
            cursor = conn.execute(
                "UPDATE cv_records SET fingerprint = ?, email = ?, phone = ?, name_key = ?, company_key = ?,"
                " status = ?, source_id = ?, experience_level = ?, overall_score = ?, keywords = ?,"
                " scraped_at = ?, created_at = ?, payload = ? WHERE id = ?",
                (*self._row(record)[1:], record.id),
            )
            if cursor.rowcount == 0:
                raise RecordNotFound(f"Unknown record: {record.id}")
        return record

    # -- reads -----------------------------------------------------------
    def get(self, record_id: str) -> CVRecord:
        with self.transaction() as conn:
            row = conn.execute("SELECT payload FROM cv_records WHERE id = ?", (record_id,)).fetchone()
        if row is None:
            raise RecordNotFound(f"Unknown record: {record_id}")
        return CVRecord.model_validate_json(row["payload"])

    def find_canonical(self, column: str, value: str | None, exclude_id: str | None = None) -> CVRecord | None:
        """Oldest live record whose ``column`` equals ``value``."""

        if value is None or column not in ("email", "phone", "fingerprint"):
            return None
        with self.transaction() as conn:
            row = conn.execute(
                f"SELECT payload FROM cv_records WHERE {column} = ? AND status != ? AND id != ?"
                " ORDER BY created_at LIMIT 1",
                (value, RecordStatus.DUPLICATE.value, exclude_id or ""),
            ).fetchone()
        return CVRecord.model_validate_json(row["payload"]) if row else None

    def fuzzy_candidates(
        self, name_key: str | None, company_key: str | None, exclude_id: str | None = None, limit: int = 50
    ) -> list[CVRecord]:
        if not name_key or not company_key:
            return []
        first_token = name_key.split(" ")[0]
        with self.transaction() as conn:
            rows = conn.execute(
                "SELECT payload FROM cv_records WHERE status != ? AND id != ? AND company_key IS NOT NULL"
                " AND (company_key = ? OR name_key = ? OR name_key LIKE ?) ORDER BY created_at LIMIT ?",
                (
                    RecordStatus.DUPLICATE.value,
                    exclude_id or "",
                    company_key,
                    name_key,
                    f"{first_token}%",
                    limit,
                ),
            ).fetchall()
        return [CVRecord.model_validate_json(row["payload"]) for row in rows]

    def duplicates_of(self, canonical_id: str) -> list[CVRecord]:
        with self.transaction() as conn:
            rows = conn.execute(
                "SELECT payload FROM cv_records WHERE status = ? AND json_extract(payload, '$.dedup.duplicate_of') = ?",
                (RecordStatus.DUPLICATE.value, canonical_id),
            ).fetchall()
        return [CVRecord.model_validate_json(row["payload"]) for row in rows]

    def iter_records(
        self,
        *,
        source_ids: list[str] | None = None,
        date_from: datetime | None = None,
        date_to: datetime | None = None,
        include_duplicates: bool = True,
        batch_size: int = 500,
    ) -> Iterator[CVRecord]:
        clauses, params = self._scope_clauses(source_ids, date_from, date_to)
        if not include_duplicates:
            clauses.append("status != ?")
            params.append(RecordStatus.DUPLICATE.value)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        offset = 0
        while True:
            with self.transaction() as conn:
                rows = conn.execute(
                    f"SELECT payload FROM cv_records{where} ORDER BY created_at, id LIMIT ? OFFSET ?",
                    (*params, batch_size, offset),
                ).fetchall()
            if not rows:
                return
            for row in rows:
                yield CVRecord.model_validate_json(row["payload"])
            offset += len(rows)

    def ids(self, include_duplicates: bool = False) -> list[str]:
        sql = "SELECT id FROM cv_records"
        params: tuple[Any, ...] = ()
        if not include_duplicates:
            sql += " WHERE status != ?"
            params = (RecordStatus.DUPLICATE.value,)
        with self.transaction() as conn:
            return [row["id"] for row in conn.execute(sql + " ORDER BY created_at", params).fetchall()]

    def query_records(self, query: RecordQuery | None = None) -> RecordPage:
        query = query or RecordQuery()
        clauses, params = self._scope_clauses(query.source_ids, query.date_from, query.date_to)
        if query.status is not None:
            clauses.append("status = ?")
            params.append(query.status.value)
        else:
            clauses.append("status != ?")
            params.append(RecordStatus.DUPLICATE.value)
        if query.experience_level:
            clauses.append("experience_level = ?")
            params.append(query.experience_level)
        if query.min_quality is not None:
            clauses.append("overall_score >= ?")
            params.append(query.min_quality)
        if query.skills:
            wanted = [skill.strip().lower() for skill in query.skills if skill.strip()]
            placeholders = ", ".join("?" for _ in wanted)
            clauses.append(f"EXISTS (SELECT 1 FROM json_each(cv_records.keywords) WHERE value IN ({placeholders}))")
            params.extend(wanted)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        offset = (query.page - 1) * query.page_size
        with self.transaction() as conn:
            total = conn.execute(f"SELECT COUNT(*) FROM cv_records{where}", params).fetchone()[0]
            rows = conn.execute(
                f"SELECT payload FROM cv_records{where} ORDER BY overall_score DESC, created_at DESC LIMIT ? OFFSET ?",
                (*params, query.page_size, offset),
            ).fetchall()
        return RecordPage(
            items=[CVRecord.model_validate_json(row["payload"]) for row in rows],
            total=total,
            page=query.page,
            page_size=query.page_size,
        )

    def count(self, status: RecordStatus | None = None) -> int:
        with self.transaction() as conn:
            if status is None:
                return conn.execute("SELECT COUNT(*) FROM cv_records").fetchone()[0]
            return conn.execute("SELECT COUNT(*) FROM cv_records WHERE status = ?", (status.value,)).fetchone()[0]

    # ------------------------------------------------------------------
    @staticmethod
    def _scope_clauses(
        source_ids: list[str] | None, date_from: datetime | None, date_to: datetime | None
    ) -> tuple[list[str], list[Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        if source_ids:
            clauses.append(f"source_id IN ({', '.join('?' for _ in source_ids)})")
            params.extend(source_ids)
        if date_from is not None:
            clauses.append("scraped_at >= ?")
            params.append(_iso(date_from))
        if date_to is not None:
            clauses.append("scraped_at <= ?")
            params.append(_iso(date_to))
        return clauses, params

    @staticmethod
    def _row(record: CVRecord) -> tuple[Any, ...]:
        return (
            record.id,
            None if record.dedup.shares_fingerprint else record.dedup.fingerprint,
            normalize_email(record.contact.email),
            normalize_phone(record.contact.phone),
            normalize_name(record.full_name),
            normalize_company(current_company(record)),
            record.status.value,
            record.source.source_id,
            record.enrichment.experience_level,
            record.quality.overall_score,
            json.dumps(sorted({keyword.lower() for keyword in record.keywords})),
            _iso(record.source.scraped_at),
            _iso(record.created_at),
            record.model_dump_json(),
        )


__all__ = ["RecordPage", "RecordQuery", "RecordStore"]
