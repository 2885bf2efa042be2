"""Normalisation and cleaning of CV identity fields."""

from __future__ import annotations

import hashlib
import re
import unicodedata

from ..entities import CVRecord

_WHITESPACE = re.compile(r"\s+")
_NON_DIGIT = re.compile(r"\D")
_COMPANY_SUFFIXES = (" inc", " ltd", " llc", " gmbh", " corp", " co", " plc", " sa", " ag")


def normalize_email(value: str | None) -> str | None:
    if not value:
        return None
    email = value.strip().lower()
    return email or None


def normalize_phone(value: str | None) -> str | None:
    if not value:
        return None
    digits = _NON_DIGIT.sub("", value)
    return digits or None


def normalize_name(value: str | None) -> str | None:
    if not value:
        return None
    decomposed = unicodedata.normalize("NFKD", value)
    ascii_only = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    cleaned = re.sub(r"[^\w\s]", " ", ascii_only.lower())
    name = _WHITESPACE.sub(" ", cleaned).strip()
    return name or None


def normalize_company(value: str | None) -> str | None:
    name = normalize_name(value)
    if not name:
        return None
    for suffix in _COMPANY_SUFFIXES:
        if name.endswith(suffix):
            name = name[: -len(suffix)].strip()
            break
    return name or None


def current_company(record: CVRecord) -> str | None:
    if record.current_company:
        return record.current_company
    for entry in record.experience:
        if entry.is_current and entry.company:
            return entry.company
    return None


def fingerprint(record: CVRecord) -> str | None:
    """Hash of normalised (email, phone, name); None without any contact handle."""

    email = normalize_email(record.contact.email)
    phone = normalize_phone(record.contact.phone)
    if not email and not phone:
        return None
    seed = "|".join((email or "", phone or "", normalize_name(record.full_name) or ""))
    return hashlib.sha256(seed.encode("utf-8")).hexdigest()


def clean_record(record: CVRecord) -> CVRecord:
    """Trim and canonicalise identity fields in place."""

    if record.contact.email:
        record.contact.email = record.contact.email.strip().lower() or None
    if record.contact.phone:
        record.contact.phone = record.contact.phone.replace(" ", "") or None
    if record.full_name:
        record.full_name = _WHITESPACE.sub(" ", record.full_name).strip() or None
    for name in ("headline", "summary", "current_title", "current_company"):
        value = getattr(record, name)
        if isinstance(value, str):
            setattr(record, name, value.strip() or None)
    return record


__all__ = [
    "clean_record",
    "current_company",
    "fingerprint",
    "normalize_company",
    "normalize_email",
    "normalize_name",
    "normalize_phone",
]
