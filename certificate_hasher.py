import hashlib
import json
from datetime import date, datetime
from typing import Optional, Union

from certificate_errors import ValidationError
from certificate_models import CertificateFields

# Canonical serialization order; changing it changes every digest.
CANONICAL_KEYS = (
    "certificate_id",
    "recipient_name",
    "issuer_name",
    "course",
    "issue_date",
    "additional_info",
)

_DATE_FORMATS = ("%Y-%m-%d", "%d/%m/%Y", "%d-%m-%Y", "%Y/%m/%d")


def normalize_date(value: Optional[Union[str, date]]) -> str:
    """Normalize a date (or date-like string) to an ISO-8601 date-only string"""
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()

    text = str(value).strip()
    if not text:
        return ""

    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00")).date().isoformat()
    except ValueError:
        pass

    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date().isoformat()
        except ValueError:
            continue

    raise ValidationError(f"Unrecognized date: '{text}'")


def _clean(value: Optional[str]) -> str:
    return str(value).strip() if value is not None else ""


def canonicalize(fields: CertificateFields, certificate_id: str = "") -> str:
    """Deterministic JSON serialization of certificate fields"""
    values = {
        "certificate_id": _clean(certificate_id),
        "recipient_name": _clean(fields.recipient_name),
        "issuer_name": _clean(fields.issuer_name),
        "course": _clean(fields.course),
        "issue_date": normalize_date(fields.issue_date),
        "additional_info": _clean(fields.additional_info),
    }
    ordered = [[key, values[key]] for key in CANONICAL_KEYS]
    return json.dumps(ordered, ensure_ascii=False, separators=(",", ":"))


def hash_fields(fields: CertificateFields, certificate_id: str = "") -> str:
    """SHA-256 hex digest of the canonical form of ``fields``"""
    canonical = canonicalize(fields, certificate_id)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def hash_bytes(content: bytes) -> str:
    """SHA-256 hex digest of raw file content"""
    return hashlib.sha256(content).hexdigest()
