from dataclasses import dataclass, field, asdict
from datetime import date, datetime
from enum import Enum
from typing import Dict, List, Optional, Union


class Verdict(str, Enum):
    VERIFIED = "VERIFIED"
    SUSPICIOUS = "SUSPICIOUS"
    TAMPERING_DETECTED = "TAMPERING_DETECTED"
    REVOKED = "REVOKED"


@dataclass
class CertificateFields:
    """Descriptive certificate content, as claimed by an issuer or a verifier"""

    recipient_name: Optional[str] = None
    issuer_name: Optional[str] = None
    course: Optional[str] = None
    issue_date: Optional[Union[str, date]] = None
    additional_info: Optional[str] = None

    def to_dict(self) -> Dict:
        data = asdict(self)
        if isinstance(self.issue_date, date):
            data["issue_date"] = self.issue_date.isoformat()
        return data


@dataclass
class IssuanceRequest:
    recipient_name: str
    issuer_name: str
    course: str
    issue_date: Optional[Union[str, date]] = None
    additional_info: Optional[str] = None


@dataclass
class LedgerRecord:
    """A certificate record as held by the ledger"""

    certificate_id: str
    content_hash: str
    issuer: str
    recipient: str
    recorded_at: datetime
    revoked: bool = False
    revocation_reason: Optional[str] = None
    metadata: Dict = field(default_factory=dict)

    def to_dict(self) -> Dict:
        return {
            "certificate_id": self.certificate_id,
            "content_hash": self.content_hash,
            "issuer": self.issuer,
            "recipient": self.recipient,
            "course": self.metadata.get("course"),
            "issue_date": self.metadata.get("issue_date"),
            "additional_info": self.metadata.get("additional_info"),
            "revoked": self.revoked,
            "revocation_reason": self.revocation_reason,
            "recorded_at": self.recorded_at.isoformat(),
        }


@dataclass
class Receipt:
    """Acknowledgement of a ledger write"""

    certificate_id: str
    transaction_id: Optional[str]
    ledger_mode: str
    timestamp: datetime
    revoked: bool = False
    already_revoked: bool = False
    revocation_reason: Optional[str] = None

    def to_dict(self) -> Dict:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


@dataclass
class IssuedCertificate:
    record: LedgerRecord
    receipt: Receipt

    def to_dict(self) -> Dict:
        data = self.record.to_dict()
        data["receipt"] = self.receipt.to_dict()
        return data


@dataclass
class OracleAssessment:
    is_authentic: bool
    confidence: int
    reason: str = ""

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class VerificationResult:
    certificate_id: str
    exists: bool
    is_valid: bool
    hash_match: Optional[bool]
    trust_score: int
    verdict: Verdict
    details: List[str] = field(default_factory=list)
    oracle: Optional[OracleAssessment] = None
    checked_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict:
        return {
            "certificate_id": self.certificate_id,
            "exists": self.exists,
            "is_valid": self.is_valid,
            "hash_match": self.hash_match,
            "trust_score": self.trust_score,
            "verdict": self.verdict.value,
            "details": list(self.details),
            "oracle": self.oracle.to_dict() if self.oracle else None,
            "checked_at": self.checked_at.isoformat(),
        }
