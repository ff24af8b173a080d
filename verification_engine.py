import asyncio
import logging
from typing import List, Optional, Tuple

from async_calls import run_with_timeout
from certificate_errors import (
    LedgerUnavailableError,
    NotFoundError,
    OracleParseError,
    OracleUnavailableError,
    UnavailableError,
    ValidationError,
)
from certificate_hasher import hash_fields
from certificate_models import (
    CertificateFields,
    LedgerRecord,
    OracleAssessment,
    Verdict,
    VerificationResult,
)
from ledger_client import LedgerClient
from trust_oracle import TrustOracle

logger = logging.getLogger(__name__)

ORACLE_UNAVAILABLE_NOTE = "oracle unavailable"


def combine_verdict(hash_match: bool, assessment: Optional[OracleAssessment],
                    trust_threshold: int = 60) -> Tuple[Verdict, int]:
    """
    Decide the verdict for a record that exists, is not revoked, and was
    checked against claimed data.

    ``assessment`` is None when the oracle could not be consulted; in that
    case the hash comparison alone decides.
    """
    low_trust = assessment is not None and assessment.confidence < trust_threshold

    if not hash_match:
        if low_trust:
            return Verdict.TAMPERING_DETECTED, assessment.confidence
        return Verdict.SUSPICIOUS, assessment.confidence if assessment else 0

    if low_trust:
        return Verdict.SUSPICIOUS, assessment.confidence
    return Verdict.VERIFIED, assessment.confidence if assessment else 100


class VerificationEngine:
    """
    Combines the ledger record, a content hash comparison and the trust
    oracle's opinion into a single verdict.

    The ledger is authoritative: if it cannot be read the verification fails
    with LedgerUnavailableError. The oracle is advisory: if it cannot be
    reached the result carries an "oracle unavailable" note and the hash
    comparison decides on its own.
    """

    def __init__(self, ledger: LedgerClient, oracle: Optional[TrustOracle] = None,
                 ledger_timeout: float = 5.0, oracle_timeout: float = 8.0,
                 trust_threshold: int = 60, neutral_confidence: int = 70):
        self.ledger = ledger
        self.oracle = oracle
        self.ledger_timeout = ledger_timeout
        self.oracle_timeout = oracle_timeout
        self.trust_threshold = trust_threshold
        self.neutral_confidence = neutral_confidence

    async def _lookup(self, certificate_id: str) -> Optional[LedgerRecord]:
        try:
            return await run_with_timeout(self.ledger.lookup, certificate_id, timeout=self.ledger_timeout)
        except UnavailableError as e:
            logger.error(f"Ledger lookup failed for {certificate_id}: {str(e)}")
            raise LedgerUnavailableError("Ledger is unavailable, cannot assess authenticity") from e
        except asyncio.TimeoutError as e:
            logger.error(f"Ledger lookup for {certificate_id} timed out after {self.ledger_timeout}s")
            raise LedgerUnavailableError("Ledger timed out, cannot assess authenticity") from e

    async def consult_oracle(self, fields: CertificateFields, details: List[str]) -> Optional[OracleAssessment]:
        if self.oracle is None:
            details.append(f"{ORACLE_UNAVAILABLE_NOTE}: no trust oracle configured, "
                           f"assuming neutral confidence {self.neutral_confidence}")
            return None

        try:
            assessment = await run_with_timeout(self.oracle.score, fields, timeout=self.oracle_timeout)
        except OracleParseError as e:
            logger.warning(f"Trust oracle returned a malformed assessment: {e.message}")
            reason = "malformed response"
        except OracleUnavailableError as e:
            logger.warning(f"Trust oracle unavailable: {e.message}")
            reason = "service unreachable"
        except asyncio.TimeoutError:
            logger.warning(f"Trust oracle timed out after {self.oracle_timeout}s")
            reason = "timed out"
        except Exception as e:
            logger.error(f"Unexpected trust oracle failure: {str(e)}", exc_info=True)
            reason = "unexpected error"
        else:
            details.append(f"Trust oracle confidence {assessment.confidence}: {assessment.reason}")
            if not assessment.is_authentic:
                details.append("Trust oracle flagged the certificate content as not authentic")
            return assessment

        details.append(f"{ORACLE_UNAVAILABLE_NOTE} ({reason}), "
                       f"assuming neutral confidence {self.neutral_confidence}")
        return None

    async def verify(self, certificate_id: str,
                     claimed_data: Optional[CertificateFields] = None) -> VerificationResult:
        certificate_id = (certificate_id or "").strip()
        if not certificate_id:
            raise ValidationError("certificateId is required")

        logger.info(f"Verification request - ID: {certificate_id}, "
                    f"claimed data: {'yes' if claimed_data is not None else 'no'}")

        record = await self._lookup(certificate_id)

        if record is None:
            logger.warning(f"Certificate {certificate_id} not found on ledger")
            return VerificationResult(
                certificate_id=certificate_id,
                exists=False,
                is_valid=False,
                hash_match=None,
                trust_score=0,
                verdict=Verdict.TAMPERING_DETECTED,
                details=["Certificate not found on ledger"],
            )

        details = [f"Certificate found on {self.ledger.mode} ledger, recorded {record.recorded_at.isoformat()}"]

        if record.revoked:
            details.append(f"Certificate revoked: {record.revocation_reason or 'no reason given'}")
            hash_match = None
            if claimed_data is not None:
                try:
                    hash_match = hash_fields(claimed_data, certificate_id) == record.content_hash
                except ValidationError as e:
                    details.append(f"Claimed data not compared: {e.message}")
            logger.info(f"Certificate {certificate_id} is revoked")
            return VerificationResult(
                certificate_id=certificate_id,
                exists=True,
                is_valid=False,
                hash_match=hash_match,
                trust_score=0,
                verdict=Verdict.REVOKED,
                details=details,
            )

        if claimed_data is None:
            details.append("No certificate data supplied, existence check only")
            return VerificationResult(
                certificate_id=certificate_id,
                exists=True,
                is_valid=True,
                hash_match=None,
                trust_score=100,
                verdict=Verdict.VERIFIED,
                details=details,
            )

        hash_match = hash_fields(claimed_data, certificate_id) == record.content_hash
        if hash_match:
            details.append("Content hash matches the ledger record")
        else:
            details.append("Content hash does not match the ledger record")

        assessment = await self.consult_oracle(claimed_data, details)
        verdict, trust_score = combine_verdict(hash_match, assessment, self.trust_threshold)

        logger.info(f"Verification of {certificate_id} complete - verdict: {verdict.value}, "
                    f"trust score: {trust_score}")

        return VerificationResult(
            certificate_id=certificate_id,
            exists=True,
            is_valid=True,
            hash_match=hash_match,
            trust_score=trust_score,
            verdict=verdict,
            details=details,
            oracle=assessment,
        )

    async def get_certificate(self, certificate_id: str) -> LedgerRecord:
        """Current ledger record for ``certificate_id``"""
        certificate_id = (certificate_id or "").strip()
        if not certificate_id:
            raise ValidationError("certificateId is required")

        record = await self._lookup(certificate_id)
        if record is None:
            raise NotFoundError(f"Certificate not found: {certificate_id}")
        return record
