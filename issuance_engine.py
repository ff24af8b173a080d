import asyncio
import logging
import secrets
import time
from datetime import date, datetime
from typing import Callable, Optional

from async_calls import run_with_timeout
from certificate_errors import DuplicateIdError, LedgerUnavailableError, UnavailableError, ValidationError
from certificate_hasher import hash_fields, normalize_date
from certificate_models import (
    CertificateFields,
    IssuanceRequest,
    IssuedCertificate,
    LedgerRecord,
    Receipt,
)
from ledger_client import LedgerClient

logger = logging.getLogger(__name__)

DEFAULT_REVOCATION_REASON = "Revoked by issuer"


class IssuanceEngine:
    """
    Issues certificates onto the ledger and revokes them.

    Every issued certificate gets a fresh ID, a content hash over its
    canonical fields, and exactly one ledger write. A ledger failure is
    reported as LedgerUnavailableError; nothing is reported as issued unless
    the ledger acknowledged the write.

    Writes are bounded by ``ledger_write_timeout``, which covers the time a
    chain ledger needs to mine the transaction. A write left unacknowledged
    after that is not assumed lost: the ledger is read back and the record
    is reported if it landed.
    """

    def __init__(self, ledger: LedgerClient, ledger_timeout: float = 5.0,
                 ledger_write_timeout: float = 150.0, max_id_attempts: int = 3,
                 clock: Callable[[], float] = time.time):
        self.ledger = ledger
        self.ledger_timeout = ledger_timeout
        self.ledger_write_timeout = ledger_write_timeout
        self.max_id_attempts = max_id_attempts
        self.clock = clock

    def generate_certificate_id(self) -> str:
        """CERT-<epoch millis>-<8 uppercase hex chars>"""
        millis = int(self.clock() * 1000)
        return f"CERT-{millis}-{secrets.token_hex(4).upper()}"

    @staticmethod
    def _validate(request: IssuanceRequest) -> CertificateFields:
        missing = [
            name for name, value in (
                ("recipientName", request.recipient_name),
                ("issuerName", request.issuer_name),
                ("course", request.course),
            )
            if not (value or "").strip()
        ]
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

        issue_date = normalize_date(request.issue_date) or date.today().isoformat()

        return CertificateFields(
            recipient_name=request.recipient_name.strip(),
            issuer_name=request.issuer_name.strip(),
            course=request.course.strip(),
            issue_date=issue_date,
            additional_info=(request.additional_info or "").strip() or None,
        )

    async def _read_back(self, certificate_id: str) -> Optional[LedgerRecord]:
        """Ledger state of a record whose write went unacknowledged; None if unreadable"""
        try:
            return await run_with_timeout(self.ledger.lookup, certificate_id, timeout=self.ledger_timeout)
        except (UnavailableError, asyncio.TimeoutError) as e:
            logger.error(f"Could not read back {certificate_id}: {str(e) or type(e).__name__}")
            return None

    async def issue(self, request: IssuanceRequest) -> IssuedCertificate:
        fields = self._validate(request)
        metadata = {
            "course": fields.course,
            "issue_date": fields.issue_date,
            "additional_info": fields.additional_info,
        }

        for attempt in range(1, self.max_id_attempts + 1):
            certificate_id = self.generate_certificate_id()
            content_hash = hash_fields(fields, certificate_id)
            logger.info(f"Issuing certificate {certificate_id} for '{fields.recipient_name}' "
                        f"from '{fields.issuer_name}' (attempt {attempt})")

            try:
                receipt = await run_with_timeout(
                    self.ledger.store,
                    certificate_id,
                    content_hash,
                    fields.issuer_name,
                    fields.recipient_name,
                    metadata,
                    timeout=self.ledger_write_timeout,
                )
            except DuplicateIdError:
                logger.warning(f"Certificate ID collision on {certificate_id}, regenerating")
                continue
            except UnavailableError as e:
                logger.error(f"Ledger unavailable while issuing {certificate_id}: {str(e)}")
                raise LedgerUnavailableError("Ledger is unavailable, certificate was not issued") from e
            except asyncio.TimeoutError as e:
                logger.error(f"Ledger did not acknowledge {certificate_id} within "
                             f"{self.ledger_write_timeout}s, reading it back")
                stored = await self._read_back(certificate_id)
                if stored is None or stored.content_hash != content_hash:
                    raise LedgerUnavailableError(
                        f"Ledger did not acknowledge certificate {certificate_id} in time, "
                        f"check it before issuing again"
                    ) from e
                logger.warning(f"Certificate {certificate_id} found on ledger after write timeout")
                receipt = Receipt(certificate_id, None, self.ledger.mode, stored.recorded_at)

            record = LedgerRecord(
                certificate_id=certificate_id,
                content_hash=content_hash,
                issuer=fields.issuer_name,
                recipient=fields.recipient_name,
                recorded_at=receipt.timestamp,
                metadata=metadata,
            )
            logger.info(f"Certificate {certificate_id} issued (tx {receipt.transaction_id})")
            return IssuedCertificate(record=record, receipt=receipt)

        raise DuplicateIdError(
            f"Could not allocate a unique certificate ID after {self.max_id_attempts} attempts"
        )

    async def revoke(self, certificate_id: str, reason: Optional[str] = None) -> Receipt:
        certificate_id = (certificate_id or "").strip()
        if not certificate_id:
            raise ValidationError("certificateId is required")
        reason = (reason or "").strip() or DEFAULT_REVOCATION_REASON

        try:
            receipt = await run_with_timeout(
                self.ledger.revoke, certificate_id, reason, timeout=self.ledger_write_timeout
            )
        except UnavailableError as e:
            logger.error(f"Ledger unavailable while revoking {certificate_id}: {str(e)}")
            raise LedgerUnavailableError("Ledger is unavailable, certificate was not revoked") from e
        except asyncio.TimeoutError as e:
            logger.error(f"Ledger did not acknowledge revocation of {certificate_id} within "
                         f"{self.ledger_write_timeout}s, reading it back")
            stored = await self._read_back(certificate_id)
            if stored is None or not stored.revoked:
                raise LedgerUnavailableError(
                    f"Ledger did not acknowledge revocation of {certificate_id} in time, "
                    f"its state is unknown"
                ) from e
            receipt = Receipt(
                certificate_id,
                None,
                self.ledger.mode,
                datetime.now(),
                revoked=True,
                already_revoked=stored.revocation_reason != reason,
                revocation_reason=stored.revocation_reason,
            )

        if receipt.already_revoked:
            logger.info(f"Certificate {certificate_id} was already revoked")
        else:
            logger.info(f"Certificate {certificate_id} revoked: {reason}")
        return receipt
