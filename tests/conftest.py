"""Pytest configuration and fixtures for BlockProof tests."""
from __future__ import annotations

import asyncio
import time
from datetime import datetime

import pytest

from app_config import AppConfig
from certificate_errors import DuplicateIdError, NotFoundError, UnavailableError
from certificate_models import CertificateFields, IssuanceRequest, LedgerRecord, OracleAssessment, Receipt
from issuance_engine import IssuanceEngine
from ledger_client import LedgerClient
from trust_oracle import TrustOracle
from verification_engine import VerificationEngine


class FakeLedger(LedgerClient):
    """In-memory ledger with switchable failure modes."""

    mode = "memory"
    degraded = False

    def __init__(self):
        self.records = {}
        self.available = True
        self.delay = 0.0
        self.ack_delay = 0.0
        self.reject_next_ids = 0
        self.store_calls = 0
        self.lookup_error = None
        self._tx = 0

    def _next_tx(self):
        self._tx += 1
        return f"tx-{self._tx}"

    def _check(self):
        if self.delay:
            time.sleep(self.delay)
        if not self.available:
            raise UnavailableError("ledger offline")

    def _acknowledge(self):
        # the write has landed; the caller still waits for confirmation
        if self.ack_delay:
            time.sleep(self.ack_delay)

    def store(self, certificate_id, content_hash, issuer, recipient, metadata=None):
        self.store_calls += 1
        self._check()
        if self.reject_next_ids > 0:
            self.reject_next_ids -= 1
            raise DuplicateIdError(f"Certificate ID already exists: {certificate_id}")
        if certificate_id in self.records:
            raise DuplicateIdError(f"Certificate ID already exists: {certificate_id}")
        now = datetime.now()
        self.records[certificate_id] = LedgerRecord(
            certificate_id=certificate_id,
            content_hash=content_hash,
            issuer=issuer,
            recipient=recipient,
            recorded_at=now,
            metadata=dict(metadata or {}),
        )
        self._acknowledge()
        return Receipt(certificate_id, self._next_tx(), self.mode, now)

    def lookup(self, certificate_id):
        self._check()
        if self.lookup_error is not None:
            raise self.lookup_error
        return self.records.get(certificate_id)

    def revoke(self, certificate_id, reason):
        self._check()
        record = self.records.get(certificate_id)
        if record is None:
            raise NotFoundError(f"Certificate not found: {certificate_id}")
        already = record.revoked
        if not already:
            record.revoked = True
            record.revocation_reason = reason
        self._acknowledge()
        return Receipt(
            certificate_id,
            self._next_tx(),
            self.mode,
            datetime.now(),
            revoked=True,
            already_revoked=already,
            revocation_reason=record.revocation_reason,
        )


class FakeOracle(TrustOracle):
    """Oracle returning a fixed assessment, or raising a configured error."""

    mode = "fake"

    def __init__(self, confidence=90, is_authentic=True, error=None, delay=0.0):
        self.confidence = confidence
        self.is_authentic = is_authentic
        self.error = error
        self.delay = delay
        self.calls = []

    def score(self, fields):
        self.calls.append(fields)
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return OracleAssessment(self.is_authentic, self.confidence, "looks plausible")


@pytest.fixture
def run():
    """Run a coroutine to completion."""
    return asyncio.run


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def oracle():
    return FakeOracle()


@pytest.fixture
def issuance(ledger):
    return IssuanceEngine(ledger, ledger_timeout=1.0)


@pytest.fixture
def verification(ledger, oracle):
    return VerificationEngine(ledger, oracle, ledger_timeout=1.0, oracle_timeout=1.0)


@pytest.fixture
def sample_request():
    return IssuanceRequest(
        recipient_name="Ada Lovelace",
        issuer_name="Analytical Engine Institute",
        course="Applied Cryptography",
        issue_date="2024-03-15",
        additional_info="Grade: A",
    )


@pytest.fixture
def sample_fields():
    return CertificateFields(
        recipient_name="Ada Lovelace",
        issuer_name="Analytical Engine Institute",
        course="Applied Cryptography",
        issue_date="2024-03-15",
        additional_info="Grade: A",
    )


@pytest.fixture
def test_config(tmp_path):
    return AppConfig(
        ledger_mode="local",
        ledger_db_path=str(tmp_path / "ledger.db"),
        ledger_timeout=1.0,
        oracle_mode="none",
        oracle_timeout=1.0,
        log_file=None,
    )
