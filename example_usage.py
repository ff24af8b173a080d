import asyncio
import logging
import os
import tempfile

from certificate_models import CertificateFields, IssuanceRequest
from issuance_engine import IssuanceEngine
from ledger_client import LocalLedger
from verification_engine import VerificationEngine


async def main():
    # Local ledger in a scratch database; no chain or oracle needed
    db_path = os.path.join(tempfile.mkdtemp(), "example_ledger.db")
    ledger = LocalLedger(db_path)
    issuance = IssuanceEngine(ledger)
    verification = VerificationEngine(ledger)

    # Example: Issue a certificate
    issued = await issuance.issue(IssuanceRequest(
        recipient_name="John Doe",
        issuer_name="Open Tech Academy",
        course="Python Programming",
        issue_date="2024-05-01",
    ))
    record = issued.record
    print("\nIssued Certificate:")
    print(f"ID: {record.certificate_id}")
    print(f"Content Hash: {record.content_hash}")

    claimed = CertificateFields(
        recipient_name="John Doe",
        issuer_name="Open Tech Academy",
        course="Python Programming",
        issue_date="2024-05-01",
    )

    # Example: Verify with the original data, then with an altered name
    for label, data in (("original", claimed),
                        ("altered", CertificateFields(**{**claimed.to_dict(), "recipient_name": "Jane Doe"}))):
        result = await verification.verify(record.certificate_id, data)
        print(f"\nVerification ({label} data):")
        print(f"Verdict: {result.verdict.value}")
        print(f"Trust Score: {result.trust_score}")
        print(f"Hash Match: {result.hash_match}")
        for note in result.details:
            print(f"- {note}")

    # Example: Revoke and verify again
    await issuance.revoke(record.certificate_id, "Issued in error")
    result = await verification.verify(record.certificate_id)
    print(f"\nAfter revocation: {result.verdict.value}")


if __name__ == "__main__":
    # Set up logging
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s'
    )

    asyncio.run(main())
