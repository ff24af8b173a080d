from typing import Dict, List, Optional
from .ledger_db import LedgerDatabase
import logging

logger = logging.getLogger(__name__)


class LedgerService:
    """Service layer for certificate ledger persistence"""

    def __init__(self, db_path: str = "blockproof_ledger.db", timeout: float = 5.0):
        self.db = LedgerDatabase(db_path, timeout=timeout)

    def record_certificate(self, certificate_id: str, content_hash: str, issuer: str,
                           recipient: str, metadata: Optional[Dict] = None) -> Dict:
        """Record a newly issued certificate and return its transaction info"""
        return self.db.insert_certificate(certificate_id, content_hash, issuer, recipient, metadata)

    def get_certificate(self, certificate_id: str) -> Optional[Dict]:
        """Get a certificate record by ID"""
        return self.db.get_certificate(certificate_id)

    def revoke_certificate(self, certificate_id: str, reason: str) -> Optional[Dict]:
        """Revoke a certificate; None if it was never recorded"""
        return self.db.revoke_certificate(certificate_id, reason)

    def get_certificate_history(self, certificate_id: str) -> List[Dict]:
        """Get the ledger journal for a certificate"""
        return self.db.get_events(certificate_id)

    def get_ledger_stats(self) -> Dict:
        """Get ledger statistics"""
        return self.db.get_ledger_stats()

