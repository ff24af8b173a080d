import logging
import sqlite3
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Optional

import requests
from web3 import Web3
from web3.exceptions import Web3Exception

from app_config import AppConfig
from certificate_errors import DuplicateIdError, NotFoundError, UnavailableError
from certificate_models import LedgerRecord, Receipt
from database import LedgerService, DuplicateRecordError

logger = logging.getLogger(__name__)

# Interface of the deployed certificate registry contract
CERTIFICATE_REGISTRY_ABI = [
    {
        "type": "function",
        "name": "storeCertificate",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "id", "type": "string"},
            {"name": "hash", "type": "bytes32"},
            {"name": "issuer", "type": "string"},
            {"name": "recipient", "type": "string"},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "verifyCertificate",
        "stateMutability": "view",
        "inputs": [{"name": "id", "type": "string"}],
        "outputs": [
            {"name": "hash", "type": "bytes32"},
            {"name": "issuer", "type": "string"},
            {"name": "recipient", "type": "string"},
            {"name": "timestamp", "type": "uint256"},
            {"name": "exists", "type": "bool"},
            {"name": "revoked", "type": "bool"},
        ],
    },
    {
        "type": "function",
        "name": "revokeCertificate",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "id", "type": "string"},
            {"name": "reason", "type": "string"},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "revocationReason",
        "stateMutability": "view",
        "inputs": [{"name": "id", "type": "string"}],
        "outputs": [{"name": "reason", "type": "string"}],
    },
]


class LedgerClient(ABC):
    """Authoritative store of issued certificate records"""

    mode = "unknown"
    degraded = False

    @abstractmethod
    def store(self, certificate_id: str, content_hash: str, issuer: str,
              recipient: str, metadata: Optional[Dict] = None) -> Receipt:
        """Persist a new record. Raises DuplicateIdError if the ID exists."""

    @abstractmethod
    def lookup(self, certificate_id: str) -> Optional[LedgerRecord]:
        """Return the stored record, or None if it was never issued."""

    @abstractmethod
    def revoke(self, certificate_id: str, reason: str) -> Receipt:
        """Revoke a record. Idempotent; raises NotFoundError for unknown IDs."""

    def is_connected(self) -> bool:
        return True

    def describe(self) -> Dict:
        return {
            "mode": self.mode,
            "degraded": self.degraded,
            "connected": self.is_connected(),
        }


class LocalLedger(LedgerClient):
    """Ledger kept in a local SQLite database, used when no chain is configured"""

    mode = "local"
    degraded = True

    def __init__(self, db_path: str = "blockproof_ledger.db", timeout: float = 5.0):
        self.service = LedgerService(db_path, timeout=timeout)

    def store(self, certificate_id, content_hash, issuer, recipient, metadata=None) -> Receipt:
        try:
            stored = self.service.record_certificate(certificate_id, content_hash, issuer, recipient, metadata)
        except DuplicateRecordError:
            raise DuplicateIdError(f"Certificate ID already exists: {certificate_id}")
        except sqlite3.Error as e:
            raise UnavailableError(f"Local ledger write failed: {e}") from e

        return Receipt(
            certificate_id=certificate_id,
            transaction_id=stored['transaction_id'],
            ledger_mode=self.mode,
            timestamp=datetime.fromisoformat(stored['recorded_at']),
        )

    def lookup(self, certificate_id) -> Optional[LedgerRecord]:
        try:
            row = self.service.get_certificate(certificate_id)
        except sqlite3.Error as e:
            raise UnavailableError(f"Local ledger read failed: {e}") from e

        if row is None:
            return None

        return LedgerRecord(
            certificate_id=row['certificate_id'],
            content_hash=row['content_hash'],
            issuer=row['issuer'],
            recipient=row['recipient'],
            recorded_at=datetime.fromisoformat(row['recorded_at']),
            revoked=row['revoked'],
            revocation_reason=row['revocation_reason'],
            metadata=row['metadata'],
        )

    def revoke(self, certificate_id, reason) -> Receipt:
        try:
            row = self.service.revoke_certificate(certificate_id, reason)
        except sqlite3.Error as e:
            raise UnavailableError(f"Local ledger write failed: {e}") from e

        if row is None:
            raise NotFoundError(f"Certificate not found: {certificate_id}")

        if row['already_revoked']:
            # Point at the original revocation rather than the latest STORE
            history = self.service.get_certificate_history(certificate_id)
            revocations = [event for event in history if event['event_type'] == 'REVOKE']
            transaction_id = revocations[0]['transaction_id'] if revocations else row['transaction_id']
        else:
            transaction_id = row['transaction_id']

        return Receipt(
            certificate_id=certificate_id,
            transaction_id=transaction_id,
            ledger_mode=self.mode,
            timestamp=datetime.fromisoformat(row['revoked_at']),
            revoked=True,
            already_revoked=row['already_revoked'],
            revocation_reason=row['revocation_reason'],
        )

    def stats(self) -> Dict:
        return self.service.get_ledger_stats()


class ContractLedger(LedgerClient):
    """Ledger backed by the certificate registry smart contract"""

    mode = "chain"
    degraded = False

    def __init__(self, rpc_url: str, contract_address: str, private_key: str,
                 timeout: float = 5.0, receipt_timeout: float = 120.0):
        self.w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))
        self.contract = self.w3.eth.contract(
            address=Web3.to_checksum_address(contract_address),
            abi=CERTIFICATE_REGISTRY_ABI,
        )
        self.account = self.w3.eth.account.from_key(private_key)
        self._private_key = private_key
        self.receipt_timeout = receipt_timeout

    def is_connected(self) -> bool:
        try:
            return self.w3.is_connected()
        except (Web3Exception, requests.exceptions.RequestException) as e:
            logger.warning(f"Chain connectivity check failed: {str(e)}")
            return False

    def _send(self, function) -> str:
        tx = function.build_transaction({
            'from': self.account.address,
            'nonce': self.w3.eth.get_transaction_count(self.account.address),
        })
        signed = self.w3.eth.account.sign_transaction(tx, private_key=self._private_key)
        tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
        receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout)
        if receipt['status'] != 1:
            raise UnavailableError(f"Transaction {tx_hash.hex()} reverted")
        return receipt['transactionHash'].hex()

    def store(self, certificate_id, content_hash, issuer, recipient, metadata=None) -> Receipt:
        if self.lookup(certificate_id) is not None:
            raise DuplicateIdError(f"Certificate ID already exists: {certificate_id}")

        try:
            tx_hash = self._send(self.contract.functions.storeCertificate(
                certificate_id, bytes.fromhex(content_hash), issuer, recipient
            ))
        except (Web3Exception, requests.exceptions.RequestException) as e:
            logger.error(f"Failed to store certificate {certificate_id} on-chain: {str(e)}")
            raise UnavailableError(f"Chain write failed: {e}") from e

        logger.info(f"Certificate {certificate_id} stored on-chain. Tx hash: {tx_hash}")
        return Receipt(
            certificate_id=certificate_id,
            transaction_id=tx_hash,
            ledger_mode=self.mode,
            timestamp=datetime.now(),
        )

    def lookup(self, certificate_id) -> Optional[LedgerRecord]:
        try:
            stored_hash, issuer, recipient, timestamp, exists, revoked = (
                self.contract.functions.verifyCertificate(certificate_id).call()
            )
            reason = None
            if exists and revoked:
                reason = self.contract.functions.revocationReason(certificate_id).call()
        except (Web3Exception, requests.exceptions.RequestException) as e:
            logger.error(f"Failed to read certificate {certificate_id} from chain: {str(e)}")
            raise UnavailableError(f"Chain read failed: {e}") from e

        if not exists:
            return None

        return LedgerRecord(
            certificate_id=certificate_id,
            content_hash=bytes(stored_hash).hex(),
            issuer=issuer,
            recipient=recipient,
            recorded_at=datetime.fromtimestamp(timestamp),
            revoked=revoked,
            revocation_reason=reason,
        )

    def revoke(self, certificate_id, reason) -> Receipt:
        record = self.lookup(certificate_id)
        if record is None:
            raise NotFoundError(f"Certificate not found: {certificate_id}")

        if record.revoked:
            return Receipt(
                certificate_id=certificate_id,
                transaction_id="",
                ledger_mode=self.mode,
                timestamp=datetime.now(),
                revoked=True,
                already_revoked=True,
                revocation_reason=record.revocation_reason,
            )

        try:
            tx_hash = self._send(self.contract.functions.revokeCertificate(certificate_id, reason))
        except (Web3Exception, requests.exceptions.RequestException) as e:
            logger.error(f"Failed to revoke certificate {certificate_id} on-chain: {str(e)}")
            raise UnavailableError(f"Chain write failed: {e}") from e

        logger.info(f"Certificate {certificate_id} revoked on-chain. Tx hash: {tx_hash}")
        return Receipt(
            certificate_id=certificate_id,
            transaction_id=tx_hash,
            ledger_mode=self.mode,
            timestamp=datetime.now(),
            revoked=True,
            revocation_reason=reason,
        )


def build_ledger(config: AppConfig) -> LedgerClient:
    """Construct the ledger client selected by the configuration"""
    if config.resolved_ledger_mode() == "chain":
        logger.info(f"Using contract ledger at {config.contract_address}")
        return ContractLedger(
            config.blockchain_rpc_url,
            config.contract_address,
            config.private_key,
            timeout=config.ledger_timeout,
            receipt_timeout=config.receipt_timeout,
        )

    logger.warning(f"No chain configured, using local ledger at {config.ledger_db_path}")
    return LocalLedger(config.ledger_db_path, timeout=config.ledger_timeout)
