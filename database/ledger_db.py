import sqlite3
import json
import logging
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Optional


class DuplicateRecordError(Exception):
    """A certificate with the same ID is already recorded"""


class LedgerDatabase:
    """SQLite store for issued certificate records"""

    def __init__(self, db_path: str = "blockproof_ledger.db", timeout: float = 5.0):
        self.db_path = db_path
        self.timeout = timeout
        self.logger = logging.getLogger(__name__)
        self.initialize_database()

    @contextmanager
    def _connect(self):
        # Autocommit mode; multi-statement writes open their own transaction
        conn = sqlite3.connect(self.db_path, timeout=self.timeout, isolation_level=None)
        try:
            yield conn
        finally:
            conn.close()

    def initialize_database(self):
        """Initialize SQLite database with necessary tables"""
        try:
            with self._connect() as conn:
                cursor = conn.cursor()

                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS certificates (
                        certificate_id TEXT PRIMARY KEY,
                        content_hash TEXT NOT NULL,
                        issuer TEXT NOT NULL,
                        recipient TEXT NOT NULL,
                        metadata TEXT,
                        revoked INTEGER NOT NULL DEFAULT 0,
                        revocation_reason TEXT,
                        transaction_id TEXT NOT NULL,
                        recorded_at TEXT NOT NULL,
                        revoked_at TEXT
                    )
                """)

                # Append-only journal of every write against the ledger
                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS ledger_events (
                        event_id INTEGER PRIMARY KEY AUTOINCREMENT,
                        certificate_id TEXT NOT NULL,
                        event_type TEXT NOT NULL,
                        transaction_id TEXT NOT NULL,
                        created_at TEXT NOT NULL,
                        FOREIGN KEY (certificate_id) REFERENCES certificates(certificate_id)
                    )
                """)

                # Revocation can only move false -> true
                cursor.execute("""
                    CREATE TRIGGER IF NOT EXISTS forbid_unrevoke
                    BEFORE UPDATE OF revoked ON certificates
                    WHEN OLD.revoked = 1 AND NEW.revoked = 0
                    BEGIN
                        SELECT RAISE(ABORT, 'revocation is permanent');
                    END;
                """)

                self.logger.info(f"Ledger database initialized at {self.db_path}")

        except sqlite3.Error as e:
            self.logger.error(f"Database initialization error: {str(e)}")
            raise

    def insert_certificate(self, certificate_id: str, content_hash: str, issuer: str,
                           recipient: str, metadata: Optional[Dict] = None) -> Dict:
        """Insert a new certificate; never overwrites an existing ID"""
        transaction_id = uuid.uuid4().hex
        recorded_at = datetime.now().isoformat()

        try:
            with self._connect() as conn:
                cursor = conn.cursor()
                cursor.execute("BEGIN IMMEDIATE")
                try:
                    cursor.execute("""
                        INSERT INTO certificates (
                            certificate_id, content_hash, issuer, recipient,
                            metadata, transaction_id, recorded_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """, (
                        certificate_id,
                        content_hash,
                        issuer,
                        recipient,
                        json.dumps(metadata or {}),
                        transaction_id,
                        recorded_at
                    ))
                    self._append_event(cursor, certificate_id, "STORE", transaction_id, recorded_at)
                    cursor.execute("COMMIT")
                except sqlite3.Error:
                    cursor.execute("ROLLBACK")
                    raise

        except sqlite3.IntegrityError as e:
            self.logger.warning(f"Rejected duplicate certificate ID {certificate_id}")
            raise DuplicateRecordError(certificate_id) from e
        except sqlite3.Error as e:
            self.logger.error(f"Error inserting certificate {certificate_id}: {str(e)}")
            raise

        self.logger.info(f"Stored certificate {certificate_id} (tx {transaction_id})")
        return {'transaction_id': transaction_id, 'recorded_at': recorded_at}

    def get_certificate(self, certificate_id: str) -> Optional[Dict]:
        """Retrieve a certificate record by ID"""
        try:
            with self._connect() as conn:
                conn.row_factory = sqlite3.Row
                cursor = conn.cursor()

                cursor.execute(
                    "SELECT * FROM certificates WHERE certificate_id = ?",
                    (certificate_id,)
                )

                row = cursor.fetchone()
                if not row:
                    return None

                return self._row_to_dict(row)

        except sqlite3.Error as e:
            self.logger.error(f"Error retrieving certificate {certificate_id}: {str(e)}")
            raise

    def revoke_certificate(self, certificate_id: str, reason: str) -> Optional[Dict]:
        """
        Mark a certificate as revoked.

        Returns None if the certificate does not exist. Revoking an already
        revoked certificate leaves the stored reason untouched and reports
        ``already_revoked``.
        """
        try:
            with self._connect() as conn:
                conn.row_factory = sqlite3.Row
                cursor = conn.cursor()
                cursor.execute("BEGIN IMMEDIATE")
                try:
                    cursor.execute(
                        "SELECT * FROM certificates WHERE certificate_id = ?",
                        (certificate_id,)
                    )
                    row = cursor.fetchone()
                    if not row:
                        cursor.execute("ROLLBACK")
                        return None

                    current = self._row_to_dict(row)
                    if current['revoked']:
                        cursor.execute("ROLLBACK")
                        current['already_revoked'] = True
                        return current

                    transaction_id = uuid.uuid4().hex
                    revoked_at = datetime.now().isoformat()
                    cursor.execute("""
                        UPDATE certificates
                        SET revoked = 1,
                            revocation_reason = ?,
                            revoked_at = ?
                        WHERE certificate_id = ?
                    """, (reason, revoked_at, certificate_id))
                    self._append_event(cursor, certificate_id, "REVOKE", transaction_id, revoked_at)
                    cursor.execute("COMMIT")
                except sqlite3.Error:
                    cursor.execute("ROLLBACK")
                    raise

        except sqlite3.Error as e:
            self.logger.error(f"Error revoking certificate {certificate_id}: {str(e)}")
            raise

        self.logger.info(f"Revoked certificate {certificate_id} (tx {transaction_id})")
        current.update({
            'revoked': True,
            'revocation_reason': reason,
            'revoked_at': revoked_at,
            'transaction_id': transaction_id,
            'already_revoked': False
        })
        return current

    def get_events(self, certificate_id: str) -> list:
        """Ledger journal entries for a certificate, oldest first"""
        try:
            with self._connect() as conn:
                conn.row_factory = sqlite3.Row
                cursor = conn.cursor()
                cursor.execute("""
                    SELECT event_type, transaction_id, created_at
                    FROM ledger_events
                    WHERE certificate_id = ?
                    ORDER BY event_id
                """, (certificate_id,))
                return [dict(row) for row in cursor.fetchall()]

        except sqlite3.Error as e:
            self.logger.error(f"Error reading ledger events: {str(e)}")
            raise

    def get_ledger_stats(self) -> Dict:
        """Get counts of issued and revoked certificates"""
        try:
            with self._connect() as conn:
                cursor = conn.cursor()
                cursor.execute("""
                    SELECT
                        COUNT(*) as total,
                        SUM(CASE WHEN revoked = 1 THEN 1 ELSE 0 END) as revoked
                    FROM certificates
                """)
                row = cursor.fetchone()
                return {
                    'total_certificates': row[0] or 0,
                    'revoked_certificates': row[1] or 0
                }

        except sqlite3.Error as e:
            self.logger.error(f"Error getting ledger stats: {str(e)}")
            raise

    @staticmethod
    def _append_event(cursor, certificate_id: str, event_type: str, transaction_id: str, created_at: str):
        cursor.execute("""
            INSERT INTO ledger_events (certificate_id, event_type, transaction_id, created_at)
            VALUES (?, ?, ?, ?)
        """, (certificate_id, event_type, transaction_id, created_at))

    @staticmethod
    def _row_to_dict(row) -> Dict:
        result = dict(row)
        result['metadata'] = json.loads(result['metadata']) if result['metadata'] else {}
        result['revoked'] = bool(result['revoked'])
        return result
