from .ledger_db import LedgerDatabase, DuplicateRecordError
from .ledger_service import LedgerService

__all__ = ["LedgerDatabase", "LedgerService", "DuplicateRecordError"]
