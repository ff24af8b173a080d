import uuid
from typing import Optional


class BlockProofError(Exception):
    """Base class for errors surfaced to API callers"""

    status_code = 500
    error_code = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {
            "success": False,
            "error": self.error_code,
            "message": self.message,
        }


class ValidationError(BlockProofError):
    status_code = 400
    error_code = "validation_error"


class NotFoundError(BlockProofError):
    status_code = 404
    error_code = "not_found"


class DuplicateIdError(BlockProofError):
    status_code = 409
    error_code = "duplicate_id"


class ServiceUnavailableError(BlockProofError):
    status_code = 503
    error_code = "service_unavailable"


class LedgerUnavailableError(ServiceUnavailableError):
    status_code = 502
    error_code = "ledger_unavailable"


class OracleUnavailableError(ServiceUnavailableError):
    error_code = "oracle_unavailable"


class OracleParseError(OracleUnavailableError):
    """Oracle answered, but not with a well-formed assessment"""

    error_code = "oracle_parse_error"


class InternalError(BlockProofError):
    status_code = 500
    error_code = "internal_error"

    def __init__(self, message: str = "Internal server error", correlation_id: Optional[str] = None):
        super().__init__(message)
        self.correlation_id = correlation_id or uuid.uuid4().hex

    def to_dict(self) -> dict:
        payload = super().to_dict()
        payload["correlation_id"] = self.correlation_id
        return payload


class UnavailableError(Exception):
    """Raised by ledger and oracle clients on transient transport failures"""
