import os
import logging
from dataclasses import dataclass
from typing import Mapping, Optional

from dotenv import load_dotenv

from certificate_errors import ValidationError

logger = logging.getLogger(__name__)

LEDGER_MODES = ("auto", "chain", "local")
ORACLE_MODES = ("auto", "gemini", "local", "none")


@dataclass
class AppConfig:
    """Explicit service configuration passed to every client at construction"""

    ledger_mode: str = "auto"
    blockchain_rpc_url: Optional[str] = None
    contract_address: Optional[str] = None
    private_key: Optional[str] = None
    ledger_db_path: str = "blockproof_ledger.db"
    ledger_timeout: float = 5.0
    ledger_write_timeout: float = 150.0
    receipt_timeout: float = 120.0

    oracle_mode: str = "auto"
    gemini_api_key: Optional[str] = None
    gemini_model: str = "gemini-2.0-flash"
    oracle_model: str = "facebook/bart-large-mnli"
    oracle_timeout: float = 8.0

    trust_threshold: int = 60
    neutral_confidence: int = 70

    tesseract_cmd: Optional[str] = None
    log_level: str = "INFO"
    log_file: Optional[str] = "api_server.log"

    @property
    def chain_configured(self) -> bool:
        return bool(self.blockchain_rpc_url and self.contract_address and self.private_key)

    def resolved_ledger_mode(self) -> str:
        if self.ledger_mode == "auto":
            return "chain" if self.chain_configured else "local"
        return self.ledger_mode

    def resolved_oracle_mode(self) -> str:
        if self.oracle_mode == "auto":
            return "gemini" if self.gemini_api_key else "none"
        return self.oracle_mode

    def validate(self) -> "AppConfig":
        if self.ledger_mode not in LEDGER_MODES:
            raise ValidationError(f"LEDGER_MODE must be one of {', '.join(LEDGER_MODES)}")
        if self.oracle_mode not in ORACLE_MODES:
            raise ValidationError(f"ORACLE_MODE must be one of {', '.join(ORACLE_MODES)}")
        if self.ledger_mode == "chain" and not self.chain_configured:
            raise ValidationError(
                "LEDGER_MODE=chain requires BLOCKCHAIN_RPC_URL, CONTRACT_ADDRESS and PRIVATE_KEY"
            )
        if self.oracle_mode == "gemini" and not self.gemini_api_key:
            raise ValidationError("ORACLE_MODE=gemini requires GEMINI_API_KEY")
        for name in ("trust_threshold", "neutral_confidence"):
            value = getattr(self, name)
            if not 0 <= value <= 100:
                raise ValidationError(f"{name.upper()} must be between 0 and 100")
        for name in ("ledger_timeout", "ledger_write_timeout", "receipt_timeout", "oracle_timeout"):
            if getattr(self, name) <= 0:
                raise ValidationError(f"{name.upper()} must be positive")
        if self.ledger_write_timeout < self.receipt_timeout:
            raise ValidationError("LEDGER_WRITE_TIMEOUT must not be shorter than RECEIPT_TIMEOUT")
        return self


def _number(env: Mapping[str, str], key: str, default, cast):
    raw = env.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return cast(raw)
    except ValueError:
        raise ValidationError(f"{key} must be a number, got '{raw}'")


def load_config(env: Optional[Mapping[str, str]] = None, dotenv_path: Optional[str] = None) -> AppConfig:
    """
    Build an AppConfig from environment variables.

    When ``env`` is omitted the process environment is used, after loading
    a ``.env`` file if one is present.
    """
    if env is None:
        load_dotenv(dotenv_path)
        env = os.environ

    config = AppConfig(
        ledger_mode=env.get("LEDGER_MODE", "auto").strip().lower(),
        blockchain_rpc_url=env.get("BLOCKCHAIN_RPC_URL") or None,
        contract_address=env.get("CONTRACT_ADDRESS") or None,
        private_key=env.get("PRIVATE_KEY") or None,
        ledger_db_path=env.get("LEDGER_DB_PATH", "blockproof_ledger.db"),
        ledger_timeout=_number(env, "LEDGER_TIMEOUT", 5.0, float),
        ledger_write_timeout=_number(env, "LEDGER_WRITE_TIMEOUT", 150.0, float),
        receipt_timeout=_number(env, "RECEIPT_TIMEOUT", 120.0, float),
        oracle_mode=env.get("ORACLE_MODE", "auto").strip().lower(),
        gemini_api_key=env.get("GEMINI_API_KEY") or None,
        gemini_model=env.get("GEMINI_MODEL", "gemini-2.0-flash"),
        oracle_model=env.get("ORACLE_MODEL", "facebook/bart-large-mnli"),
        oracle_timeout=_number(env, "ORACLE_TIMEOUT", 8.0, float),
        trust_threshold=_number(env, "TRUST_THRESHOLD", 60, int),
        neutral_confidence=_number(env, "NEUTRAL_CONFIDENCE", 70, int),
        tesseract_cmd=env.get("TESSERACT_CMD") or None,
        log_level=env.get("LOG_LEVEL", "INFO").upper(),
        log_file=env.get("LOG_FILE", "api_server.log") or None,
    )

    config.validate()
    logger.info(f"Configuration loaded - ledger: {config.resolved_ledger_mode()}, "
                f"oracle: {config.resolved_oracle_mode()}")
    return config
