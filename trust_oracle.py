import json
import logging
from abc import ABC, abstractmethod
from datetime import date
from typing import Dict, Optional

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types
from pydantic import BaseModel, ConfigDict, Field, ValidationError as SchemaError

from app_config import AppConfig
from certificate_errors import OracleParseError, OracleUnavailableError
from certificate_models import CertificateFields, OracleAssessment

logger = logging.getLogger(__name__)


class TrustOracle(ABC):
    """Advisory plausibility scorer for certificate content"""

    mode = "unknown"

    @abstractmethod
    def score(self, fields: CertificateFields) -> OracleAssessment:
        """
        Score certificate content.

        Raises OracleUnavailableError when the service cannot be reached and
        OracleParseError when it answers with something other than an
        assessment.
        """

    def describe(self) -> Dict:
        return {"mode": self.mode, "degraded": False}


class OracleReply(BaseModel):
    """Shape the generative model is instructed to answer with"""

    model_config = ConfigDict(populate_by_name=True)

    is_authentic: bool = Field(alias="isAuthentic")
    confidence: int = Field(ge=0, le=100)
    reason: str = ""


SCORING_PROMPT = """You are auditing a digital certificate for plausibility.
Today's date is {today}.

Certificate fields:
{fields}

Check for logically impossible or suspicious content: issue dates in the
future or implausibly far in the past, recipient/issuer names that look like
placeholders, course titles that do not match the issuer, and inconsistent
details.

Answer with a JSON object with exactly these keys:
  "isAuthentic": boolean,
  "confidence": integer from 0 to 100 (how plausible the certificate is),
  "reason": short explanation
"""


def parse_reply(text: str) -> OracleAssessment:
    """Validate a raw oracle reply into an OracleAssessment"""
    try:
        reply = OracleReply.model_validate_json(text)
    except SchemaError as e:
        raise OracleParseError(f"Oracle reply is not a valid assessment: {e.error_count()} error(s)") from e
    return OracleAssessment(
        is_authentic=reply.is_authentic,
        confidence=reply.confidence,
        reason=reply.reason,
    )


class GeminiOracle(TrustOracle):
    """Trust oracle backed by a Gemini generative model in JSON mode"""

    mode = "gemini"

    def __init__(self, api_key: Optional[str] = None, model_name: str = "gemini-2.0-flash",
                 timeout: float = 8.0, client=None):
        self.model_name = model_name
        self.timeout = timeout
        if client is None:
            # HttpOptions.timeout is in milliseconds
            client = genai.Client(
                api_key=api_key,
                http_options=types.HttpOptions(timeout=int(timeout * 1000)),
            )
        self.client = client
        self.generation_config = types.GenerateContentConfig(response_mime_type="application/json")

    def score(self, fields: CertificateFields) -> OracleAssessment:
        prompt = SCORING_PROMPT.format(
            today=date.today().isoformat(),
            fields=json.dumps(fields.to_dict(), indent=2, ensure_ascii=False),
        )

        try:
            response = self.client.models.generate_content(
                model=self.model_name,
                contents=prompt,
                config=self.generation_config,
            )
        except (genai_errors.APIError, httpx.HTTPError) as e:
            logger.warning(f"Gemini request failed: {str(e)}")
            raise OracleUnavailableError(f"Gemini request failed: {e}") from e

        text = response.text
        if not text:
            # blocked replies carry no text part
            raise OracleParseError("Gemini returned no text")

        assessment = parse_reply(text)
        logger.info(f"Gemini assessment: authentic={assessment.is_authentic}, "
                    f"confidence={assessment.confidence}")
        return assessment


def build_oracle(config: AppConfig) -> Optional[TrustOracle]:
    """Construct the oracle selected by the configuration, or None if disabled"""
    mode = config.resolved_oracle_mode()

    if mode == "gemini":
        logger.info(f"Using Gemini trust oracle ({config.gemini_model})")
        return GeminiOracle(config.gemini_api_key, config.gemini_model, timeout=config.oracle_timeout)

    if mode == "local":
        # Imported here so torch is only loaded when the local model is wanted
        from local_oracle import ZeroShotOracle
        logger.info(f"Using local zero-shot trust oracle ({config.oracle_model})")
        return ZeroShotOracle(config.oracle_model)

    logger.warning("Trust oracle disabled, verification will run on ledger data only")
    return None
