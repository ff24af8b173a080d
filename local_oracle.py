import logging
from datetime import date
from typing import List

import torch
from transformers import pipeline

from certificate_errors import OracleUnavailableError, ValidationError
from certificate_hasher import normalize_date
from certificate_models import CertificateFields, OracleAssessment
from trust_oracle import TrustOracle

logger = logging.getLogger(__name__)

AUTHENTIC_LABELS = [
    "official certificate of course completion",
    "certificate or award issued by an institution",
]

SUSPICIOUS_LABELS = [
    "fake certificate or award",
    "placeholder or test data",
    "irrelevant document",
]

PLACEHOLDER_WORDS = {'test', 'sample', 'dummy', 'lorem', 'ipsum', 'fake', 'demo', 'xxx'}

# Earliest issue date considered plausible for a digital certificate
EARLIEST_PLAUSIBLE_YEAR = 1900


def find_content_issues(fields: CertificateFields, today: date = None) -> List[str]:
    """Deterministic plausibility checks that do not need a model"""
    today = today or date.today()
    issues = []

    try:
        issued = normalize_date(fields.issue_date)
    except ValidationError:
        issues.append(f"Issue date is not a valid date: '{fields.issue_date}'")
        issued = ""

    if issued:
        issued_on = date.fromisoformat(issued)
        if issued_on > today:
            issues.append(f"Issue date {issued} is in the future")
        elif issued_on.year < EARLIEST_PLAUSIBLE_YEAR:
            issues.append(f"Issue date {issued} is implausibly old")

    for label, value in (("recipient", fields.recipient_name),
                         ("issuer", fields.issuer_name),
                         ("course", fields.course)):
        words = {word.lower() for word in (value or "").split()}
        if words & PLACEHOLDER_WORDS:
            issues.append(f"The {label} looks like placeholder text: '{value}'")

    if fields.recipient_name and fields.issuer_name and \
            fields.recipient_name.strip().lower() == fields.issuer_name.strip().lower():
        issues.append("Recipient and issuer are the same")

    return issues


class ZeroShotOracle(TrustOracle):
    """Trust oracle running a local zero-shot text classifier"""

    mode = "local-model"

    # Confidence ceiling once a deterministic check has failed
    ISSUE_CONFIDENCE_CAP = 30

    def __init__(self, model_name: str = "facebook/bart-large-mnli", classifier=None):
        if classifier is None:
            try:
                device = 0 if torch.cuda.is_available() else -1
                classifier = pipeline("zero-shot-classification", model=model_name, device=device)
                logger.info(f"Loaded zero-shot model {model_name} on {'GPU' if device == 0 else 'CPU'}")
            except OSError as e:
                logger.error(f"Error loading zero-shot model {model_name}: {str(e)}")
                raise
        self.classifier = classifier

    @staticmethod
    def _describe(fields: CertificateFields) -> str:
        parts = []
        if fields.issuer_name:
            parts.append(f"Issued by {fields.issuer_name.strip()}.")
        if fields.recipient_name:
            parts.append(f"Awarded to {fields.recipient_name.strip()}.")
        if fields.course:
            parts.append(f"For completing {fields.course.strip()}.")
        if fields.issue_date:
            parts.append(f"Dated {fields.issue_date}.")
        if fields.additional_info:
            parts.append(fields.additional_info.strip())
        return " ".join(parts)

    def score(self, fields: CertificateFields) -> OracleAssessment:
        text = self._describe(fields)
        if not text:
            return OracleAssessment(is_authentic=False, confidence=0, reason="No certificate content to assess")

        try:
            result = self.classifier(text, candidate_labels=AUTHENTIC_LABELS + SUSPICIOUS_LABELS)
        except RuntimeError as e:
            logger.warning(f"Zero-shot classification failed: {str(e)}")
            raise OracleUnavailableError(f"Local model failed: {e}") from e

        authentic_score = sum(
            score for label, score in zip(result['labels'], result['scores'])
            if label in AUTHENTIC_LABELS
        )
        confidence = int(round(min(max(authentic_score, 0.0), 1.0) * 100))
        top_label = result['labels'][0]

        issues = find_content_issues(fields)
        if issues:
            confidence = min(confidence, self.ISSUE_CONFIDENCE_CAP)
            reason = "; ".join(issues)
        else:
            reason = f"Classified as '{top_label}'"

        return OracleAssessment(
            is_authentic=not issues and top_label in AUTHENTIC_LABELS,
            confidence=confidence,
            reason=reason,
        )
