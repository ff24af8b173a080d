import io
import logging
import re
from datetime import datetime
from typing import Dict, Optional

import cv2
import numpy as np
import pytesseract
from PIL import Image, ImageOps, UnidentifiedImageError

from certificate_errors import ServiceUnavailableError, ValidationError
from certificate_models import CertificateFields

logger = logging.getLogger(__name__)

DOCUMENT_KEYWORDS = {
    'certificate', 'certify', 'awarded', 'completed', 'achievement',
    'completion', 'presented', 'hereby', 'recognition', 'award',
    'signature', 'authorized', 'date', 'issued', 'course', 'successfully'
}

# Minimum word count for an image to be considered a text document
DOCUMENT_MIN_WORDS = 30

_NAME = r"([A-Z][A-Za-z.'-]+(?:\s+[A-Z][A-Za-z.'-]+){0,3})"
_STOP = r"(?=\s+(?:has|have|for|on|dated|with|in|at|from|issued|offered|conducted|organi[sz]ed|by)\b|[.,;]|$)"

RECIPIENT_PATTERN = re.compile(
    r"(?i:certify that|certifies that|awarded to|presented to|granted to)\s+"
    r"(?:(?i:mr|mrs|ms|dr)\.?\s+)?" + _NAME
)
ISSUER_PATTERN = re.compile(
    r"(?i:issued by|offered by|conducted by|organi[sz]ed by|awarded by)\s+"
    r"([A-Z][\w&'-]*(?:\s+[A-Z][\w&'-]*){0,6})"
)
COURSE_PATTERN = re.compile(
    r"(?:completed|completion of|completing)\s+(?:the\s+)?(?:course\s+)?"
    r"[\"'“]?([A-Za-z0-9][\w&:+#' -]{2,80}?)[\"'”]?" + _STOP,
    re.IGNORECASE,
)
CERTIFICATE_ID_PATTERN = re.compile(r"\b(CERT-\d{13}-[0-9A-F]{8})\b")
DATE_PATTERNS = (
    (re.compile(r"\b(\d{4}-\d{2}-\d{2})\b"), ("%Y-%m-%d",)),
    (re.compile(r"\b(\d{1,2}/\d{1,2}/\d{4})\b"), ("%d/%m/%Y",)),
    (re.compile(r"\b([A-Z][a-z]+ \d{1,2}, \d{4})\b"), ("%B %d, %Y", "%b %d, %Y")),
    (re.compile(r"\b(\d{1,2} [A-Z][a-z]+ \d{4})\b"), ("%d %B %Y", "%d %b %Y")),
)


def _parse_date(text: str) -> Optional[str]:
    for pattern, formats in DATE_PATTERNS:
        for match in pattern.finditer(text):
            for fmt in formats:
                try:
                    return datetime.strptime(match.group(1), fmt).date().isoformat()
                except ValueError:
                    continue
    return None


def parse_certificate_text(text: str) -> Dict:
    """
    Pull certificate fields out of OCR text.

    Returns a dict with ``certificate_id`` and ``fields`` (a
    CertificateFields with whatever could be recognised; the rest is None).
    """
    text = ' '.join((text or '').split())

    def first(pattern):
        match = pattern.search(text)
        return match.group(1).strip().rstrip('.') if match else None

    fields = CertificateFields(
        recipient_name=first(RECIPIENT_PATTERN),
        issuer_name=first(ISSUER_PATTERN),
        course=first(COURSE_PATTERN),
        issue_date=_parse_date(text),
    )
    return {
        'certificate_id': first(CERTIFICATE_ID_PATTERN),
        'fields': fields,
    }


def has_any_field(fields: CertificateFields) -> bool:
    return any(value for value in (fields.recipient_name, fields.issuer_name, fields.course, fields.issue_date))


class DocumentReader:
    """OCR for uploaded certificate images"""

    def __init__(self, tesseract_cmd: Optional[str] = None):
        if tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = tesseract_cmd

    @staticmethod
    def load_image(content: bytes) -> np.ndarray:
        """Decode uploaded bytes into a grayscale image, honouring EXIF rotation"""
        if not content:
            raise ValidationError("Empty file uploaded")
        try:
            image = Image.open(io.BytesIO(content))
            image = ImageOps.exif_transpose(image).convert("RGB")
        except (UnidentifiedImageError, OSError) as e:
            raise ValidationError("Uploaded file is not a readable image") from e
        return cv2.cvtColor(np.array(image), cv2.COLOR_RGB2GRAY)

    def extract_text(self, gray: np.ndarray) -> str:
        """Extract text from a grayscale image using OCR with preprocessing"""
        # 1. Basic denoising
        denoised = cv2.fastNlMeansDenoising(gray)

        # 2. Adaptive thresholding
        thresh = cv2.adaptiveThreshold(
            denoised, 255, cv2.ADAPTIVE_THRESH_GAUSSIAN_C,
            cv2.THRESH_BINARY, 11, 2
        )

        # 3. Sharpening
        kernel_sharp = np.array([[-1, -1, -1], [-1, 9, -1], [-1, -1, -1]])
        sharpened = cv2.filter2D(thresh, -1, kernel_sharp)

        # Block text, automatic layout, and single column; results are merged
        texts = []
        try:
            for config in ('--psm 6', '--psm 3', '--psm 4'):
                texts.append(pytesseract.image_to_string(sharpened, config=config))
        except (pytesseract.TesseractNotFoundError, pytesseract.TesseractError) as e:
            logger.error(f"OCR engine failed: {str(e)}")
            raise ServiceUnavailableError("OCR engine is unavailable") from e

        cleaned_text = ' '.join(' '.join(texts).split())
        logger.info(f"Extracted text length: {len(cleaned_text)} characters")
        return cleaned_text

    @staticmethod
    def assess_layout(gray: np.ndarray, text: str) -> Dict:
        """Score how much an image looks like a certificate document"""
        words = text.split()
        text_lower = text.lower()
        keyword_matches = sorted(keyword for keyword in DOCUMENT_KEYWORDS if keyword in text_lower)

        # Certificates usually carry a frame: look for a large outer contour
        edges = cv2.Canny(gray, 50, 150)
        contours, _ = cv2.findContours(edges, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
        height, width = gray.shape[:2]
        image_area = float(height * width) or 1.0
        largest = max((cv2.contourArea(c) for c in contours), default=0.0)
        has_border = largest / image_area > 0.5

        score = 0.0
        if len(words) > DOCUMENT_MIN_WORDS:
            score += 0.4
        score += min(len(keyword_matches) * 0.15, 0.45)
        if has_border:
            score += 0.15

        return {
            'width': width,
            'height': height,
            'word_count': len(words),
            'keyword_matches': keyword_matches,
            'has_border': has_border,
            'document_score': round(min(score, 1.0), 2),
            'is_document': len(words) > DOCUMENT_MIN_WORDS or len(keyword_matches) >= 2,
        }

    def read(self, content: bytes) -> Dict:
        """OCR an uploaded image and parse certificate fields from it"""
        gray = self.load_image(content)
        text = self.extract_text(gray)
        parsed = parse_certificate_text(text)
        return {
            'text': text,
            'certificate_id': parsed['certificate_id'],
            'fields': parsed['fields'],
            'layout': self.assess_layout(gray, text),
        }
