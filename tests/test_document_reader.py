"""Tests for OCR text parsing and image handling."""
from __future__ import annotations

import io

import numpy as np
import pytest
from PIL import Image

from certificate_errors import ValidationError
from document_reader import DocumentReader, has_any_field, parse_certificate_text

SAMPLE_TEXT = (
    "CERTIFICATE OF COMPLETION This is to certify that Ada Lovelace has successfully "
    "completed the course Applied Cryptography on 2024-03-15. Issued by Analytical Engine "
    "Institute. Certificate ID: CERT-1710460800000-AB12CD34"
)


class TestParseCertificateText:

    def test_sample_certificate(self):
        parsed = parse_certificate_text(SAMPLE_TEXT)
        fields = parsed["fields"]

        assert parsed["certificate_id"] == "CERT-1710460800000-AB12CD34"
        assert fields.recipient_name == "Ada Lovelace"
        assert fields.course == "Applied Cryptography"
        assert fields.issue_date == "2024-03-15"
        assert fields.issuer_name == "Analytical Engine Institute"

    @pytest.mark.parametrize("text, expected", [
        ("Awarded on March 5, 2024 to the bearer", "2024-03-05"),
        ("Dated 5 March 2024", "2024-03-05"),
        ("Date: 05/03/2024", "2024-03-05"),
    ])
    def test_date_formats(self, text, expected):
        assert parse_certificate_text(text)["fields"].issue_date == expected

    def test_honorific_is_dropped(self):
        parsed = parse_certificate_text("This certificate is presented to Dr. Grace Hopper for excellence")
        assert parsed["fields"].recipient_name == "Grace Hopper"

    def test_nothing_recognisable(self):
        parsed = parse_certificate_text("a blurry photo of a cat")
        assert parsed["certificate_id"] is None
        assert not has_any_field(parsed["fields"])


def _png_bytes(width=120, height=80):
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color=(255, 255, 255)).save(buffer, format="PNG")
    return buffer.getvalue()


class TestDocumentReader:

    def test_load_image_returns_grayscale(self):
        gray = DocumentReader.load_image(_png_bytes())
        assert gray.shape == (80, 120)

    def test_empty_upload_rejected(self):
        with pytest.raises(ValidationError):
            DocumentReader.load_image(b"")

    def test_non_image_rejected(self):
        with pytest.raises(ValidationError):
            DocumentReader.load_image(b"%PDF-1.4 definitely not an image")

    def test_layout_of_certificate_text(self):
        gray = np.full((200, 300), 255, dtype=np.uint8)
        layout = DocumentReader.assess_layout(gray, SAMPLE_TEXT)
        assert layout["width"] == 300 and layout["height"] == 200
        assert "certify" in layout["keyword_matches"]
        assert layout["is_document"] is True
        assert 0.0 < layout["document_score"] <= 1.0

    def test_layout_of_sparse_text(self):
        gray = np.zeros((50, 50), dtype=np.uint8)
        layout = DocumentReader.assess_layout(gray, "team photo")
        assert layout["is_document"] is False
        assert layout["word_count"] == 2

    def test_read_combines_ocr_and_parsing(self, monkeypatch):
        reader = DocumentReader()
        monkeypatch.setattr(reader, "extract_text", lambda gray: SAMPLE_TEXT)
        reading = reader.read(_png_bytes())
        assert reading["certificate_id"] == "CERT-1710460800000-AB12CD34"
        assert reading["fields"].recipient_name == "Ada Lovelace"
        assert reading["layout"]["width"] == 120
