"""End-to-end tests for the HTTP surface."""
from __future__ import annotations

import numpy as np
import pytest
from fastapi.testclient import TestClient

from api_server import create_app
from certificate_errors import UnavailableError
from conftest import FakeLedger, FakeOracle
from document_reader import DocumentReader

CERTIFICATE_TEXT = (
    "CERTIFICATE OF COMPLETION This is to certify that Ada Lovelace has successfully "
    "completed the course Applied Cryptography on 2024-03-15. Issued by Analytical Engine "
    "Institute. Certificate ID: CERT-1710460800000-AB12CD34"
)

ISSUE_BODY = {
    "recipientName": "Ada Lovelace",
    "issuerName": "Analytical Engine Institute",
    "course": "Applied Cryptography",
    "issueDate": "2024-03-15",
    "additionalInfo": "Grade: A",
}


class FakeReader(DocumentReader):
    """Skips tesseract and returns preset text for any image"""

    def __init__(self, text=CERTIFICATE_TEXT):
        super().__init__()
        self.text = text

    @staticmethod
    def load_image(content):
        return np.zeros((100, 100), dtype=np.uint8)

    def extract_text(self, gray):
        return self.text


@pytest.fixture
def api_ledger():
    return FakeLedger()


@pytest.fixture
def api_oracle():
    return FakeOracle(confidence=85)


@pytest.fixture
def reader():
    return FakeReader()


@pytest.fixture
def client(test_config, api_ledger, api_oracle, reader):
    app = create_app(test_config, ledger=api_ledger, oracle=api_oracle, reader=reader)
    return TestClient(app)


def issue(client, **overrides):
    response = client.post("/certificates/issue", json=dict(ISSUE_BODY, **overrides))
    assert response.status_code == 201
    return response.json()["certificate"]


class TestIssueEndpoint:

    def test_issue(self, client, api_ledger):
        response = client.post("/certificates/issue", json=ISSUE_BODY)
        assert response.status_code == 201

        body = response.json()
        certificate = body["certificate"]
        assert body["success"] is True
        assert certificate["certificate_id"].startswith("CERT-")
        assert certificate["recipient"] == "Ada Lovelace"
        assert certificate["course"] == "Applied Cryptography"
        assert len(certificate["content_hash"]) == 64
        assert certificate["receipt"]["transaction_id"] == "tx-1"
        assert certificate["certificate_id"] in api_ledger.records

    def test_snake_case_body_accepted(self, client):
        body = {
            "recipient_name": "Grace Hopper",
            "issuer_name": "Navy Reserve",
            "course": "Compilers",
        }
        assert client.post("/certificates/issue", json=body).status_code == 201

    def test_missing_course(self, client, api_ledger):
        body = dict(ISSUE_BODY)
        del body["course"]
        response = client.post("/certificates/issue", json=body)
        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"
        assert api_ledger.records == {}

    def test_malformed_json(self, client):
        response = client.post("/certificates/issue", content=b"{not json",
                               headers={"Content-Type": "application/json"})
        assert response.status_code == 400

    def test_ledger_unavailable(self, client, api_ledger):
        api_ledger.available = False
        response = client.post("/certificates/issue", json=ISSUE_BODY)
        assert response.status_code == 502
        assert response.json()["error"] == "ledger_unavailable"
        assert response.json()["success"] is False


class TestVerifyEndpoint:

    def test_round_trip(self, client):
        certificate = issue(client)
        response = client.post("/certificates/verify", json={
            "certificateId": certificate["certificate_id"],
            "certificateData": ISSUE_BODY,
        })
        assert response.status_code == 200
        result = response.json()["result"]
        assert result["verdict"] == "VERIFIED"
        assert result["hash_match"] is True
        assert result["trust_score"] == 85

    def test_altered_data(self, client):
        certificate = issue(client)
        response = client.post("/certificates/verify", json={
            "certificateId": certificate["certificate_id"],
            "certificateData": dict(ISSUE_BODY, recipientName="Eve Mallory"),
        })
        result = response.json()["result"]
        assert result["hash_match"] is False
        assert result["verdict"] == "SUSPICIOUS"

    def test_existence_only(self, client):
        certificate = issue(client)
        response = client.post("/certificates/verify", json={"certificateId": certificate["certificate_id"]})
        assert response.json()["result"]["verdict"] == "VERIFIED"

    def test_unknown_id(self, client):
        response = client.post("/certificates/verify", json={"certificateId": "NON-EXISTENT-ID"})
        assert response.status_code == 200
        result = response.json()["result"]
        assert result["verdict"] == "TAMPERING_DETECTED"
        assert result["exists"] is False

    def test_missing_id(self, client):
        response = client.post("/certificates/verify", json={"certificateData": ISSUE_BODY})
        assert response.status_code == 400

    def test_ledger_unavailable(self, client, api_ledger):
        certificate = issue(client)
        api_ledger.available = False
        response = client.post("/certificates/verify", json={"certificateId": certificate["certificate_id"]})
        assert response.status_code == 502


class TestCertificateEndpoints:

    def test_get_certificate(self, client):
        certificate = issue(client)
        response = client.get(f"/certificates/{certificate['certificate_id']}")
        assert response.status_code == 200
        assert response.json()["certificate"]["content_hash"] == certificate["content_hash"]

    def test_get_unknown(self, client):
        response = client.get("/certificates/CERT-0000000000000-00000000")
        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    def test_revoke_twice(self, client):
        certificate_id = issue(client)["certificate_id"]

        first = client.post(f"/certificates/{certificate_id}/revoke", json={"reason": "Issued in error"})
        second = client.post(f"/certificates/{certificate_id}/revoke")

        assert first.status_code == 200 and second.status_code == 200
        assert first.json()["receipt"]["already_revoked"] is False
        assert second.json()["receipt"]["already_revoked"] is True
        assert second.json()["receipt"]["revocation_reason"] == "Issued in error"

        verify = client.post("/certificates/verify", json={
            "certificateId": certificate_id,
            "certificateData": ISSUE_BODY,
        })
        assert verify.json()["result"]["verdict"] == "REVOKED"

    def test_revoke_unknown(self, client):
        response = client.post("/certificates/CERT-0000000000000-00000000/revoke")
        assert response.status_code == 404


class TestImageEndpoints:

    def test_extract_data(self, client):
        response = client.post("/certificates/extract-data",
                               files={"file": ("cert.png", b"fake image bytes", "image/png")})
        assert response.status_code == 200
        body = response.json()
        assert body["certificate_id"] == "CERT-1710460800000-AB12CD34"
        assert body["certificate_data"]["recipient_name"] == "Ada Lovelace"
        assert body["certificate_data"]["issue_date"] == "2024-03-15"
        assert len(body["file_hash"]) == 64
        assert body["filename"] == "cert.png"

    def test_empty_upload(self, client):
        response = client.post("/certificates/extract-data",
                               files={"file": ("cert.png", b"", "image/png")})
        assert response.status_code == 400

    def test_analyze_image(self, client, api_oracle):
        response = client.post("/certificates/analyze-image",
                               files={"file": ("cert.png", b"fake image bytes", "image/png")})
        body = response.json()
        assert response.status_code == 200
        assert body["oracle"]["confidence"] == 85
        assert body["layout"]["is_document"] is True
        assert len(api_oracle.calls) == 1

    def test_analyze_unreadable_content(self, test_config, api_ledger, api_oracle):
        app = create_app(test_config, ledger=api_ledger, oracle=api_oracle,
                         reader=FakeReader(text="holiday snapshot"))
        response = TestClient(app).post("/certificates/analyze-image",
                                        files={"file": ("beach.jpg", b"jpeg bytes", "image/jpeg")})
        body = response.json()
        assert body["oracle"] is None
        assert "No certificate fields could be read from the image" in body["details"]
        assert "Image does not look like a certificate document" in body["details"]
        assert api_oracle.calls == []


class TestServiceEndpoints:

    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "healthy"
        assert body["ledger"]["mode"] == "memory"
        assert body["oracle"]["mode"] == "fake"

    def test_health_degraded_without_oracle(self, test_config, api_ledger):
        client = TestClient(create_app(test_config, ledger=api_ledger, reader=FakeReader()))
        body = client.get("/health").json()
        assert body["status"] == "degraded"
        assert body["oracle"] == {"mode": "disabled", "degraded": True}

    def test_status_with_local_ledger(self, test_config):
        client = TestClient(create_app(test_config, reader=FakeReader()))
        body = client.get("/status").json()
        assert body["ledger_mode"] == "local"
        assert body["oracle_mode"] == "disabled"
        assert body["thresholds"]["trust_threshold"] == 60
        assert body["ledger_stats"] == {"total_certificates": 0, "revoked_certificates": 0}


def test_unexpected_error_returns_correlation_id(test_config, api_ledger):
    api_ledger.lookup_error = RuntimeError("disk on fire")
    app = create_app(test_config, ledger=api_ledger, reader=FakeReader())
    client = TestClient(app, raise_server_exceptions=False)

    response = client.get("/certificates/CERT-1")

    assert response.status_code == 500
    body = response.json()
    assert body["error"] == "internal_error"
    assert body["correlation_id"]
    assert "disk on fire" not in response.text


def test_transport_error_is_not_internal(test_config, api_ledger):
    api_ledger.lookup_error = UnavailableError("rpc down")
    client = TestClient(create_app(test_config, ledger=api_ledger, reader=FakeReader()))
    assert client.get("/certificates/CERT-1").status_code == 502
