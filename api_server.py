from fastapi import FastAPI, File, UploadFile, Body, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
import uvicorn
import asyncio
import logging
from datetime import datetime
from typing import Optional

from app_config import AppConfig, load_config
from certificate_errors import BlockProofError, InternalError, ValidationError
from certificate_hasher import hash_bytes
from certificate_models import CertificateFields, IssuanceRequest
from document_reader import DocumentReader, has_any_field
from issuance_engine import IssuanceEngine
from ledger_client import LedgerClient, LocalLedger, build_ledger
from trust_oracle import TrustOracle, build_oracle
from verification_engine import VerificationEngine

__version__ = "1.0.0"

logger = logging.getLogger(__name__)


def setup_logging(config: AppConfig):
    """Configure root logging for the server process"""
    handlers = [logging.StreamHandler()]
    if config.log_file:
        handlers.append(logging.FileHandler(config.log_file))

    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=handlers
    )


class CertificateDataModel(BaseModel):
    """Certificate content as sent by the front end"""

    model_config = ConfigDict(populate_by_name=True)

    recipient_name: Optional[str] = Field(None, alias="recipientName")
    issuer_name: Optional[str] = Field(None, alias="issuerName")
    course: Optional[str] = None
    issue_date: Optional[str] = Field(None, alias="issueDate")
    additional_info: Optional[str] = Field(None, alias="additionalInfo")

    def to_fields(self) -> CertificateFields:
        return CertificateFields(
            recipient_name=self.recipient_name,
            issuer_name=self.issuer_name,
            course=self.course,
            issue_date=self.issue_date,
            additional_info=self.additional_info,
        )


class VerifyRequestModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    certificate_id: Optional[str] = Field(None, alias="certificateId")
    certificate_data: Optional[CertificateDataModel] = Field(None, alias="certificateData")


class RevokeRequestModel(BaseModel):
    reason: Optional[str] = None


class CertificateAPI:
    def __init__(self, config: Optional[AppConfig] = None, ledger: Optional[LedgerClient] = None,
                 oracle: Optional[TrustOracle] = None, reader: Optional[DocumentReader] = None):
        logger.info("Initializing CertificateAPI")
        self.config = config or load_config()
        self.ledger = ledger if ledger is not None else build_ledger(self.config)
        self.oracle = oracle if oracle is not None else build_oracle(self.config)
        self.reader = reader or DocumentReader(self.config.tesseract_cmd)

        self.issuance = IssuanceEngine(
            self.ledger,
            ledger_timeout=self.config.ledger_timeout,
            ledger_write_timeout=self.config.ledger_write_timeout,
        )
        self.verification = VerificationEngine(
            self.ledger,
            self.oracle,
            ledger_timeout=self.config.ledger_timeout,
            oracle_timeout=self.config.oracle_timeout,
            trust_threshold=self.config.trust_threshold,
            neutral_confidence=self.config.neutral_confidence,
        )
        self.app = self._create_app()
        logger.info(f"CertificateAPI ready - ledger: {self.ledger.mode}, "
                    f"oracle: {self.oracle.mode if self.oracle else 'disabled'}")

    def _create_app(self) -> FastAPI:
        """Create and configure FastAPI application"""
        app = FastAPI(
            title="BlockProof Certificate API",
            description="Issue, verify and revoke ledger-backed certificates",
            version=__version__
        )

        # Add CORS middleware
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

        app.add_exception_handler(BlockProofError, self._handle_service_error)
        app.add_exception_handler(RequestValidationError, self._handle_request_validation)
        app.add_exception_handler(Exception, self._handle_unexpected_error)

        # Register routes; static paths go before /certificates/{certificate_id}
        app.post("/certificates/issue", status_code=201)(self.issue_certificate)
        app.post("/certificates/verify")(self.verify_certificate)
        app.post("/certificates/extract-data")(self.extract_data)
        app.post("/certificates/analyze-image")(self.analyze_image)
        app.get("/certificates/{certificate_id}")(self.get_certificate)
        app.post("/certificates/{certificate_id}/revoke")(self.revoke_certificate)
        app.get("/health")(self.health_check)
        app.get("/status")(self.get_status)

        return app

    async def _handle_service_error(self, request: Request, exc: BlockProofError):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        else:
            logger.info(f"{request.method} {request.url.path} rejected: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    async def _handle_request_validation(self, request: Request, exc: RequestValidationError):
        problems = "; ".join(
            f"{'.'.join(str(part) for part in error['loc'] if part != 'body')}: {error['msg']}"
            for error in exc.errors()
        )
        error = ValidationError(f"Invalid request: {problems}")
        return JSONResponse(status_code=error.status_code, content=error.to_dict())

    async def _handle_unexpected_error(self, request: Request, exc: Exception):
        error = InternalError()
        logger.error(f"Unhandled error on {request.method} {request.url.path} "
                     f"[correlation_id={error.correlation_id}]: {str(exc)}", exc_info=exc)
        return JSONResponse(status_code=error.status_code, content=error.to_dict())

    async def issue_certificate(self, body: CertificateDataModel):
        """Issue a new certificate and record it on the ledger"""
        logger.info(f"Issue request - Recipient: '{body.recipient_name}', "
                    f"Issuer: '{body.issuer_name}', Course: '{body.course}'")

        request = IssuanceRequest(
            recipient_name=body.recipient_name or "",
            issuer_name=body.issuer_name or "",
            course=body.course or "",
            issue_date=body.issue_date,
            additional_info=body.additional_info,
        )
        issued = await self.issuance.issue(request)
        return {"success": True, "certificate": issued.to_dict()}

    async def verify_certificate(self, body: VerifyRequestModel):
        """Verify a certificate against the ledger and, if data is supplied, its content"""
        claimed = body.certificate_data.to_fields() if body.certificate_data else None
        result = await self.verification.verify(body.certificate_id, claimed)
        return {"success": True, "result": result.to_dict()}

    async def get_certificate(self, certificate_id: str):
        """Get the current ledger record for a certificate"""
        record = await self.verification.get_certificate(certificate_id)
        return {"success": True, "certificate": record.to_dict()}

    async def revoke_certificate(self, certificate_id: str,
                                 body: Optional[RevokeRequestModel] = Body(None)):
        """Revoke a certificate; revoking twice is not an error"""
        reason = body.reason if body else None
        receipt = await self.issuance.revoke(certificate_id, reason)
        return {"success": True, "receipt": receipt.to_dict()}

    async def _read_upload(self, file: UploadFile) -> dict:
        content = await file.read()
        if not content:
            raise ValidationError("Empty file uploaded")

        logger.info(f"Received upload '{file.filename}' ({len(content)} bytes)")
        reading = await asyncio.to_thread(self.reader.read, content)
        reading['file_hash'] = hash_bytes(content)
        reading['filename'] = file.filename
        return reading

    async def extract_data(self, file: UploadFile = File(...)):
        """Extract certificate fields from an uploaded certificate image"""
        reading = await self._read_upload(file)
        return {
            "success": True,
            "file_hash": reading['file_hash'],
            "filename": reading['filename'],
            "certificate_id": reading['certificate_id'],
            "certificate_data": reading['fields'].to_dict(),
            "text": reading['text'],
        }

    async def analyze_image(self, file: UploadFile = File(...)):
        """Analyze an uploaded certificate image and score its extracted content"""
        reading = await self._read_upload(file)
        fields = reading['fields']
        notes = []

        assessment = None
        if has_any_field(fields):
            assessment = await self.verification.consult_oracle(fields, notes)
        else:
            notes.append("No certificate fields could be read from the image")

        if not reading['layout']['is_document']:
            notes.append("Image does not look like a certificate document")

        return {
            "success": True,
            "file_hash": reading['file_hash'],
            "filename": reading['filename'],
            "certificate_id": reading['certificate_id'],
            "certificate_data": fields.to_dict(),
            "layout": reading['layout'],
            "oracle": assessment.to_dict() if assessment else None,
            "details": notes,
        }

    async def _describe_ledger(self) -> dict:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.ledger.describe), timeout=self.config.ledger_timeout
            )
        except asyncio.TimeoutError:
            logger.warning("Ledger health check timed out")
            return {"mode": self.ledger.mode, "degraded": True, "connected": False}

    async def health_check(self):
        """API health check endpoint"""
        ledger = await self._describe_ledger()
        if self.oracle is not None:
            oracle = self.oracle.describe()
        else:
            oracle = {"mode": "disabled", "degraded": True}

        degraded = ledger["degraded"] or not ledger.get("connected", True) or oracle["degraded"]
        return {
            "status": "degraded" if degraded else "healthy",
            "timestamp": datetime.now().isoformat(),
            "ledger": ledger,
            "oracle": oracle,
        }

    async def get_status(self):
        """Service description and decision thresholds"""
        status = {
            "service": "BlockProof",
            "version": __version__,
            "features": [
                "issue",
                "verify",
                "get",
                "revoke",
                "extract-data",
                "analyze-image",
            ],
            "ledger_mode": self.ledger.mode,
            "oracle_mode": self.oracle.mode if self.oracle else "disabled",
            "thresholds": {
                "trust_threshold": self.config.trust_threshold,
                "neutral_confidence": self.config.neutral_confidence,
                "ledger_timeout": self.config.ledger_timeout,
                "ledger_write_timeout": self.config.ledger_write_timeout,
                "oracle_timeout": self.config.oracle_timeout,
            },
        }
        if isinstance(self.ledger, LocalLedger):
            status["ledger_stats"] = await asyncio.to_thread(self.ledger.stats)
        return status


def create_app(config: Optional[AppConfig] = None, ledger: Optional[LedgerClient] = None,
               oracle: Optional[TrustOracle] = None, reader: Optional[DocumentReader] = None) -> FastAPI:
    """Factory function to create the FastAPI app"""
    api = CertificateAPI(config, ledger=ledger, oracle=oracle, reader=reader)
    return api.app


def find_available_port(start_port: int = 5000, max_attempts: int = 10) -> int:
    """Find an available port starting from start_port"""
    import socket

    for port in range(start_port, start_port + max_attempts):
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
                s.bind(('localhost', port))
                return port
        except OSError:
            continue

    raise RuntimeError(f"Could not find available port in range {start_port}-{start_port + max_attempts}")


def start_server(host: str = "0.0.0.0", port: int = None):
    """Start the FastAPI server"""
    config = load_config()
    setup_logging(config)

    if port is None:
        port = find_available_port()
        logger.info(f"Auto-selected port: {port}")

    app = create_app(config)

    logger.info(f"Starting server on {host}:{port}")
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="BlockProof Certificate API Server")
    parser.add_argument('--host', default='0.0.0.0', help='Host to bind to')
    parser.add_argument('--port', type=int, help='Port to bind to (auto-detect if not specified)')

    args = parser.parse_args()
    start_server(args.host, args.port)
