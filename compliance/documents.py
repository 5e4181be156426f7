import asyncio
import hashlib
import logging
from datetime import datetime
from typing import Dict, List, Optional

from config import Settings, OCR_DOCUMENT_TYPES
from . import audit
from .checks import IdentityChecks
from .errors import IntegrityCheckFailed, PolicyViolation, ValidationFailed
from .extractor import DocumentFieldExtractor
from .lifecycle import ensure_action
from .models import DocumentRecord, DocumentStatus, DocumentType, KycApplication
from .providers import AuditSink, BlobStore, OcrProvider, VirusScanner
from .store import InMemoryKycStore

logger = logging.getLogger(__name__)


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def add_years(moment: datetime, years: int) -> datetime:
    try:
        return moment.replace(year=moment.year + years)
    except ValueError:
        # 29 February
        return moment.replace(year=moment.year + years, day=28)


class DocumentService:
    """
    Upload, OCR, integrity-checked reads and reviewer verification of the
    documents attached to an application.
    """

    def __init__(self,
                 settings: Settings,
                 store: InMemoryKycStore,
                 blob_store: BlobStore,
                 ocr_provider: Optional[OcrProvider] = None,
                 checks: Optional[IdentityChecks] = None,
                 extractor: Optional[DocumentFieldExtractor] = None,
                 virus_scanner: Optional[VirusScanner] = None,
                 audit_sink: Optional[AuditSink] = None):
        self.store = store
        self.blob_store = blob_store
        self.ocr_provider = ocr_provider
        self.checks = checks or IdentityChecks(settings)
        self.extractor = extractor or DocumentFieldExtractor()
        self.virus_scanner = virus_scanner
        self.audit_sink = audit_sink
        self.required_documents = list(settings.REQUIRED_DOCUMENTS)
        self.allowed_mime_types = set(settings.ALLOWED_MIME_TYPES)
        self.max_size = settings.MAX_DOCUMENT_SIZE
        self.retention_years = settings.DOCUMENT_RETENTION_YEARS
        self.ocr_timeout = settings.OCR_TIMEOUT

    # ------------------------
    # Upload
    # ------------------------
    def _validate_upload(self, document_type: str, data: bytes, mime_type: str) -> DocumentType:
        reasons = []
        try:
            doc_type = DocumentType(document_type)
        except ValueError:
            doc_type = None
            reasons.append("UNKNOWN_DOCUMENT_TYPE")
        if not data:
            reasons.append("EMPTY_FILE")
        elif len(data) > self.max_size:
            reasons.append("FILE_TOO_LARGE")
        if mime_type not in self.allowed_mime_types:
            reasons.append("UNSUPPORTED_MIME_TYPE")
        if reasons:
            raise ValidationFailed("Document upload rejected", reasons=reasons,
                                   details={"document_type": document_type, "mime_type": mime_type,
                                            "size": len(data or b"")})
        return doc_type

    async def upload(self, application: KycApplication, document_type: str, data: bytes,
                     mime_type: str, now: datetime, file_name: Optional[str] = None) -> DocumentRecord:
        ensure_action(application.status, "upload_document")
        doc_type = self._validate_upload(document_type, data, mime_type)

        if self.virus_scanner is not None and not await self.virus_scanner.is_clean(data):
            audit.emit(self.audit_sink, "document.infected", application.application_id,
                       application.user_id, document_type=doc_type.value)
            raise ValidationFailed("Uploaded file failed the virus scan", reasons=["FILE_INFECTED"])

        existing = self.store.find_document(application.application_id, doc_type)
        if existing is not None and existing.is_terminal:
            raise PolicyViolation(f"{doc_type.value} has already been {existing.status.value}",
                                  code="DOCUMENT_FINALIZED")

        digest = sha256_hex(data)
        self.blob_store.put(digest, data)
        document = DocumentRecord(
            application_id=application.application_id,
            document_type=doc_type,
            storage_ref=digest,
            file_hash=digest,
            file_name=file_name,
            file_size=len(data),
            mime_type=mime_type,
            uploaded_at=now,
            expires_at=add_years(now, self.retention_years),
        )
        replaced = self.store.put_document(document)
        if replaced is not None:
            self._release_blob(replaced.storage_ref)

        audit.emit(self.audit_sink, "document.uploaded", application.application_id, application.user_id,
                   document_type=doc_type.value, file_size=document.file_size, replaced=replaced is not None)

        if doc_type.value in OCR_DOCUMENT_TYPES and self.ocr_provider is not None:
            await self.run_ocr(application, document, data, now)
        return document

    # ------------------------
    # OCR
    # ------------------------
    async def run_ocr(self, application: KycApplication, document: DocumentRecord,
                      data: bytes, now: datetime) -> DocumentRecord:
        try:
            ocr = await asyncio.wait_for(self.ocr_provider.extract(data, document.mime_type),
                                         timeout=self.ocr_timeout)
        except Exception as e:
            logger.error("OCR failed for %s: %s", document.document_type.value, e, extra={
                "application_id": application.application_id, "stage": "ocr"})
            document.ocr_fields = {}
            document.confidence_score = None
            document.issues = ["OCR_FAILED"]
            audit.emit(self.audit_sink, "document.ocr_failed", application.application_id,
                       document_type=document.document_type.value)
            return document

        extracted = self.extractor.extract(ocr)
        document.ocr_fields = extracted["fields"]
        document.confidence_score = extracted["confidence"]
        document.issues = []
        self.refresh_issues(application, now)
        audit.emit(self.audit_sink, "document.ocr_completed", application.application_id,
                   document_type=document.document_type.value, confidence=document.confidence_score)
        return document

    def refresh_issues(self, application: KycApplication, now: datetime) -> None:
        """Recompute format/consistency issues for every OCR'd document."""
        documents = {
            d.document_type.value: d for d in self.store.list_documents(application.application_id)
            if d.document_type.value in OCR_DOCUMENT_TYPES
        }
        extracted: Dict[str, Dict] = {doc_type: d.ocr_fields for doc_type, d in documents.items()}
        intra = self.checks.intra_document_consistency(extracted)
        cross = self.checks.cross_document_consistency(application.identity, extracted)

        for doc_type, document in documents.items():
            issues = ["OCR_FAILED"] if "OCR_FAILED" in document.issues else []
            if document.ocr_fields:
                issues.extend(self.checks.format_checks(document.ocr_fields, now.date()))
                issues.extend(self.checks.missing_fields(doc_type, document.ocr_fields))
            if doc_type == "cnic_front":
                issues.extend(cross)
            if doc_type == "cnic_back":
                issues.extend(intra)
            document.issues = issues

    # ------------------------
    # Reads / integrity
    # ------------------------
    def verify_integrity(self, document: DocumentRecord) -> bool:
        try:
            data = self.blob_store.get(document.storage_ref)
        except Exception:
            logger.warning("Stored blob missing for %s", document.document_id, extra={
                "application_id": document.application_id, "stage": "integrity"})
            return False
        return sha256_hex(data) == document.file_hash

    def read(self, application_id: str, document_type: str) -> bytes:
        document = self.store.get_document(application_id, DocumentType(document_type))
        data = self.blob_store.get(document.storage_ref)
        if sha256_hex(data) != document.file_hash:
            logger.error("Integrity check failed for %s", document.document_id, extra={
                "application_id": application_id, "stage": "integrity"})
            audit.emit(self.audit_sink, "document.integrity_failed", application_id,
                       document_type=document.document_type.value)
            raise IntegrityCheckFailed("Stored document failed its integrity check",
                                       details={"document_id": document.document_id})
        return data

    # ------------------------
    # Review / deletion
    # ------------------------
    def review(self, application: KycApplication, document_type: str, reviewer: str,
               approve: bool, now: datetime, reason: Optional[str] = None) -> DocumentRecord:
        ensure_action(application.status, "review_document")
        document = self.store.get_document(application.application_id, DocumentType(document_type))
        if document.is_terminal:
            raise PolicyViolation(f"{document.document_type.value} has already been {document.status.value}",
                                  code="DOCUMENT_FINALIZED")
        if approve:
            document.status = DocumentStatus.VERIFIED
        else:
            if not reason or not reason.strip():
                raise PolicyViolation("Rejecting a document needs a reason", code="REASON_REQUIRED")
            document.status = DocumentStatus.REJECTED
            document.rejection_reason = reason
        audit.emit(self.audit_sink, f"document.{document.status.value}", application.application_id, reviewer,
                   document_type=document.document_type.value, reviewed_at=now.isoformat())
        return document

    def delete(self, application: KycApplication, document_type: str, actor: str) -> DocumentRecord:
        ensure_action(application.status, "delete_document")
        document = self.store.remove_document(application.application_id, DocumentType(document_type))
        self._release_blob(document.storage_ref)
        audit.emit(self.audit_sink, "document.deleted", application.application_id, actor,
                   document_type=document.document_type.value)
        return document

    def purge(self, documents: List[DocumentRecord]) -> None:
        """Drop blobs for documents that were cascade-deleted with their application."""
        for document in documents:
            self._release_blob(document.storage_ref)

    def _release_blob(self, storage_ref: str) -> None:
        still_used = any(
            d.storage_ref == storage_ref
            for docs in self.store.documents.values()
            for d in docs.values()
        )
        if not still_used:
            self.blob_store.delete(storage_ref)

    def missing_required(self, application_id: str) -> List[str]:
        present = {d.document_type.value for d in self.store.list_documents(application_id)}
        return [doc_type for doc_type in self.required_documents if doc_type not in present]

    def consistency_issues(self, application_id: str) -> List[str]:
        issues: List[str] = []
        for document in self.store.list_documents(application_id):
            issues.extend(f"{document.document_type.value}:{issue}" for issue in document.issues)
        return issues
