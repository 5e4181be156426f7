import secrets
import string
from datetime import datetime
from typing import Dict, List, Optional

from .errors import NotFound, ValidationFailed
from .models import (
    DocumentRecord,
    DocumentType,
    KycApplication,
    ScreeningResult,
    VerificationAttempt,
)

_ID_ALPHABET = string.ascii_uppercase + string.digits


def new_application_id(now: datetime) -> str:
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(8))
    return f"KYC-{now.year}-{suffix}"


class InMemoryKycStore:
    """
    Relational-style store for the application aggregate and its child rows.
    Deletion policy is enforced by the state machine, not here.
    """

    def __init__(self):
        self.applications: Dict[str, KycApplication] = {}
        self.documents: Dict[str, Dict[DocumentType, DocumentRecord]] = {}
        self.verifications: Dict[str, List[VerificationAttempt]] = {}
        self.screenings: Dict[str, List[ScreeningResult]] = {}

    # Applications
    def add_application(self, application: KycApplication) -> KycApplication:
        for existing in self.applications.values():
            if existing.identity.cnic == application.identity.cnic:
                raise ValidationFailed("This ID number is already registered", reasons=["CNIC_ALREADY_REGISTERED"])
        self.applications[application.application_id] = application
        self.documents[application.application_id] = {}
        self.verifications[application.application_id] = []
        self.screenings[application.application_id] = []
        return application

    def get_application(self, application_id: str) -> KycApplication:
        try:
            return self.applications[application_id]
        except KeyError:
            raise NotFound(f"Application {application_id} not found")

    def cnic_in_use(self, cnic: str, exclude_application_id: Optional[str] = None) -> bool:
        return any(
            app.identity.cnic == cnic and app.application_id != exclude_application_id
            for app in self.applications.values()
        )

    def delete_application(self, application_id: str) -> List[DocumentRecord]:
        self.get_application(application_id)
        del self.applications[application_id]
        documents = list(self.documents.pop(application_id, {}).values())
        self.verifications.pop(application_id, None)
        self.screenings.pop(application_id, None)
        return documents

    # Documents
    def put_document(self, document: DocumentRecord) -> Optional[DocumentRecord]:
        """Store the document, returning the record it replaced, if any."""
        by_type = self.documents.setdefault(document.application_id, {})
        previous = by_type.get(document.document_type)
        by_type[document.document_type] = document
        return previous

    def get_document(self, application_id: str, document_type: DocumentType) -> DocumentRecord:
        try:
            return self.documents[application_id][DocumentType(document_type)]
        except KeyError:
            raise NotFound(f"Document {document_type} not found for {application_id}")

    def find_document(self, application_id: str, document_type: DocumentType) -> Optional[DocumentRecord]:
        return self.documents.get(application_id, {}).get(DocumentType(document_type))

    def list_documents(self, application_id: str) -> List[DocumentRecord]:
        return list(self.documents.get(application_id, {}).values())

    def remove_document(self, application_id: str, document_type: DocumentType) -> DocumentRecord:
        document = self.get_document(application_id, document_type)
        del self.documents[application_id][document.document_type]
        return document

    # Verification attempts
    def save_verification(self, attempt: VerificationAttempt) -> VerificationAttempt:
        attempts = self.verifications.setdefault(attempt.application_id, [])
        for i, existing in enumerate(attempts):
            if existing.attempt_id == attempt.attempt_id:
                attempts[i] = attempt
                return attempt
        attempts.append(attempt)
        return attempt

    def get_verification(self, application_id: str, attempt_id: str) -> VerificationAttempt:
        for attempt in self.verifications.get(application_id, []):
            if attempt.attempt_id == attempt_id:
                return attempt
        raise NotFound(f"Verification attempt {attempt_id} not found")

    def list_verifications(self, application_id: str) -> List[VerificationAttempt]:
        return list(self.verifications.get(application_id, []))

    # Screening results
    def save_screening(self, result: ScreeningResult) -> ScreeningResult:
        results = self.screenings.setdefault(result.application_id, [])
        for i, existing in enumerate(results):
            if existing.screening_id == result.screening_id:
                results[i] = result
                return result
        results.append(result)
        return result

    def get_screening(self, application_id: str, screening_id: str) -> ScreeningResult:
        for result in self.screenings.get(application_id, []):
            if result.screening_id == screening_id:
                return result
        raise NotFound(f"Screening result {screening_id} not found")

    def list_screenings(self, application_id: str) -> List[ScreeningResult]:
        return list(self.screenings.get(application_id, []))
