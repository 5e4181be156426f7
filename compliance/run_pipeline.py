from datetime import datetime
from typing import Optional

from config import Settings
from .checks import IdentityChecks
from .decision import DecisionEngine
from .documents import DocumentService
from .extractor import DocumentFieldExtractor
from .models import KycApplication
from .providers import (
    AuditSink,
    BiometricProvider,
    BlobStore,
    FileReportSink,
    IdentityVerificationProvider,
    InMemoryBlobStore,
    JsonFileReferenceListStore,
    LivenessProvider,
    LoggingAuditSink,
    OcrProvider,
    ReferenceListStore,
    RegulatoryReportingSink,
    VirusScanner,
    build_ocr_provider,
)
from .risk import RiskScorer
from .screening import ScreeningEngine
from .state_machine import ApplicationStateMachine
from .store import InMemoryKycStore
from .verification import VerificationAggregator


def build_state_machine(settings: Settings,
                        identity_provider: IdentityVerificationProvider,
                        biometric_provider: Optional[BiometricProvider] = None,
                        liveness_provider: Optional[LivenessProvider] = None,
                        ocr_provider: Optional[OcrProvider] = None,
                        list_store: Optional[ReferenceListStore] = None,
                        report_sink: Optional[RegulatoryReportingSink] = None,
                        audit_sink: Optional[AuditSink] = None,
                        blob_store: Optional[BlobStore] = None,
                        virus_scanner: Optional[VirusScanner] = None,
                        store: Optional[InMemoryKycStore] = None) -> ApplicationStateMachine:
    """
    Wire every engine to its collaborators.

    Anything not passed in falls back to the variant selected by settings:
    the configured OCR provider, JSON reference lists under
    REFERENCE_LISTS_PATH, file-based FMU reports under REPORTS_PATH and
    audit events on the ``compliance.audit`` logger.
    """
    store = store or InMemoryKycStore()
    audit_sink = audit_sink or LoggingAuditSink()
    checks = IdentityChecks(settings)
    risk_scorer = RiskScorer(settings)

    documents = DocumentService(
        settings,
        store,
        blob_store or InMemoryBlobStore(),
        ocr_provider=ocr_provider or build_ocr_provider(settings),
        checks=checks,
        extractor=DocumentFieldExtractor(),
        virus_scanner=virus_scanner,
        audit_sink=audit_sink,
    )
    verifier = VerificationAggregator(
        settings,
        identity_provider,
        biometric_provider=biometric_provider,
        liveness_provider=liveness_provider,
        audit_sink=audit_sink,
    )
    screening = ScreeningEngine(
        settings,
        list_store or JsonFileReferenceListStore(settings.REFERENCE_LISTS_PATH),
        report_sink=report_sink or FileReportSink(settings.REPORTS_PATH),
        audit_sink=audit_sink,
    )

    return ApplicationStateMachine(
        settings,
        store,
        documents,
        verifier,
        screening,
        risk_scorer=risk_scorer,
        decision_engine=DecisionEngine(settings, risk_scorer),
        checks=checks,
        audit_sink=audit_sink,
    )


async def run_pipeline(machine: ApplicationStateMachine, application_id: str,
                       actor: str, now: datetime) -> KycApplication:
    """
    Submit an application and wait for the automated decision.

    Returns the application in ``approved`` or ``under_review``; anything
    that stops submission (missing documents, no consent, invalid identity)
    raises before processing starts.
    """
    await machine.submit(application_id, actor, now)
    return await machine.wait_for_decision(application_id)
