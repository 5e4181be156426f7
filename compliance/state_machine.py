"""
Application lifecycle.

pending -> in_progress -> (approved | under_review) ; under_review -> approved | rejected ;
pending / in_progress / under_review -> rejected by a reviewer.

Every mutation of an application's aggregate fields happens while holding that
application's lock. Verification and screening run outside the lock and are
joined before the decision step reads their results.
"""

import asyncio
import logging
import weakref
from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Optional

from config import Settings
from . import audit
from .checks import IdentityChecks
from .decision import AUTO_APPROVE, DecisionEngine
from .documents import DocumentService
from .errors import KycError, PolicyViolation, ValidationFailed
from .lifecycle import ALLOWED_ACTIONS, ensure_action, ensure_transition
from .models import (
    AccountTier,
    ApplicantIdentity,
    ApplicationStatus,
    DocumentType,
    KycApplication,
    ScreeningResult,
    VerificationAttempt,
    VerificationStatus,
    VerificationType,
)
from .providers import AuditSink
from .risk import RiskScorer
from .screening import ScreeningEngine
from .store import InMemoryKycStore, new_application_id
from .verification import VerificationAggregator

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"

SAMPLE_DOCUMENTS = {
    VerificationType.BIOMETRIC: DocumentType.FINGERPRINT,
    VerificationType.LIVENESS: DocumentType.SELFIE,
}


class ApplicationStateMachine:

    def __init__(self,
                 settings: Settings,
                 store: InMemoryKycStore,
                 documents: DocumentService,
                 verifier: VerificationAggregator,
                 screening: ScreeningEngine,
                 risk_scorer: Optional[RiskScorer] = None,
                 decision_engine: Optional[DecisionEngine] = None,
                 checks: Optional[IdentityChecks] = None,
                 audit_sink: Optional[AuditSink] = None):
        self.store = store
        self.documents = documents
        self.verifier = verifier
        self.screening = screening
        self.risk_scorer = risk_scorer or RiskScorer(settings)
        self.decision_engine = decision_engine or DecisionEngine(settings, self.risk_scorer)
        self.checks = checks or IdentityChecks(settings)
        self.audit_sink = audit_sink
        # an entry lives only while some coroutine holds or awaits the lock
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._tasks: Dict[str, asyncio.Task] = {}

    def _lock(self, application_id: str) -> asyncio.Lock:
        return self._locks.setdefault(application_id, asyncio.Lock())

    def _ensure_owner(self, application: KycApplication, actor: str) -> None:
        if actor != application.user_id:
            raise PolicyViolation("Only the applicant can perform this action", code="NOT_OWNER")

    def allowed_actions(self, application_id: str) -> FrozenSet[str]:
        return ALLOWED_ACTIONS[self.store.get_application(application_id).status]

    # ------------------------
    # Intake (pending)
    # ------------------------
    async def create_application(self, user_id: str, identity: ApplicantIdentity,
                                 consent_given: bool, now: datetime) -> KycApplication:
        self.checks.ensure_valid_identity(identity, now.date())
        application = KycApplication(
            application_id=new_application_id(now),
            user_id=user_id,
            identity=identity,
            consent_given=consent_given,
            created_at=now,
        )
        self.store.add_application(application)
        audit.emit(self.audit_sink, "application.created", application.application_id, user_id)
        return application

    async def update_application(self, application_id: str, actor: str, now: datetime,
                                 identity: Optional[ApplicantIdentity] = None,
                                 consent_given: Optional[bool] = None) -> KycApplication:
        async with self._lock(application_id):
            application = self.store.get_application(application_id)
            self._ensure_owner(application, actor)
            ensure_action(application.status, "update")

            if identity is not None:
                self.checks.ensure_valid_identity(identity, now.date())
                if self.store.cnic_in_use(identity.cnic, exclude_application_id=application_id):
                    raise ValidationFailed("This ID number is already registered",
                                           reasons=["CNIC_ALREADY_REGISTERED"])
                application.identity = identity
                self.documents.refresh_issues(application, now)
            if consent_given is not None:
                application.consent_given = consent_given

            audit.emit(self.audit_sink, "application.updated", application_id, actor)
            return application

    async def upload_document(self, application_id: str, actor: str, document_type: str,
                              data: bytes, mime_type: str, now: datetime,
                              file_name: Optional[str] = None):
        async with self._lock(application_id):
            application = self.store.get_application(application_id)
            self._ensure_owner(application, actor)
            return await self.documents.upload(application, document_type, data, mime_type, now,
                                               file_name=file_name)

    async def delete_document(self, application_id: str, actor: str, document_type: str):
        async with self._lock(application_id):
            application = self.store.get_application(application_id)
            self._ensure_owner(application, actor)
            return self.documents.delete(application, document_type, actor)

    async def delete_application(self, application_id: str, actor: str) -> None:
        async with self._lock(application_id):
            application = self.store.get_application(application_id)
            self._ensure_owner(application, actor)
            ensure_action(application.status, "delete")
            removed = self.store.delete_application(application_id)
            self.documents.purge(removed)
            audit.emit(self.audit_sink, "application.deleted", application_id, actor,
                       documents_removed=len(removed))

    # ------------------------
    # Submission + automated processing
    # ------------------------
    async def submit(self, application_id: str, actor: str, now: datetime,
                     dispatch: bool = True) -> KycApplication:
        async with self._lock(application_id):
            application = self.store.get_application(application_id)
            self._ensure_owner(application, actor)
            ensure_transition(application.status, ApplicationStatus.IN_PROGRESS)

            reasons = []
            missing = self.documents.missing_required(application_id)
            if missing:
                reasons.append("MISSING_DOCUMENTS")
            if not application.consent_given:
                reasons.append("CONSENT_REQUIRED")
            reasons.extend(self.checks.identity_issues(application.identity, now.date()))
            if reasons:
                raise ValidationFailed("Application is not ready for submission", reasons=reasons,
                                       details={"missing_documents": missing})

            application.status = ApplicationStatus.IN_PROGRESS
            application.submitted_at = now
            audit.emit(self.audit_sink, "application.submitted", application_id, actor)

        if dispatch:
            task = asyncio.create_task(self.process(application_id, now))
            self._tasks[application_id] = task
            task.add_done_callback(lambda done: self._forget_task(application_id, done))
        return application

    def _forget_task(self, application_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(application_id) is task:
            del self._tasks[application_id]

    async def wait_for_decision(self, application_id: str) -> KycApplication:
        """Join the background processing dispatched by ``submit``."""
        task = self._tasks.get(application_id)
        if task is not None:
            await task
        return self.store.get_application(application_id)

    def _load_sample(self, application_id: str, verification_type: VerificationType) -> Optional[bytes]:
        document_type = SAMPLE_DOCUMENTS[verification_type]
        if self.store.find_document(application_id, document_type) is None:
            return None
        return self.documents.read(application_id, document_type.value)

    async def _sample_failure(self, application_id: str, verification_type: VerificationType,
                              error: KycError, now: datetime) -> VerificationAttempt:
        attempt = self.verifier.new_attempt(application_id, verification_type)
        attempt.status = VerificationStatus.FAILED
        attempt.error_code = error.code
        attempt.error_message = error.message
        attempt.completed_at = now
        # the stored sample is unusable, so retrying cannot help
        attempt.retry_count = self.verifier.max_retries
        return attempt

    def _verification_jobs(self, application: KycApplication, now: datetime) -> List[Any]:
        application_id = application.application_id
        identity = application.identity
        jobs = [self.verifier.verify_identity(application_id, identity, now)]

        providers = {
            VerificationType.BIOMETRIC: (self.verifier.biometric_provider, self.verifier.verify_biometric),
            VerificationType.LIVENESS: (self.verifier.liveness_provider, self.verifier.check_liveness),
        }
        for verification_type, (provider, run) in providers.items():
            if provider is None:
                continue
            try:
                sample = self._load_sample(application_id, verification_type)
            except KycError as e:
                logger.error("Could not load %s sample: %s", verification_type.value, e, extra={
                    "application_id": application_id, "stage": f"verification:{verification_type.value}"})
                jobs.append(self._sample_failure(application_id, verification_type, e, now))
                continue
            if sample is not None:
                jobs.append(run(application_id, identity, sample, now))
        return jobs

    async def process(self, application_id: str, now: datetime) -> KycApplication:
        """Dispatch verification and screening in parallel, join, then decide."""
        application = self.store.get_application(application_id)
        if application.status != ApplicationStatus.IN_PROGRESS:
            logger.info("Skipping processing of %s in status %s", application_id, application.status.value)
            return application

        jobs = self._verification_jobs(application, now)
        jobs.append(self.screening.screen_all(application_id, application.identity, now))
        outcomes = await asyncio.gather(*jobs, return_exceptions=True)

        attempts, screenings, crashed_stages = [], [], []
        for outcome in outcomes:
            if isinstance(outcome, VerificationAttempt):
                attempts.append(outcome)
            elif isinstance(outcome, list):
                screenings.extend(outcome)
            elif isinstance(outcome, BaseException):
                logger.error("Processing stage crashed: %r", outcome, extra={
                    "application_id": application_id, "stage": "process"})
                crashed_stages.append("processing")

        return await self._decide(application_id, now, attempts, screenings, crashed_stages)

    def _refresh_signals(self, application: KycApplication, now: datetime) -> Dict[str, Any]:
        attempts = self.store.list_verifications(application.application_id)
        screenings = self.store.list_screenings(application.application_id)
        verification = self.verifier.flags(attempts)

        application.identity_verified = verification["identity_verified"]
        application.biometric_verified = verification["biometric_verified"]
        application.sanctions_cleared, application.pep_cleared = self.screening.compliance_flags(screenings)

        documents = self.store.list_documents(application.application_id)
        assessment = self.risk_scorer.apply(application, documents, now.date())
        return {"verification": verification, "screenings": screenings, "assessment": assessment}

    async def _decide(self, application_id: str, now: datetime,
                      attempts: List[VerificationAttempt],
                      screenings: List[ScreeningResult],
                      extra_failures: Optional[List[str]] = None) -> KycApplication:
        async with self._lock(application_id):
            application = self.store.get_application(application_id)
            if application.status.is_terminal:
                logger.info("Application %s already %s; late results ignored",
                            application_id, application.status.value)
                return application
            if application.status != ApplicationStatus.IN_PROGRESS:
                return application

            for attempt in attempts:
                self.store.save_verification(attempt)
            for result in screenings:
                self.store.save_screening(result)

            signals = self._refresh_signals(application, now)
            verification = signals["verification"]
            decision = self.decision_engine.make_decision(
                application,
                signals["screenings"],
                verification["failed_stages"] + list(extra_failures or []),
                liveness_passed=verification["liveness_passed"],
                document_issues=self.documents.consistency_issues(application_id),
            )
            application.decision_reasons = decision["reasons"]

            if decision["outcome"] == AUTO_APPROVE:
                ensure_transition(application.status, ApplicationStatus.APPROVED)
                application.status = ApplicationStatus.APPROVED
                application.account_tier = decision["account_tier"]
                application.processed_at = now
                application.processed_by = SYSTEM_ACTOR
                audit.emit(self.audit_sink, "application.auto_approved", application_id, SYSTEM_ACTOR,
                           risk_score=application.risk_score)
            else:
                ensure_transition(application.status, ApplicationStatus.UNDER_REVIEW)
                application.status = ApplicationStatus.UNDER_REVIEW
                audit.emit(self.audit_sink, "application.under_review", application_id, SYSTEM_ACTOR,
                           risk_score=application.risk_score, reasons=decision["reasons"])
            return application

    # ------------------------
    # Late signals
    # ------------------------
    async def record_verification(self, application_id: str, attempt: VerificationAttempt,
                                  now: datetime) -> KycApplication:
        """Apply a verification outcome that arrived after the initial run."""
        async with self._lock(application_id):
            application = self.store.get_application(application_id)
            if application.status.is_terminal:
                logger.info("Ignoring verification for %s application %s",
                            application.status.value, application_id)
                return application
            ensure_action(application.status, "record_verification")
            if attempt.application_id != application_id:
                raise PolicyViolation("Verification belongs to another application", code="APPLICATION_MISMATCH")

            self.store.save_verification(attempt)
            self._refresh_signals(application, now)
            audit.emit(self.audit_sink, "application.verification_recorded", application_id,
                       verification_type=attempt.verification_type.value, status=attempt.status.value)
            return application

    async def retry_verification(self, application_id: str, attempt_id: str,
                                 now: datetime) -> VerificationAttempt:
        """
        Re-run a failed or timed-out attempt.

        The retry is counted and the stored attempt marked pending under the
        application's lock, so concurrent retries of one attempt call the
        provider once and the rest are refused.
        """
        async with self._lock(application_id):
            application = self.store.get_application(application_id)
            if application.status.is_terminal:
                raise PolicyViolation(f"Application is {application.status.value}", code="APPLICATION_FINAL")
            ensure_action(application.status, "record_verification")

            attempt = self.store.get_verification(application_id, attempt_id).model_copy(deep=True)
            sample = None
            if attempt.verification_type in SAMPLE_DOCUMENTS:
                sample = self._load_sample(application_id, attempt.verification_type)
            self.verifier.claim_retry(attempt)
            self.store.save_verification(attempt.model_copy(deep=True))
            identity = application.identity

        await self.verifier.execute(attempt, identity, sample, now)
        await self.record_verification(application_id, attempt, now)
        return attempt

    # ------------------------
    # Reviewer actions
    # ------------------------
    async def approve(self, application_id: str, reviewer: str, account_tier: str,
                      now: datetime) -> KycApplication:
        try:
            tier = AccountTier(account_tier)
        except ValueError:
            raise ValidationFailed("Select a valid account tier", reasons=["INVALID_ACCOUNT_TIER"])

        async with self._lock(application_id):
            application = self.store.get_application(application_id)
            ensure_action(application.status, "approve")
            ensure_transition(application.status, ApplicationStatus.APPROVED)
            application.status = ApplicationStatus.APPROVED
            application.account_tier = tier
            application.processed_at = now
            application.processed_by = reviewer
            audit.emit(self.audit_sink, "application.approved", application_id, reviewer,
                       account_tier=tier.value)
            return application

    async def reject(self, application_id: str, reviewer: str, reason: str,
                     now: datetime) -> KycApplication:
        if not reason or not reason.strip():
            raise ValidationFailed("A rejection reason is required", reasons=["REASON_REQUIRED"])

        async with self._lock(application_id):
            application = self.store.get_application(application_id)
            ensure_transition(application.status, ApplicationStatus.REJECTED)
            application.status = ApplicationStatus.REJECTED
            application.rejection_reason = reason.strip()
            application.processed_at = now
            application.processed_by = reviewer
            audit.emit(self.audit_sink, "application.rejected", application_id, reviewer, reason=reason)
            return application

    async def review_screening(self, application_id: str, screening_id: str, reviewer: str,
                               action: str, now: datetime,
                               comments: Optional[str] = None) -> ScreeningResult:
        handlers = {
            "false_positive": self.screening.mark_false_positive,
            "approve": self.screening.approve,
            "reject": self.screening.reject,
            "escalate": self.screening.escalate,
            "re_review": self.screening.re_review,
        }
        if action not in handlers:
            raise ValidationFailed(f"Unknown screening review action {action!r}",
                                   reasons=["UNKNOWN_REVIEW_ACTION"])

        async with self._lock(application_id):
            application = self.store.get_application(application_id)
            ensure_action(application.status, "review_screening")
            result = self.store.get_screening(application_id, screening_id).model_copy(deep=True)
            handlers[action](result, reviewer, now, comments)
            self.store.save_screening(result)
            self._refresh_signals(application, now)
            return result

    async def review_document(self, application_id: str, document_type: str, reviewer: str,
                              approve: bool, now: datetime, reason: Optional[str] = None):
        async with self._lock(application_id):
            application = self.store.get_application(application_id)
            return self.documents.review(application, document_type, reviewer, approve, now, reason)

    def screening_summary(self, application_id: str) -> Dict[str, Any]:
        return self.screening.summary(self.store.list_screenings(application_id))
