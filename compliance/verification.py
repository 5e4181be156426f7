import asyncio
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from config import Settings
from . import audit
from .errors import PolicyViolation, ProviderFailure, ProviderTimeout
from .models import (
    ApplicantIdentity,
    IdentityProviderResult,
    LivenessProviderResult,
    VerificationAttempt,
    VerificationStatus,
    VerificationType,
)
from .providers import AuditSink, BiometricProvider, IdentityVerificationProvider, LivenessProvider

logger = logging.getLogger(__name__)


class VerificationAggregator:
    """
    Runs identity, biometric and liveness checks against their providers and
    turns the outcomes into attempt rows and application flags.
    """

    def __init__(self,
                 settings: Settings,
                 identity_provider: IdentityVerificationProvider,
                 biometric_provider: Optional[BiometricProvider] = None,
                 liveness_provider: Optional[LivenessProvider] = None,
                 audit_sink: Optional[AuditSink] = None):
        self.identity_provider = identity_provider
        self.biometric_provider = biometric_provider
        self.liveness_provider = liveness_provider
        self.audit_sink = audit_sink
        self.identity_weights = dict(settings.IDENTITY_WEIGHTS)
        self.identity_pass = settings.IDENTITY_PASS_SCORE
        self.biometric_pass = settings.BIOMETRIC_PASS_SCORE
        self.liveness_pass = settings.LIVENESS_PASS_SCORE
        self.face_match_pass = settings.FACE_MATCH_PASS_SCORE
        self.max_retries = settings.MAX_VERIFICATION_RETRIES
        self.auto_retry = settings.AUTO_RETRY_VERIFICATIONS
        self.timeouts = {
            VerificationType.IDENTITY: settings.IDENTITY_TIMEOUT,
            VerificationType.BIOMETRIC: settings.BIOMETRIC_TIMEOUT,
            VerificationType.LIVENESS: settings.LIVENESS_TIMEOUT,
        }

    # ------------------------
    # Scoring
    # ------------------------
    def identity_match_score(self, result: IdentityProviderResult) -> float:
        score = sum(
            weight for field, weight in self.identity_weights.items()
            if getattr(result, field, False)
        )
        return float(min(score, 100))

    def _evaluate_identity(self, attempt: VerificationAttempt, result: IdentityProviderResult) -> None:
        attempt.match_score = self.identity_match_score(result)
        attempt.passed = attempt.match_score >= self.identity_pass
        attempt.session_ref = result.session_ref
        attempt.details = result.model_dump(exclude={"session_ref"})

    def _evaluate_biometric(self, attempt: VerificationAttempt, score: float) -> None:
        attempt.match_score = max(0.0, min(100.0, float(score)))
        attempt.passed = attempt.match_score >= self.biometric_pass

    def _evaluate_liveness(self, attempt: VerificationAttempt, result: LivenessProviderResult) -> None:
        liveness_ok = result.liveness_score >= self.liveness_pass
        face_ok = result.face_match_score >= self.face_match_pass
        attempt.match_score = max(0.0, min(100.0, (result.liveness_score + result.face_match_score) / 2))
        # Both sub-checks must pass on their own; the average is informational
        attempt.passed = liveness_ok and face_ok
        attempt.details = {
            "liveness_score": result.liveness_score,
            "face_match_score": result.face_match_score,
            "liveness_check": liveness_ok,
            "face_match": face_ok,
        }

    # ------------------------
    # Execution
    # ------------------------
    def _invoker(self, attempt: VerificationAttempt, identity: ApplicantIdentity,
                 sample: Optional[bytes]) -> Callable[[], Awaitable[Any]]:
        if attempt.verification_type == VerificationType.IDENTITY:
            return lambda: self.identity_provider.verify(identity)
        if attempt.verification_type == VerificationType.BIOMETRIC:
            if self.biometric_provider is None:
                raise ProviderFailure("No biometric provider configured", code="PROVIDER_NOT_CONFIGURED")
            return lambda: self.biometric_provider.verify(identity.cnic, sample)
        if self.liveness_provider is None:
            raise ProviderFailure("No liveness provider configured", code="PROVIDER_NOT_CONFIGURED")
        return lambda: self.liveness_provider.check(identity.cnic, sample)

    def _evaluate(self, attempt: VerificationAttempt, outcome: Any) -> None:
        if attempt.verification_type == VerificationType.IDENTITY:
            self._evaluate_identity(attempt, outcome)
        elif attempt.verification_type == VerificationType.BIOMETRIC:
            self._evaluate_biometric(attempt, outcome)
        else:
            self._evaluate_liveness(attempt, outcome)

    async def execute(self, attempt: VerificationAttempt, identity: ApplicantIdentity,
                       sample: Optional[bytes], now: datetime) -> VerificationAttempt:
        timeout = self.timeouts[attempt.verification_type]
        stage = f"verification:{attempt.verification_type.value}"
        try:
            invoke = self._invoker(attempt, identity, sample)
            outcome = await asyncio.wait_for(invoke(), timeout=timeout)
            self._evaluate(attempt, outcome)
        except (asyncio.TimeoutError, ProviderTimeout):
            logger.error("Verification timed out after %ss", timeout, extra={
                "application_id": attempt.application_id, "stage": stage})
            attempt.status = VerificationStatus.TIMEOUT
            attempt.error_code = "TIMEOUT"
            attempt.error_message = "Verification request timed out"
            attempt.passed = False
        except ProviderFailure as e:
            logger.error("Verification provider failed: %s", e, extra={
                "application_id": attempt.application_id, "stage": stage})
            attempt.status = VerificationStatus.FAILED
            attempt.error_code = e.code
            attempt.error_message = e.message
            attempt.passed = False
        except Exception as e:
            logger.error("Verification service error: %s", e, extra={
                "application_id": attempt.application_id, "stage": stage}, exc_info=True)
            attempt.status = VerificationStatus.FAILED
            attempt.error_code = "SERVICE_ERROR"
            attempt.error_message = "Internal service error"
            attempt.passed = False
        else:
            attempt.status = VerificationStatus.SUCCESS
            attempt.error_code = None
            attempt.error_message = None

        attempt.completed_at = now
        audit.emit(self.audit_sink, f"verification.{attempt.status.value}", attempt.application_id,
                   verification_type=attempt.verification_type.value,
                   match_score=attempt.match_score, passed=attempt.passed,
                   retry_count=attempt.retry_count)
        return attempt

    async def run(self, attempt: VerificationAttempt, identity: ApplicantIdentity,
                  sample: Optional[bytes], now: datetime) -> VerificationAttempt:
        """Run an attempt, retrying failures automatically up to the bound."""
        await self.execute(attempt, identity, sample, now)
        while self.auto_retry and attempt.can_retry(self.max_retries):
            await self.retry(attempt, identity, sample, now)
        return attempt

    def claim_retry(self, attempt: VerificationAttempt) -> VerificationAttempt:
        """Count the retry and mark the attempt pending before the provider is called again."""
        if not attempt.can_retry(self.max_retries):
            raise PolicyViolation(
                "Verification cannot be retried",
                code="RETRY_EXHAUSTED" if attempt.retry_count >= self.max_retries else "NOT_RETRYABLE",
                details={"attempt_id": attempt.attempt_id, "status": attempt.status.value},
            )
        attempt.retry_count += 1
        attempt.status = VerificationStatus.PENDING
        return attempt

    async def retry(self, attempt: VerificationAttempt, identity: ApplicantIdentity,
                    sample: Optional[bytes], now: datetime) -> VerificationAttempt:
        self.claim_retry(attempt)
        return await self.execute(attempt, identity, sample, now)

    def new_attempt(self, application_id: str, verification_type: VerificationType) -> VerificationAttempt:
        provider = {
            VerificationType.IDENTITY: self.identity_provider,
            VerificationType.BIOMETRIC: self.biometric_provider,
            VerificationType.LIVENESS: self.liveness_provider,
        }[verification_type]
        return VerificationAttempt(
            application_id=application_id,
            verification_type=verification_type,
            provider=getattr(provider, "name", "unconfigured") if provider else "unconfigured",
        )

    async def verify_identity(self, application_id: str, identity: ApplicantIdentity,
                              now: datetime) -> VerificationAttempt:
        attempt = self.new_attempt(application_id, VerificationType.IDENTITY)
        return await self.run(attempt, identity, None, now)

    async def verify_biometric(self, application_id: str, identity: ApplicantIdentity,
                               sample: bytes, now: datetime) -> VerificationAttempt:
        attempt = self.new_attempt(application_id, VerificationType.BIOMETRIC)
        return await self.run(attempt, identity, sample, now)

    async def check_liveness(self, application_id: str, identity: ApplicantIdentity,
                             selfie: bytes, now: datetime) -> VerificationAttempt:
        attempt = self.new_attempt(application_id, VerificationType.LIVENESS)
        return await self.run(attempt, identity, selfie, now)

    # ------------------------
    # Flags
    # ------------------------
    def _passed(self, attempts: List[VerificationAttempt], verification_type: VerificationType) -> bool:
        return any(
            a.verification_type == verification_type
            and a.status == VerificationStatus.SUCCESS
            and a.passed
            for a in attempts
        )

    def flags(self, attempts: List[VerificationAttempt]) -> Dict[str, Any]:
        liveness = [a for a in attempts if a.verification_type == VerificationType.LIVENESS]
        return {
            "identity_verified": self._passed(attempts, VerificationType.IDENTITY),
            "biometric_verified": self._passed(attempts, VerificationType.BIOMETRIC),
            "liveness_passed": self._passed(attempts, VerificationType.LIVENESS) if liveness else None,
            "failed_stages": self.failed_stages(attempts),
        }

    def failed_stages(self, attempts: List[VerificationAttempt]) -> List[str]:
        """Verification types that ended failed/timed out with no later success."""
        succeeded = {a.verification_type for a in attempts if a.status == VerificationStatus.SUCCESS}
        return sorted({
            a.verification_type.value for a in attempts
            if a.status in (VerificationStatus.FAILED, VerificationStatus.TIMEOUT)
            and a.verification_type not in succeeded
        })
