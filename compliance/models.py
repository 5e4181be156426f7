"""
Records and enumerations for the KYC compliance core.

The application is the aggregate root; documents, verification attempts and
screening results hang off it by ``application_id``.
"""

import uuid
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ApplicationStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self in (ApplicationStatus.APPROVED, ApplicationStatus.REJECTED)


class RiskCategory(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class AccountTier(str, Enum):
    BASIC = "basic"
    STANDARD = "standard"
    PREMIUM = "premium"


class Gender(str, Enum):
    MALE = "male"
    FEMALE = "female"


class DocumentType(str, Enum):
    CNIC_FRONT = "cnic_front"
    CNIC_BACK = "cnic_back"
    SELFIE = "selfie"
    PROOF_OF_ADDRESS = "proof_of_address"
    FINGERPRINT = "fingerprint"


class DocumentStatus(str, Enum):
    UNVERIFIED = "unverified"
    VERIFIED = "verified"
    REJECTED = "rejected"


class VerificationType(str, Enum):
    IDENTITY = "identity"
    BIOMETRIC = "biometric"
    LIVENESS = "liveness"


class VerificationStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    TIMEOUT = "timeout"


class ScreeningStatus(str, Enum):
    PENDING = "pending"
    CLEAR = "clear"
    MATCH_FOUND = "match_found"
    FALSE_POSITIVE = "false_positive"
    UNDER_REVIEW = "under_review"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _RISK_LEVEL_ORDER.index(self)


_RISK_LEVEL_ORDER = [RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH, RiskLevel.CRITICAL]


class ReviewDecision(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"
    ESCALATED = "escalated"


def _new_id() -> str:
    return uuid.uuid4().hex


class ApplicantIdentity(BaseModel):
    """Snapshot of what the applicant declared. Frozen once built."""

    model_config = ConfigDict(frozen=True)

    cnic: str
    full_name: str
    father_name: str
    date_of_birth: date
    gender: Gender
    phone_number: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    province: Optional[str] = None
    postal_code: Optional[str] = None


class KycApplication(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    application_id: str
    user_id: str
    identity: ApplicantIdentity
    status: ApplicationStatus = ApplicationStatus.PENDING
    risk_score: int = Field(default=0, ge=0, le=100)
    risk_category: RiskCategory = RiskCategory.LOW
    sanctions_cleared: bool = False
    pep_cleared: bool = False
    identity_verified: bool = False
    biometric_verified: bool = False
    consent_given: bool = False
    account_tier: Optional[AccountTier] = None
    created_at: Optional[datetime] = None
    submitted_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    processed_by: Optional[str] = None
    rejection_reason: Optional[str] = None
    # Reason codes from the last automated decision
    decision_reasons: List[str] = Field(default_factory=list)

    def is_compliant(self) -> bool:
        return (
            self.sanctions_cleared
            and self.pep_cleared
            and self.identity_verified
            and self.biometric_verified
        )

    def progress_percentage(self) -> int:
        steps = [
            self.consent_given,
            self.identity_verified,
            self.biometric_verified,
            self.sanctions_cleared,
            self.pep_cleared,
        ]
        return int(sum(1 for step in steps if step) / len(steps) * 100)


class DocumentRecord(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    document_id: str = Field(default_factory=_new_id)
    application_id: str
    document_type: DocumentType
    storage_ref: str
    file_hash: str
    file_name: Optional[str] = None
    file_size: int
    mime_type: str
    ocr_fields: Dict[str, Any] = Field(default_factory=dict)
    confidence_score: Optional[float] = Field(default=None, ge=0, le=100)
    issues: List[str] = Field(default_factory=list)
    status: DocumentStatus = DocumentStatus.UNVERIFIED
    rejection_reason: Optional[str] = None
    uploaded_at: datetime
    expires_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.status != DocumentStatus.UNVERIFIED

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at < now


class VerificationAttempt(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    attempt_id: str = Field(default_factory=_new_id)
    application_id: str
    verification_type: VerificationType
    provider: str
    status: VerificationStatus = VerificationStatus.PENDING
    match_score: Optional[float] = Field(default=None, ge=0, le=100)
    # Whether the score cleared the pass mark for this verification type
    passed: bool = False
    retry_count: int = 0
    session_ref: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    completed_at: Optional[datetime] = None

    def can_retry(self, max_retries: int = 3) -> bool:
        return self.retry_count < max_retries and self.status in (
            VerificationStatus.FAILED,
            VerificationStatus.TIMEOUT,
        )

    def confidence_level(self) -> str:
        if self.match_score is not None and self.match_score >= 85:
            return "high"
        if self.match_score is not None and self.match_score >= 70:
            return "medium"
        return "low"

    def should_trigger_manual_review(self) -> bool:
        return (
            self.status == VerificationStatus.FAILED
            or (self.match_score is not None and self.match_score < 70)
            or self.retry_count >= 2
        )


class ReferenceListEntry(BaseModel):
    name: str
    aliases: List[str] = Field(default_factory=list)
    father_name: Optional[str] = None
    date_of_birth: Optional[date] = None
    reference: Optional[str] = None


class ScreeningMatch(BaseModel):
    entry: ReferenceListEntry
    match_score: float
    # "name" or "alias"
    match_type: str
    matched_field: str


class ScreeningResult(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    screening_id: str = Field(default_factory=_new_id)
    application_id: str
    list_name: str
    provider: str = "internal"
    status: ScreeningStatus = ScreeningStatus.PENDING
    matches: List[ScreeningMatch] = Field(default_factory=list)
    match_count: int = 0
    highest_match_score: Optional[float] = None
    risk_level: RiskLevel = RiskLevel.LOW
    risk_notes: Optional[str] = None
    requires_manual_review: bool = False
    final_decision: Optional[ReviewDecision] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    review_comments: Optional[str] = None
    reported_to_fmu: bool = False
    fmu_reference: Optional[str] = None
    reported_at: Optional[datetime] = None
    report_error: Optional[str] = None
    screened_at: Optional[datetime] = None

    def has_matches(self) -> bool:
        return self.status == ScreeningStatus.MATCH_FOUND and self.match_count > 0

    def is_high_risk(self) -> bool:
        return self.risk_level in (RiskLevel.HIGH, RiskLevel.CRITICAL)

    def is_reviewed(self) -> bool:
        return self.final_decision is not None

    def is_resolved(self) -> bool:
        """Cleared for compliance purposes: no hit, or a hit a reviewer dismissed."""
        if self.status in (ScreeningStatus.CLEAR, ScreeningStatus.FALSE_POSITIVE):
            return True
        return self.final_decision == ReviewDecision.APPROVED

    def should_report_to_fmu(self) -> bool:
        return (
            self.has_matches()
            and self.is_high_risk()
            and not self.reported_to_fmu
            and self.status != ScreeningStatus.FALSE_POSITIVE
        )

    def compliance_status(self) -> str:
        if self.status in (ScreeningStatus.CLEAR, ScreeningStatus.FALSE_POSITIVE):
            return "compliant"
        if self.final_decision == ReviewDecision.REJECTED:
            return "non_compliant"
        if self.requires_manual_review or self.status == ScreeningStatus.UNDER_REVIEW:
            return "pending_review"
        if self.final_decision == ReviewDecision.APPROVED:
            return "compliant_with_conditions"
        return "unknown"


class OcrOutput(BaseModel):
    lines: List[str] = Field(default_factory=list)
    confidence: Optional[float] = None


class IdentityProviderResult(BaseModel):
    name: bool = False
    father_name: bool = False
    dob: bool = False
    id_valid: bool = False
    session_ref: Optional[str] = None


class LivenessProviderResult(BaseModel):
    liveness_score: float = 0
    face_match_score: float = 0
