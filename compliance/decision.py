from typing import Any, Dict, List, Optional

from config import Settings
from .models import AccountTier, KycApplication, RiskCategory, ScreeningResult
from .risk import RiskScorer

AUTO_APPROVE = "auto_approve"
MANUAL_REVIEW = "manual_review"


class DecisionEngine:
    """
    Makes the automated decision once verification and screening have settled.

    Rules:
    - all four compliance flags true, score <= auto-approve threshold and
      category low -> AUTO_APPROVE
    - anything else -> MANUAL_REVIEW, with reason codes saying why
    Rejection is never automatic; only a reviewer rejects.
    """

    def __init__(self, settings: Settings, risk_scorer: Optional[RiskScorer] = None):
        self.risk_scorer = risk_scorer or RiskScorer(settings)
        self.auto_approve_tier = AccountTier(settings.AUTO_APPROVE_ACCOUNT_TIER)
        self.require_document_consistency = settings.REQUIRE_DOCUMENT_CONSISTENCY

    def review_reasons(self,
                       application: KycApplication,
                       screenings: List[ScreeningResult],
                       failed_stages: List[str],
                       liveness_passed: Optional[bool],
                       document_issues: List[str]) -> List[str]:
        reasons = []

        if not application.identity_verified:
            reasons.append("IDENTITY_NOT_VERIFIED")
        if not application.biometric_verified:
            reasons.append("BIOMETRIC_NOT_VERIFIED")
        if not application.sanctions_cleared:
            reasons.append("SANCTIONS_NOT_CLEARED")
        if not application.pep_cleared:
            reasons.append("PEP_NOT_CLEARED")

        if application.risk_score > self.risk_scorer.auto_approve_threshold:
            reasons.append("RISK_SCORE_ABOVE_AUTO_APPROVE")
        if application.risk_category == RiskCategory.HIGH:
            reasons.append("HIGH_RISK_CATEGORY")

        for stage in failed_stages:
            reasons.append(f"VERIFICATION_FAILED:{stage}")
        if liveness_passed is False:
            reasons.append("LIVENESS_NOT_PASSED")

        for result in screenings:
            if result.requires_manual_review:
                reasons.append(f"SCREENING_REVIEW:{result.list_name}")

        if self.require_document_consistency and document_issues:
            reasons.append("DOCUMENT_ISSUES")

        return reasons

    def make_decision(self,
                      application: KycApplication,
                      screenings: List[ScreeningResult],
                      failed_stages: List[str],
                      liveness_passed: Optional[bool] = None,
                      document_issues: Optional[List[str]] = None) -> Dict[str, Any]:
        reasons = self.review_reasons(application, screenings, failed_stages,
                                      liveness_passed, document_issues or [])

        if not reasons and self.risk_scorer.can_auto_approve(application):
            return self._build_response(AUTO_APPROVE, [], self.auto_approve_tier, application)

        return self._build_response(MANUAL_REVIEW, reasons, None, application)

    def _build_response(self, outcome: str, reasons: List[str],
                        account_tier: Optional[AccountTier],
                        application: KycApplication) -> Dict[str, Any]:
        return {
            "outcome": outcome,
            "reasons": reasons,
            "account_tier": account_tier,
            "risk_score": application.risk_score,
            "risk_category": application.risk_category,
            "requires_manual_review": self.risk_scorer.requires_manual_review(application),
        }


# ------------------------
# Applicant-facing view
# ------------------------
def mask_cnic(cnic: Optional[str]) -> Optional[str]:
    """Mask ID number showing only the last 4 digits"""
    if not cnic:
        return None
    digits = cnic.replace("-", "")
    if len(digits) != 13:
        return "INVALID_FORMAT"
    return f"XXXXX-XXXX{digits[9:12]}-{digits[12]}"


def mask_name(name: Optional[str]) -> Optional[str]:
    """Mask name showing only first character and last name"""
    if not name:
        return None
    parts = name.strip().split()
    if len(parts) == 1:
        return f"{parts[0][0]}XXXX"
    return f"{parts[0][0]}XXXX {parts[-1]}"


def applicant_view(application: KycApplication) -> Dict[str, Any]:
    """What the applicant may see: status and progress, no internal reasons."""
    return {
        "application_id": application.application_id,
        "status": application.status.value,
        "cnic": mask_cnic(application.identity.cnic),
        "full_name": mask_name(application.identity.full_name),
        "progress": application.progress_percentage(),
        "account_tier": application.account_tier.value if application.account_tier else None,
        "submitted_at": application.submitted_at,
        "processed_at": application.processed_at,
        "rejection_reason": application.rejection_reason,
    }
