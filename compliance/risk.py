from datetime import date
from typing import Any, Dict, List

from config import Settings
from .checks import age_on
from .models import DocumentRecord, KycApplication, RiskCategory


class RiskScorer:
    """
    Combines verification, screening, document confidence and age into a
    0-100 risk score and a coarse category. Pure: same inputs, same output.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.auto_approve_threshold = settings.RISK_AUTO_APPROVE_THRESHOLD
        self.manual_review_threshold = settings.RISK_MANUAL_REVIEW_THRESHOLD

    def average_confidence(self, documents: List[DocumentRecord]) -> float:
        scores = [d.confidence_score for d in documents if d.confidence_score is not None]
        if not scores:
            return 0.0
        return sum(scores) / len(scores)

    def category_for(self, score: int) -> RiskCategory:
        if score <= self.auto_approve_threshold:
            return RiskCategory.LOW
        if score <= self.manual_review_threshold:
            return RiskCategory.MEDIUM
        return RiskCategory.HIGH

    def assess(self, application: KycApplication, documents: List[DocumentRecord],
               as_of: date) -> Dict[str, Any]:
        s = self.settings
        factors: List[str] = []
        score = 0

        if not application.identity_verified:
            score += s.RISK_FACTOR_IDENTITY
            factors.append("IDENTITY_NOT_VERIFIED")
        if not application.biometric_verified:
            score += s.RISK_FACTOR_BIOMETRIC
            factors.append("BIOMETRIC_NOT_VERIFIED")
        if not application.sanctions_cleared:
            score += s.RISK_FACTOR_SANCTIONS
            factors.append("SANCTIONS_NOT_CLEARED")
        if not application.pep_cleared:
            score += s.RISK_FACTOR_PEP
            factors.append("PEP_NOT_CLEARED")

        age = age_on(application.identity.date_of_birth, as_of)
        if age < s.UNDERAGE_AGE:
            score += s.RISK_FACTOR_UNDERAGE
            factors.append("UNDERAGE")
        if age > s.SENIOR_AGE:
            score += s.RISK_FACTOR_SENIOR
            factors.append("SENIOR_APPLICANT")

        avg_confidence = self.average_confidence(documents)
        if avg_confidence < s.LOW_CONFIDENCE_THRESHOLD:
            score += s.RISK_FACTOR_LOW_CONFIDENCE
            factors.append("LOW_DOCUMENT_CONFIDENCE")
        if avg_confidence < s.VERY_LOW_CONFIDENCE_THRESHOLD:
            score += s.RISK_FACTOR_VERY_LOW_CONFIDENCE
            factors.append("VERY_LOW_DOCUMENT_CONFIDENCE")

        score = max(0, min(100, score))
        return {
            "score": score,
            "category": self.category_for(score),
            "factors": factors,
            "age": age,
            "average_confidence": round(avg_confidence, 2),
        }

    def apply(self, application: KycApplication, documents: List[DocumentRecord],
              as_of: date) -> Dict[str, Any]:
        assessment = self.assess(application, documents, as_of)
        application.risk_score = assessment["score"]
        application.risk_category = assessment["category"]
        return assessment

    def can_auto_approve(self, application: KycApplication) -> bool:
        return (
            application.is_compliant()
            and application.risk_score <= self.auto_approve_threshold
            and application.risk_category == RiskCategory.LOW
        )

    def requires_manual_review(self, application: KycApplication) -> bool:
        return (
            application.risk_score > self.manual_review_threshold
            or application.risk_category == RiskCategory.HIGH
            or not application.is_compliant()
        )
