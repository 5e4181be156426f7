"""
Sanctions / PEP screening.

Each configured reference list is screened independently and in parallel;
a list that cannot be loaded ends up ``under_review``, never ``clear``.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from config import Settings
from . import audit
from .errors import PolicyViolation
from .fuzzy import similarity
from .models import (
    ApplicantIdentity,
    ReferenceListEntry,
    ReviewDecision,
    RiskLevel,
    ScreeningMatch,
    ScreeningResult,
    ScreeningStatus,
)
from .providers import AuditSink, ReferenceListStore, RegulatoryReportingSink

logger = logging.getLogger(__name__)


class ScreeningEngine:

    def __init__(self,
                 settings: Settings,
                 list_store: ReferenceListStore,
                 report_sink: Optional[RegulatoryReportingSink] = None,
                 audit_sink: Optional[AuditSink] = None):
        self.list_store = list_store
        self.report_sink = report_sink
        self.audit_sink = audit_sink
        self.lists = list(settings.SCREENING_LISTS)
        self.pep_list = settings.PEP_LIST
        self.reportable_lists = set(settings.REPORTABLE_LISTS)
        self.critical_lists = set(settings.CRITICAL_LISTS)
        self.match_threshold = settings.MATCH_THRESHOLD
        self.dob_bonus = settings.DOB_MATCH_BONUS
        self.critical_score = settings.RISK_LEVEL_CRITICAL
        self.high_score = settings.RISK_LEVEL_HIGH
        self.medium_score = settings.RISK_LEVEL_MEDIUM
        self.list_timeout = settings.SCREENING_LIST_TIMEOUT
        self.report_timeout = settings.REPORT_TIMEOUT

    # ------------------------
    # Matching
    # ------------------------
    def score_entry(self, identity: ApplicantIdentity, entry: ReferenceListEntry) -> Optional[ScreeningMatch]:
        name_score = similarity(identity.full_name, entry.name)

        alias_score = 0.0
        best_alias = None
        for alias in entry.aliases:
            score = similarity(identity.full_name, alias)
            if score > alias_score:
                alias_score, best_alias = score, alias

        base = max(name_score, alias_score)

        if entry.father_name:
            base = (base + similarity(identity.father_name, entry.father_name)) / 2

        if entry.date_of_birth and entry.date_of_birth == identity.date_of_birth:
            base += self.dob_bonus

        if base < self.match_threshold:
            return None

        by_name = name_score >= alias_score
        return ScreeningMatch(
            entry=entry,
            match_score=min(100.0, base),
            match_type="name" if by_name else "alias",
            matched_field=entry.name if by_name else best_alias,
        )

    def match_entries(self, identity: ApplicantIdentity, entries: List[ReferenceListEntry]) -> List[ScreeningMatch]:
        matches = [m for m in (self.score_entry(identity, entry) for entry in entries) if m]
        # sorted() is stable, so ties keep list order
        return sorted(matches, key=lambda m: m.match_score, reverse=True)

    def risk_level_for(self, score: float) -> RiskLevel:
        if score >= self.critical_score:
            return RiskLevel.CRITICAL
        if score >= self.high_score:
            return RiskLevel.HIGH
        if score >= self.medium_score:
            return RiskLevel.MEDIUM
        return RiskLevel.LOW

    def is_pep_list(self, list_name: str) -> bool:
        return list_name == self.pep_list

    def apply_matches(self, result: ScreeningResult, matches: List[ScreeningMatch], now: datetime) -> ScreeningResult:
        result.screened_at = now
        if not matches:
            result.status = ScreeningStatus.CLEAR
            result.matches = []
            result.match_count = 0
            result.highest_match_score = None
            result.risk_level = RiskLevel.LOW
            result.requires_manual_review = False
            return result

        highest = max(m.match_score for m in matches)
        risk_level = self.risk_level_for(highest)
        if result.list_name in self.critical_lists:
            risk_level = RiskLevel.CRITICAL

        result.status = ScreeningStatus.MATCH_FOUND
        result.matches = matches
        result.match_count = len(matches)
        result.highest_match_score = highest
        result.risk_level = risk_level
        result.requires_manual_review = risk_level != RiskLevel.LOW

        if self.is_pep_list(result.list_name):
            result.requires_manual_review = True
            result.risk_notes = "PEP match found - Enhanced Due Diligence required"

        return result

    def mark_technical_failure(self, result: ScreeningResult, reason: str, now: datetime) -> ScreeningResult:
        result.status = ScreeningStatus.UNDER_REVIEW
        result.requires_manual_review = True
        result.risk_notes = reason
        result.screened_at = now
        audit.emit(self.audit_sink, "screening.technical_failure", result.application_id,
                   list_name=result.list_name, status=result.status.value, reason=reason)
        return result

    # ------------------------
    # Screening runs
    # ------------------------
    async def screen_list(self, application_id: str, identity: ApplicantIdentity,
                          list_name: str, now: datetime) -> ScreeningResult:
        result = ScreeningResult(application_id=application_id, list_name=list_name)

        try:
            entries = await asyncio.wait_for(self.list_store.load(list_name), timeout=self.list_timeout)
            matches = self.match_entries(identity, entries)
        except asyncio.TimeoutError:
            logger.error("Screening timed out", extra={
                "application_id": application_id, "stage": f"screening:{list_name}"})
            return self.mark_technical_failure(result, "Screening timed out", now)
        except Exception as e:
            logger.error("Screening failed for %s: %s", list_name, e, extra={
                "application_id": application_id, "stage": f"screening:{list_name}"})
            return self.mark_technical_failure(result, "Screening failed due to technical error", now)

        self.apply_matches(result, matches, now)

        if (result.list_name in self.reportable_lists
                and result.should_report_to_fmu()):
            await self.report(result, now)

        audit.emit(self.audit_sink, "screening.screened", application_id,
                   list_name=list_name, status=result.status.value, match_count=result.match_count)
        return result

    async def screen_all(self, application_id: str, identity: ApplicantIdentity,
                         now: datetime) -> List[ScreeningResult]:
        return list(await asyncio.gather(
            *(self.screen_list(application_id, identity, name, now) for name in self.lists)
        ))

    async def report(self, result: ScreeningResult, now: datetime) -> ScreeningResult:
        """Report a high-risk sanctions hit. Failures are recorded, not retried."""
        if self.report_sink is None:
            result.report_error = "No regulatory reporting sink configured"
            logger.error("FMU report skipped: no sink", extra={
                "application_id": result.application_id, "stage": "fmu_report"})
            return result

        try:
            reference = await asyncio.wait_for(self.report_sink.report(result), timeout=self.report_timeout)
        except Exception as e:
            result.report_error = str(e) or type(e).__name__
            logger.error("FMU reporting failed for screening %s: %s", result.screening_id, e, extra={
                "application_id": result.application_id, "stage": "fmu_report"})
            audit.emit(self.audit_sink, "screening.report_failed", result.application_id,
                       screening_id=result.screening_id, list_name=result.list_name)
            return result

        result.reported_to_fmu = True
        result.fmu_reference = reference
        result.reported_at = now
        result.report_error = None
        audit.emit(self.audit_sink, "screening.reported", result.application_id,
                   screening_id=result.screening_id, fmu_reference=reference)
        return result

    # ------------------------
    # Compliance flags
    # ------------------------
    def _category_cleared(self, results: List[ScreeningResult], expected: List[str]) -> bool:
        if not expected:
            return True
        screened = {r.list_name for r in results}
        if not set(expected) <= screened:
            return False
        return all(r.is_resolved() for r in results)

    def compliance_flags(self, results: List[ScreeningResult]) -> Tuple[bool, bool]:
        """(sanctions_cleared, pep_cleared)"""
        pep_results = [r for r in results if self.is_pep_list(r.list_name)]
        other_results = [r for r in results if not self.is_pep_list(r.list_name)]
        pep_expected = [name for name in self.lists if self.is_pep_list(name)]
        other_expected = [name for name in self.lists if not self.is_pep_list(name)]
        return (
            self._category_cleared(other_results, other_expected),
            self._category_cleared(pep_results, pep_expected),
        )

    # ------------------------
    # Reviewer actions
    # ------------------------
    def _ensure_reviewable(self, result: ScreeningResult) -> None:
        if result.is_reviewed():
            raise PolicyViolation(
                "Screening result already has a reviewer decision; re-review it first",
                code="ALREADY_REVIEWED",
            )
        if result.status not in (ScreeningStatus.MATCH_FOUND, ScreeningStatus.UNDER_REVIEW):
            raise PolicyViolation(
                f"Screening result in status {result.status.value} cannot be reviewed",
                code="NOT_REVIEWABLE",
            )

    def _record_decision(self, result: ScreeningResult, decision: ReviewDecision,
                         reviewer: str, now: datetime, comments: Optional[str]) -> None:
        result.final_decision = decision
        result.reviewed_by = reviewer
        result.reviewed_at = now
        result.review_comments = comments
        audit.emit(self.audit_sink, f"screening.{decision.value}", result.application_id, reviewer,
                   screening_id=result.screening_id, list_name=result.list_name)

    def mark_false_positive(self, result: ScreeningResult, reviewer: str, now: datetime,
                            comments: Optional[str] = None) -> ScreeningResult:
        self._ensure_reviewable(result)
        if result.status != ScreeningStatus.MATCH_FOUND:
            raise PolicyViolation("Only matched results can be marked false positive", code="NOT_REVIEWABLE")
        result.status = ScreeningStatus.FALSE_POSITIVE
        result.requires_manual_review = False
        self._record_decision(result, ReviewDecision.APPROVED, reviewer, now, comments)
        return result

    def approve(self, result: ScreeningResult, reviewer: str, now: datetime,
                comments: Optional[str] = None) -> ScreeningResult:
        self._ensure_reviewable(result)
        result.requires_manual_review = False
        self._record_decision(result, ReviewDecision.APPROVED, reviewer, now, comments)
        return result

    def reject(self, result: ScreeningResult, reviewer: str, now: datetime, comments: str) -> ScreeningResult:
        if not comments or not comments.strip():
            raise PolicyViolation("A rejection needs review comments", code="REASON_REQUIRED")
        self._ensure_reviewable(result)
        result.requires_manual_review = False
        self._record_decision(result, ReviewDecision.REJECTED, reviewer, now, comments)
        return result

    def escalate(self, result: ScreeningResult, reviewer: str, now: datetime, comments: str) -> ScreeningResult:
        if not comments or not comments.strip():
            raise PolicyViolation("An escalation needs review comments", code="REASON_REQUIRED")
        self._ensure_reviewable(result)
        result.requires_manual_review = True
        result.risk_level = RiskLevel.CRITICAL
        self._record_decision(result, ReviewDecision.ESCALATED, reviewer, now, comments)
        return result

    def re_review(self, result: ScreeningResult, reviewer: str, now: datetime,
                  comments: Optional[str] = None) -> ScreeningResult:
        """Reopen a decided result so a fresh decision can be recorded."""
        if not result.is_reviewed():
            raise PolicyViolation("Screening result has no decision to reopen", code="NOT_REVIEWED")
        if result.status == ScreeningStatus.FALSE_POSITIVE:
            result.status = ScreeningStatus.MATCH_FOUND
        result.final_decision = None
        result.reviewed_by = None
        result.reviewed_at = None
        result.review_comments = comments
        result.requires_manual_review = True
        audit.emit(self.audit_sink, "screening.reopened", result.application_id, reviewer,
                   screening_id=result.screening_id, reopened_at=now.isoformat())
        return result

    # ------------------------
    # Reporting
    # ------------------------
    def summary(self, results: List[ScreeningResult]) -> Dict[str, Any]:
        highest = max((r.risk_level for r in results), key=lambda level: level.rank, default=RiskLevel.LOW)
        return {
            "total_screenings": len(results),
            "clear_screenings": sum(1 for r in results if r.status == ScreeningStatus.CLEAR),
            "matches_found": sum(1 for r in results if r.status == ScreeningStatus.MATCH_FOUND),
            "under_review": sum(1 for r in results if r.status == ScreeningStatus.UNDER_REVIEW),
            "requires_manual_review": sum(1 for r in results if r.requires_manual_review),
            "reported_to_fmu": sum(1 for r in results if r.reported_to_fmu),
            "highest_risk_level": highest.value,
            "overall_status": self.overall_status(results),
        }

    def overall_status(self, results: List[ScreeningResult]) -> str:
        if any(r.status == ScreeningStatus.MATCH_FOUND and r.final_decision == ReviewDecision.REJECTED
               for r in results):
            return "rejected"
        if any(r.requires_manual_review for r in results):
            return "under_review"
        if results and all(r.status == ScreeningStatus.CLEAR for r in results):
            return "clear"
        return "pending"
