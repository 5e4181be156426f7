"""
Tests for sanctions / PEP screening
"""

import asyncio
from datetime import date

import pytest

from config import Settings
from compliance.errors import PolicyViolation
from compliance.models import (
    ReferenceListEntry,
    ReviewDecision,
    RiskLevel,
    ScreeningResult,
    ScreeningStatus,
)
from compliance.providers import InMemoryReferenceListStore, ReferenceListStore
from compliance.screening import ScreeningEngine

from conftest import RecordingReportSink


class SlowListStore(ReferenceListStore):
    async def load(self, list_name):
        await asyncio.sleep(5)
        return []


@pytest.fixture
def engine(settings, list_store, report_sink, audit_sink):
    return ScreeningEngine(settings, list_store, report_sink=report_sink, audit_sink=audit_sink)


class TestMatching:

    def test_identical_name_matches_at_100(self, engine, identity):
        match = engine.score_entry(identity, ReferenceListEntry(name="Ahmed Raza Khan"))
        assert match.match_score == 100.0
        assert match.match_type == "name"

    def test_unrelated_name_is_ignored(self, engine, identity):
        assert engine.score_entry(identity, ReferenceListEntry(name="Abdul Basit Zarqawi")) is None

    def test_alias_match(self, engine, identity):
        entry = ReferenceListEntry(name="Abu Hamza", aliases=["Ahmed Raza Khan"])
        match = engine.score_entry(identity, entry)
        assert match.match_type == "alias"
        assert match.matched_field == "Ahmed Raza Khan"

    def test_father_name_is_averaged_in(self, engine, identity):
        entry = ReferenceListEntry(name="Ahmed Raza Khan", father_name="Zzzzzzzzzzzzzzzzzz")
        # name 100, father close to 0 -> about 53, below the match threshold
        assert engine.score_entry(identity, entry) is None

    def test_dob_bonus_is_capped(self, engine, identity):
        entry = ReferenceListEntry(name="Ahmed Raza Khan", date_of_birth=date(1990, 5, 15))
        assert engine.score_entry(identity, entry).match_score == 100.0

    def test_matches_sorted_descending(self, engine, identity):
        entries = [
            ReferenceListEntry(name="Ahmad Raza Khan"),
            ReferenceListEntry(name="Ahmed Raza Khan"),
        ]
        matches = engine.match_entries(identity, entries)
        assert [m.entry.name for m in matches] == ["Ahmed Raza Khan", "Ahmad Raza Khan"]

    @pytest.mark.parametrize("score,level", [
        (95, RiskLevel.CRITICAL), (90, RiskLevel.CRITICAL), (80, RiskLevel.HIGH),
        (60, RiskLevel.MEDIUM), (40, RiskLevel.LOW),
    ])
    def test_risk_levels(self, engine, score, level):
        assert engine.risk_level_for(score) == level


class TestScreenList:

    @pytest.mark.asyncio
    async def test_no_match_is_clear(self, engine, identity, now):
        result = await engine.screen_list("app-1", identity, "ofac", now)
        assert result.status == ScreeningStatus.CLEAR
        assert not result.requires_manual_review

    @pytest.mark.asyncio
    async def test_exact_sanctions_hit_is_critical_and_reported(self, settings, identity, now, report_sink):
        store = InMemoryReferenceListStore({"un_sanctions": [{"name": "Ahmed Raza Khan"}]})
        engine = ScreeningEngine(settings, store, report_sink=report_sink)
        result = await engine.screen_list("app-1", identity, "un_sanctions", now)
        assert result.status == ScreeningStatus.MATCH_FOUND
        assert result.risk_level == RiskLevel.CRITICAL
        assert result.requires_manual_review
        assert result.reported_to_fmu
        assert result.fmu_reference == "FMU-2025-000001"

    @pytest.mark.asyncio
    async def test_local_proscribed_match_is_always_critical(self, settings, identity, now, report_sink):
        # 13 of 15 characters -> about 86.7, normally "high"
        store = InMemoryReferenceListStore({"local_proscribed": [{"name": "Ahmad Raza Khen"}]})
        engine = ScreeningEngine(settings, store, report_sink=report_sink)
        result = await engine.screen_list("app-1", identity, "local_proscribed", now)
        assert result.risk_level == RiskLevel.CRITICAL

    @pytest.mark.asyncio
    async def test_pep_match_forces_review_and_is_not_reported(self, settings, identity, now, report_sink):
        store = InMemoryReferenceListStore({"pep_list": [{"name": "Ahmed Raza Khan"}]})
        engine = ScreeningEngine(settings, store, report_sink=report_sink)
        result = await engine.screen_list("app-1", identity, "pep_list", now)
        assert result.requires_manual_review
        assert "Enhanced Due Diligence" in result.risk_notes
        assert not result.reported_to_fmu
        assert report_sink.reports == []

    @pytest.mark.asyncio
    async def test_unavailable_list_goes_under_review(self, settings, identity, now, audit_sink):
        engine = ScreeningEngine(settings, InMemoryReferenceListStore({}), audit_sink=audit_sink)
        result = await engine.screen_list("app-1", identity, "ofac", now)
        assert result.status == ScreeningStatus.UNDER_REVIEW
        assert result.requires_manual_review
        assert audit_sink.types() == ["screening.technical_failure"]

    @pytest.mark.asyncio
    async def test_slow_list_times_out_under_review(self, identity, now):
        settings = Settings(_env_file=None, SCREENING_LIST_TIMEOUT=0.01)
        engine = ScreeningEngine(settings, SlowListStore())
        result = await engine.screen_list("app-1", identity, "ofac", now)
        assert result.status == ScreeningStatus.UNDER_REVIEW
        assert result.risk_notes == "Screening timed out"

    @pytest.mark.asyncio
    async def test_report_failure_is_recorded_not_raised(self, settings, identity, now, audit_sink):
        store = InMemoryReferenceListStore({"un_sanctions": [{"name": "Ahmed Raza Khan"}]})
        engine = ScreeningEngine(settings, store, report_sink=RecordingReportSink(fail=True),
                                 audit_sink=audit_sink)
        result = await engine.screen_list("app-1", identity, "un_sanctions", now)
        assert not result.reported_to_fmu
        assert result.report_error
        assert "screening.report_failed" in audit_sink.types()

    @pytest.mark.asyncio
    async def test_screen_all_covers_every_list(self, engine, identity, now, settings):
        results = await engine.screen_all("app-1", identity, now)
        assert sorted(r.list_name for r in results) == sorted(settings.SCREENING_LISTS)
        assert engine.compliance_flags(results) == (True, True)


class TestComplianceFlags:

    def _result(self, list_name, status, **kwargs):
        return ScreeningResult(application_id="app-1", list_name=list_name, status=status, **kwargs)

    def test_missing_list_is_not_cleared(self, engine, settings):
        results = [self._result(name, ScreeningStatus.CLEAR) for name in settings.SCREENING_LISTS
                   if name != "ofac"]
        sanctions_cleared, pep_cleared = engine.compliance_flags(results)
        assert not sanctions_cleared
        assert pep_cleared

    def test_under_review_result_blocks_clearance(self, engine, settings):
        results = [self._result(name, ScreeningStatus.CLEAR) for name in settings.SCREENING_LISTS]
        results[-1] = self._result(results[-1].list_name, ScreeningStatus.UNDER_REVIEW,
                                   requires_manual_review=True)
        assert engine.compliance_flags(results)[0] is False


class TestReviewerActions:

    def _hit(self):
        return ScreeningResult(application_id="app-1", list_name="ofac",
                               status=ScreeningStatus.MATCH_FOUND, match_count=1,
                               risk_level=RiskLevel.HIGH, requires_manual_review=True)

    def test_false_positive_resolves(self, engine, now):
        result = engine.mark_false_positive(self._hit(), "reviewer-1", now)
        assert result.status == ScreeningStatus.FALSE_POSITIVE
        assert result.is_resolved()
        assert result.final_decision == ReviewDecision.APPROVED

    def test_reject_requires_comments(self, engine, now):
        with pytest.raises(PolicyViolation):
            engine.reject(self._hit(), "reviewer-1", now, "")

    def test_escalate_makes_critical(self, engine, now):
        result = engine.escalate(self._hit(), "reviewer-1", now, "Needs senior review")
        assert result.risk_level == RiskLevel.CRITICAL
        assert result.requires_manual_review
        assert not result.is_resolved()

    def test_second_decision_needs_re_review(self, engine, now):
        result = engine.approve(self._hit(), "reviewer-1", now)
        with pytest.raises(PolicyViolation) as exc:
            engine.reject(result, "reviewer-2", now, "Changed my mind")
        assert exc.value.code == "ALREADY_REVIEWED"

        engine.re_review(result, "reviewer-2", now, "Reopening")
        engine.reject(result, "reviewer-2", now, "Confirmed hit")
        assert result.final_decision == ReviewDecision.REJECTED
        assert engine.overall_status([result]) == "rejected"

    def test_clear_result_is_not_reviewable(self, engine, now):
        clear = ScreeningResult(application_id="app-1", list_name="ofac", status=ScreeningStatus.CLEAR)
        with pytest.raises(PolicyViolation) as exc:
            engine.approve(clear, "reviewer-1", now)
        assert exc.value.code == "NOT_REVIEWABLE"

    @pytest.mark.parametrize("status,decision,expected", [
        (ScreeningStatus.CLEAR, None, "compliant"),
        (ScreeningStatus.FALSE_POSITIVE, ReviewDecision.APPROVED, "compliant"),
        (ScreeningStatus.MATCH_FOUND, ReviewDecision.REJECTED, "non_compliant"),
        (ScreeningStatus.MATCH_FOUND, ReviewDecision.APPROVED, "compliant_with_conditions"),
        (ScreeningStatus.UNDER_REVIEW, None, "pending_review"),
    ])
    def test_compliance_status(self, status, decision, expected):
        result = ScreeningResult(application_id="app-1", list_name="ofac", status=status, final_decision=decision)
        assert result.compliance_status() == expected

    def test_summary_counts(self, engine):
        results = [
            ScreeningResult(application_id="app-1", list_name="ofac", status=ScreeningStatus.CLEAR),
            self._hit(),
        ]
        summary = engine.summary(results)
        assert summary["total_screenings"] == 2
        assert summary["matches_found"] == 1
        assert summary["highest_risk_level"] == "high"
        assert summary["overall_status"] == "under_review"
