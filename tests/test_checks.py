"""
Tests for national ID validation and document consistency checks
"""

from datetime import date

import pytest

from compliance.checks import (
    IdentityChecks,
    age_on,
    compute_check_digit,
    decode_date_of_birth,
    decode_gender,
    format_cnic,
    is_valid_cnic,
)
from compliance.errors import ValidationFailed
from compliance.models import ApplicantIdentity, Gender


class TestCnicChecksum:

    @pytest.mark.parametrize("cnic", ["15059-0123456-7", "15059-0123406-2", "07030-1555551-1"])
    def test_valid_numbers(self, cnic):
        assert is_valid_cnic(cnic)

    def test_check_digit_computation(self):
        # weighted sum 63 -> remainder 3 -> check digit 7
        assert compute_check_digit("150590123456") == 7

    def test_corrupted_digit_is_detected(self):
        assert not is_valid_cnic("15059-0123457-7")

    def test_wrong_length_is_invalid(self):
        assert not is_valid_cnic("15059-012345-7")
        assert not is_valid_cnic(None)

    def test_format_cnic_inserts_separators(self):
        assert format_cnic("1505901234567") == "15059-0123456-7"


class TestCnicDecoding:

    def test_date_of_birth_from_digits(self):
        assert decode_date_of_birth("15059-0123456-7") == date(1990, 5, 15)

    def test_two_digit_years_below_fifty_are_2000s(self):
        assert decode_date_of_birth("07030-1555551-1") == date(2001, 3, 7)

    def test_impossible_date_decodes_to_none(self):
        assert decode_date_of_birth("31029-0000000-0") is None

    def test_gender_from_last_digit(self):
        assert decode_gender("15059-0123456-7") == Gender.MALE
        assert decode_gender("15059-0123406-2") == Gender.FEMALE

    def test_age_before_and_after_birthday(self):
        assert age_on(date(1990, 5, 15), date(2025, 5, 14)) == 34
        assert age_on(date(1990, 5, 15), date(2025, 5, 15)) == 35


class TestIdentityChecks:

    @pytest.fixture
    def checks(self, settings):
        return IdentityChecks(settings)

    def test_consistent_identity_has_no_issues(self, checks, identity):
        assert checks.identity_issues(identity, date(2025, 6, 1)) == []

    def test_bad_format_short_circuits(self, checks, identity):
        bad = identity.model_copy(update={"cnic": "1505901234567"})
        assert checks.identity_issues(bad, date(2025, 6, 1)) == ["INVALID_CNIC_FORMAT"]

    def test_bad_checksum(self, checks, identity):
        bad = identity.model_copy(update={"cnic": "15059-0123456-8"})
        assert checks.identity_issues(bad, date(2025, 6, 1)) == ["INVALID_CNIC_CHECKSUM"]

    def test_dob_and_gender_must_match_the_number(self, checks):
        identity = ApplicantIdentity(
            cnic="15059-0123456-7",
            full_name="Ahmed Raza Khan",
            father_name="Muhammad Raza Khan",
            date_of_birth=date(1991, 5, 15),
            gender="female",
        )
        issues = checks.identity_issues(identity, date(2025, 6, 1))
        assert "DOB_CNIC_MISMATCH" in issues
        assert "GENDER_CNIC_MISMATCH" in issues

    def test_underage_applicant_is_rejected_at_intake(self, checks):
        minor = ApplicantIdentity(
            cnic="07030-1555551-1",
            full_name="Usman Ali",
            father_name="Ali Ahmed",
            date_of_birth=date(2001, 3, 7),
            gender="male",
        )
        with pytest.raises(ValidationFailed) as exc:
            checks.ensure_valid_identity(minor, date(2018, 1, 1))
        assert exc.value.reasons == ["AGE_OUT_OF_RANGE"]

    def test_expired_card_is_flagged(self, checks):
        issues = checks.format_checks({"cnic_number": "15059-0123456-7", "date_of_expiry": "2020-01-01"},
                                      date(2025, 6, 1))
        assert issues == ["CNIC_EXPIRED"]

    def test_front_back_mismatch(self, checks):
        extracted = {
            "cnic_front": {"cnic_number": "15059-0123456-7"},
            "cnic_back": {"cnic_number": "15059-0123406-2"},
        }
        assert checks.intra_document_consistency(extracted) == ["CNIC_FRONT_BACK_MISMATCH"]

    def test_cross_document_comparison_is_case_and_space_insensitive(self, checks, identity):
        extracted = {"cnic_front": {
            "cnic_number": "15059-0123456-7",
            "name": "AHMED  RAZA KHAN",
            "father_name": "muhammad raza khan",
            "date_of_birth": "1990-05-15",
            "gender": "male",
        }}
        assert checks.cross_document_consistency(identity, extracted) == []

    def test_cross_document_mismatches(self, checks, identity):
        extracted = {"cnic_front": {
            "cnic_number": "15059-0123406-2",
            "name": "Someone Else",
            "date_of_birth": "1990-05-16",
            "gender": "female",
        }}
        assert checks.cross_document_consistency(identity, extracted) == [
            "CNIC_MISMATCH", "NAME_MISMATCH", "DOB_MISMATCH", "GENDER_MISMATCH",
        ]

    def test_missing_required_fields(self, checks):
        assert checks.missing_fields("cnic_front", {"cnic_number": "15059-0123456-7", "name": "Ahmed"}) == [
            "MISSING_FATHER_NAME", "MISSING_DATE_OF_BIRTH",
        ]
        assert checks.missing_fields("cnic_back", {"address": "House 12 Street 4 Gulberg III Lahore"}) == []
