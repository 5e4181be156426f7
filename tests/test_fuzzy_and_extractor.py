"""
Tests for name similarity and OCR field extraction
"""

import pytest

from compliance.extractor import DocumentFieldExtractor
from compliance.fuzzy import similarity
from compliance.models import OcrOutput

from conftest import BACK_LINES, FRONT_LINES


class TestSimilarity:

    def test_identical_names_score_100(self):
        assert similarity("Ahmed Raza", "Ahmed Raza") == 100.0

    def test_case_insensitive(self):
        assert similarity("AHMED RAZA", "ahmed raza") == 100.0

    def test_both_empty_is_full_match(self):
        assert similarity("", "") == 100.0

    def test_one_empty_is_no_match(self):
        assert similarity("Ahmed", "") == 0.0

    @pytest.mark.parametrize("a,b", [("Ahmed Khan", "Ahmad Khan"), ("Bilal", "Billal Hussain")])
    def test_symmetric(self, a, b):
        assert similarity(a, b) == similarity(b, a)

    def test_single_edit(self):
        # one substitution over ten characters
        assert similarity("Ahmed Khan", "Ahmad Khan") == pytest.approx(90.0)


class TestDocumentFieldExtractor:

    @pytest.fixture
    def extractor(self):
        return DocumentFieldExtractor()

    def test_front_side_fields(self, extractor):
        fields = extractor.extract_fields(FRONT_LINES)
        assert fields["cnic_number"] == "15059-0123456-7"
        assert fields["name"] == "Ahmed Raza Khan"
        assert fields["father_name"] == "Muhammad Raza Khan"
        assert fields["date_of_birth"] == "1990-05-15"
        assert fields["date_of_issue"] == "2020-01-01"
        assert fields["date_of_expiry"] == "2030-01-01"
        assert fields["gender"] == "male"

    def test_back_side_address(self, extractor):
        fields = extractor.extract_fields(BACK_LINES)
        assert fields["address"] == "House 12 Street 4 Gulberg III Lahore Punjab"
        assert fields["cnic_number"] == "15059-0123456-7"

    def test_bare_digit_run_is_reformatted(self, extractor):
        assert extractor.extract_cnic_number(["ID 1505901234567"]) == "15059-0123456-7"

    def test_guardian_label_counts_as_father(self, extractor):
        assert extractor.extract_father_name(["Guardian Name: Tariq Hussain"]) == "Tariq Hussain"

    def test_invalid_date_is_skipped(self, extractor):
        assert extractor.extract_date(["Date of Birth 31.02.1990"], "date_of_birth") is None

    def test_heuristic_confidence(self, extractor):
        fields = {
            "cnic_number": "15059-0123456-7",
            "name": "Ahmed Raza Khan",
            "father_name": "Muhammad Raza Khan",
            "date_of_birth": "1990-05-15",
            "address": None,
        }
        assert extractor.confidence_score(fields) == 90.0

    def test_provider_confidence_wins(self, extractor):
        result = extractor.extract(OcrOutput(lines=FRONT_LINES, confidence=62))
        assert result["confidence"] == 62.0

    def test_nothing_readable(self, extractor):
        result = extractor.extract(OcrOutput())
        assert result["confidence"] == 0.0
        assert result["fields"]["cnic_number"] is None
