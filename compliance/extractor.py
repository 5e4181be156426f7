import re
from datetime import date
from typing import Any, Dict, List, Optional

from config import CNIC_REGEX
from .checks import format_cnic
from .models import OcrOutput

# Separated 5-7-1 groups, then a bare 13-digit run as fallback
CNIC_SEPARATED = re.compile(r"(?<!\d)(\d{5})[-\s](\d{7})[-\s](\d)(?!\d)")
CNIC_BARE = re.compile(r"(?<!\d)(\d{13})(?!\d)")

NAME_LABEL = re.compile(r"(?:Name|نام)\s*[:\s]\s*([A-Za-z][A-Za-z\s]*)", re.IGNORECASE)
FATHER_LABEL = re.compile(
    r"(?:Father(?:'s)?(?:\s+Name)?|Guardian(?:'s)?(?:\s+Name)?|Husband(?:'s)?(?:\s+Name)?|والد)\s*[:\s]\s*([A-Za-z][A-Za-z\s]*)",
    re.IGNORECASE,
)
DATE_TOKEN = re.compile(r"(?<!\d)(\d{1,2})[/\-.](\d{1,2})[/\-.](\d{4})(?!\d)")
GENDER_TOKEN = re.compile(r"(?<![A-Za-z])(female|male|f|m|عورت|مرد)(?![A-Za-z])", re.IGNORECASE)
ADDRESS_EXCLUDE = re.compile(r"(?:Name|Father|Date|CNIC|Identity\s+Number|نام|والد|تاریخ)", re.IGNORECASE)

DATE_KEYWORDS = {
    "date_of_birth": ("birth", "پیدائش"),
    "date_of_issue": ("issue", "جاری"),
    "date_of_expiry": ("expiry", "ختم"),
}

GENDER_MAP = {
    "male": "male",
    "m": "male",
    "مرد": "male",
    "female": "female",
    "f": "female",
    "عورت": "female",
}


class DocumentFieldExtractor:
    """
    Parses raw OCR lines from the front/back of a national ID card into
    structured identity fields and scores how complete the read was.
    """

    def __init__(self):
        self.cnic_regex = re.compile(CNIC_REGEX)

    def extract_cnic_number(self, lines: List[str]) -> Optional[str]:
        text = " ".join(lines)
        match = CNIC_SEPARATED.search(text)
        if match:
            return "-".join(match.groups())
        match = CNIC_BARE.search(text)
        if match:
            return format_cnic(match.group(1))
        return None

    def extract_name(self, lines: List[str]) -> Optional[str]:
        for line in lines:
            # "Father Name:" lines also carry the Name label
            if FATHER_LABEL.search(line):
                continue
            match = NAME_LABEL.search(line)
            if match:
                return self._clean(match.group(1))
        return None

    def extract_father_name(self, lines: List[str]) -> Optional[str]:
        for line in lines:
            match = FATHER_LABEL.search(line)
            if match:
                return self._clean(match.group(1))
        return None

    def extract_date(self, lines: List[str], field: str) -> Optional[str]:
        keywords = DATE_KEYWORDS[field]
        for line in lines:
            lowered = line.lower()
            if not any(keyword in lowered for keyword in keywords):
                continue
            for match in DATE_TOKEN.finditer(line):
                normalized = self.normalize_date(*match.groups())
                if normalized:
                    return normalized
        return None

    def normalize_date(self, day: str, month: str, year: str) -> Optional[str]:
        """Day-month-year source order to ISO"""
        try:
            return date(int(year), int(month), int(day)).isoformat()
        except ValueError:
            return None

    def extract_address(self, lines: List[str]) -> Optional[str]:
        for line in lines:
            line = line.strip()
            if len(line) > 30 and not ADDRESS_EXCLUDE.search(line):
                return line
        return None

    def extract_gender(self, lines: List[str]) -> Optional[str]:
        for line in lines:
            match = GENDER_TOKEN.search(line)
            if match:
                return GENDER_MAP.get(match.group(1).lower())
        return None

    def extract_fields(self, lines: List[str]) -> Dict[str, Any]:
        lines = [line.strip() for line in lines if line and line.strip()]
        return {
            "cnic_number": self.extract_cnic_number(lines),
            "name": self.extract_name(lines),
            "father_name": self.extract_father_name(lines),
            "date_of_birth": self.extract_date(lines, "date_of_birth"),
            "date_of_issue": self.extract_date(lines, "date_of_issue"),
            "date_of_expiry": self.extract_date(lines, "date_of_expiry"),
            "address": self.extract_address(lines),
            "gender": self.extract_gender(lines),
        }

    def confidence_score(self, fields: Dict[str, Any], provider_confidence: Optional[float] = None) -> float:
        """Additive completeness heuristic, unless the OCR provider gave its own figure."""
        if provider_confidence is not None:
            return max(0.0, min(100.0, float(provider_confidence)))

        score = 0
        cnic = fields.get("cnic_number")
        if cnic and self.cnic_regex.fullmatch(cnic):
            score += 30
        if fields.get("name") and len(fields["name"]) > 2:
            score += 25
        if fields.get("father_name") and len(fields["father_name"]) > 2:
            score += 20
        if fields.get("date_of_birth"):
            score += 15
        if fields.get("address") and len(fields["address"]) > 10:
            score += 10
        return float(min(score, 100))

    def extract(self, ocr: OcrOutput) -> Dict[str, Any]:
        fields = self.extract_fields(ocr.lines)
        return {
            "fields": fields,
            "confidence": self.confidence_score(fields, ocr.confidence),
        }

    def _clean(self, value: str) -> Optional[str]:
        value = re.sub(r"\s+", " ", value).strip()
        return value or None
