import re
from datetime import date
from typing import Any, Dict, List, Optional

from config import Settings, CNIC_REGEX, DOCUMENT_CONFIGS
from .errors import ValidationFailed
from .models import ApplicantIdentity, Gender


def cnic_digits(cnic: Optional[str]) -> str:
    return re.sub(r"[^0-9]", "", cnic or "")


def format_cnic(cnic: str) -> str:
    """Re-insert separators into a 13-digit run (positions 5 and 12)."""
    digits = cnic_digits(cnic)
    if len(digits) != 13:
        return cnic
    return f"{digits[:5]}-{digits[5:12]}-{digits[12]}"


def compute_check_digit(first_twelve: str) -> int:
    total = sum(int(d) * ((i % 2) + 1) for i, d in enumerate(first_twelve))
    remainder = total % 10
    return 0 if remainder == 0 else 10 - remainder


def is_valid_cnic(cnic: Optional[str]) -> bool:
    digits = cnic_digits(cnic)
    if len(digits) != 13:
        return False
    return int(digits[12]) == compute_check_digit(digits[:12])


def decode_date_of_birth(cnic: str) -> Optional[date]:
    """Digits 1-6 carry the birth date as DDMMYY."""
    digits = cnic_digits(cnic)
    if len(digits) != 13:
        return None
    day, month, year = int(digits[0:2]), int(digits[2:4]), int(digits[4:6])
    full_year = 1900 + year if year >= 50 else 2000 + year
    try:
        return date(full_year, month, day)
    except ValueError:
        return None


def decode_gender(cnic: str) -> Optional[Gender]:
    digits = cnic_digits(cnic)
    if len(digits) != 13:
        return None
    return Gender.MALE if int(digits[-1]) % 2 == 1 else Gender.FEMALE


def validate_date_of_birth(cnic: str, date_of_birth: date) -> bool:
    decoded = decode_date_of_birth(cnic)
    return decoded is not None and decoded == date_of_birth


def validate_gender(cnic: str, gender) -> bool:
    decoded = decode_gender(cnic)
    return decoded is not None and decoded == Gender(gender)


def age_on(date_of_birth: date, as_of: date) -> int:
    years = as_of.year - date_of_birth.year
    if (as_of.month, as_of.day) < (date_of_birth.month, date_of_birth.day):
        years -= 1
    return years


class IdentityChecks:
    """
    Field-level validation of the declared identity and consistency checks
    against what OCR read off the ID card.
    """

    def __init__(self, settings: Settings):
        self.cnic_regex = re.compile(CNIC_REGEX)
        self.min_age = settings.MIN_APPLICANT_AGE
        self.max_age = settings.MAX_APPLICANT_AGE

    def normalize_text(self, text: Optional[str]) -> str:
        """Normalize text for comparison"""
        if not text:
            return ""
        return re.sub(r"\s+", " ", text.strip().lower())

    def identity_issues(self, identity: ApplicantIdentity, as_of: date) -> List[str]:
        issues = []

        if not self.cnic_regex.fullmatch(identity.cnic):
            issues.append("INVALID_CNIC_FORMAT")
            return issues

        if not is_valid_cnic(identity.cnic):
            issues.append("INVALID_CNIC_CHECKSUM")
            return issues

        if not validate_date_of_birth(identity.cnic, identity.date_of_birth):
            issues.append("DOB_CNIC_MISMATCH")

        if not validate_gender(identity.cnic, identity.gender):
            issues.append("GENDER_CNIC_MISMATCH")

        age = age_on(identity.date_of_birth, as_of)
        if age < self.min_age or age > self.max_age:
            issues.append("AGE_OUT_OF_RANGE")

        if len(identity.full_name.strip()) < 2:
            issues.append("NAME_TOO_SHORT")
        if len(identity.father_name.strip()) < 2:
            issues.append("FATHER_NAME_TOO_SHORT")

        return issues

    def ensure_valid_identity(self, identity: ApplicantIdentity, as_of: date) -> None:
        issues = self.identity_issues(identity, as_of)
        if issues:
            raise ValidationFailed(
                "Identity details failed validation",
                reasons=issues,
                details={"cnic": identity.cnic},
            )

    def format_checks(self, extracted: Dict[str, Any], as_of: date) -> List[str]:
        """Check format validity of fields read off a single ID card side"""
        issues = []

        cnic = extracted.get("cnic_number")
        if cnic:
            if not self.cnic_regex.fullmatch(cnic):
                issues.append("INVALID_CNIC_FORMAT")
            elif not is_valid_cnic(cnic):
                issues.append("INVALID_CNIC_CHECKSUM")

        issues.extend(self._check_card_expiry(extracted, as_of))
        return issues

    def missing_fields(self, document_type: str, extracted: Dict[str, Any]) -> List[str]:
        required = DOCUMENT_CONFIGS.get(document_type, {}).get("required_fields", [])
        return [f"MISSING_{field.upper()}" for field in required if not extracted.get(field)]

    def _check_card_expiry(self, extracted: Dict[str, Any], as_of: date) -> List[str]:
        expiry = extracted.get("date_of_expiry")
        if not expiry:
            return []
        try:
            expiry_date = date.fromisoformat(expiry)
        except ValueError:
            return ["CNIC_EXPIRY_NOT_READABLE"]
        if expiry_date < as_of:
            return ["CNIC_EXPIRED"]
        return []

    def intra_document_consistency(self, extracted: Dict[str, Dict[str, Any]]) -> List[str]:
        """ID number on the front must agree with the back"""
        front = extracted.get("cnic_front", {}).get("cnic_number")
        back = extracted.get("cnic_back", {}).get("cnic_number")

        if front and back and cnic_digits(front) != cnic_digits(back):
            return ["CNIC_FRONT_BACK_MISMATCH"]
        return []

    def cross_document_consistency(self, identity: ApplicantIdentity,
                                   extracted: Dict[str, Dict[str, Any]]) -> List[str]:
        """Compare OCR fields with what the applicant declared"""
        issues = []
        front = extracted.get("cnic_front", {})

        cnic = front.get("cnic_number")
        if cnic and cnic_digits(cnic) != cnic_digits(identity.cnic):
            issues.append("CNIC_MISMATCH")

        name = front.get("name")
        if name and self.normalize_text(name) != self.normalize_text(identity.full_name):
            issues.append("NAME_MISMATCH")

        father_name = front.get("father_name")
        if father_name and self.normalize_text(father_name) != self.normalize_text(identity.father_name):
            issues.append("FATHER_NAME_MISMATCH")

        dob = front.get("date_of_birth")
        if dob and dob != identity.date_of_birth.isoformat():
            issues.append("DOB_MISMATCH")

        gender = front.get("gender")
        if gender and gender != identity.gender.value:
            issues.append("GENDER_MISMATCH")

        return issues
