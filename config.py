import logging
from pydantic_settings import BaseSettings
from typing import Dict, List, Optional

class Settings(BaseSettings):
    # OpenAI Configuration (vision OCR provider)
    OPENAI_API_KEY: Optional[str] = None
    OPENAI_MODEL: str = "gpt-4.1-mini"

    # Provider selection
    OCR_PROVIDER: str = "openai"
    REFERENCE_LISTS_PATH: str = "sanctions"
    REPORTS_PATH: str = "fmu_reports"

    # Provider timeouts (seconds)
    IDENTITY_TIMEOUT: float = 30
    BIOMETRIC_TIMEOUT: float = 30
    LIVENESS_TIMEOUT: float = 30
    SCREENING_LIST_TIMEOUT: float = 30
    OCR_TIMEOUT: float = 60
    REPORT_TIMEOUT: float = 30

    # Sanctions / PEP screening
    SCREENING_LISTS: List[str] = ["un_sanctions", "tfs_regime", "pep_list", "local_proscribed", "ofac"]
    PEP_LIST: str = "pep_list"
    # Lists whose high/critical matches are reported to the FMU
    REPORTABLE_LISTS: List[str] = ["un_sanctions", "tfs_regime", "local_proscribed"]
    # Lists where any match is critical regardless of score
    CRITICAL_LISTS: List[str] = ["local_proscribed"]
    MATCH_THRESHOLD: float = 70
    DOB_MATCH_BONUS: float = 10
    RISK_LEVEL_CRITICAL: float = 90
    RISK_LEVEL_HIGH: float = 75
    RISK_LEVEL_MEDIUM: float = 50

    # Verification thresholds
    IDENTITY_PASS_SCORE: float = 85
    BIOMETRIC_PASS_SCORE: float = 80
    LIVENESS_PASS_SCORE: float = 70
    FACE_MATCH_PASS_SCORE: float = 75
    IDENTITY_WEIGHTS: Dict[str, float] = {
        "name": 30,
        "father_name": 25,
        "dob": 25,
        "id_valid": 20,
    }
    MAX_VERIFICATION_RETRIES: int = 3
    AUTO_RETRY_VERIFICATIONS: bool = True

    # Risk scoring factors
    RISK_FACTOR_IDENTITY: int = 25
    RISK_FACTOR_BIOMETRIC: int = 20
    RISK_FACTOR_SANCTIONS: int = 30
    RISK_FACTOR_PEP: int = 25
    RISK_FACTOR_UNDERAGE: int = 50
    RISK_FACTOR_SENIOR: int = 10
    RISK_FACTOR_LOW_CONFIDENCE: int = 15
    RISK_FACTOR_VERY_LOW_CONFIDENCE: int = 25
    UNDERAGE_AGE: int = 18
    SENIOR_AGE: int = 65
    LOW_CONFIDENCE_THRESHOLD: float = 70
    VERY_LOW_CONFIDENCE_THRESHOLD: float = 50

    # Decision Rules
    RISK_AUTO_APPROVE_THRESHOLD: int = 30
    RISK_MANUAL_REVIEW_THRESHOLD: int = 70
    AUTO_APPROVE_ACCOUNT_TIER: str = "basic"
    REQUIRE_DOCUMENT_CONSISTENCY: bool = True

    # Applicant limits
    MIN_APPLICANT_AGE: int = 18
    MAX_APPLICANT_AGE: int = 100

    # Documents
    REQUIRED_DOCUMENTS: List[str] = ["cnic_front", "cnic_back", "selfie"]
    ALLOWED_MIME_TYPES: List[str] = ["image/jpeg", "image/png", "application/pdf"]
    MAX_DOCUMENT_SIZE: int = 5 * 1024 * 1024
    DOCUMENT_RETENTION_YEARS: int = 7

    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = ".env"


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


# Document type configurations
DOCUMENT_CONFIGS = {
    "cnic_front": {
        "required_fields": ["cnic_number", "name", "father_name", "date_of_birth"],
        "optional_fields": ["gender", "date_of_issue", "date_of_expiry"]
    },
    "cnic_back": {
        "required_fields": ["address"],
        "optional_fields": ["cnic_number", "date_of_expiry"]
    }
}

# Documents that go through OCR field extraction
OCR_DOCUMENT_TYPES = list(DOCUMENT_CONFIGS)

# National ID number format
CNIC_REGEX = r"^\d{5}-\d{7}-\d$"
