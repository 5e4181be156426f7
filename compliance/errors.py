from typing import Any, Dict, List, Optional


class KycError(Exception):
    """Base error. ``code`` is machine-checkable, ``details`` is reviewer-only."""

    code = "KYC_ERROR"

    def __init__(self, message: str, code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details = details or {}

    def to_dict(self, internal: bool = False) -> Dict[str, Any]:
        payload = {"code": self.code, "message": self.message}
        if internal and self.details:
            payload["details"] = self.details
        return payload


class ValidationFailed(KycError):
    code = "VALIDATION_FAILED"

    def __init__(self, message: str, reasons: Optional[List[str]] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details=details)
        self.reasons = reasons or []

    def to_dict(self, internal: bool = False) -> Dict[str, Any]:
        payload = super().to_dict(internal)
        payload["reasons"] = list(self.reasons)
        return payload


class ProviderFailure(KycError):
    code = "PROVIDER_FAILURE"


class ProviderTimeout(ProviderFailure):
    code = "PROVIDER_TIMEOUT"


class IntegrityCheckFailed(KycError):
    code = "INTEGRITY_CHECK_FAILED"


class PolicyViolation(KycError):
    code = "PRECONDITION_FAILED"


class NotFound(KycError):
    code = "NOT_FOUND"
