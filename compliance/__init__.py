"""
KYC Compliance Engine

This package contains the decisioning core for customer onboarding:
- National ID number validation and OCR field extraction
- Identity, biometric and liveness verification with bounded retries
- Sanctions / PEP screening with FMU reporting
- Risk scoring and the automated approve / manual review decision
- The application lifecycle state machine
"""

__version__ = "1.0.0"
