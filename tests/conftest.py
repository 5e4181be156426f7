"""
Pytest configuration: settings, applicant fixtures and stub providers
"""

import asyncio
from datetime import date, datetime

import pytest

from config import Settings
from compliance.errors import ProviderFailure
from compliance.models import (
    ApplicantIdentity,
    IdentityProviderResult,
    LivenessProviderResult,
    OcrOutput,
)
from compliance.providers import (
    AuditSink,
    BiometricProvider,
    IdentityVerificationProvider,
    InMemoryBlobStore,
    InMemoryReferenceListStore,
    LivenessProvider,
    OcrProvider,
    RegulatoryReportingSink,
)
from compliance.run_pipeline import build_state_machine

FRONT_IMAGE = b"front-image-bytes"
BACK_IMAGE = b"back-image-bytes"
SELFIE_IMAGE = b"selfie-image-bytes"
FINGERPRINT_IMAGE = b"fingerprint-image-bytes"

FRONT_LINES = [
    "Name: Ahmed Raza Khan",
    "Father Name: Muhammad Raza Khan",
    "Gender: M",
    "Identity Number 15059-0123456-7",
    "Date of Birth 15.05.1990",
    "Date of Issue 01.01.2020",
    "Date of Expiry 01.01.2030",
]
BACK_LINES = [
    "House 12 Street 4 Gulberg III Lahore Punjab",
    "15059-0123456-7",
]


# ------------------------
# Stub collaborators
# ------------------------
class StubIdentityProvider(IdentityVerificationProvider):
    name = "stub-identity"

    def __init__(self, result=None, error=None, delay=0.0):
        self.result = result or IdentityProviderResult(
            name=True, father_name=True, dob=True, id_valid=True, session_ref="sess-1")
        self.error = error
        self.delay = delay
        self.calls = 0

    async def verify(self, identity):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result


class StubBiometricProvider(BiometricProvider):
    name = "stub-biometric"

    def __init__(self, score=95.0):
        self.score = score
        self.calls = 0

    async def verify(self, cnic, sample):
        self.calls += 1
        return self.score


class StubLivenessProvider(LivenessProvider):
    name = "stub-liveness"

    def __init__(self, liveness_score=90.0, face_match_score=90.0):
        self.result = LivenessProviderResult(liveness_score=liveness_score, face_match_score=face_match_score)
        self.calls = 0

    async def check(self, cnic, selfie):
        self.calls += 1
        return self.result


class StubOcrProvider(OcrProvider):
    name = "stub-ocr"

    def __init__(self, outputs=None, error=None):
        self.outputs = outputs if outputs is not None else {
            FRONT_IMAGE: OcrOutput(lines=FRONT_LINES, confidence=95),
            BACK_IMAGE: OcrOutput(lines=BACK_LINES, confidence=95),
        }
        self.error = error

    async def extract(self, image, mime_type):
        if self.error is not None:
            raise self.error
        return self.outputs.get(image, OcrOutput())


class RecordingReportSink(RegulatoryReportingSink):
    def __init__(self, fail=False):
        self.fail = fail
        self.reports = []

    async def report(self, result):
        if self.fail:
            raise ProviderFailure("FMU endpoint unavailable", code="REPORT_FAILED")
        self.reports.append(result.screening_id)
        return f"FMU-{result.screened_at.year}-{len(self.reports):06d}"


class RecordingAuditSink(AuditSink):
    def __init__(self):
        self.events = []

    def record(self, event_type, subject, actor, details):
        self.events.append((event_type, subject, actor, details))

    def types(self):
        return [event[0] for event in self.events]


# ------------------------
# Fixtures
# ------------------------
@pytest.fixture
def settings():
    """Default settings, isolated from any local .env"""
    return Settings(_env_file=None)


@pytest.fixture
def now():
    return datetime(2025, 6, 1, 12, 0, 0)


@pytest.fixture
def identity():
    return ApplicantIdentity(
        cnic="15059-0123456-7",
        full_name="Ahmed Raza Khan",
        father_name="Muhammad Raza Khan",
        date_of_birth=date(1990, 5, 15),
        gender="male",
    )


@pytest.fixture
def other_identity():
    return ApplicantIdentity(
        cnic="20087-5432109-3",
        full_name="Bilal Hussain",
        father_name="Tariq Hussain",
        date_of_birth=date(1975, 8, 20),
        gender="male",
    )


@pytest.fixture
def reference_lists(settings):
    """Every configured list present, none of them naming our applicants"""
    lists = {name: [{"name": "Abdul Basit Zarqawi"}] for name in settings.SCREENING_LISTS}
    return lists


@pytest.fixture
def list_store(reference_lists):
    return InMemoryReferenceListStore(reference_lists)


@pytest.fixture
def audit_sink():
    return RecordingAuditSink()


@pytest.fixture
def report_sink():
    return RecordingReportSink()


@pytest.fixture
def providers():
    return {
        "identity_provider": StubIdentityProvider(),
        "biometric_provider": StubBiometricProvider(),
        "liveness_provider": StubLivenessProvider(),
        "ocr_provider": StubOcrProvider(),
    }


@pytest.fixture
def machine(settings, providers, list_store, report_sink, audit_sink):
    return build_state_machine(
        settings,
        providers["identity_provider"],
        biometric_provider=providers["biometric_provider"],
        liveness_provider=providers["liveness_provider"],
        ocr_provider=providers["ocr_provider"],
        list_store=list_store,
        report_sink=report_sink,
        audit_sink=audit_sink,
        blob_store=InMemoryBlobStore(),
    )


@pytest.fixture
def prepare(machine, identity, now):
    """Create an application and upload its documents; returns an async helper"""

    async def _prepare(applicant=None, user_id="user-1", fingerprint=True, consent=True):
        applicant = applicant or identity
        application = await machine.create_application(user_id, applicant, consent, now)
        app_id = application.application_id
        await machine.upload_document(app_id, user_id, "cnic_front", FRONT_IMAGE, "image/jpeg", now)
        await machine.upload_document(app_id, user_id, "cnic_back", BACK_IMAGE, "image/jpeg", now)
        await machine.upload_document(app_id, user_id, "selfie", SELFIE_IMAGE, "image/jpeg", now)
        if fingerprint:
            await machine.upload_document(app_id, user_id, "fingerprint", FINGERPRINT_IMAGE, "image/png", now)
        return application

    return _prepare
