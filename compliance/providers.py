"""
Collaborator interfaces consumed by the compliance core, plus the concrete
variants this package ships. Provider selection happens once, in
``build_ocr_provider`` and the composition root, never inside the engines.
"""

import asyncio
import base64
import json
import logging
import os
import re
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from openai import AsyncOpenAI

from config import Settings
from .errors import ProviderFailure
from .models import (
    ApplicantIdentity,
    IdentityProviderResult,
    LivenessProviderResult,
    OcrOutput,
    ReferenceListEntry,
    ScreeningResult,
)

logger = logging.getLogger(__name__)

LIST_NAME_PATTERN = re.compile(r"^[a-z0-9_]+$")


class IdentityVerificationProvider(ABC):
    name = "identity"

    @abstractmethod
    async def verify(self, identity: ApplicantIdentity) -> IdentityProviderResult:
        ...


class BiometricProvider(ABC):
    name = "biometric"

    @abstractmethod
    async def verify(self, cnic: str, sample: bytes) -> float:
        """Return the provider's match score (0-100)."""


class LivenessProvider(ABC):
    name = "liveness"

    @abstractmethod
    async def check(self, cnic: str, selfie: bytes) -> LivenessProviderResult:
        ...


class OcrProvider(ABC):
    name = "ocr"

    @abstractmethod
    async def extract(self, image: bytes, mime_type: str) -> OcrOutput:
        ...


class ReferenceListStore(ABC):
    @abstractmethod
    async def load(self, list_name: str) -> List[ReferenceListEntry]:
        ...


class RegulatoryReportingSink(ABC):
    @abstractmethod
    async def report(self, result: ScreeningResult) -> str:
        """Submit the result and return the external reference."""


class VirusScanner(ABC):
    @abstractmethod
    async def is_clean(self, data: bytes) -> bool:
        ...


class AuditSink(ABC):
    @abstractmethod
    def record(self, event_type: str, subject: str, actor: Optional[str], details: Dict[str, Any]) -> None:
        ...


class BlobStore(ABC):
    @abstractmethod
    def put(self, key: str, data: bytes) -> None:
        ...

    @abstractmethod
    def get(self, key: str) -> bytes:
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        ...


# ------------------------
# OCR
# ------------------------
OCR_PROMPT = """
You are an identity card OCR system.

Transcribe EVERY line of text visible on this document, top to bottom,
exactly as printed. Keep labels such as "Name", "Father Name",
"Date of Birth", "Date of Issue", "Date of Expiry" on the same line as
their values. Keep Urdu text as Urdu.

Return STRICT JSON only.

Expected format:
{
  "lines": ["string", ...],
  "confidence": 0-100
}

Rules:
- Do not translate, correct or guess text
- confidence is your overall reading confidence between 0 and 100
- If nothing is readable, return an empty list and confidence 0
"""


def safe_json_parse(text: str) -> Dict[str, Any]:
    """Safely parse JSON from LLM response"""
    match = re.search(r"\{.*\}", text or "", re.DOTALL)
    if not match:
        raise ValueError("No JSON found in model output")
    return json.loads(match.group())


class OpenAIVisionOcrProvider(OcrProvider):
    """Transcribes ID card images with an OpenAI vision model."""

    name = "openai"

    def __init__(self, settings: Settings, client: Optional[AsyncOpenAI] = None):
        self.client = client or AsyncOpenAI(api_key=settings.OPENAI_API_KEY)
        self.model = settings.OPENAI_MODEL

    def encode_image(self, image: bytes, mime_type: str) -> str:
        """Encode image as base64 data URL"""
        b64 = base64.b64encode(image).decode("utf-8")
        return f"data:{mime_type};base64,{b64}"

    async def extract(self, image: bytes, mime_type: str) -> OcrOutput:
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": OCR_PROMPT},
                        {
                            "type": "image_url",
                            "image_url": {
                                "url": self.encode_image(image, mime_type)
                            }
                        }
                    ]
                }
            ],
            max_tokens=800,
            temperature=0
        )

        try:
            parsed = safe_json_parse(response.choices[0].message.content)
        except ValueError as e:
            raise ProviderFailure("OCR output could not be parsed", code="OCR_PARSE_ERROR",
                                  details={"error": str(e)}) from e

        lines = [str(line) for line in parsed.get("lines") or [] if line]
        confidence = parsed.get("confidence")
        try:
            confidence = None if confidence is None else max(0.0, min(100.0, float(confidence)))
        except (TypeError, ValueError):
            confidence = None
        return OcrOutput(lines=lines, confidence=confidence)

OCR_PROVIDERS = {
    "openai": OpenAIVisionOcrProvider,
}


def build_ocr_provider(settings: Settings) -> OcrProvider:
    try:
        provider_cls = OCR_PROVIDERS[settings.OCR_PROVIDER]
    except KeyError:
        raise ValueError(f"Unknown OCR provider: {settings.OCR_PROVIDER}")
    return provider_cls(settings)


# ------------------------
# Reference lists
# ------------------------
class JsonFileReferenceListStore(ReferenceListStore):
    """One ``<list_name>.json`` file per list under a base directory."""

    def __init__(self, directory: str):
        self.directory = directory

    def _path_for(self, list_name: str) -> str:
        if not LIST_NAME_PATTERN.fullmatch(list_name):
            raise ProviderFailure(f"Invalid list name: {list_name!r}", code="INVALID_LIST_NAME")
        return os.path.join(self.directory, f"{list_name}.json")

    def _read(self, path: str) -> Any:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)

    async def load(self, list_name: str) -> List[ReferenceListEntry]:
        path = self._path_for(list_name)
        try:
            raw = await asyncio.to_thread(self._read, path)
        except (OSError, ValueError) as e:
            raise ProviderFailure(f"Reference list {list_name} unavailable", code="LIST_UNAVAILABLE",
                                  details={"path": path, "error": str(e)}) from e
        if not isinstance(raw, list):
            raise ProviderFailure(f"Reference list {list_name} is malformed", code="LIST_MALFORMED",
                                  details={"path": path})
        try:
            return [ReferenceListEntry.model_validate(item) for item in raw]
        except ValueError as e:
            raise ProviderFailure(f"Reference list {list_name} is malformed", code="LIST_MALFORMED",
                                  details={"path": path, "error": str(e)}) from e


class InMemoryReferenceListStore(ReferenceListStore):
    def __init__(self, lists: Optional[Dict[str, List[Any]]] = None):
        self.lists = {
            name: [ReferenceListEntry.model_validate(entry) for entry in entries]
            for name, entries in (lists or {}).items()
        }

    async def load(self, list_name: str) -> List[ReferenceListEntry]:
        if list_name not in self.lists:
            raise ProviderFailure(f"Reference list {list_name} unavailable", code="LIST_UNAVAILABLE")
        return list(self.lists[list_name])


# ------------------------
# Regulatory reporting
# ------------------------
class FileReportSink(RegulatoryReportingSink):
    """
    Writes each FMU report as a JSON file and hands back its reference.

    The sequence for a year continues from the highest report already in the
    directory, and a report file is never overwritten.
    """

    def __init__(self, directory: str):
        self.directory = directory
        self._last: Dict[int, int] = {}
        self._lock = threading.Lock()

    def _highest_on_disk(self, year: int) -> int:
        pattern = re.compile(rf"^FMU-{year}-(\d+)\.json$")
        highest = 0
        if os.path.isdir(self.directory):
            for name in os.listdir(self.directory):
                match = pattern.match(name)
                if match:
                    highest = max(highest, int(match.group(1)))
        return highest

    def _next_reference(self, year: int) -> str:
        with self._lock:
            if year not in self._last:
                self._last[year] = self._highest_on_disk(year)
            self._last[year] += 1
            return f"FMU-{year}-{self._last[year]:06d}"

    def _write(self, year: int, payload: Dict[str, Any]) -> str:
        os.makedirs(self.directory, exist_ok=True)
        while True:
            reference = self._next_reference(year)
            path = os.path.join(self.directory, f"{reference}.json")
            try:
                with open(path, "x", encoding="utf-8") as f:
                    json.dump({"reference": reference, **payload}, f, indent=2, default=str)
            except FileExistsError:
                # another writer took this number
                continue
            return reference

    async def report(self, result: ScreeningResult) -> str:
        year = result.screened_at.year if result.screened_at else 0
        payload = {
            "screening_id": result.screening_id,
            "application_id": result.application_id,
            "list_name": result.list_name,
            "risk_level": result.risk_level.value,
            "highest_match_score": result.highest_match_score,
            "matches": [match.model_dump(mode="json") for match in result.matches],
        }
        try:
            return await asyncio.to_thread(self._write, year, payload)
        except OSError as e:
            raise ProviderFailure("FMU report could not be stored", code="REPORT_FAILED",
                                  details={"directory": self.directory, "error": str(e)}) from e


# ------------------------
# Audit + storage
# ------------------------
class LoggingAuditSink(AuditSink):
    def __init__(self, logger_name: str = "compliance.audit"):
        self.logger = logging.getLogger(logger_name)

    def record(self, event_type: str, subject: str, actor: Optional[str], details: Dict[str, Any]) -> None:
        self.logger.info(
            "%s subject=%s actor=%s", event_type, subject, actor or "system",
            extra={"event_type": event_type, "subject": subject, "actor": actor, "details": details},
        )


class InMemoryBlobStore(BlobStore):
    def __init__(self):
        self._blobs: Dict[str, bytes] = {}

    def put(self, key: str, data: bytes) -> None:
        self._blobs[key] = data

    def get(self, key: str) -> bytes:
        try:
            return self._blobs[key]
        except KeyError:
            raise ProviderFailure(f"Blob {key} not found", code="BLOB_NOT_FOUND")

    def delete(self, key: str) -> None:
        self._blobs.pop(key, None)
