import logging
from typing import Any, Optional

from .providers import AuditSink

logger = logging.getLogger(__name__)


def emit(sink: Optional[AuditSink], event_type: str, subject: str, actor: Optional[str] = None, **details: Any) -> None:
    """Best-effort audit emission; a broken sink never fails the caller."""
    if sink is None:
        return
    try:
        sink.record(event_type, subject, actor, details)
    except Exception:
        logger.warning("Audit sink rejected %s for %s", event_type, subject, exc_info=True)
