"""
Audit trail for the authorization engine.

Every state-changing or failed operation emits exactly one event through an
``AuditSink``. Sinks are fire-and-forget: ``emit()`` swallows and logs sink
failures so an unavailable audit backend never changes a protocol outcome.

Events never carry full tokens, codes, secrets or verifiers; use
``safe_token_id()`` to reference an artifact.
"""

import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

logger = logging.getLogger(__name__)

SAFE_PREFIX_LENGTH = 8


class AuditResult(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    WARNING = "warning"


class OAuth2AuditEvent:
    """OAuth 2.0 audit event types."""
    AUTHORIZATION_REQUESTED = "oauth.authorization.requested"
    AUTHORIZATION_GRANTED = "oauth.authorization.granted"
    AUTHORIZATION_DENIED = "oauth.authorization.denied"
    TOKEN_ISSUED = "oauth.token.issued"
    TOKEN_REFRESHED = "oauth.token.refreshed"
    TOKEN_REVOKED = "oauth.token.revoked"
    CLIENT_REVOKED = "oauth.client.revoked"
    TOKEN_VALIDATION_SUCCESS = "oauth.token.validation.success"
    TOKEN_VALIDATION_FAILED = "oauth.token.validation.failed"
    TOKEN_INTROSPECTED = "oauth.token.introspected"
    CLIENT_AUTHENTICATION_FAILED = "oauth.client.authentication.failed"


def safe_token_id(token: Optional[str]) -> str:
    """First few characters of an artifact, safe to retain in logs."""
    if not token:
        return "<none>"
    return token[:SAFE_PREFIX_LENGTH] + "..."


class AuditSink(ABC):
    """Append-only event recorder."""

    @abstractmethod
    def log(
        self,
        event_type: str,
        result: AuditResult,
        context: Optional[dict[str, Any]] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        """Record one event. May raise; callers go through ``emit()``."""


class LoggingAuditSink(AuditSink):
    """Default sink: one structured line per event on the ``oauth2.audit`` logger."""

    def __init__(self, logger_name: str = "oauth2.audit"):
        self._logger = logging.getLogger(logger_name)

    def log(self, event_type, result, context=None, details=None) -> None:
        result = AuditResult(result)
        record = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event": event_type,
            "result": result.value,
        }
        if context:
            record["context"] = context
        if details:
            record.update(details)
        level = logging.INFO if result == AuditResult.SUCCESS else logging.WARNING
        self._logger.log(level, json.dumps(record, default=str, sort_keys=True))


def emit(
    sink: AuditSink,
    event_type: str,
    result: AuditResult,
    context: Optional[dict[str, Any]] = None,
    **details: Any,
) -> None:
    """Best-effort audit: a failing sink is logged and otherwise ignored."""
    try:
        sink.log(event_type, result, context, details or None)
    except Exception as e:
        logger.warning(f"Audit sink failed for {event_type}: {e}")


def emit_storage_failure(sink: AuditSink, event_type: str, error: Exception, **details: Any) -> None:
    """Record an operation that storage could not complete."""
    logger.error(f"{event_type} failed on storage: {error}")
    emit(sink, event_type, AuditResult.FAILURE, error=f"storage failure: {error}", **details)


__all__ = [
    "AuditResult",
    "AuditSink",
    "LoggingAuditSink",
    "OAuth2AuditEvent",
    "emit",
    "emit_storage_failure",
    "safe_token_id",
]
