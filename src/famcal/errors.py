"""Typed failures raised by the calendar domain and sync engine.

Every error carries a stable ``code`` and an HTTP-style ``status_code`` so
callers (CLI, an HTTP layer, tests) can map failures without string matching.
"""

from __future__ import annotations

import re
from typing import Any

_CREDENTIAL_KEYS = r"client_secret|refresh_token|access_token|token"


def redact_credential_values(message: str) -> str:
    """Redact credential-looking values from a free-form message.

    Credentials are stored encrypted in calendar config, so redaction is
    pattern-based rather than sourced from known values.
    """
    redacted = re.sub(
        rf"(?i)\b({_CREDENTIAL_KEYS})\s*=\s*([^\s,;]+)",
        r"\1=[REDACTED]",
        message,
    )
    redacted = re.sub(
        rf"""(?i)(['"]?(?:{_CREDENTIAL_KEYS})['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    redacted = re.sub(
        rf"(?i)\b({_CREDENTIAL_KEYS})\s*:\s*([^\s,;\"']+)",
        r"\1: [REDACTED]",
        redacted,
    )
    redacted = re.sub(r"(?i)\bBearer\s+[A-Za-z0-9._~+/=-]+", "Bearer [REDACTED]", redacted)
    return redacted


class CalendarError(Exception):
    """Base class for all calendar failures."""

    code: str = "CALENDAR_ERROR"
    status_code: int = 500

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Return a serialisable error payload with credentials redacted."""
        return {
            "code": self.code,
            "message": " ".join(redact_credential_values(self.message).split())[:200],
            "details": self.details,
        }


class ValidationError(CalendarError):
    """Input violates a domain rule (time ordering, recurrence shape, limits)."""

    code = "VALIDATION_ERROR"
    status_code = 400


class NotFound(CalendarError):
    """Referenced calendar or event does not exist."""

    code = "NOT_FOUND"
    status_code = 404

    @classmethod
    def calendar(cls, calendar_id: str) -> NotFound:
        return cls(
            f"Calendar not found: {calendar_id}",
            code="CALENDAR_NOT_FOUND",
            details={"calendar_id": calendar_id},
        )

    @classmethod
    def event(cls, event_id: str) -> NotFound:
        return cls(
            f"Event not found: {event_id}",
            code="EVENT_NOT_FOUND",
            details={"event_id": event_id},
        )


class PermissionDenied(CalendarError):
    """Acting user lacks the capability required for the operation."""

    code = "AUTHORIZATION_ERROR"
    status_code = 403


class AuthenticationError(CalendarError):
    """Provider credentials are missing, invalid, or could not be refreshed."""

    code = "AUTHENTICATION_ERROR"
    status_code = 401


class ConfigurationError(CalendarError):
    """Calendar or process configuration is missing or invalid."""

    code = "CONFIGURATION_ERROR"
    status_code = 500


class SyncError(CalendarError):
    """Synchronization with an external provider failed."""

    code = "SYNC_ERROR"
    status_code = 500


class ProviderRequestError(SyncError):
    """A provider HTTP request returned a non-success status."""

    def __init__(self, *, status_code: int, message: str) -> None:
        super().__init__(
            f"Provider request failed ({status_code}): {message}",
            details={"provider_status": status_code},
        )
        self.provider_status = status_code


class SyncTokenExpired(SyncError):
    """Provider rejected the stored sync token; a full re-sync is required."""
