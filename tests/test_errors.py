"""Unit tests for the error hierarchy and credential redaction."""

from __future__ import annotations

import pytest

from famcal.errors import (
    AuthenticationError,
    CalendarError,
    ConfigurationError,
    NotFound,
    PermissionDenied,
    ProviderRequestError,
    SyncError,
    SyncTokenExpired,
    ValidationError,
    redact_credential_values,
)

pytestmark = pytest.mark.unit


# ============================================================================
# Hierarchy
# ============================================================================


class TestHierarchy:
    @pytest.mark.parametrize(
        ("error_cls", "code", "status_code"),
        [
            (ValidationError, "VALIDATION_ERROR", 400),
            (NotFound, "NOT_FOUND", 404),
            (PermissionDenied, "AUTHORIZATION_ERROR", 403),
            (AuthenticationError, "AUTHENTICATION_ERROR", 401),
            (ConfigurationError, "CONFIGURATION_ERROR", 500),
            (SyncError, "SYNC_ERROR", 500),
        ],
    )
    def test_codes_and_status(self, error_cls, code, status_code):
        err = error_cls("failed")
        assert isinstance(err, CalendarError)
        assert err.code == code
        assert err.status_code == status_code

    def test_not_found_factories(self):
        assert NotFound.calendar("c1").code == "CALENDAR_NOT_FOUND"
        assert NotFound.event("e1").details == {"event_id": "e1"}

    def test_provider_request_error_is_sync_error(self):
        err = ProviderRequestError(status_code=503, message="Backend Error")
        assert isinstance(err, SyncError)
        assert err.provider_status == 503
        assert "503" in str(err)
        assert err.details == {"provider_status": 503}

    def test_sync_token_expired_is_sync_error(self):
        assert issubclass(SyncTokenExpired, SyncError)

    def test_code_override(self):
        assert CalendarError("x", code="CUSTOM").code == "CUSTOM"


# ============================================================================
# Redaction
# ============================================================================


class TestRedaction:
    def test_key_value_pairs(self):
        redacted = redact_credential_values("refresh_token=abc123 client_secret=s3cr3t")
        assert "abc123" not in redacted
        assert "s3cr3t" not in redacted
        assert "refresh_token=[REDACTED]" in redacted

    def test_json_style_values(self):
        redacted = redact_credential_values('{"access_token": "ya29.secret", "ok": "yes"}')
        assert "ya29.secret" not in redacted
        assert '"ok": "yes"' in redacted

    def test_bearer_header(self):
        redacted = redact_credential_values("Authorization: Bearer ya29.a0Af-xyz")
        assert redacted.endswith("Bearer [REDACTED]")

    def test_plain_text_is_untouched(self):
        assert redact_credential_values("Calendar not found") == "Calendar not found"

    def test_to_dict_redacts_and_truncates(self):
        err = SyncError("token=abc " + "x" * 300, details={"calendar_id": "c1"})
        payload = err.to_dict()
        assert payload["code"] == "SYNC_ERROR"
        assert "abc" not in payload["message"]
        assert len(payload["message"]) <= 200
        assert payload["details"] == {"calendar_id": "c1"}
