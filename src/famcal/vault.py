"""Credential vault: encryption at rest and access-token refresh.

Provider tokens live in ``Calendar.external_config`` as Fernet ciphertext.
Only the vault (and the sync adapters it hands plaintext to) ever sees the
decrypted values. Nothing in this module logs a token value.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import logging
import os
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
from cryptography.fernet import Fernet, InvalidToken

from famcal.config import ENCRYPTION_KEY_ENV, GoogleConfig
from famcal.errors import AuthenticationError, ConfigurationError
from famcal.models import Calendar, ExternalConfig
from famcal.storage.base import CalendarRepository

logger = logging.getLogger(__name__)

# Seconds shaved off provider-reported lifetimes so tokens refresh early.
TOKEN_EXPIRY_SKEW_SECONDS = 60
MIN_TOKEN_TTL_SECONDS = 30
DEFAULT_TOKEN_TTL_SECONDS = 3600


def derive_fernet_key(secret: str) -> bytes:
    """Derive a Fernet key from an arbitrary process secret."""
    return base64.urlsafe_b64encode(hashlib.sha256(secret.encode()).digest())


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return DEFAULT_TOKEN_TTL_SECONDS
    if isinstance(value, int | float):
        return int(value) if value > 0 else DEFAULT_TOKEN_TTL_SECONDS
    return DEFAULT_TOKEN_TTL_SECONDS


def safe_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        description = payload.get("error_description")
        if isinstance(description, str) and description.strip():
            return " ".join(description.split())[:200]
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return " ".join(message.split())[:200]
        if isinstance(error_payload, str) and error_payload.strip():
            return " ".join(error_payload.split())[:200]

    raw_text = response.text.strip()
    if raw_text:
        return " ".join(raw_text.split())[:200]
    return "Request failed without an error payload"


class CredentialVault:
    """Encrypts provider credentials and keeps access tokens fresh.

    Parameters
    ----------
    secret:
        Process-wide secret the Fernet key is derived from.
    repository:
        Where refreshed (re-encrypted) tokens are persisted.
    oauth:
        OAuth client settings for the refresh-token exchange.
    http_client:
        Optional shared client; the vault creates and owns one otherwise.
    """

    def __init__(
        self,
        secret: str,
        *,
        repository: CalendarRepository,
        oauth: GoogleConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if not secret:
            raise ConfigurationError(f"{ENCRYPTION_KEY_ENV} must be set to a non-empty value")
        self._fernet = Fernet(derive_fernet_key(secret))
        self._repository = repository
        self._oauth = oauth or GoogleConfig()
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0)
        self._refresh_locks: dict[str, asyncio.Lock] = {}
        self._unsaved_refreshes: dict[str, ExternalConfig] = {}

    @classmethod
    def from_env(
        cls,
        *,
        repository: CalendarRepository,
        oauth: GoogleConfig | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> CredentialVault:
        secret = os.environ.get(ENCRYPTION_KEY_ENV)
        if not secret:
            raise ConfigurationError(
                f"{ENCRYPTION_KEY_ENV} is not set; provider credentials cannot be stored"
            )
        return cls(secret, repository=repository, oauth=oauth, http_client=http_client)

    # ------------------------------------------------------------------
    # Encryption
    # ------------------------------------------------------------------

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, ciphertext: str) -> str:
        try:
            return self._fernet.decrypt(ciphertext.encode()).decode()
        except InvalidToken as exc:
            raise AuthenticationError(
                "Stored credential could not be decrypted with the configured key"
            ) from exc

    def seal(
        self,
        external_config: ExternalConfig,
        *,
        access_token: str | None,
        refresh_token: str | None,
        expires_at: datetime | None = None,
    ) -> ExternalConfig:
        """Return ``external_config`` with the given tokens encrypted into it."""
        updates: dict[str, Any] = {"token_expires_at": expires_at}
        if access_token is not None:
            updates["access_token"] = self.encrypt(access_token)
        if refresh_token is not None:
            updates["refresh_token"] = self.encrypt(refresh_token)
        return external_config.model_copy(update=updates)

    @staticmethod
    def strip(external_config: ExternalConfig) -> ExternalConfig:
        """Return ``external_config`` without any credential material."""
        return external_config.model_copy(
            update={"access_token": None, "refresh_token": None, "token_expires_at": None}
        )

    # ------------------------------------------------------------------
    # Access tokens
    # ------------------------------------------------------------------

    async def get_access_token(self, calendar: Calendar, *, force_refresh: bool = False) -> str:
        """Return a usable plaintext access token for ``calendar``.

        Refreshes through the OAuth token endpoint when the stored token is
        missing, expired, or ``force_refresh`` is set. Concurrent callers for
        the same calendar share one refresh.

        Raises
        ------
        AuthenticationError
            When no usable token exists and the refresh fails.
        """
        if not force_refresh:
            ciphertext = self._fresh_ciphertext(calendar.external_config)
            if ciphertext is not None:
                return self.decrypt(ciphertext)

        lock = self._refresh_locks.setdefault(calendar.id, asyncio.Lock())
        async with lock:
            stored = await self._repository.get_calendar(calendar.id)
            current = stored or calendar
            unsaved = self._unsaved_refreshes.get(calendar.id)
            if stored is None and unsaved is not None:
                current = calendar.model_copy(update={"external_config": unsaved})
            refreshed_meanwhile = (
                current.external_config.access_token != calendar.external_config.access_token
            )
            if not force_refresh or refreshed_meanwhile:
                ciphertext = self._fresh_ciphertext(current.external_config)
                if ciphertext is not None:
                    return self.decrypt(ciphertext)
            return await self._refresh_access_token(current, persist=stored is not None)

    async def refresh_access_token(self, calendar_id: str) -> str:
        """Force a refresh for ``calendar_id`` and return the new access token."""
        calendar = await self._repository.get_calendar(calendar_id)
        if calendar is None:
            raise AuthenticationError(
                f"Cannot refresh credentials for unknown calendar: {calendar_id}"
            )
        return await self.get_access_token(calendar, force_refresh=True)

    def take_unsaved_refresh(self, calendar_id: str) -> ExternalConfig | None:
        """Pop credentials refreshed for a calendar that was not stored yet.

        Linking validates a calendar before it exists in storage; a refresh
        during validation lands here so the caller can persist it.
        """
        return self._unsaved_refreshes.pop(calendar_id, None)

    @staticmethod
    def _fresh_ciphertext(config: ExternalConfig) -> str | None:
        """The encrypted access token, or None when it is missing or expired."""
        if config.access_token is None:
            return None
        if config.token_expires_at is not None and datetime.now(UTC) >= config.token_expires_at:
            return None
        return config.access_token

    async def _refresh_access_token(self, calendar: Calendar, *, persist: bool = True) -> str:
        encrypted_refresh = calendar.external_config.refresh_token
        if not encrypted_refresh:
            raise AuthenticationError(
                f"Calendar {calendar.id} has no refresh token; re-authorization required"
            )
        if not self._oauth.client_id or not self._oauth.client_secret:
            raise ConfigurationError("google.client_id and google.client_secret are required")

        refresh_token = self.decrypt(encrypted_refresh)
        try:
            response = await self._http_client.post(
                self._oauth.token_url,
                data={
                    "client_id": self._oauth.client_id,
                    "client_secret": self._oauth.client_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise AuthenticationError(f"OAuth token refresh request failed: {exc}") from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise AuthenticationError(
                f"OAuth token refresh failed ({response.status_code}): "
                f"{safe_error_message(response)}",
                details={"calendar_id": calendar.id},
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise AuthenticationError("OAuth token endpoint returned invalid JSON") from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token.strip():
            raise AuthenticationError("OAuth token response is missing a non-empty access_token")

        expires_in_seconds = _coerce_expires_in_seconds(payload.get("expires_in"))
        ttl = max(expires_in_seconds - TOKEN_EXPIRY_SKEW_SECONDS, MIN_TOKEN_TTL_SECONDS)

        # Providers may rotate the refresh token; keep the old one otherwise.
        rotated = payload.get("refresh_token")
        new_refresh = rotated.strip() if isinstance(rotated, str) and rotated.strip() else None

        sealed = self.seal(
            calendar.external_config,
            access_token=access_token.strip(),
            refresh_token=new_refresh,
            expires_at=datetime.now(UTC) + timedelta(seconds=ttl),
        )
        if persist:
            await self._repository.update_calendar(
                calendar.model_copy(
                    update={"external_config": sealed, "updated_at": datetime.now(UTC)}
                )
            )
        else:
            self._unsaved_refreshes[calendar.id] = sealed
        logger.info("Access token refreshed for calendar %s (ttl=%ds)", calendar.id, ttl)
        return access_token.strip()

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()
