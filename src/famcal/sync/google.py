"""Google Calendar adapter (push and pull).

Requests authenticate with the calendar's access token from the credential
vault. A 401 triggers exactly one forced token refresh and retry; 429/503
responses are retried with exponential backoff, honouring ``Retry-After``.
Incremental pulls use Google's ``syncToken`` / ``nextSyncToken`` flow.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, date, datetime, timedelta
from typing import Any
from urllib.parse import quote
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx

from famcal.config import GOOGLE_CALENDAR_API_BASE_URL
from famcal.errors import (
    AuthenticationError,
    ConfigurationError,
    ProviderRequestError,
    SyncError,
    SyncTokenExpired,
)
from famcal.models import Calendar, Event, EventStatus
from famcal.sync.base import (
    DEFAULT_SYNC_WINDOW_DAYS,
    CalendarProviderAdapter,
    RemoteEvent,
    SyncBatch,
    format_rrule,
    parse_recurrence_lines,
)
from famcal.vault import CredentialVault, safe_error_message

logger = logging.getLogger(__name__)

RATE_LIMIT_RETRY_STATUS_CODES = {429, 503}
RATE_LIMIT_MAX_RETRIES = 3
RATE_LIMIT_BASE_BACKOFF_SECONDS = 1.0
DEFAULT_REMOTE_CALENDAR_ID = "primary"
MAX_PAGE_SIZE = 250


def _google_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _parse_google_datetime(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError(f"Google Calendar returned an invalid dateTime: {value}") from exc
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def _normalize_optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def _parse_google_event_boundary(payload: dict[str, Any], *, fallback_timezone: str) -> datetime:
    date_time = payload.get("dateTime")
    if isinstance(date_time, str) and date_time.strip():
        return _parse_google_datetime(date_time)

    date_value = payload.get("date")
    if isinstance(date_value, str) and date_value.strip():
        try:
            parsed_date = date.fromisoformat(date_value)
        except ValueError as exc:
            raise ValueError(
                f"Google Calendar returned an invalid date value: {date_value}"
            ) from exc
        timezone_raw = payload.get("timeZone")
        timezone = timezone_raw.strip() if isinstance(timezone_raw, str) else fallback_timezone
        try:
            tz = ZoneInfo(timezone or fallback_timezone)
        except (ZoneInfoNotFoundError, ValueError):
            tz = ZoneInfo("UTC")
        return datetime(parsed_date.year, parsed_date.month, parsed_date.day, tzinfo=tz)

    raise ValueError("Google Calendar event is missing start/end dateTime or date values")


def _parse_google_event_status(value: Any) -> EventStatus:
    if isinstance(value, str):
        try:
            return EventStatus(value.strip().lower())
        except ValueError:
            pass
    return EventStatus.CONFIRMED


def google_event_to_remote(payload: dict[str, Any], *, fallback_timezone: str) -> RemoteEvent:
    """Convert a Google event resource into a :class:`RemoteEvent`."""
    event_id_raw = payload.get("id")
    if not isinstance(event_id_raw, str) or not event_id_raw.strip():
        raise ValueError("Google Calendar event payload is missing a non-empty id")
    event_id = event_id_raw.strip()

    start_payload = payload.get("start")
    end_payload = payload.get("end")
    if not isinstance(start_payload, dict) or not isinstance(end_payload, dict):
        raise ValueError(f"Google Calendar event '{event_id}' is missing start/end payloads")

    recurrence_raw = payload.get("recurrence")
    recurrence = None
    if isinstance(recurrence_raw, list):
        lines = [line for line in recurrence_raw if isinstance(line, str)]
        recurrence = parse_recurrence_lines(lines)

    updated_raw = payload.get("updated")
    updated_at = None
    if isinstance(updated_raw, str) and updated_raw.strip():
        try:
            updated_at = _parse_google_datetime(updated_raw)
        except ValueError:
            updated_at = None

    return RemoteEvent(
        external_id=event_id,
        title=_normalize_optional_text(payload.get("summary")) or "(untitled)",
        description=_normalize_optional_text(payload.get("description")),
        location=_normalize_optional_text(payload.get("location")),
        start_time=_parse_google_event_boundary(start_payload, fallback_timezone=fallback_timezone),
        end_time=_parse_google_event_boundary(end_payload, fallback_timezone=fallback_timezone),
        status=_parse_google_event_status(payload.get("status")),
        recurrence=recurrence,
        updated_at=updated_at,
    )


def build_google_event_body(
    event: Event, *, timezone: str, clear_missing: bool = False
) -> dict[str, Any]:
    """Build the insert/patch body for a local event.

    With ``clear_missing`` (PATCH), unset optional fields are sent as null so
    the remote copy drops them too.
    """
    body: dict[str, Any] = {
        "summary": event.title,
        "start": {"dateTime": _google_rfc3339(event.start_time), "timeZone": timezone},
        "end": {"dateTime": _google_rfc3339(event.end_time), "timeZone": timezone},
        "status": event.status.value,
        "description": event.description,
        "location": event.location,
        "recurrence": format_rrule(event.recurrence) if event.recurrence is not None else None,
    }
    if clear_missing:
        return body
    return {key: value for key, value in body.items() if value is not None}


class GoogleCalendarAdapter(CalendarProviderAdapter):
    """Google Calendar v3 adapter backed by the credential vault."""

    def __init__(
        self,
        vault: CredentialVault,
        *,
        api_base_url: str = GOOGLE_CALENDAR_API_BASE_URL,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._vault = vault
        self._api_base_url = api_base_url.rstrip("/")
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0)

    @property
    def name(self) -> str:
        return "google"

    @staticmethod
    def _remote_calendar_path(calendar: Calendar) -> str:
        remote_id = calendar.external_config.remote_calendar_id or DEFAULT_REMOTE_CALENDAR_ID
        return quote(remote_id, safe="")

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    async def _request_google_json(
        self,
        calendar: Calendar,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        response = await self._request_with_bearer(
            calendar, method=method, path=path, params=params, json_body=json_body
        )

        if response.status_code < 200 or response.status_code >= 300:
            raise ProviderRequestError(
                status_code=response.status_code,
                message=safe_error_message(response),
            )

        if response.status_code == 204:
            return {}

        try:
            payload = response.json()
        except ValueError as exc:
            raise SyncError(
                "Google Calendar API returned invalid JSON for a successful response"
            ) from exc

        if not isinstance(payload, dict):
            raise SyncError("Google Calendar API returned an unexpected JSON payload shape")
        return payload

    async def _request_with_bearer(
        self,
        calendar: Calendar,
        *,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        normalized_path = path if path.startswith("/") else f"/{path}"
        url = f"{self._api_base_url}{normalized_path}"

        response = await self._request_once(
            calendar,
            method=method,
            url=url,
            params=params,
            json_body=json_body,
            force_refresh=False,
        )

        if response.status_code == 401:
            response = await self._request_once(
                calendar,
                method=method,
                url=url,
                params=params,
                json_body=json_body,
                force_refresh=True,
            )

        retry = 0
        while (
            response.status_code in RATE_LIMIT_RETRY_STATUS_CODES and retry < RATE_LIMIT_MAX_RETRIES
        ):
            backoff = RATE_LIMIT_BASE_BACKOFF_SECONDS * (2**retry)
            if response.status_code == 429:
                retry_after_header = response.headers.get("Retry-After")
                if retry_after_header is not None:
                    try:
                        backoff = float(retry_after_header)
                    except ValueError:
                        pass
            logger.warning(
                "Google Calendar API rate-limited (status=%d), retrying in %.1fs (attempt %d/%d)",
                response.status_code,
                backoff,
                retry + 1,
                RATE_LIMIT_MAX_RETRIES,
            )
            await asyncio.sleep(backoff)
            response = await self._request_once(
                calendar,
                method=method,
                url=url,
                params=params,
                json_body=json_body,
                force_refresh=False,
            )
            retry += 1

        return response

    async def _request_once(
        self,
        calendar: Calendar,
        *,
        method: str,
        url: str,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
        force_refresh: bool,
    ) -> httpx.Response:
        access_token = await self._vault.get_access_token(calendar, force_refresh=force_refresh)
        try:
            return await self._http_client.request(
                method,
                url,
                params=params,
                json=json_body,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as exc:
            raise SyncError(f"Google Calendar request failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Adapter API
    # ------------------------------------------------------------------

    async def validate(self, calendar: Calendar) -> dict[str, Any]:
        response = await self._request_with_bearer(
            calendar,
            method="GET",
            path=f"/users/me/calendarList/{self._remote_calendar_path(calendar)}",
        )
        if response.status_code == 404:
            raise ConfigurationError(
                "Google calendar not found or not shared with this account: "
                f"{calendar.external_config.remote_calendar_id or DEFAULT_REMOTE_CALENDAR_ID}"
            )
        if response.status_code in (401, 403):
            raise AuthenticationError(
                f"Google rejected the supplied credentials ({response.status_code}): "
                f"{safe_error_message(response)}"
            )
        if response.status_code < 200 or response.status_code >= 300:
            raise ProviderRequestError(
                status_code=response.status_code,
                message=safe_error_message(response),
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise SyncError("Google Calendar API returned invalid JSON for calendarList") from exc
        if not isinstance(payload, dict):
            raise SyncError("Google Calendar API returned an unexpected calendarList payload")
        return {
            "id": payload.get("id"),
            "summary": payload.get("summary"),
            "time_zone": payload.get("timeZone"),
            "access_role": payload.get("accessRole"),
        }

    async def list_events(
        self,
        calendar: Calendar,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[RemoteEvent]:
        params: dict[str, Any] = {
            "singleEvents": False,
            "showDeleted": False,
            "maxResults": MAX_PAGE_SIZE,
        }
        if start is not None:
            params["timeMin"] = _google_rfc3339(start)
        if end is not None:
            params["timeMax"] = _google_rfc3339(end)

        events: list[RemoteEvent] = []
        path = f"/calendars/{self._remote_calendar_path(calendar)}/events"
        while True:
            payload = await self._request_google_json(calendar, "GET", path, params=params)
            items = payload.get("items")
            if not isinstance(items, list):
                raise SyncError("Google Calendar list_events response missing items array")
            for item in items:
                if not isinstance(item, dict):
                    continue
                remote = google_event_to_remote(item, fallback_timezone=calendar.timezone)
                if remote.status is not EventStatus.CANCELLED:
                    events.append(remote)
            next_page_token = payload.get("nextPageToken")
            if not isinstance(next_page_token, str) or not next_page_token:
                break
            params["pageToken"] = next_page_token
        return events

    async def get_event(self, calendar: Calendar, external_id: str) -> RemoteEvent | None:
        normalized_event_id = external_id.strip()
        if not normalized_event_id:
            raise ValueError("external_id must be a non-empty string")

        response = await self._request_with_bearer(
            calendar,
            method="GET",
            path=(
                f"/calendars/{self._remote_calendar_path(calendar)}"
                f"/events/{quote(normalized_event_id, safe='')}"
            ),
        )
        if response.status_code == 404:
            return None
        if response.status_code < 200 or response.status_code >= 300:
            raise ProviderRequestError(
                status_code=response.status_code,
                message=safe_error_message(response),
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise SyncError("Google Calendar API returned invalid JSON for get_event") from exc
        if not isinstance(payload, dict):
            raise SyncError("Google Calendar API returned an unexpected get_event payload")
        return google_event_to_remote(payload, fallback_timezone=calendar.timezone)

    async def insert_event(self, calendar: Calendar, event: Event) -> RemoteEvent:
        payload = await self._request_google_json(
            calendar,
            "POST",
            f"/calendars/{self._remote_calendar_path(calendar)}/events",
            json_body=build_google_event_body(event, timezone=calendar.timezone),
        )
        return google_event_to_remote(payload, fallback_timezone=calendar.timezone)

    async def update_event(self, calendar: Calendar, event: Event) -> RemoteEvent:
        if not event.external_id:
            raise SyncError(f"Event {event.id} has no remote counterpart to update")
        payload = await self._request_google_json(
            calendar,
            "PATCH",
            (
                f"/calendars/{self._remote_calendar_path(calendar)}"
                f"/events/{quote(event.external_id, safe='')}"
            ),
            json_body=build_google_event_body(
                event, timezone=calendar.timezone, clear_missing=True
            ),
        )
        return google_event_to_remote(payload, fallback_timezone=calendar.timezone)

    async def delete_event(self, calendar: Calendar, external_id: str) -> None:
        normalized_event_id = external_id.strip()
        if not normalized_event_id:
            raise ValueError("external_id must be a non-empty string")

        response = await self._request_with_bearer(
            calendar,
            method="DELETE",
            path=(
                f"/calendars/{self._remote_calendar_path(calendar)}"
                f"/events/{quote(normalized_event_id, safe='')}"
            ),
        )
        # 404 / 410: already gone remotely.
        if response.status_code in (404, 410):
            logger.debug(
                "delete_event: remote event '%s' already deleted; treating as success",
                normalized_event_id,
            )
            return
        if response.status_code < 200 or response.status_code >= 300:
            raise ProviderRequestError(
                status_code=response.status_code,
                message=safe_error_message(response),
            )

    async def sync_incremental(
        self,
        calendar: Calendar,
        *,
        sync_token: str | None,
        full_sync_window_days: int = DEFAULT_SYNC_WINDOW_DAYS,
    ) -> SyncBatch:
        """Fetch changes using Google's syncToken / nextSyncToken flow.

        Performs a full pull over the last ``full_sync_window_days`` days when
        ``sync_token`` is None.

        Raises:
            SyncTokenExpired: When Google returns 410 Gone for the token.
        """
        params: dict[str, Any] = {
            "showDeleted": True,
            "singleEvents": False,
            "maxResults": MAX_PAGE_SIZE,
        }
        if sync_token is not None:
            params["syncToken"] = sync_token
        else:
            window_start = datetime.now(UTC) - timedelta(days=full_sync_window_days)
            params["timeMin"] = _google_rfc3339(window_start)

        batch = SyncBatch()
        path = f"/calendars/{self._remote_calendar_path(calendar)}/events"
        next_page_token: str | None = None

        while True:
            if next_page_token is not None:
                params["pageToken"] = next_page_token
            else:
                params.pop("pageToken", None)

            response = await self._request_with_bearer(
                calendar, method="GET", path=path, params=params
            )

            if response.status_code == 410:
                raise SyncTokenExpired(
                    f"Sync token expired for calendar '{calendar.id}'; full re-sync required",
                    details={"calendar_id": calendar.id},
                )
            if response.status_code < 200 or response.status_code >= 300:
                raise ProviderRequestError(
                    status_code=response.status_code,
                    message=safe_error_message(response),
                )

            try:
                payload = response.json()
            except ValueError as exc:
                raise SyncError("Google Calendar sync response returned invalid JSON") from exc
            if not isinstance(payload, dict):
                raise SyncError("Google Calendar sync response has unexpected payload shape")

            items = payload.get("items")
            if isinstance(items, list):
                for item in items:
                    if not isinstance(item, dict):
                        continue
                    event_id_raw = item.get("id")
                    if not isinstance(event_id_raw, str) or not event_id_raw.strip():
                        continue
                    item_status = item.get("status")
                    if isinstance(item_status, str) and item_status.lower() == "cancelled":
                        batch.deleted_ids.append(event_id_raw.strip())
                        continue
                    try:
                        batch.updated.append(
                            google_event_to_remote(item, fallback_timezone=calendar.timezone)
                        )
                    except ValueError as exc:
                        raise SyncError(
                            f"Google Calendar returned a malformed event: {exc}"
                        ) from exc

            page_token = payload.get("nextPageToken")
            next_page_token = page_token if isinstance(page_token, str) and page_token else None
            candidate_sync_token = payload.get("nextSyncToken")
            if isinstance(candidate_sync_token, str) and candidate_sync_token.strip():
                batch.next_sync_token = candidate_sync_token.strip()

            if next_page_token is None:
                break

        if batch.next_sync_token is None:
            raise SyncError(
                f"Google Calendar sync response for '{calendar.id}' did not return nextSyncToken"
            )
        return batch

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()
