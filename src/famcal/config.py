"""famcal configuration loading and validation.

Reads ``famcal.toml``, resolves ``${VAR}`` references against the
environment, validates each section, and returns a ``FamcalConfig``
dataclass.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

DEFAULT_CONFIG_FILENAME = "famcal.toml"
ENCRYPTION_KEY_ENV = "FAMCAL_ENCRYPTION_KEY"
GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"

# Matches ${VAR_NAME} references (alphanumerics and underscores).
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_VALID_BACKENDS = ("memory", "postgres")


class ConfigError(Exception):
    """Raised when famcal configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from the [logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class DatabaseConfig:
    backend: str = "memory"
    url: str | None = None
    min_pool_size: int = 2
    max_pool_size: int = 10


@dataclass
class CalendarSettings:
    """Domain limits and notification switches from [calendar]."""

    max_events_per_calendar: int = 1000
    default_calendar_id: str | None = None
    notify_on_event_creation: bool = True
    notify_on_event_update: bool = True
    reminder_minutes_before: int = 15


@dataclass
class SyncConfig:
    """Background sync poller settings from [sync]."""

    enabled: bool = False
    interval_seconds: int = 300
    full_sync_window_days: int = 30


@dataclass
class CacheConfig:
    ttl_seconds: int = 300


@dataclass
class GoogleConfig:
    """OAuth client used to refresh provider access tokens."""

    client_id: str | None = None
    client_secret: str | None = field(default=None, repr=False)
    token_url: str = GOOGLE_OAUTH_TOKEN_URL
    api_base_url: str = GOOGLE_CALENDAR_API_BASE_URL


@dataclass
class FamcalConfig:
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    calendar: CalendarSettings = field(default_factory=CalendarSettings)
    sync: SyncConfig = field(default_factory=SyncConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    google: GoogleConfig = field(default_factory=GoogleConfig)
    encryption_key: str | None = field(default=None, repr=False)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values (int, bool,
    float, None) are returned unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    """
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {vars_str} (original: {s!r})"
        )

    return result


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    section = data.get(name, {})
    if not isinstance(section, dict):
        raise ConfigError(f"[{name}] must be a TOML table")
    return section


def _positive_int(
    section: dict[str, Any],
    key: str,
    default: int,
    *,
    path: str,
    minimum: int = 1,
) -> int:
    raw = section.get(key, default)
    if isinstance(raw, bool):
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be an integer.")
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {path}.{key}: {raw!r}. Must be an integer.") from exc
    if value < minimum:
        raise ConfigError(f"Invalid {path}.{key}: {value!r}. Must be >= {minimum}.")
    return value


def _parse_logging(data: dict[str, Any]) -> LoggingConfig:
    section = _section(data, "logging")
    level = str(section.get("level", "INFO")).upper()
    fmt = str(section.get("format", "text")).lower()
    if fmt not in ("text", "json"):
        raise ConfigError(f"Invalid logging.format: {fmt!r}. Expected 'text' or 'json'.")
    return LoggingConfig(level=level, format=fmt, log_root=section.get("log_root"))


def _parse_database(data: dict[str, Any]) -> DatabaseConfig:
    section = _section(data, "database")
    backend = str(section.get("backend", "memory")).strip().lower()
    if backend not in _VALID_BACKENDS:
        raise ConfigError(
            f"Invalid database.backend: {backend!r}. Expected one of {', '.join(_VALID_BACKENDS)}."
        )
    url = section.get("url") or os.environ.get("DATABASE_URL")
    if backend == "postgres" and not url:
        raise ConfigError("database.url (or DATABASE_URL) is required for the postgres backend")
    min_size = _positive_int(section, "min_pool_size", 2, path="database")
    max_size = _positive_int(section, "max_pool_size", 10, path="database")
    if min_size > max_size:
        raise ConfigError("database.min_pool_size must not exceed database.max_pool_size")
    return DatabaseConfig(backend=backend, url=url, min_pool_size=min_size, max_pool_size=max_size)


def _parse_calendar(data: dict[str, Any]) -> CalendarSettings:
    section = _section(data, "calendar")
    return CalendarSettings(
        max_events_per_calendar=_positive_int(
            section, "max_events_per_calendar", 1000, path="calendar"
        ),
        default_calendar_id=section.get("default_calendar_id"),
        notify_on_event_creation=bool(section.get("notify_on_event_creation", True)),
        notify_on_event_update=bool(section.get("notify_on_event_update", True)),
        reminder_minutes_before=_positive_int(
            section, "reminder_minutes_before", 15, path="calendar", minimum=0
        ),
    )


def _parse_sync(data: dict[str, Any]) -> SyncConfig:
    section = _section(data, "sync")
    return SyncConfig(
        enabled=bool(section.get("enabled", False)),
        interval_seconds=_positive_int(section, "interval_seconds", 300, path="sync", minimum=60),
        full_sync_window_days=_positive_int(section, "full_sync_window_days", 30, path="sync"),
    )


def _parse_google(data: dict[str, Any]) -> GoogleConfig:
    section = _section(data, "google")
    return GoogleConfig(
        client_id=section.get("client_id"),
        client_secret=section.get("client_secret"),
        token_url=str(section.get("token_url", GOOGLE_OAUTH_TOKEN_URL)),
        api_base_url=str(section.get("api_base_url", GOOGLE_CALENDAR_API_BASE_URL)).rstrip("/"),
    )


def parse_config(data: dict[str, Any]) -> FamcalConfig:
    """Validate an already-decoded config mapping."""
    data = resolve_env_vars(data)
    cache_section = _section(data, "cache")
    return FamcalConfig(
        logging=_parse_logging(data),
        database=_parse_database(data),
        calendar=_parse_calendar(data),
        sync=_parse_sync(data),
        cache=CacheConfig(
            ttl_seconds=_positive_int(cache_section, "ttl_seconds", 300, path="cache")
        ),
        google=_parse_google(data),
        encryption_key=os.environ.get(ENCRYPTION_KEY_ENV),
    )


def load_config(path: Path) -> FamcalConfig:
    """Load and validate famcal configuration.

    Parameters
    ----------
    path:
        Either a ``famcal.toml`` file or a directory containing one.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or fails validation.
    """
    toml_path = path / DEFAULT_CONFIG_FILENAME if path.is_dir() else path

    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_text())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return parse_config(data)
