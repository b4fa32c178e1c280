"""Sync engine configuration loading and validation.

Reads ``timeledger.toml``, resolves ``${VAR}`` references against the process
environment, and returns a validated :class:`SyncEngineConfig` dataclass.
When no file is present, defaults plus well-known environment variables are
used so the engine can run from the environment alone.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from timeledger.crypto import ENV_TOKEN_KEYS, parse_token_keys

DEFAULT_CONFIG_FILENAME = "timeledger.toml"
ENV_CONFIG_PATH = "TIMELEDGER_CONFIG"

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
MICROSOFT_GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
ICLOUD_CALDAV_BASE_URL = "https://caldav.icloud.com/"

GOOGLE_SCOPES: tuple[str, ...] = (
    "openid",
    "email",
    "profile",
    "https://www.googleapis.com/auth/calendar",
)
OUTLOOK_SCOPES: tuple[str, ...] = (
    "offline_access",
    "Calendars.ReadWrite",
    "User.Read",
)

# Matches ${VAR_NAME} with alphanumeric and underscore names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ConfigError(Exception):
    """Raised when configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from the [logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class SyncConfig:
    """Scheduling and window configuration from the [sync] section."""

    interval_minutes: int = 15
    window_past_days: int = 30
    window_future_days: int = 150
    run_timeout_seconds: float = 120.0
    max_concurrent_users: int = 4


@dataclass
class CredentialsConfig:
    """Token encryption and refresh configuration from [credentials]."""

    token_keys: list[str] = field(default_factory=list)
    refresh_margin_seconds: int = 60


@dataclass
class HttpConfig:
    """Provider HTTP client behaviour from [http]."""

    timeout_seconds: float = 30.0
    max_retries: int = 3
    backoff_seconds: float = 1.0


@dataclass
class GoogleProviderConfig:
    client_id: str | None = None
    client_secret: str | None = None
    calendar_id: str = "primary"
    token_url: str = GOOGLE_OAUTH_TOKEN_URL
    api_base_url: str = GOOGLE_CALENDAR_API_BASE_URL

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)


@dataclass
class OutlookProviderConfig:
    client_id: str | None = None
    client_secret: str | None = None
    tenant: str = "common"
    api_base_url: str = MICROSOFT_GRAPH_BASE_URL

    @property
    def token_url(self) -> str:
        return f"https://login.microsoftonline.com/{self.tenant}/oauth2/v2.0/token"

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)


@dataclass
class ICloudProviderConfig:
    base_url: str = ICLOUD_CALDAV_BASE_URL


@dataclass
class DatabaseConfig:
    """PostgreSQL connection settings from [database].

    ``url`` (or ``DATABASE_URL``) takes precedence over the discrete fields.
    """

    url: str | None = None
    host: str = "localhost"
    port: int = 5432
    user: str = "timeledger"
    password: str = "timeledger"
    name: str = "timeledger"
    min_pool_size: int = 2
    max_pool_size: int = 10


@dataclass
class SyncEngineConfig:
    """Parsed representation of ``timeledger.toml``."""

    sync: SyncConfig = field(default_factory=SyncConfig)
    credentials: CredentialsConfig = field(default_factory=CredentialsConfig)
    http: HttpConfig = field(default_factory=HttpConfig)
    google: GoogleProviderConfig = field(default_factory=GoogleProviderConfig)
    outlook: OutlookProviderConfig = field(default_factory=OutlookProviderConfig)
    icloud: ICloudProviderConfig = field(default_factory=ICloudProviderConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


# ---------------------------------------------------------------------------
# Environment variable resolution
# ---------------------------------------------------------------------------


def resolve_env_vars(value: Any) -> Any:
    """Recursively replace ``${VAR}`` references in strings, dicts and lists."""
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
        raise ConfigError(f"Unresolved environment variable(s) in config value: {vars_str}")

    return result


# ---------------------------------------------------------------------------
# Section parsers
# ---------------------------------------------------------------------------


def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
    value = data.get(name, {})
    if not isinstance(value, dict):
        raise ConfigError(f"[{name}] must be a table")
    return value


def _positive_int(section: dict[str, Any], key: str, default: int, *, label: str) -> int:
    raw = section.get(key, default)
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {label}.{key}: {raw!r}. Must be an integer.") from exc
    if value <= 0:
        raise ConfigError(f"Invalid {label}.{key}: {value!r}. Must be a positive integer.")
    return value


def _non_negative_float(section: dict[str, Any], key: str, default: float, *, label: str) -> float:
    raw = section.get(key, default)
    try:
        value = float(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid {label}.{key}: {raw!r}. Must be a number.") from exc
    if value < 0:
        raise ConfigError(f"Invalid {label}.{key}: {value!r}. Must not be negative.")
    return value


def _optional_str(section: dict[str, Any], key: str, env_name: str | None = None) -> str | None:
    value = section.get(key)
    if value is None and env_name is not None:
        value = os.environ.get(env_name)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigError(f"{key} must be a string when set")
    normalized = value.strip()
    return normalized or None


def _parse_sync(data: dict[str, Any]) -> SyncConfig:
    section = _section(data, "sync")
    return SyncConfig(
        interval_minutes=_positive_int(section, "interval_minutes", 15, label="sync"),
        window_past_days=_positive_int(section, "window_past_days", 30, label="sync"),
        window_future_days=_positive_int(section, "window_future_days", 150, label="sync"),
        run_timeout_seconds=_non_negative_float(
            section, "run_timeout_seconds", 120.0, label="sync"
        ),
        max_concurrent_users=_positive_int(section, "max_concurrent_users", 4, label="sync"),
    )


def _parse_credentials(data: dict[str, Any]) -> CredentialsConfig:
    section = _section(data, "credentials")
    raw_keys = section.get("token_keys")
    if raw_keys is None:
        raw_keys = os.environ.get(ENV_TOKEN_KEYS)
    if raw_keys is not None and not isinstance(raw_keys, str | list):
        raise ConfigError("credentials.token_keys must be a string or a list of strings")
    margin = section.get("refresh_margin_seconds", 60)
    try:
        refresh_margin_seconds = int(margin)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid credentials.refresh_margin_seconds: {margin!r}") from exc
    if refresh_margin_seconds < 0:
        raise ConfigError("credentials.refresh_margin_seconds must not be negative")
    return CredentialsConfig(
        token_keys=parse_token_keys(raw_keys),
        refresh_margin_seconds=refresh_margin_seconds,
    )


def _parse_http(data: dict[str, Any]) -> HttpConfig:
    section = _section(data, "http")
    max_retries_raw = section.get("max_retries", 3)
    try:
        max_retries = int(max_retries_raw)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid http.max_retries: {max_retries_raw!r}") from exc
    if max_retries < 0:
        raise ConfigError("http.max_retries must not be negative")
    return HttpConfig(
        timeout_seconds=_non_negative_float(section, "timeout_seconds", 30.0, label="http"),
        max_retries=max_retries,
        backoff_seconds=_non_negative_float(section, "backoff_seconds", 1.0, label="http"),
    )


def _parse_providers(
    data: dict[str, Any],
) -> tuple[GoogleProviderConfig, OutlookProviderConfig, ICloudProviderConfig]:
    providers = _section(data, "providers")
    google_section = providers.get("google", {})
    outlook_section = providers.get("outlook", {})
    icloud_section = providers.get("icloud", {})
    for name, section in (
        ("google", google_section),
        ("outlook", outlook_section),
        ("icloud", icloud_section),
    ):
        if not isinstance(section, dict):
            raise ConfigError(f"[providers.{name}] must be a table")

    google = GoogleProviderConfig(
        client_id=_optional_str(google_section, "client_id", "GOOGLE_OAUTH_CLIENT_ID"),
        client_secret=_optional_str(google_section, "client_secret", "GOOGLE_OAUTH_CLIENT_SECRET"),
        calendar_id=_optional_str(google_section, "calendar_id") or "primary",
    )
    outlook = OutlookProviderConfig(
        client_id=_optional_str(outlook_section, "client_id", "OUTLOOK_OAUTH_CLIENT_ID"),
        client_secret=_optional_str(
            outlook_section, "client_secret", "OUTLOOK_OAUTH_CLIENT_SECRET"
        ),
        tenant=_optional_str(outlook_section, "tenant") or "common",
    )
    icloud = ICloudProviderConfig(
        base_url=_optional_str(icloud_section, "base_url") or ICLOUD_CALDAV_BASE_URL,
    )
    return google, outlook, icloud


def _parse_database(data: dict[str, Any]) -> DatabaseConfig:
    section = _section(data, "database")
    return DatabaseConfig(
        url=_optional_str(section, "url", "DATABASE_URL"),
        host=_optional_str(section, "host", "POSTGRES_HOST") or "localhost",
        port=_positive_int(
            section, "port", int(os.environ.get("POSTGRES_PORT", "5432")), label="database"
        ),
        user=_optional_str(section, "user", "POSTGRES_USER") or "timeledger",
        password=_optional_str(section, "password", "POSTGRES_PASSWORD") or "timeledger",
        name=_optional_str(section, "name", "POSTGRES_DB") or "timeledger",
        min_pool_size=_positive_int(section, "min_pool_size", 2, label="database"),
        max_pool_size=_positive_int(section, "max_pool_size", 10, label="database"),
    )


def _parse_logging(data: dict[str, Any]) -> LoggingConfig:
    section = _section(data, "logging")
    log_level = str(section.get("level", "INFO")).upper()
    log_format = str(section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(f"Invalid logging.format: {log_format!r}. Expected 'text' or 'json'.")
    return LoggingConfig(level=log_level, format=log_format, log_root=section.get("log_root"))


def parse_config(data: dict[str, Any]) -> SyncEngineConfig:
    """Validate an already-decoded TOML document."""
    data = resolve_env_vars(data)
    google, outlook, icloud = _parse_providers(data)
    return SyncEngineConfig(
        sync=_parse_sync(data),
        credentials=_parse_credentials(data),
        http=_parse_http(data),
        google=google,
        outlook=outlook,
        icloud=icloud,
        database=_parse_database(data),
        logging=_parse_logging(data),
    )


def load_config(path: Path | None = None) -> SyncEngineConfig:
    """Load configuration from *path*, ``$TIMELEDGER_CONFIG`` or ``./timeledger.toml``.

    An explicitly given path must exist; the implicit locations are optional.

    Raises
    ------
    ConfigError
        If the file is missing (explicit path), contains invalid TOML, or
        holds invalid values.
    """
    explicit = path is not None
    if path is None:
        env_path = os.environ.get(ENV_CONFIG_PATH)
        path = Path(env_path) if env_path else Path(DEFAULT_CONFIG_FILENAME)
        explicit = bool(env_path)

    if not path.exists():
        if explicit:
            raise ConfigError(f"Config file not found: {path}")
        return parse_config({})

    try:
        data = tomllib.loads(path.read_text())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc
    return parse_config(data)
