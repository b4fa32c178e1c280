"""Tests for timeledger.config loading and validation."""

from __future__ import annotations

from pathlib import Path

import pytest

from timeledger.config import (
    ENV_CONFIG_PATH,
    ConfigError,
    SyncEngineConfig,
    load_config,
    parse_config,
    resolve_env_vars,
)

pytestmark = pytest.mark.unit

_ENV_VARS = (
    "TIMELEDGER_TOKEN_KEYS",
    "DATABASE_URL",
    "POSTGRES_HOST",
    "POSTGRES_PORT",
    "GOOGLE_OAUTH_CLIENT_ID",
    "GOOGLE_OAUTH_CLIENT_SECRET",
    "OUTLOOK_OAUTH_CLIENT_ID",
    "OUTLOOK_OAUTH_CLIENT_SECRET",
    ENV_CONFIG_PATH,
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def _write(tmp_path: Path, body: str) -> Path:
    path = tmp_path / "timeledger.toml"
    path.write_text(body)
    return path


# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------


class TestDefaults:
    def test_empty_document_uses_defaults(self) -> None:
        config = parse_config({})
        assert isinstance(config, SyncEngineConfig)
        assert config.sync.interval_minutes == 15
        assert config.sync.window_past_days == 30
        assert config.sync.window_future_days == 150
        assert config.credentials.refresh_margin_seconds == 60
        assert config.http.max_retries == 3
        assert config.google.calendar_id == "primary"
        assert config.google.configured is False
        assert config.outlook.token_url.endswith("/common/oauth2/v2.0/token")
        assert config.icloud.base_url == "https://caldav.icloud.com/"
        assert config.logging.format == "text"

    def test_missing_implicit_file_falls_back_to_defaults(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.chdir(tmp_path)
        assert load_config().sync.interval_minutes == 15

    def test_missing_explicit_file_raises(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path / "absent.toml")

    def test_env_config_path_must_exist(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv(ENV_CONFIG_PATH, str(tmp_path / "absent.toml"))
        with pytest.raises(ConfigError, match="not found"):
            load_config()


# ---------------------------------------------------------------------------
# File parsing
# ---------------------------------------------------------------------------


class TestLoadConfig:
    def test_full_file(self, tmp_path: Path) -> None:
        path = _write(
            tmp_path,
            """
[sync]
interval_minutes = 5
window_past_days = 7
window_future_days = 60
run_timeout_seconds = 30
max_concurrent_users = 2

[credentials]
token_keys = ["k1", "k2"]
refresh_margin_seconds = 120

[http]
max_retries = 0

[providers.google]
client_id = "gid"
client_secret = "gsecret"

[providers.outlook]
client_id = "oid"
client_secret = "osecret"
tenant = "contoso"

[database]
url = "postgres://u:p@db:5432/tl"

[logging]
level = "debug"
format = "JSON"
""",
        )

        config = load_config(path)

        assert config.sync.interval_minutes == 5
        assert config.sync.run_timeout_seconds == 30.0
        assert config.credentials.token_keys == ["k1", "k2"]
        assert config.credentials.refresh_margin_seconds == 120
        assert config.http.max_retries == 0
        assert config.google.configured is True
        assert config.outlook.token_url == (
            "https://login.microsoftonline.com/contoso/oauth2/v2.0/token"
        )
        assert config.database.url == "postgres://u:p@db:5432/tl"
        assert config.logging.level == "DEBUG"
        assert config.logging.format == "json"

    def test_env_var_references_are_resolved(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("GCAL_SECRET", "from-env")
        path = _write(tmp_path, '[providers.google]\nclient_secret = "${GCAL_SECRET}"\n')
        assert load_config(path).google.client_secret == "from-env"

    def test_unresolved_env_var_raises(self, tmp_path: Path) -> None:
        path = _write(tmp_path, '[providers.google]\nclient_secret = "${NOPE_ONE}-${NOPE_TWO}"\n')
        with pytest.raises(ConfigError, match="NOPE_ONE, NOPE_TWO"):
            load_config(path)

    def test_invalid_toml_raises(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigError, match="Invalid TOML"):
            load_config(_write(tmp_path, "[sync\n"))

    def test_well_known_env_vars_fill_gaps(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("TIMELEDGER_TOKEN_KEYS", "a,b")
        monkeypatch.setenv("GOOGLE_OAUTH_CLIENT_ID", "gid")
        monkeypatch.setenv("GOOGLE_OAUTH_CLIENT_SECRET", "gsecret")
        monkeypatch.setenv("DATABASE_URL", "postgres://localhost/x")

        config = parse_config({})

        assert config.credentials.token_keys == ["a", "b"]
        assert config.google.configured is True
        assert config.database.url == "postgres://localhost/x"


class TestValidation:
    @pytest.mark.parametrize(
        "document",
        [
            {"sync": {"interval_minutes": 0}},
            {"sync": {"window_past_days": "many"}},
            {"sync": {"run_timeout_seconds": -1}},
            {"credentials": {"token_keys": 5}},
            {"credentials": {"refresh_margin_seconds": -1}},
            {"http": {"max_retries": -1}},
            {"logging": {"format": "xml"}},
            {"providers": {"google": "yes"}},
            {"sync": "fast"},
        ],
    )
    def test_invalid_values_raise(self, document) -> None:
        with pytest.raises(ConfigError):
            parse_config(document)


class TestResolveEnvVars:
    def test_nested_structures(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("TL_X", "1")
        assert resolve_env_vars({"a": ["${TL_X}", 2], "b": {"c": "x${TL_X}"}}) == {
            "a": ["1", 2],
            "b": {"c": "x1"},
        }
