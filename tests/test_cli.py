"""Tests for the timeledger CLI."""

from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from click.testing import CliRunner

from timeledger import __version__
from timeledger.cli import cli
from timeledger.errors import AuthExpiredError
from timeledger.models import ConnectionStatus, Provider
from timeledger.orchestrator import (
    ConnectionSyncOutcome,
    FailureKind,
    SyncIssue,
    SyncState,
    SyncStatus,
    UserSyncSummary,
)

pytestmark = pytest.mark.unit


@pytest.fixture(autouse=True)
def _quiet(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("TIMELEDGER_CONFIG", raising=False)
    monkeypatch.setattr("timeledger.cli.configure_logging", MagicMock())
    monkeypatch.setattr("timeledger.cli.init_metrics", MagicMock())


def _engine(summary=None, statuses=None) -> SimpleNamespace:
    orchestrator = MagicMock()
    orchestrator.sync_user = AsyncMock(return_value=summary)
    orchestrator.status = AsyncMock(return_value=statuses or [])
    return SimpleNamespace(orchestrator=orchestrator, aclose=AsyncMock())


def _outcome(**overrides) -> ConnectionSyncOutcome:
    values = {
        "user_id": "user-1",
        "connection_id": "conn-1",
        "provider": Provider.GOOGLE,
        "state": SyncState.DONE,
        "status": SyncStatus.SUCCEEDED,
    }
    values.update(overrides)
    return ConnectionSyncOutcome(**values)


class TestGroup:
    def test_version(self) -> None:
        result = CliRunner().invoke(cli, ["--version"], obj={})
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_missing_config_path_is_rejected(self) -> None:
        result = CliRunner().invoke(cli, ["--config", "absent.toml", "status", "--user", "u"])
        assert result.exit_code == 2

    def test_invalid_config_exits_1(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.toml"
        path.write_text("[sync]\ninterval_minutes = 0\n")

        result = CliRunner().invoke(cli, ["--config", str(path), "status", "--user", "u"], obj={})

        assert result.exit_code == 1
        assert "Configuration error" in result.output


class TestSync:
    def test_prints_outcomes(self) -> None:
        outcome = _outcome()
        outcome.counts["local_create"] = 2
        engine = _engine(UserSyncSummary(user_id="user-1", outcomes=[outcome]))

        with patch("timeledger.engine.SyncEngine.open", AsyncMock(return_value=engine)):
            result = CliRunner().invoke(cli, ["sync", "--user", "user-1"], obj={})

        assert result.exit_code == 0, result.output
        assert "google: succeeded (local_create=2)" in result.output
        engine.aclose.assert_awaited_once()

    def test_failed_outcome_exits_2_and_lists_issues(self) -> None:
        outcome = _outcome(
            state=SyncState.FAILED,
            status=SyncStatus.AUTH_FAILURE,
            failure=FailureKind.NEEDS_REAUTH,
            issues=[SyncIssue.from_error(AuthExpiredError("invalid_grant"))],
        )
        engine = _engine(UserSyncSummary(user_id="user-1", outcomes=[outcome]))

        with patch("timeledger.engine.SyncEngine.open", AsyncMock(return_value=engine)):
            result = CliRunner().invoke(
                cli, ["sync", "--user", "user-1", "--provider", "google"], obj={}
            )

        assert result.exit_code == 2
        assert "auth_expired: invalid_grant" in result.output
        engine.orchestrator.sync_user.assert_awaited_once_with(
            "user-1", providers=[Provider.GOOGLE]
        )

    def test_no_connections(self) -> None:
        engine = _engine(UserSyncSummary(user_id="user-1"))

        with patch("timeledger.engine.SyncEngine.open", AsyncMock(return_value=engine)):
            result = CliRunner().invoke(cli, ["sync", "--user", "user-1"], obj={})

        assert result.exit_code == 0
        assert "No calendar connections" in result.output

    def test_unknown_provider_is_rejected(self) -> None:
        result = CliRunner().invoke(cli, ["sync", "--user", "u", "--provider", "yahoo"], obj={})
        assert result.exit_code == 2


class TestStatus:
    def test_prints_json(self) -> None:
        engine = _engine(statuses=[ConnectionStatus(provider=Provider.ICLOUD, needs_reauth=True)])

        with patch("timeledger.engine.SyncEngine.open", AsyncMock(return_value=engine)):
            result = CliRunner().invoke(cli, ["status", "--user", "user-1"], obj={})

        assert result.exit_code == 0
        assert '"provider": "icloud"' in result.output
        assert '"needs_reauth": true' in result.output


class TestInitDb:
    def test_provisions_and_ensures_schema(self) -> None:
        database = MagicMock()
        database.provision = AsyncMock()
        database.connect = AsyncMock(return_value="pool")
        database.close = AsyncMock()
        ensure_schema = AsyncMock()

        with (
            patch("timeledger.db.Database.from_config", return_value=database),
            patch("timeledger.storage.ensure_schema", ensure_schema),
        ):
            result = CliRunner().invoke(cli, ["init-db"], obj={})

        assert result.exit_code == 0, result.output
        ensure_schema.assert_awaited_once_with("pool")
        database.close.assert_awaited_once()
        assert "up to date" in result.output
