"""Tests for the deskauth command-line interface."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from deskauth.cli import main
from deskauth.manager import AuthenticationManager
from deskauth.types import Account
from tests.conftest import make_tokens


# ── Fixtures ─────────────────────────────────────────────────────────


@pytest.fixture
def project_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Run the CLI from an empty project directory."""
    monkeypatch.chdir(tmp_path)
    return tmp_path


class TestCLI:
    """Tests for CLI commands."""

    def test_no_command_prints_help(
        self, project_dir: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        assert main([]) == 0
        assert "usage: deskauth" in capsys.readouterr().out

    def test_providers(self, project_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
        assert main(["providers"]) == 0
        out = capsys.readouterr().out
        assert "gmail" in out
        assert "8888" in out

    def test_config_show(self, project_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
        (project_dir / "deskauth.toml").write_text(
            '[providers.gmail]\nclient_id = "cid"\nclient_secret = "hidden-value"\n',
            encoding="utf-8",
        )
        assert main(["config", "--show"]) == 0
        out = capsys.readouterr().out
        assert "deskauth Configuration" in out
        assert "hidden-value" not in out

    def test_config_toml_to_file(
        self, project_dir: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        target = project_dir / "out.toml"
        assert main(["config", "--toml", "-o", str(target)]) == 0
        assert "[timeout]" in target.read_text(encoding="utf-8")
        assert "written to" in capsys.readouterr().out

    def test_config_env(self, project_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
        assert main(["config", "--env"]) == 0
        assert "DESKAUTH_STORE__BACKEND" in capsys.readouterr().out

    def test_config_sources(self, project_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
        (project_dir / "deskauth.toml").write_text("[retry]\nmax_attempts = 2\n", encoding="utf-8")
        assert main(["config", "--sources"]) == 0
        out = capsys.readouterr().out
        lines = [line for line in out.splitlines() if line.startswith("./deskauth.toml")]
        assert "loaded" in lines[0]

    def test_invalid_config(self, project_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
        (project_dir / "deskauth.toml").write_text('[store]\nbackend = "s3"\n', encoding="utf-8")
        assert main(["providers"]) == 1
        assert "invalid configuration" in capsys.readouterr().err

    def test_accounts_empty(self, project_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
        assert main(["accounts", "gmail"]) == 0
        assert "No stored gmail accounts" in capsys.readouterr().out

    def test_login_unknown_provider(
        self, project_dir: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        assert main(["login", "nope"]) == 1
        assert "Unknown provider" in capsys.readouterr().err

    def test_login_without_client_id(
        self, project_dir: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        assert main(["login", "gmail", "--no-browser"]) == 1
        assert "No client_id configured" in capsys.readouterr().err

    def test_login_success(self, project_dir: Path, capsys: pytest.CaptureFixture[str]) -> None:
        account = Account(
            id="gmail_42",
            provider="gmail",
            email="ada@example.com",
            display_name="Ada",
            tokens=make_tokens(),
        )
        with patch.object(
            AuthenticationManager, "start_flow", AsyncMock(return_value=account)
        ):
            assert main(["login", "gmail", "--timeout", "30"]) == 0
        out = capsys.readouterr().out
        assert "Waiting for Gmail sign-in" in out
        assert "Connected ada@example.com as gmail_42" in out

    def test_logout_unknown_account(
        self, project_dir: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        assert main(["logout", "gmail", "gmail_42"]) == 0
        assert "was not connected" in capsys.readouterr().out
