"""Tests for the iisop command line."""

import json
from collections.abc import Iterator
from pathlib import Path
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from iis_mock import MockIISServer, MockSession
from iis_operator.cli import cli
from iis_operator.config import DEFAULT_POWERSHELL_ARGS


pytestmark = pytest.mark.usefixtures("restore_logging")


@pytest.fixture
def invoke(session: MockSession) -> Iterator:
    """Run the CLI against the mock session."""
    runner = CliRunner()

    def run(*args: str):
        return runner.invoke(cli, ["--allow-non-windows", *args])

    with patch("iis_operator.cli.PowerShellSession", lambda *args, **kwargs: session):
        yield run


@pytest.fixture
def manifest(tmp_path: Path) -> Path:
    path = tmp_path / "sites.yaml"
    path.write_text(
        "sites:\n"
        "  - name: Default Web Site\n"
        "    ensure: started\n"
        "    physicalpath: C:\\inetpub\\wwwroot\n"
        "    applicationpool: DefaultAppPool\n"
    )
    return path


class TestDiscover:
    """Tests for iisop discover."""

    def test_table(self, server: MockIISServer, invoke) -> None:
        """Test the table listing."""
        server.add_site("Default Web Site", physicalpath="C:\\inetpub\\wwwroot")
        server.add_site("api", state="Stopped")

        result = invoke("discover")

        assert result.exit_code == 0, result.output
        lines = result.output.splitlines()
        assert lines[0].startswith("NAME")
        assert "Default Web Site" in lines[1]
        assert "C:\\inetpub\\wwwroot" in lines[1]
        assert "stopped" in lines[2]

    def test_json(self, server: MockIISServer, invoke) -> None:
        """Test the JSON listing."""
        server.add_site("api", state="Stopped", serverautostart="False")

        result = invoke("discover", "--json")

        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data[0]["name"] == "api"
        assert data[0]["ensure"] == "stopped"
        assert data[0]["serverautostart"] is False

    def test_no_sites(self, invoke) -> None:
        """Test output for an empty server."""
        result = invoke("discover")

        assert result.exit_code == 0
        assert "No sites found." in result.output

    def test_discovery_failure(self, server: MockIISServer, invoke) -> None:
        """Test that a failing discovery exits non-zero."""
        server.fail_on("Get-ChildItem", "Access is denied")

        result = invoke("discover")

        assert result.exit_code == 1
        assert "Access is denied" in result.output


class TestShow:
    """Tests for iisop show."""

    def test_show(self, server: MockIISServer, invoke) -> None:
        """Test showing one site."""
        server.add_site("api", applicationpool="ApiPool")

        result = invoke("show", "api")

        assert result.exit_code == 0, result.output
        assert "ApiPool" in result.output
        assert "started" in result.output

    def test_not_found(self, invoke) -> None:
        """Test that a missing site exits non-zero."""
        result = invoke("show", "missing")

        assert result.exit_code == 1
        assert "Site not found: missing" in result.output

    def test_lookup_failure(self, server: MockIISServer, invoke) -> None:
        """Test that a failing lookup exits non-zero instead of reporting the site missing."""
        server.add_site("api")
        server.fail_on("Get-Item", "Access is denied")

        result = invoke("show", "api")

        assert result.exit_code == 1
        assert "Access is denied" in result.output
        assert "Site not found" not in result.output

    def test_unreadable_record(self, server: MockIISServer, invoke) -> None:
        """Test that a site whose record cannot be mapped is reported as an error."""
        server.add_site("api", serverautostart="maybe")

        result = invoke("show", "api")

        assert result.exit_code == 1
        assert "invalid value for Boolean" in result.output


class TestPlanApply:
    """Tests for iisop plan and iisop apply."""

    def test_plan_changes_nothing(self, server: MockIISServer, invoke, manifest: Path) -> None:
        """Test that plan reports actions without applying them."""
        result = invoke("plan", "--manifest", str(manifest))

        assert result.exit_code == 0, result.output
        assert "Default Web Site: absent -> started [create, start]" in result.output
        assert server.sites == {}

    def test_apply(self, server: MockIISServer, invoke, manifest: Path) -> None:
        """Test that apply brings the site to its declared state."""
        result = invoke("apply", "--manifest", str(manifest))

        assert result.exit_code == 0, result.output
        assert "1 sites, 1 changed, 0 failed" in result.output
        assert server.sites["Default Web Site"].state == "Started"

    def test_apply_json(self, invoke, manifest: Path) -> None:
        """Test the JSON pass report."""
        result = invoke("apply", "-m", str(manifest), "--json")

        assert result.exit_code == 0, result.output
        data = json.loads(result.stdout)
        assert data["success"] is True
        assert data["sites"][0]["actions"] == ["create", "start"]
        assert data["sites"][0]["state_after"] == "started"

    def test_apply_failure_exits_1(self, server: MockIISServer, invoke, manifest: Path) -> None:
        """Test that a site left in the wrong state fails the command."""
        server.add_site("Default Web Site", state="Stopped", physicalpath="C:\\inetpub\\wwwroot")
        server.fail_on("Start-Website", "port 80 in use")

        result = invoke("apply", "-m", str(manifest))

        assert result.exit_code == 1
        assert "FAILED" in result.output
        assert "port 80 in use" in result.output

    def test_invalid_manifest(self, tmp_path: Path, invoke) -> None:
        """Test that a manifest that fails validation is reported."""
        path = tmp_path / "sites.yaml"
        path.write_text("sites:\n  - name: a\n    ensure: running\n")

        result = invoke("apply", "-m", str(path))

        assert result.exit_code == 1
        assert "Validation failed" in result.output


class TestPlatform:
    """Tests for the platform check."""

    def test_unsupported_platform(self) -> None:
        """Test that non-Windows hosts are refused without the override."""
        runner = CliRunner()

        with patch("iis_operator.cli.WebsiteProvider.is_suitable", return_value=False):
            result = runner.invoke(cli, ["discover"])

        assert result.exit_code == 2
        assert "only be managed on Windows" in result.output


class TestSessionOptions:
    """Tests for the PowerShell session options."""

    @pytest.fixture
    def sessions(self, session: MockSession) -> Iterator[list[tuple]]:
        """Record the arguments each session is built with."""
        built: list[tuple] = []

        def build(*args: object, **kwargs: object) -> MockSession:
            built.append((args, kwargs))
            return session

        with patch("iis_operator.cli.PowerShellSession", build):
            yield built

    def test_default_arguments(self, sessions: list[tuple]) -> None:
        """Test that the session gets the default interpreter arguments."""
        result = CliRunner().invoke(
            cli,
            ["--allow-non-windows", "--powershell", "pwsh", "discover"],
            env={"POWERSHELL_ARGS": None, "COMMAND_TIMEOUT": None},
        )

        assert result.exit_code == 0, result.output
        args, kwargs = sessions[0]
        assert args == ("pwsh", DEFAULT_POWERSHELL_ARGS)
        assert kwargs == {"timeout": None}

    def test_powershell_args_option(self, sessions: list[tuple]) -> None:
        """Test that --powershell-args replaces the interpreter arguments."""
        result = CliRunner().invoke(
            cli,
            ["--allow-non-windows", "--powershell-args=-NoLogo -NoProfile -Command -", "discover"],
        )

        assert result.exit_code == 0, result.output
        args, _ = sessions[0]
        assert args[1] == ("-NoLogo", "-NoProfile", "-Command", "-")

    def test_powershell_args_from_environment(self, sessions: list[tuple]) -> None:
        """Test that POWERSHELL_ARGS is honoured like the service does."""
        result = CliRunner().invoke(
            cli,
            ["--allow-non-windows", "discover"],
            env={"POWERSHELL_ARGS": "-NoProfile -Command -"},
        )

        assert result.exit_code == 0, result.output
        args, _ = sessions[0]
        assert args[1] == ("-NoProfile", "-Command", "-")
