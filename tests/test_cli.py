"""Tests for the azp command line and entry points."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from click.testing import CliRunner

from provisioner import cli as cli_module
from provisioner.app_deployment import DEFAULT_PACKAGE_PATH
from provisioner.cli import EXIT_INTERRUPTED, cli, main
from provisioner.config import Config
from provisioner.main import (
    EXIT_FAILURE,
    EXIT_SECURITY_VIOLATION,
    EXIT_SUCCESS,
    JsonFormatter,
    run_provisioning,
)
from provisioner.orchestrator import ProvisioningError, ProvisioningResult, ProvisioningStep
from provisioner.security import SecretlessViolationError

from conftest import INFRA_DIR


@pytest.fixture(autouse=True)
def quiet_logging(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the CLI from replacing the test run's log handlers."""
    monkeypatch.setattr(cli_module, "setup_logging", lambda *args, **kwargs: None)


@pytest.fixture
def repo_paths(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PROVISIONER_MODULES_FILE", str(INFRA_DIR / "modules.yaml"))
    monkeypatch.setenv("PROVISIONER_TEMPLATES_DIR", str(INFRA_DIR / "templates"))


class TestProvisionInfrastructure:
    """Tests for the provision-infrastructure command."""

    def test_show_plan(self, repo_paths: None) -> None:
        """Test that the plan is printed without touching Azure."""
        result = CliRunner().invoke(
            cli, ["provision-infrastructure", "-g", "rg-expenses", "-l", "uksouth", "--show-plan"]
        )

        assert result.exit_code == 0, result.output
        lines = result.output.splitlines()
        assert lines[0] == "Execution plan:"
        assert lines[1] == "  1. managed-identity"
        assert "telemetry-core  (producer phase of telemetry)" in result.output
        assert "diagnostics  (attachment phase of telemetry; after app-service, telemetry-core)" in (
            result.output
        )
        assert "genai  (only when enableExtendedFeatures; after managed-identity)" in result.output

    def test_missing_required_options(self) -> None:
        result = CliRunner().invoke(cli, ["provision-infrastructure", "-l", "uksouth"])

        assert result.exit_code == 2
        assert "--resource-group" in result.output

    def test_invalid_configuration(self) -> None:
        result = CliRunner().invoke(
            cli, ["provision-infrastructure", "-g", "rg-expenses", "-l", "UK South"]
        )

        assert result.exit_code == 1
        assert "Location" in result.output

    @pytest.mark.parametrize("code", [EXIT_SUCCESS, EXIT_FAILURE, EXIT_SECURITY_VIOLATION])
    def test_exit_code_is_propagated(self, monkeypatch: pytest.MonkeyPatch, code: int) -> None:
        captured: list[Config] = []

        def fake_provision(config: Config) -> int:
            captured.append(config)
            return code

        monkeypatch.setattr(cli_module, "provision", fake_provision)

        result = CliRunner().invoke(
            cli,
            ["provision-infrastructure", "-g", "rg-expenses", "-l", "UKSouth", "--enable-genai"],
        )

        assert result.exit_code == code
        (config,) = captured
        assert config.enable_extended_features is True
        assert config.normalized_location == "uksouth"

    @pytest.mark.parametrize(
        ("flag", "env_value", "expected"),
        [
            ("--no-enable-genai", "true", False),
            ("--enable-genai", "false", True),
            (None, "true", True),
            (None, None, False),
        ],
    )
    def test_genai_flag_and_environment(
        self,
        monkeypatch: pytest.MonkeyPatch,
        flag: str | None,
        env_value: str | None,
        expected: bool,
    ) -> None:
        """Test that an explicit flag wins and the environment fills in otherwise."""
        captured: list[Config] = []
        monkeypatch.setattr(
            cli_module, "provision", lambda config: captured.append(config) or EXIT_SUCCESS
        )
        if env_value is None:
            monkeypatch.delenv("PROVISIONER_ENABLE_GENAI", raising=False)
        else:
            monkeypatch.setenv("PROVISIONER_ENABLE_GENAI", env_value)
        args = ["provision-infrastructure", "-g", "rg-expenses", "-l", "uksouth"]
        if flag is not None:
            args.append(flag)

        result = CliRunner().invoke(cli, args)

        assert result.exit_code == EXIT_SUCCESS, result.output
        assert captured[0].enable_extended_features is expected


class TestDeployApplicationCommand:
    def test_passes_package(self, monkeypatch: pytest.MonkeyPatch) -> None:
        calls: list[Any] = []
        monkeypatch.setattr(
            cli_module, "run_app_deployment", lambda config, package: calls.append(package) or 0
        )

        result = CliRunner().invoke(
            cli,
            ["deploy-application", "-g", "rg-expenses", "-l", "uksouth", "--package", "out.zip"],
        )

        assert result.exit_code == 0
        assert str(calls[0]) == "out.zip"

    def test_default_package(self, monkeypatch: pytest.MonkeyPatch) -> None:
        calls: list[Any] = []
        monkeypatch.setattr(
            cli_module, "run_app_deployment", lambda config, package: calls.append(package) or 0
        )

        result = CliRunner().invoke(
            cli, ["deploy-application", "-g", "rg-expenses", "-l", "uksouth"]
        )

        assert result.exit_code == 0
        assert calls == [Path(DEFAULT_PACKAGE_PATH)]


class TestMain:
    """Tests for the console script entry point."""

    def test_interrupt_exits_130(
        self, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
    ) -> None:
        def interrupted(config: Config) -> int:
            raise KeyboardInterrupt

        monkeypatch.setattr(cli_module, "provision", interrupted)
        monkeypatch.setattr(
            "sys.argv", ["azp", "provision-infrastructure", "-g", "rg-expenses", "-l", "uksouth"]
        )

        with pytest.raises(SystemExit) as excinfo:
            main()

        assert excinfo.value.code == EXIT_INTERRUPTED
        assert "Interrupted" in capsys.readouterr().err

    def test_usage_error_exits_2(
        self, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
    ) -> None:
        monkeypatch.setattr("sys.argv", ["azp", "provision-infrastructure", "-l", "uksouth"])

        with pytest.raises(SystemExit) as excinfo:
            main()

        assert excinfo.value.code == 2
        assert "--resource-group" in capsys.readouterr().err

    def test_command_exit_code_is_kept(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(cli_module, "provision", lambda config: EXIT_SECURITY_VIOLATION)
        monkeypatch.setattr(
            "sys.argv", ["azp", "provision-infrastructure", "-g", "rg-expenses", "-l", "uksouth"]
        )

        with pytest.raises(SystemExit) as excinfo:
            main()

        assert excinfo.value.code == EXIT_SECURITY_VIOLATION


@pytest.mark.asyncio
class TestRunProvisioning:
    """Tests for exit code mapping of the provisioning stage."""

    async def test_success(self, config: Config, capsys: pytest.CaptureFixture[str]) -> None:
        orchestrator = MagicMock()
        orchestrator.run = AsyncMock(
            return_value=ProvisioningResult(resource_group="rg-expenses", warnings=["careful"])
        )

        assert await run_provisioning(config, orchestrator) == EXIT_SUCCESS
        captured = capsys.readouterr()
        assert "warning: careful" in captured.err
        assert "warning" not in captured.out

    async def test_step_failure(self, config: Config) -> None:
        orchestrator = MagicMock()
        orchestrator.run = AsyncMock(
            side_effect=ProvisioningError(ProvisioningStep.DEPLOY, RuntimeError("boom"))
        )

        assert await run_provisioning(config, orchestrator) == EXIT_FAILURE

    async def test_security_violation(self, config: Config) -> None:
        orchestrator = MagicMock()
        orchestrator.run = AsyncMock(side_effect=SecretlessViolationError("AZURE_CLIENT_SECRET"))

        assert await run_provisioning(config, orchestrator) == EXIT_SECURITY_VIOLATION

    async def test_unexpected_error(self, config: Config) -> None:
        orchestrator = MagicMock()
        orchestrator.run = AsyncMock(side_effect=KeyError("surprise"))

        assert await run_provisioning(config, orchestrator) == EXIT_FAILURE


class TestJsonFormatter:
    """Tests for structured log output."""

    def test_extra_fields(self) -> None:
        record = logging.LogRecord(
            "provisioner.deployment", logging.INFO, __file__, 1, "Submitting", None, None
        )
        record.deployment = "provision-a"

        data = json.loads(JsonFormatter().format(record))

        assert data["message"] == "Submitting"
        assert data["level"] == "INFO"
        assert data["logger"] == "provisioner.deployment"
        assert data["deployment"] == "provision-a"
        assert data["timestamp"].endswith("Z")

    def test_non_serializable_extra(self, tmp_path: Any) -> None:
        record = logging.LogRecord("x", logging.INFO, __file__, 1, "m", None, None)
        record.path = tmp_path

        data = json.loads(JsonFormatter().format(record))

        assert data["path"] == str(tmp_path)
