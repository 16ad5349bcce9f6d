"""Pytest configuration and fixtures."""

import os
import sys
from pathlib import Path
from typing import Any

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for azure_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from provisioner.config import Config  # noqa: E402
from provisioner.security import FORBIDDEN_CREDENTIAL_ENV_VARS  # noqa: E402

REPO_ROOT = Path(__file__).parent.parent
INFRA_DIR = REPO_ROOT / "infra"

CLIENT_ID = "12345678-1234-1234-1234-123456789012"
PIPELINE_CLIENT_ID = "99999999-8888-7777-6666-555555555555"


class RecordingSleep:
    """Awaitable sleep replacement that records requested delays."""

    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove credential and override variables the host may carry."""
    for env_var in FORBIDDEN_CREDENTIAL_ENV_VARS:
        monkeypatch.delenv(env_var, raising=False)
    for env_var in list(os.environ):
        if env_var.startswith("PROVISIONER_"):
            monkeypatch.delenv(env_var, raising=False)


@pytest.fixture
def sample_outputs() -> dict[str, Any]:
    """Deployment outputs with extended features disabled."""
    return {
        "webAppName": "app-expensemgmt-abc123",
        "webAppHostname": "app-expensemgmt-abc123.azurewebsites.net",
        "sqlServerFqdn": "sql-expensemgmt-abc123.database.windows.net",
        "databaseName": "Northwind",
        "managedIdentityClientId": CLIENT_ID,
        "managedIdentityPrincipalId": "aaaaaaaa-bbbb-cccc-dddd-eeeeeeeeeeee",
        "managedIdentityName": "mid-expensemgmt-abc123",
        "appInsightsConnectionString": "InstrumentationKey=00000000-0000-0000-0000-000000000001",
    }


@pytest.fixture
def genai_outputs(sample_outputs: dict[str, Any]) -> dict[str, Any]:
    """Deployment outputs with extended features enabled."""
    return {
        **sample_outputs,
        "openAIEndpoint": "https://oai-expensemgmt-abc123.openai.azure.com/",
        "openAIModelName": "gpt-4o",
    }


@pytest.fixture
def script_dirs(tmp_path: Path) -> tuple[Path, Path]:
    """Schema and procedure directories holding small scripts."""
    schema_dir = tmp_path / "database" / "schema"
    procedures_dir = tmp_path / "database" / "procedures"
    schema_dir.mkdir(parents=True)
    procedures_dir.mkdir(parents=True)

    (schema_dir / "001-tables.sql").write_text("CREATE TABLE dbo.Expenses (Id INT);\n")
    (schema_dir / "002-reference-data.sql").write_text("INSERT INTO dbo.ExpenseStatus VALUES (1);\n")
    (schema_dir / "README.md").write_text("not a script\n")
    (procedures_dir / "010-procedures.sql").write_text(
        "CREATE OR ALTER PROCEDURE dbo.usp_GetExpenses AS SELECT 1;\n"
    )
    return schema_dir, procedures_dir


@pytest.fixture
def config(script_dirs: tuple[Path, Path]) -> Config:
    """Configuration pointing at the repository's module graph and templates."""
    schema_dir, procedures_dir = script_dirs
    return Config(
        resource_group="rg-expenses",
        location="uksouth",
        modules_file=INFRA_DIR / "modules.yaml",
        templates_dir=INFRA_DIR / "templates",
        schema_dir=schema_dir,
        procedures_dir=procedures_dir,
    )


@pytest.fixture
def genai_config(config: Config) -> Config:
    from dataclasses import replace

    return replace(config, enable_extended_features=True)


@pytest.fixture
def interactive_env() -> dict[str, str]:
    return {}


@pytest.fixture
def automated_env() -> dict[str, str]:
    return {
        "GITHUB_ACTIONS": "true",
        "AZURE_CLIENT_ID": PIPELINE_CLIENT_ID,
        "AZURE_SUBSCRIPTION_ID": "00000000-0000-0000-0000-000000000000",
    }


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()
