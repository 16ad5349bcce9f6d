"""Web app configuration: application settings and the database connection string.

Setting names are typed enums checked against the key set the application
reads, so a renamed or misspelled key fails at import time instead of at
application startup.
"""

from __future__ import annotations

import logging
from enum import Enum

from .commands import AZ_CLI, CommandError, CommandRunner
from .deployment import DeploymentOutputs

logger = logging.getLogger(__name__)

SQL_PORT = 1433
CONNECTION_TIMEOUT_SECONDS = 30
CONNECTION_STRING_TYPE = "SQLAzure"


class ConfigKey(str, Enum):
    """Application settings written to the web app."""

    MANAGED_IDENTITY_CLIENT_ID = "ManagedIdentityClientId"
    AZURE_CLIENT_ID = "AZURE_CLIENT_ID"
    APP_INSIGHTS_CONNECTION_STRING = "APPLICATIONINSIGHTS_CONNECTION_STRING"
    OPENAI_ENDPOINT = "GenAISettings__OpenAIEndpoint"
    OPENAI_MODEL_NAME = "GenAISettings__OpenAIModelName"


class ConnectionStringKey(str, Enum):
    """Connection strings written to the web app."""

    DEFAULT_CONNECTION = "DefaultConnection"


# Keys the application reads at startup
EXPECTED_APPLICATION_SETTINGS: frozenset[str] = frozenset(
    {
        "ManagedIdentityClientId",
        "AZURE_CLIENT_ID",
        "APPLICATIONINSIGHTS_CONNECTION_STRING",
        "GenAISettings__OpenAIEndpoint",
        "GenAISettings__OpenAIModelName",
    }
)
EXPECTED_CONNECTION_STRINGS: frozenset[str] = frozenset({"DefaultConnection"})

EXTENDED_CONFIG_KEYS: frozenset[ConfigKey] = frozenset(
    {ConfigKey.OPENAI_ENDPOINT, ConfigKey.OPENAI_MODEL_NAME}
)


def _validate_key_sets() -> None:
    settings = {key.value for key in ConfigKey}
    if settings != EXPECTED_APPLICATION_SETTINGS:
        raise ImportError(
            "ConfigKey does not match the application's settings: "
            f"unexpected={sorted(settings - EXPECTED_APPLICATION_SETTINGS)} "
            f"missing={sorted(EXPECTED_APPLICATION_SETTINGS - settings)}"
        )
    connection_strings = {key.value for key in ConnectionStringKey}
    if connection_strings != EXPECTED_CONNECTION_STRINGS:
        raise ImportError(
            "ConnectionStringKey does not match the application's connection strings: "
            f"{sorted(connection_strings ^ EXPECTED_CONNECTION_STRINGS)}"
        )


_validate_key_sets()


class ConfigurationWriteError(Exception):
    """Raised when the web app configuration cannot be written."""

    pass


def build_connection_string(outputs: DeploymentOutputs) -> str:
    """Managed-identity connection string; it carries no password."""
    return (
        f"Server=tcp:{outputs.sql_server_fqdn},{SQL_PORT};"
        f"Database={outputs.database_name};"
        "Authentication=Active Directory Managed Identity;"
        f"User Id={outputs.managed_identity_client_id};"
        "Encrypt=True;"
        "TrustServerCertificate=False;"
        f"Connection Timeout={CONNECTION_TIMEOUT_SECONDS};"
    )


def build_app_settings(outputs: DeploymentOutputs) -> dict[ConfigKey, str]:
    settings = {
        ConfigKey.MANAGED_IDENTITY_CLIENT_ID: outputs.managed_identity_client_id,
        ConfigKey.AZURE_CLIENT_ID: outputs.managed_identity_client_id,
        ConfigKey.APP_INSIGHTS_CONNECTION_STRING: outputs.app_insights_connection_string,
    }
    if outputs.openai_endpoint is not None and outputs.openai_model_name is not None:
        settings[ConfigKey.OPENAI_ENDPOINT] = outputs.openai_endpoint
        settings[ConfigKey.OPENAI_MODEL_NAME] = outputs.openai_model_name
    return settings


def build_connection_strings(outputs: DeploymentOutputs) -> dict[ConnectionStringKey, str]:
    return {ConnectionStringKey.DEFAULT_CONNECTION: build_connection_string(outputs)}


def write_app_configuration(
    runner: CommandRunner,
    resource_group: str,
    outputs: DeploymentOutputs,
) -> list[str]:
    """Push app settings and connection strings to the web app, one batch each.

    Returns:
        Names of the keys written.

    Raises:
        ConfigurationWriteError: If either batch is rejected.
    """
    settings = build_app_settings(outputs)
    connection_strings = build_connection_strings(outputs)

    try:
        runner.run(
            [
                AZ_CLI,
                "webapp",
                "config",
                "appsettings",
                "set",
                "--resource-group",
                resource_group,
                "--name",
                outputs.web_app_name,
                "--settings",
                *(f"{key.value}={value}" for key, value in settings.items()),
                "-o",
                "none",
            ]
        )
        runner.run(
            [
                AZ_CLI,
                "webapp",
                "config",
                "connection-string",
                "set",
                "--resource-group",
                resource_group,
                "--name",
                outputs.web_app_name,
                "--connection-string-type",
                CONNECTION_STRING_TYPE,
                "--settings",
                *(f"{key.value}={value}" for key, value in connection_strings.items()),
                "-o",
                "none",
            ]
        )
    except CommandError as e:
        raise ConfigurationWriteError(
            f"Could not configure web app '{outputs.web_app_name}': {e}"
        ) from e

    written = [key.value for key in settings] + [key.value for key in connection_strings]
    logger.info(
        "Configured web app",
        extra={"web_app": outputs.web_app_name, "keys": written},
    )
    return written
