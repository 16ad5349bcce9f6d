"""Security enforcement for the secretless deployment model.

The provisioner never handles passwords or client secrets:
- Operators authenticate with ``az login`` (default credential chain)
- Pipelines authenticate with a federated service principal (Azure CLI token)
- The deployed application authenticates with a user-assigned managed identity

SECURITY INVARIANTS:
1. AZURE_CLIENT_SECRET must never be present in the environment
2. Only token-based credentials from azure-identity are constructed
3. SQL access is granted to identities, never to SQL logins
"""

from __future__ import annotations

import logging
import os

from azure.core.credentials import TokenCredential
from azure.identity import AzureCliCredential, DefaultAzureCredential

from .environment import RunContext, RunMode

logger = logging.getLogger(__name__)

# Environment variables that indicate credential leakage
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "AZURE_CLIENT_SECRET",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD",
    "AZURE_USERNAME",
    "AZURE_PASSWORD",
)

SECRETLESS_VIOLATION_MESSAGE = (
    "Detected {env_var} in the environment. This tool only supports secretless "
    "authentication: run 'az login' locally, or use a federated (OIDC) service "
    "principal in the pipeline, and remove password or secret variables."
)


class SecretlessViolationError(Exception):
    """Raised when a credential secret is found in the environment.

    This is a fatal security error; the run must not proceed.
    """

    pass


def enforce_secretless_architecture() -> None:
    """Enforce that no credential secrets are present in the environment.

    Raises:
        SecretlessViolationError: If any credential environment variables detected.
    """
    for env_var in FORBIDDEN_CREDENTIAL_ENV_VARS:
        if os.environ.get(env_var):
            logger.critical(
                "Secretless architecture violation",
                extra={
                    "security_event": "credential_detected",
                    "env_var": env_var,
                    "action": "startup_blocked",
                },
            )
            raise SecretlessViolationError(SECRETLESS_VIOLATION_MESSAGE.format(env_var=env_var))


def get_control_plane_credential(run_context: RunContext) -> TokenCredential:
    """Get the credential used for Azure Resource Manager calls.

    Pipelines are already logged in through the Azure CLI, so the CLI token is
    used directly. Operators get the default chain, which also picks up
    Visual Studio Code, azd and CLI sessions.

    Raises:
        SecretlessViolationError: If credential environment variables detected.
    """
    enforce_secretless_architecture()

    if run_context.mode == RunMode.AUTOMATED:
        logger.info("Using Azure CLI credential", extra={"credential_type": "AzureCli"})
        return AzureCliCredential()

    logger.info("Using default credential chain", extra={"credential_type": "Default"})
    return DefaultAzureCredential(exclude_interactive_browser_credential=True)


def redact_identifier(value: str) -> str:
    """Shorten a GUID for logs."""
    return value[:8] + "..." if len(value) > 8 else value
