"""Run mode detection and acting principal resolution.

A run is either INTERACTIVE (an operator at a terminal, logged in with
``az login``) or AUTOMATED (an unattended pipeline with a federated service
principal). The mode decides how the acting principal is discovered, which
credential talks to the control plane, and which authentication method the
SQL script channel uses.
"""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum

from .commands import AZ_CLI, CommandError, CommandRunner
from .config import VALID_SUBSCRIPTION_ID_PATTERN, ConfigurationError

logger = logging.getLogger(__name__)

# Any of these being set means we are running inside a CI/CD pipeline
PIPELINE_MARKER_ENV_VARS: tuple[str, ...] = (
    "GITHUB_ACTIONS",
    "TF_BUILD",
    "BUILD_BUILDID",
    "CI",
)

PRINCIPAL_ID_ENV_VAR = "AZURE_CLIENT_ID"
PRINCIPAL_NAME_ENV_VAR = "AZURE_PRINCIPAL_NAME"
SUBSCRIPTION_ID_ENV_VAR = "AZURE_SUBSCRIPTION_ID"


class RunMode(str, Enum):
    """Who is driving the run."""

    INTERACTIVE = "interactive"
    AUTOMATED = "automated"


class PrincipalKind(str, Enum):
    """Principal type as the SQL admin template parameter expects it."""

    USER = "User"
    APPLICATION = "Application"


@dataclass(frozen=True)
class RunContext:
    """Identity of the acting principal for this run. Immutable."""

    mode: RunMode
    principal_id: str
    principal_name: str
    principal_kind: PrincipalKind
    subscription_id: str

    @property
    def is_interactive(self) -> bool:
        return self.mode == RunMode.INTERACTIVE


def detect_run_mode(environ: Mapping[str, str] | None = None) -> RunMode:
    """Return AUTOMATED if any pipeline marker is present, else INTERACTIVE."""
    env = os.environ if environ is None else environ
    for marker in PIPELINE_MARKER_ENV_VARS:
        value = env.get(marker, "").strip().lower()
        if value and value not in ("0", "false", "no"):
            logger.debug("Pipeline marker found", extra={"marker": marker})
            return RunMode.AUTOMATED
    return RunMode.INTERACTIVE


def resolve_run_context(
    runner: CommandRunner,
    environ: Mapping[str, str] | None = None,
) -> RunContext:
    """Build the RunContext for this process.

    Raises:
        ConfigurationError: If the acting principal cannot be determined.
            Never retried.
    """
    env = os.environ if environ is None else environ
    mode = detect_run_mode(env)

    if mode == RunMode.AUTOMATED:
        principal_id = env.get(PRINCIPAL_ID_ENV_VAR, "").strip()
        if not principal_id:
            raise ConfigurationError(
                f"{PRINCIPAL_ID_ENV_VAR} must be set when running in a pipeline. "
                "Configure the federated service principal's client id for this job."
            )
        principal_name = env.get(PRINCIPAL_NAME_ENV_VAR, "").strip() or (
            f"pipeline-{principal_id[:8]}"
        )
        principal_kind = PrincipalKind.APPLICATION
    else:
        principal_id, principal_name = _signed_in_user(runner)
        principal_kind = PrincipalKind.USER

    subscription_id = _subscription_id(runner, env)

    context = RunContext(
        mode=mode,
        principal_id=principal_id,
        principal_name=principal_name,
        principal_kind=principal_kind,
        subscription_id=subscription_id,
    )
    logger.info(
        "Resolved run context",
        extra={
            "mode": mode.value,
            "principal_name": principal_name,
            "principal_kind": principal_kind.value,
        },
    )
    return context


def _signed_in_user(runner: CommandRunner) -> tuple[str, str]:
    try:
        user = runner.run_json(
            [
                AZ_CLI,
                "ad",
                "signed-in-user",
                "show",
                "--query",
                "{id:id, name:userPrincipalName}",
                "-o",
                "json",
            ]
        )
    except CommandError as e:
        raise ConfigurationError(
            "No authenticated Azure session found. Run 'az login' and try again.\n"
            f"{e}"
        ) from e

    if not isinstance(user, dict) or not user.get("id"):
        raise ConfigurationError(
            "Azure CLI did not return the signed-in user. Run 'az login' and try again."
        )
    return str(user["id"]), str(user.get("name") or user["id"])


def _subscription_id(runner: CommandRunner, env: Mapping[str, str]) -> str:
    subscription_id = env.get(SUBSCRIPTION_ID_ENV_VAR, "").strip()
    if not subscription_id:
        try:
            result = runner.run([AZ_CLI, "account", "show", "--query", "id", "-o", "tsv"])
            subscription_id = result.stdout.strip()
        except CommandError as e:
            raise ConfigurationError(
                f"Could not determine the Azure subscription. Set {SUBSCRIPTION_ID_ENV_VAR} "
                f"or run 'az account set'.\n{e}"
            ) from e

    if not re.match(VALID_SUBSCRIPTION_ID_PATTERN, subscription_id.lower()):
        raise ConfigurationError(f"Subscription id must be a valid GUID: {subscription_id!r}")
    return subscription_id.lower()
