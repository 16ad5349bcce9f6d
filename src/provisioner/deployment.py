"""Deployment execution with one-shot policy-timing reconciliation.

Some control-plane policy evaluations run asynchronously. A deployment can
therefore come back empty or failed while the resources it created are
healthy. Instead of resubmitting, an inconclusive submission triggers a
single reconciliation against ground truth:

    SUBMITTED -> SUCCEEDED
    SUBMITTED -> INCONCLUSIVE -> RECONCILING -> {SUCCEEDED, FAILED}

Reconciliation waits a grace period, lists the deployments of the resource
group, drops policy and anomaly-detection side deployments, and adopts the
most recent deployment in terminal success. Nothing qualifying is fatal.
"""

from __future__ import annotations

import asyncio
import fnmatch
import logging
import random
import time
import uuid
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from azure.core.exceptions import AzureError
from azure.mgmt.resource.resources.models import (
    Deployment,
    DeploymentMode,
    DeploymentProperties,
)

from .config import MAX_DEPLOYMENT_NAME_LENGTH
from .models import EXTENDED_OUTPUTS, REQUIRED_OUTPUTS, OutputName
from .plan import MODULE_DEPLOYMENT_PREFIX

logger = logging.getLogger(__name__)

DEPLOYMENT_NAME_PREFIX = "provision"
SUCCEEDED_STATE = "Succeeded"

# Side deployments that never carry the provisioning outputs
NOISE_DEPLOYMENT_PATTERNS: tuple[str, ...] = (
    "PolicyDeployment_*",
    "Failure-Anomalies-Alert-Rules-Deployment-*",
    f"{MODULE_DEPLOYMENT_PREFIX}*",
)


class DeploymentPhase(str, Enum):
    """States of a single provisioning deployment."""

    SUBMITTED = "Submitted"
    INCONCLUSIVE = "Inconclusive"
    RECONCILING = "Reconciling"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


_ALLOWED_TRANSITIONS: dict[DeploymentPhase | None, frozenset[DeploymentPhase]] = {
    None: frozenset({DeploymentPhase.SUBMITTED}),
    DeploymentPhase.SUBMITTED: frozenset({DeploymentPhase.SUCCEEDED, DeploymentPhase.INCONCLUSIVE}),
    DeploymentPhase.INCONCLUSIVE: frozenset({DeploymentPhase.RECONCILING}),
    DeploymentPhase.RECONCILING: frozenset({DeploymentPhase.SUCCEEDED, DeploymentPhase.FAILED}),
    DeploymentPhase.SUCCEEDED: frozenset(),
    DeploymentPhase.FAILED: frozenset(),
}


class DeploymentError(Exception):
    """Raised when provisioning cannot reach a terminal success."""

    pass


def _output_value(outputs: Mapping[str, Any], key: str) -> str | None:
    entry = outputs.get(key)
    if isinstance(entry, Mapping):
        entry = entry.get("value")
    if entry is None:
        return None
    value = str(entry).strip()
    return value or None


@dataclass(frozen=True)
class DeploymentOutputs:
    """Outputs of the deployment that reached terminal success. Immutable."""

    deployment_name: str
    web_app_name: str
    web_app_hostname: str
    sql_server_fqdn: str
    database_name: str
    managed_identity_client_id: str
    managed_identity_principal_id: str
    managed_identity_name: str
    app_insights_connection_string: str
    openai_endpoint: str | None = None
    openai_model_name: str | None = None

    @property
    def has_extended_features(self) -> bool:
        return self.openai_endpoint is not None and self.openai_model_name is not None

    @property
    def sql_server_name(self) -> str:
        """Short server name (first label of the FQDN)."""
        return self.sql_server_fqdn.split(".", 1)[0]

    @classmethod
    def from_arm(
        cls,
        outputs: Mapping[str, Any] | None,
        *,
        deployment_name: str,
        extended: bool,
    ) -> DeploymentOutputs:
        """Build outputs from an ARM ``properties.outputs`` mapping.

        Raises:
            DeploymentError: If a required output is missing or malformed.
        """
        outputs = outputs or {}
        expected = REQUIRED_OUTPUTS | (EXTENDED_OUTPUTS if extended else frozenset())
        values = {name: _output_value(outputs, name.value) for name in OutputName}

        missing = sorted(name.value for name in expected if values[name] is None)
        if missing:
            raise DeploymentError(
                f"Deployment '{deployment_name}' is missing outputs: {missing}"
            )

        client_id = values[OutputName.MANAGED_IDENTITY_CLIENT_ID]
        try:
            uuid.UUID(str(client_id))
        except ValueError as e:
            raise DeploymentError(
                f"Deployment '{deployment_name}' returned a managed identity client id "
                f"that is not a GUID: {client_id!r}"
            ) from e

        def required(name: OutputName) -> str:
            value = values[name]
            # SAFETY: every required output was checked for None above
            assert value is not None
            return value

        return cls(
            deployment_name=deployment_name,
            web_app_name=required(OutputName.WEB_APP_NAME),
            web_app_hostname=required(OutputName.WEB_APP_HOSTNAME),
            sql_server_fqdn=required(OutputName.SQL_SERVER_FQDN),
            database_name=required(OutputName.DATABASE_NAME),
            managed_identity_client_id=required(OutputName.MANAGED_IDENTITY_CLIENT_ID).lower(),
            managed_identity_principal_id=required(OutputName.MANAGED_IDENTITY_PRINCIPAL_ID),
            managed_identity_name=required(OutputName.MANAGED_IDENTITY_NAME),
            app_insights_connection_string=required(OutputName.APP_INSIGHTS_CONNECTION_STRING),
            openai_endpoint=values[OutputName.OPENAI_ENDPOINT] if extended else None,
            openai_model_name=values[OutputName.OPENAI_MODEL_NAME] if extended else None,
        )


def is_noise_deployment(name: str) -> bool:
    return any(fnmatch.fnmatchcase(name, pattern) for pattern in NOISE_DEPLOYMENT_PATTERNS)


def generate_deployment_name(base_name: str) -> str:
    """Build a unique deployment name: ``provision-<base>-<timestamp>-<suffix>``."""
    timestamp = int(time.time())
    random_suffix = random.randint(1000, 9999)
    # prefix + 1 + base + 1 + 10 + 1 + 4
    reserved_len = len(DEPLOYMENT_NAME_PREFIX) + 17
    truncated = base_name[: MAX_DEPLOYMENT_NAME_LENGTH - reserved_len]
    deployment_name = f"{DEPLOYMENT_NAME_PREFIX}-{truncated}-{timestamp}-{random_suffix}"

    if len(deployment_name) > MAX_DEPLOYMENT_NAME_LENGTH:
        raise DeploymentError(
            f"Deployment name '{deployment_name}' exceeds maximum length of "
            f"{MAX_DEPLOYMENT_NAME_LENGTH} characters"
        )
    return deployment_name


def _timestamp(deployment: Any) -> datetime:
    properties = getattr(deployment, "properties", None)
    value = getattr(properties, "timestamp", None)
    if value is None:
        return datetime.min.replace(tzinfo=UTC)
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _state(deployment: Any) -> str | None:
    properties = getattr(deployment, "properties", None)
    return getattr(properties, "provisioning_state", None)


class DeploymentExecutor:
    """Submits the provisioning deployment once and reconciles inconclusive results.

    The executor never resubmits. Outputs are returned only from a deployment
    in terminal success.
    """

    def __init__(
        self,
        client: Any,
        resource_group: str,
        *,
        recovery_grace_seconds: int,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """Initialize the executor.

        Args:
            client: ResourceManagementClient.
            resource_group: Target resource group.
            recovery_grace_seconds: Wait before reconciling an inconclusive result.
            sleep: Awaitable sleep, replaceable in tests.
        """
        self._client = client
        self._resource_group = resource_group
        self._recovery_grace_seconds = recovery_grace_seconds
        self._sleep = sleep
        self._phase: DeploymentPhase | None = None
        self._history: list[DeploymentPhase] = []

    @property
    def phase(self) -> DeploymentPhase | None:
        return self._phase

    @property
    def history(self) -> list[DeploymentPhase]:
        return list(self._history)

    def _transition(self, phase: DeploymentPhase) -> None:
        if phase not in _ALLOWED_TRANSITIONS[self._phase]:
            raise RuntimeError(f"Invalid deployment transition {self._phase} -> {phase}")
        self._phase = phase
        self._history.append(phase)
        logger.debug("Deployment phase changed", extra={"phase": phase.value})

    async def execute(
        self,
        deployment_name: str,
        template: dict[str, Any],
        parameters: dict[str, Any],
        *,
        extended: bool,
    ) -> DeploymentOutputs:
        """Submit the deployment and return its outputs.

        Args:
            deployment_name: Name of the deployment.
            template: Rendered deployment template.
            parameters: ARM parameter set.
            extended: Whether extended-feature outputs are expected.

        Returns:
            Outputs of the deployment in terminal success.

        Raises:
            DeploymentError: If no deployment reached terminal success.
        """
        self._transition(DeploymentPhase.SUBMITTED)
        logger.info(
            "Submitting deployment",
            extra={"deployment": deployment_name, "resource_group": self._resource_group},
        )

        reason: str
        try:
            result = await self._submit(deployment_name, template, parameters)
        except AzureError as e:
            result = None
            reason = f"deployment reported an error: {e}"
        else:
            reason = self._inconclusive_reason(result)

        if not reason:
            try:
                outputs = DeploymentOutputs.from_arm(
                    result.properties.outputs,
                    deployment_name=deployment_name,
                    extended=extended,
                )
            except DeploymentError as e:
                reason = str(e)
            else:
                self._transition(DeploymentPhase.SUCCEEDED)
                logger.info("Deployment succeeded", extra={"deployment": deployment_name})
                return outputs

        self._transition(DeploymentPhase.INCONCLUSIVE)
        logger.warning(
            "Deployment result is inconclusive; reconciling against deployment history",
            extra={"deployment": deployment_name, "reason": reason},
        )
        return await self._reconcile(extended)

    async def _submit(
        self,
        deployment_name: str,
        template: dict[str, Any],
        parameters: dict[str, Any],
    ) -> Any:
        deployment = Deployment(
            properties=DeploymentProperties(
                template=template,
                parameters=parameters,
                mode=DeploymentMode.INCREMENTAL,
            ),
        )
        loop = asyncio.get_running_loop()

        poller = await loop.run_in_executor(
            None,
            lambda: self._client.deployments.begin_create_or_update(
                self._resource_group, deployment_name, deployment
            ),
        )
        # Blocks until the control plane reports a terminal state
        return await loop.run_in_executor(None, poller.result)

    @staticmethod
    def _inconclusive_reason(result: Any) -> str:
        if result is None or getattr(result, "properties", None) is None:
            return "deployment returned an empty result"
        state = _state(result)
        if state != SUCCEEDED_STATE:
            return f"deployment finished in state {state!r}"
        if not result.properties.outputs:
            return "deployment returned no outputs"
        return ""

    async def _reconcile(self, extended: bool) -> DeploymentOutputs:
        self._transition(DeploymentPhase.RECONCILING)
        await self._sleep(self._recovery_grace_seconds)

        loop = asyncio.get_running_loop()
        try:
            attempts = await loop.run_in_executor(
                None,
                lambda: list(self._client.deployments.list_by_resource_group(self._resource_group)),
            )
        except AzureError as e:
            self._transition(DeploymentPhase.FAILED)
            raise DeploymentError(
                f"Could not list deployments in '{self._resource_group}' to reconcile: {e}"
            ) from e

        candidates = [
            d for d in attempts if d.name and not is_noise_deployment(d.name)
        ]
        candidates.sort(key=_timestamp, reverse=True)
        succeeded = next((d for d in candidates if _state(d) == SUCCEEDED_STATE), None)

        logger.info(
            "Reconciliation candidates",
            extra={
                "listed": len(attempts),
                "after_noise_filter": len(candidates),
                "selected": succeeded.name if succeeded is not None else None,
            },
        )

        if succeeded is None:
            self._transition(DeploymentPhase.FAILED)
            raise DeploymentError(
                f"No successful deployment found in resource group '{self._resource_group}'. "
                "Check the deployment history in the Azure portal for the failing resource."
            )

        try:
            # Listing may omit outputs; fetch the full record
            fetched = await loop.run_in_executor(
                None,
                lambda: self._client.deployments.get(self._resource_group, succeeded.name),
            )
            properties = getattr(fetched, "properties", None)
            outputs = DeploymentOutputs.from_arm(
                getattr(properties, "outputs", None),
                deployment_name=succeeded.name,
                extended=extended,
            )
        except (AzureError, DeploymentError) as e:
            self._transition(DeploymentPhase.FAILED)
            raise DeploymentError(
                f"Deployment '{succeeded.name}' succeeded but its outputs are unusable: {e}"
            ) from e

        self._transition(DeploymentPhase.SUCCEEDED)
        logger.info(
            "Reconciled deployment from history",
            extra={"deployment": succeeded.name},
        )
        return outputs
