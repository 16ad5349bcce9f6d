"""Infrastructure provisioning pipeline.

The orchestrator runs a strictly sequential pipeline. Each step consumes the
previous step's result and any unrecoverable failure stops the run:

1. Detect the run mode and acting principal
2. Build the control-plane credential
3. Ensure the resource group
4. Compile the module graph into a single deployment template
5. Submit the deployment (6: reconcile once if the result is inconclusive)
7. Wait for the database engine
8. Open the SQL firewall for the operator (interactive runs only)
9. Bind the workload identity to a database user
10. Import schema and stored procedure scripts
11. Write web app settings and connection strings
12. Emit the deployment context for the application stage

Network access and script import are best effort: failures become warnings.
Only one run should target a resource group at a time; nothing locks it.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

import httpx
from azure.core.exceptions import AzureError
from azure.mgmt.resource import ResourceManagementClient

from .app_settings import ConfigurationWriteError, write_app_configuration
from .commands import CommandError, CommandRunner
from .config import Config, ConfigurationError
from .context import DeploymentContext, write_context
from .database import (
    NetworkAccessError,
    ScriptImporter,
    auth_method_for,
    open_client_firewall,
    wait_for_readiness,
)
from .dependency import DependencyError, ExecutionPlan, compile_plan
from .deployment import (
    DeploymentError,
    DeploymentExecutor,
    DeploymentOutputs,
    DeploymentPhase,
    generate_deployment_name,
)
from .environment import RunContext, resolve_run_context
from .identity_binding import IdentityBindingError, bind_identity
from .plan import build_deployment_template, build_parameters
from .resource_group import ensure_resource_group
from .security import get_control_plane_credential, redact_identifier
from .spec_loader import SpecLoadError, discover_scripts, load_module_graph

logger = logging.getLogger(__name__)

# Failures a step converts into a ProvisioningError naming the step
STEP_FAILURES: tuple[type[Exception], ...] = (
    AzureError,
    CommandError,
    ConfigurationError,
    ConfigurationWriteError,
    DependencyError,
    DeploymentError,
    IdentityBindingError,
    OSError,
    SpecLoadError,
)


class ProvisioningStep(str, Enum):
    """Pipeline steps in execution order."""

    DETECT_ENVIRONMENT = "detect-environment"
    RESOLVE_CREDENTIAL = "resolve-credential"
    ENSURE_RESOURCE_GROUP = "ensure-resource-group"
    COMPILE_PLAN = "compile-plan"
    DEPLOY = "deploy"
    WAIT_FOR_DATABASE = "wait-for-database"
    CONFIGURE_NETWORK_ACCESS = "configure-network-access"
    BIND_IDENTITY = "bind-identity"
    IMPORT_SCRIPTS = "import-scripts"
    WRITE_CONFIGURATION = "write-configuration"
    EMIT_CONTEXT = "emit-context"


class ProvisioningError(Exception):
    """Raised when a pipeline step fails unrecoverably."""

    def __init__(self, step: ProvisioningStep, cause: Exception) -> None:
        super().__init__(f"Step '{step.value}' failed: {cause}")
        self.step = step
        self.cause = cause


@dataclass
class ProvisioningResult:
    """Result of a provisioning run."""

    resource_group: str
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    completed_steps: list[ProvisioningStep] = field(default_factory=list)
    skipped_steps: list[ProvisioningStep] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    resource_group_created: bool = False
    deployment_name: str | None = None
    reconciled: bool = False
    context_path: Path | None = None
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        return self.error is None and ProvisioningStep.EMIT_CONTEXT in self.completed_steps


def build_plan(config: Config) -> ExecutionPlan:
    """Load and compile the module graph without touching Azure.

    Raises:
        SpecLoadError: If the module graph is invalid.
        DependencyError: If the graph cannot be ordered.
    """
    return compile_plan(load_module_graph(config.modules_file))


class Orchestrator:
    """Runs the provisioning pipeline once."""

    def __init__(
        self,
        config: Config,
        *,
        runner: CommandRunner | None = None,
        environ: Mapping[str, str] | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        http_client: httpx.AsyncClient | None = None,
        project_root: Path | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            config: Validated configuration.
            runner: External command runner.
            environ: Environment used for run mode detection (default: os.environ).
            sleep: Awaitable sleep used for grace and readiness delays.
            http_client: Client for the public IP lookup.
            project_root: Where the deployment context is written (default: cwd).
        """
        self._config = config
        self._runner = runner or CommandRunner()
        self._environ = environ
        self._sleep = sleep
        self._http_client = http_client
        self._project_root = project_root

    @property
    def config(self) -> Config:
        return self._config

    @contextmanager
    def _step(self, result: ProvisioningResult, step: ProvisioningStep) -> Iterator[None]:
        logger.info(f"Step: {step.value}", extra={"step": step.value})
        try:
            yield
        except STEP_FAILURES as e:
            raise ProvisioningError(step, e) from e
        result.completed_steps.append(step)

    def _warn(self, result: ProvisioningResult, message: str) -> None:
        logger.warning(message)
        result.warnings.append(message)

    async def run(self) -> ProvisioningResult:
        """Run the pipeline.

        Returns:
            Result of a successful run.

        Raises:
            ProvisioningError: If a step fails; no later step runs.
            SecretlessViolationError: If credential secrets are in the environment.
        """
        result = ProvisioningResult(resource_group=self._config.resource_group)
        try:
            await self._run_steps(result)
        except ProvisioningError as e:
            result.error = e
            raise
        finally:
            result.end_time = datetime.now(UTC)
            self._log_result(result)
        return result

    async def _run_steps(self, result: ProvisioningResult) -> None:
        config = self._config

        with self._step(result, ProvisioningStep.DETECT_ENVIRONMENT):
            run_context = resolve_run_context(self._runner, self._environ)

        with self._step(result, ProvisioningStep.RESOLVE_CREDENTIAL):
            credential = get_control_plane_credential(run_context)
            client = ResourceManagementClient(
                credential=credential,
                subscription_id=run_context.subscription_id,
            )

        with self._step(result, ProvisioningStep.ENSURE_RESOURCE_GROUP):
            result.resource_group_created = ensure_resource_group(
                client, config.resource_group, config.normalized_location
            )

        with self._step(result, ProvisioningStep.COMPILE_PLAN):
            plan = build_plan(config)
            template = build_deployment_template(plan, config.templates_dir)
            parameters = build_parameters(
                run_context,
                location=config.normalized_location,
                base_name=config.base_name,
                enable_extended_features=config.enable_extended_features,
            )

        with self._step(result, ProvisioningStep.DEPLOY):
            outputs = await self._deploy(result, client, template, parameters)

        with self._step(result, ProvisioningStep.WAIT_FOR_DATABASE):
            await wait_for_readiness(config.readiness_delay_seconds, self._sleep)

        if run_context.is_interactive:
            with self._step(result, ProvisioningStep.CONFIGURE_NETWORK_ACCESS):
                await self._open_network_access(result, outputs)
        else:
            result.skipped_steps.append(ProvisioningStep.CONFIGURE_NETWORK_ACCESS)

        importer = ScriptImporter(
            self._runner,
            outputs.sql_server_fqdn,
            outputs.database_name,
            auth_method_for(run_context.mode),
        )

        with self._step(result, ProvisioningStep.BIND_IDENTITY):
            bind_identity(
                importer, outputs.managed_identity_name, outputs.managed_identity_client_id
            )

        with self._step(result, ProvisioningStep.IMPORT_SCRIPTS):
            self._import_scripts(result, importer)

        with self._step(result, ProvisioningStep.WRITE_CONFIGURATION):
            write_app_configuration(self._runner, config.resource_group, outputs)

        with self._step(result, ProvisioningStep.EMIT_CONTEXT):
            context = DeploymentContext.from_outputs(config.resource_group, outputs)
            result.context_path = write_context(
                context, self._project_root, config.context_filename
            )

        self._log_summary(run_context, outputs)

    async def _deploy(
        self,
        result: ProvisioningResult,
        client: Any,
        template: dict[str, Any],
        parameters: dict[str, Any],
    ) -> DeploymentOutputs:
        executor = DeploymentExecutor(
            client,
            self._config.resource_group,
            recovery_grace_seconds=self._config.recovery_grace_seconds,
            sleep=self._sleep,
        )
        deployment_name = generate_deployment_name(self._config.base_name)
        result.deployment_name = deployment_name

        outputs = await executor.execute(
            deployment_name,
            template,
            parameters,
            extended=self._config.enable_extended_features,
        )
        result.reconciled = DeploymentPhase.RECONCILING in executor.history
        if result.reconciled:
            self._warn(
                result,
                f"Deployment '{deployment_name}' was inconclusive; using outputs of "
                f"'{outputs.deployment_name}'",
            )
        return outputs

    async def _open_network_access(
        self, result: ProvisioningResult, outputs: DeploymentOutputs
    ) -> None:
        try:
            await open_client_firewall(
                self._runner,
                self._config.resource_group,
                outputs.sql_server_name,
                self._http_client,
            )
        except NetworkAccessError as e:
            self._warn(result, f"Could not open SQL firewall for this machine: {e}")

    def _import_scripts(self, result: ProvisioningResult, importer: ScriptImporter) -> None:
        for label, directory in (
            ("schema", self._config.schema_dir),
            ("stored procedure", self._config.procedures_dir),
        ):
            scripts = discover_scripts(directory)
            if not scripts:
                self._warn(result, f"No {label} scripts found in {directory}")
                continue
            for script in importer.import_scripts(scripts):
                if not script.ok:
                    self._warn(result, f"{label.capitalize()} script '{script.name}' failed")

    def _log_summary(self, run_context: RunContext, outputs: DeploymentOutputs) -> None:
        logger.info(
            "Provisioned infrastructure",
            extra={
                "resource_group": self._config.resource_group,
                "web_app": outputs.web_app_name,
                "app_url": f"https://{outputs.web_app_hostname}",
                "sql_server": outputs.sql_server_fqdn,
                "database": outputs.database_name,
                "managed_identity_client_id": redact_identifier(
                    outputs.managed_identity_client_id
                ),
                "genai": outputs.has_extended_features,
                "mode": run_context.mode.value,
            },
        )

    def _log_result(self, result: ProvisioningResult) -> None:
        """Log the run result with structured data."""
        extra: dict[str, Any] = {
            "resource_group": result.resource_group,
            "duration_seconds": result.duration_seconds,
            "completed_steps": [s.value for s in result.completed_steps],
            "skipped_steps": [s.value for s in result.skipped_steps],
            "warnings": len(result.warnings),
            "deployment": result.deployment_name,
            "reconciled": result.reconciled,
        }
        if result.context_path is not None:
            extra["context_path"] = str(result.context_path)

        if result.error is not None:
            extra["error"] = str(result.error)
            logger.error("Provisioning failed", extra=extra)
        elif result.warnings:
            logger.warning("Provisioning completed with warnings", extra=extra)
        else:
            logger.info("Provisioning completed", extra=extra)
