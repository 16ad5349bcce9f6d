"""Application deployment stage.

Runs as its own process after provisioning and learns everything about the
infrastructure from the deployment context file.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
from pathlib import Path

from .commands import AZ_CLI, CommandError, CommandRunner
from .config import Config
from .context import DeploymentContext, read_context

logger = logging.getLogger(__name__)

DEFAULT_PACKAGE_PATH = "publish"


class AppDeploymentError(Exception):
    """Raised when the application package cannot be deployed."""

    pass


def package_application(source: Path, work_dir: Path) -> Path:
    """Return a zip package for ``source``.

    A ``.zip`` file is used as-is; a directory is archived into ``work_dir``.

    Raises:
        AppDeploymentError: If the source does not exist or is not packageable.
    """
    if source.is_file():
        if source.suffix.lower() != ".zip":
            raise AppDeploymentError(f"Application package must be a .zip file: {source}")
        return source
    if not source.is_dir():
        raise AppDeploymentError(
            f"Application package not found: {source}. Publish the application first."
        )
    if not any(source.iterdir()):
        raise AppDeploymentError(f"Application directory is empty: {source}")

    archive = shutil.make_archive(str(work_dir / "app"), "zip", root_dir=source)
    logger.info("Packaged application", extra={"source": str(source), "archive": archive})
    return Path(archive)


def deploy_application(
    runner: CommandRunner,
    config: Config,
    package: Path,
    start: Path | None = None,
) -> DeploymentContext:
    """Deploy the application package to the provisioned web app.

    Returns:
        The deployment context that was used.

    Raises:
        ContextNotFoundError: If provisioning has not produced a context.
        AppDeploymentError: If the context targets another resource group or
            the upload fails.
    """
    context = read_context(start, config.context_filename)

    if context.resource_group.lower() != config.resource_group.lower():
        raise AppDeploymentError(
            f"Deployment context targets resource group '{context.resource_group}', "
            f"not '{config.resource_group}'. Re-run provisioning for this resource group."
        )
    if config.enable_extended_features and not context.deployed_genai:
        logger.warning(
            "GenAI was requested but the provisioned infrastructure does not include it. "
            "Re-run provisioning with --enable-genai to deploy it."
        )

    with tempfile.TemporaryDirectory(prefix="azp-") as work_dir:
        archive = package_application(package, Path(work_dir))
        try:
            runner.run(
                [
                    AZ_CLI,
                    "webapp",
                    "deploy",
                    "--resource-group",
                    context.resource_group,
                    "--name",
                    context.web_app_name,
                    "--src-path",
                    str(archive),
                    "--type",
                    "zip",
                    "-o",
                    "none",
                ]
            )
        except CommandError as e:
            raise AppDeploymentError(
                f"Could not deploy to web app '{context.web_app_name}': {e}"
            ) from e

    logger.info(
        "Deployed application",
        extra={"web_app": context.web_app_name, "app_url": context.app_url},
    )
    return context
