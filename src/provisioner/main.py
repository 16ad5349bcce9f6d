"""Entry points for the provisioning and application deployment stages.

SECRETLESS ARCHITECTURE:
- Operators authenticate with ``az login``; pipelines with a federated principal
- The deployed application reaches SQL with its managed identity
- No password, client secret or SQL login is created, stored or read

Exit codes: 0 success, 1 failure, 2 security violation.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from datetime import UTC, datetime
from pathlib import Path

from .app_deployment import AppDeploymentError, deploy_application
from .commands import CommandError, CommandRunner
from .config import Config, ConfigurationError
from .context import ContextNotFoundError
from .orchestrator import Orchestrator, ProvisioningError
from .security import SecretlessViolationError, enforce_secretless_architecture

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_SECURITY_VIOLATION = 2

# LogRecord attributes that are not user-supplied extra fields
_RESERVED_RECORD_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(log_format: str = "json", verbose: bool = False) -> None:
    """Configure logging on stderr; stdout is reserved for command output."""
    handler = logging.StreamHandler(sys.stderr)
    if log_format == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(levelname)-8s %(message)s"))

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.DEBUG if verbose else logging.INFO)

    # Reduce noise from Azure SDK and HTTP clients
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


async def run_provisioning(config: Config, orchestrator: Orchestrator | None = None) -> int:
    """Run the provisioning pipeline and map the outcome to an exit code."""
    logger = logging.getLogger(__name__)
    logger.info(
        "Starting infrastructure provisioning",
        extra={
            "resource_group": config.resource_group,
            "location": config.normalized_location,
            "base_name": config.base_name,
            "genai": config.enable_extended_features,
        },
    )

    try:
        result = await (orchestrator or Orchestrator(config)).run()
    except SecretlessViolationError as e:
        # SECURITY: Credential detected in environment - fatal security error
        logger.critical(
            "Security violation: credentials detected in environment",
            extra={"error": str(e)},
        )
        return EXIT_SECURITY_VIOLATION
    except ProvisioningError as e:
        logger.error(
            "Provisioning stopped",
            extra={"step": e.step.value, "error": str(e.cause)},
        )
        return EXIT_FAILURE
    except Exception as e:
        # Unexpected error - log with full traceback for debugging
        logger.exception("Provisioning failed unexpectedly", extra={"error": str(e)})
        return EXIT_FAILURE

    if result.context_path is not None:
        print(f"Deployment context written to {result.context_path}")
    for warning in result.warnings:
        print(f"warning: {warning}", file=sys.stderr)
    return EXIT_SUCCESS


def run_app_deployment(
    config: Config,
    package: Path,
    runner: CommandRunner | None = None,
    start: Path | None = None,
) -> int:
    """Run the application deployment stage and map the outcome to an exit code."""
    logger = logging.getLogger(__name__)

    try:
        enforce_secretless_architecture()
        context = deploy_application(runner or CommandRunner(), config, package, start)
    except SecretlessViolationError as e:
        logger.critical(
            "Security violation: credentials detected in environment",
            extra={"error": str(e)},
        )
        return EXIT_SECURITY_VIOLATION
    except (ContextNotFoundError, AppDeploymentError, ConfigurationError, CommandError) as e:
        logger.error("Application deployment failed", extra={"error": str(e)})
        return EXIT_FAILURE
    except Exception as e:
        logger.exception("Application deployment failed unexpectedly", extra={"error": str(e)})
        return EXIT_FAILURE

    print(f"Application deployed: {context.app_url}")
    return EXIT_SUCCESS


def provision(config: Config) -> int:
    """Synchronous wrapper for the provisioning pipeline."""
    return asyncio.run(run_provisioning(config))
