"""Configuration management with validation.

All inputs are validated at construction time so a bad flag or environment
value fails the run before any Azure call is made.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_BASE_NAME = "expensemgmt"
DEFAULT_MODULES_FILE = "infra/modules.yaml"
DEFAULT_TEMPLATES_DIR = "infra/templates"
DEFAULT_SCHEMA_DIR = "database/schema"
DEFAULT_PROCEDURES_DIR = "database/procedures"
DEFAULT_CONTEXT_FILENAME = ".deployment-context.json"

# Policy evaluations may still be converging when a deployment reports failure
DEFAULT_RECOVERY_GRACE_SECONDS = 15
MAX_RECOVERY_GRACE_SECONDS = 300

# SQL server startup is asynchronous; fixed delay before the first connection
DEFAULT_READINESS_DELAY_SECONDS = 30
MAX_READINESS_DELAY_SECONDS = 600

# Security constraints - enforced limits to prevent abuse
MAX_SPEC_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max module graph file
MAX_TEMPLATE_FILE_SIZE_BYTES = 10 * 1024 * 1024  # 10MB max ARM template
MAX_SCRIPT_FILE_SIZE_BYTES = 5 * 1024 * 1024  # 5MB max SQL script
MAX_DEPLOYMENT_NAME_LENGTH = 64
MAX_RESOURCE_GROUP_NAME_LENGTH = 90
MAX_BASE_NAME_LENGTH = 20

# Input validation patterns
VALID_RESOURCE_GROUP_PATTERN = r"^[-\w._()]+$"
VALID_LOCATION_PATTERN = r"^[a-z]{2,}[a-z0-9]*$"
VALID_BASE_NAME_PATTERN = r"^[a-z][a-z0-9]{1,19}$"
VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"


def get_int(key: str, default: int) -> int:
    value = os.environ.get(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError as e:
        raise ConfigurationError(f"{key} must be an integer: {value}") from e


def get_bool(key: str, default: bool) -> bool:
    value = os.environ.get(key, "").lower()
    if not value:
        return default
    return value in ("true", "1", "yes")


@dataclass(frozen=True)
class Config:
    """Provisioning configuration built from CLI flags and environment.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-run.
    """

    # Required fields
    resource_group: str
    location: str

    base_name: str = DEFAULT_BASE_NAME
    enable_extended_features: bool = False

    # Paths
    modules_file: Path = field(default_factory=lambda: Path(DEFAULT_MODULES_FILE))
    templates_dir: Path = field(default_factory=lambda: Path(DEFAULT_TEMPLATES_DIR))
    schema_dir: Path = field(default_factory=lambda: Path(DEFAULT_SCHEMA_DIR))
    procedures_dir: Path = field(default_factory=lambda: Path(DEFAULT_PROCEDURES_DIR))
    context_filename: str = DEFAULT_CONTEXT_FILENAME

    # Timing
    recovery_grace_seconds: int = DEFAULT_RECOVERY_GRACE_SECONDS
    readiness_delay_seconds: int = DEFAULT_READINESS_DELAY_SECONDS

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        errors: list[str] = []

        if not self.resource_group:
            errors.append("--resource-group is required")
        elif len(self.resource_group) > MAX_RESOURCE_GROUP_NAME_LENGTH:
            errors.append(
                f"Resource group name exceeds maximum length of {MAX_RESOURCE_GROUP_NAME_LENGTH}"
            )
        elif not re.match(VALID_RESOURCE_GROUP_PATTERN, self.resource_group) or (
            self.resource_group.endswith(".")
        ):
            errors.append(f"Resource group name is not valid: {self.resource_group}")

        if not self.location:
            errors.append("--location is required")
        elif not re.match(VALID_LOCATION_PATTERN, self.location.lower()):
            errors.append(f"Location must be a valid Azure region: {self.location}")

        if not re.match(VALID_BASE_NAME_PATTERN, self.base_name):
            errors.append(
                f"Base name must be 2-{MAX_BASE_NAME_LENGTH} lowercase letters/digits "
                f"starting with a letter: {self.base_name}"
            )

        if not (0 <= self.recovery_grace_seconds <= MAX_RECOVERY_GRACE_SECONDS):
            errors.append(
                f"PROVISIONER_RECOVERY_GRACE must be between 0 and {MAX_RECOVERY_GRACE_SECONDS}"
            )

        if not (0 <= self.readiness_delay_seconds <= MAX_READINESS_DELAY_SECONDS):
            errors.append(
                f"PROVISIONER_READINESS_DELAY must be between 0 and {MAX_READINESS_DELAY_SECONDS}"
            )

        if not self.context_filename or Path(self.context_filename).name != self.context_filename:
            errors.append(f"Context filename must be a bare file name: {self.context_filename}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def normalized_location(self) -> str:
        return self.location.lower()

    @classmethod
    def from_options(
        cls,
        resource_group: str,
        location: str,
        base_name: str = DEFAULT_BASE_NAME,
        enable_extended_features: bool | None = None,
    ) -> Config:
        """Build configuration from CLI options plus environment overrides.

        Environment Variables:
            PROVISIONER_MODULES_FILE: Module graph YAML (default: infra/modules.yaml)
            PROVISIONER_TEMPLATES_DIR: Compiled ARM templates (default: infra/templates)
            PROVISIONER_SCHEMA_DIR: Schema scripts (default: database/schema)
            PROVISIONER_PROCEDURES_DIR: Stored procedure scripts (default: database/procedures)
            PROVISIONER_RECOVERY_GRACE: Seconds before reconciliation (default: 15)
            PROVISIONER_READINESS_DELAY: Seconds to wait for SQL startup (default: 30)
            PROVISIONER_ENABLE_GENAI: Extended features flag when no option is given
        """
        return cls(
            resource_group=resource_group,
            location=location,
            base_name=base_name,
            enable_extended_features=(
                get_bool("PROVISIONER_ENABLE_GENAI", False)
                if enable_extended_features is None
                else enable_extended_features
            ),
            modules_file=Path(os.environ.get("PROVISIONER_MODULES_FILE", DEFAULT_MODULES_FILE)),
            templates_dir=Path(
                os.environ.get("PROVISIONER_TEMPLATES_DIR", DEFAULT_TEMPLATES_DIR)
            ),
            schema_dir=Path(os.environ.get("PROVISIONER_SCHEMA_DIR", DEFAULT_SCHEMA_DIR)),
            procedures_dir=Path(
                os.environ.get("PROVISIONER_PROCEDURES_DIR", DEFAULT_PROCEDURES_DIR)
            ),
            recovery_grace_seconds=get_int(
                "PROVISIONER_RECOVERY_GRACE", DEFAULT_RECOVERY_GRACE_SECONDS
            ),
            readiness_delay_seconds=get_int(
                "PROVISIONER_READINESS_DELAY", DEFAULT_READINESS_DELAY_SECONDS
            ),
        )
