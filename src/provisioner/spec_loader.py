"""Module graph, template and script loading with validation.

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import (
    MAX_SCRIPT_FILE_SIZE_BYTES,
    MAX_SPEC_FILE_SIZE_BYTES,
    MAX_TEMPLATE_FILE_SIZE_BYTES,
)
from .models import InfrastructureSpec

logger = logging.getLogger(__name__)

SCRIPT_SUFFIX = ".sql"


class SpecLoadError(Exception):
    """Raised when a module graph, template or script cannot be loaded."""

    pass


def _read_bounded(path: Path, max_bytes: int, kind: str) -> str:
    """Read a UTF-8 file after checking its size.

    Raises:
        SpecLoadError: If the file is missing, too large or unreadable.
    """
    if not path.is_file():
        raise SpecLoadError(f"{kind} not found: {path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat {kind.lower()} {path}: {e}") from e

    if file_size > max_bytes:
        raise SpecLoadError(f"{kind} exceeds maximum size of {max_bytes} bytes: {path}")

    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise SpecLoadError(f"Failed to read {kind.lower()} {path}: {e}") from e


def load_module_graph(path: Path) -> InfrastructureSpec:
    """Load and validate the static module graph from YAML.

    Args:
        path: Path to ``modules.yaml``.

    Returns:
        Validated module graph.

    Raises:
        SpecLoadError: If the file cannot be loaded or fails validation.
    """
    content = _read_bounded(path, MAX_SPEC_FILE_SIZE_BYTES, "Module graph file")

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Module graph file must contain a YAML mapping: {path}")

    try:
        spec = InfrastructureSpec.model_validate(raw_data)
    except ValidationError as e:
        # Format Pydantic validation errors for readability
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            msg = error["msg"]
            errors.append(f"  - {loc}: {msg}" if loc else f"  - {msg}")

        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {path}:\n{error_list}") from e

    logger.info("Loaded module graph with %d modules from %s", len(spec.modules), path)
    return spec


def load_template(templates_dir: Path, name: str) -> dict[str, Any]:
    """Load a compiled ARM template JSON.

    Args:
        templates_dir: Directory containing compiled ARM JSON templates.
        name: Template name without extension (e.g. "app-service").

    Returns:
        Parsed ARM template as a dictionary.

    Raises:
        SpecLoadError: If the template cannot be loaded.
    """
    template_path = templates_dir / f"{name}.json"
    content = _read_bounded(template_path, MAX_TEMPLATE_FILE_SIZE_BYTES, "Template file")

    try:
        template = json.loads(content)
    except json.JSONDecodeError as e:
        raise SpecLoadError(f"Invalid JSON in {template_path}: {e}") from e

    if not isinstance(template, dict):
        raise SpecLoadError(f"Template must be a JSON object: {template_path}")

    logger.debug("Loaded template '%s' from %s", name, template_path)
    return template


def discover_scripts(directory: Path) -> list[Path]:
    """List the ``*.sql`` scripts of a directory in execution (name) order.

    A missing directory yields no scripts and a warning.
    """
    if not directory.is_dir():
        logger.warning("Script directory not found, skipping: %s", directory)
        return []
    return sorted(p for p in directory.iterdir() if p.is_file() and p.suffix == SCRIPT_SUFFIX)


def read_script(path: Path) -> str:
    """Read a SQL script.

    Raises:
        SpecLoadError: If the script is too large or unreadable.
    """
    return _read_bounded(path, MAX_SCRIPT_FILE_SIZE_BYTES, "Script file")
