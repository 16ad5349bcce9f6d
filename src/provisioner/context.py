"""Deployment context handoff between provisioning and application deployment.

Provisioning writes ``.deployment-context.json`` at the project root when it
succeeds; the application deployment stage reads it in a separate process.
The file is overwritten on every successful run. Extended-feature fields are
absent, not null, when extended features are disabled.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError, model_validator

from .config import DEFAULT_CONTEXT_FILENAME
from .deployment import DeploymentOutputs

logger = logging.getLogger(__name__)


class ContextNotFoundError(Exception):
    """Raised when no deployment context file can be found or parsed."""

    pass


class DeploymentContext(BaseModel):
    """Contract of the context file."""

    model_config = {"populate_by_name": True, "extra": "ignore", "frozen": True}

    resource_group: str = Field(alias="resourceGroup")
    web_app_name: str = Field(alias="webAppName")
    web_app_hostname: str = Field(alias="webAppHostname")
    sql_server_fqdn: str = Field(alias="sqlServerFqdn")
    database_name: str = Field(alias="databaseName")
    managed_identity_client_id: str = Field(alias="managedIdentityClientId")
    managed_identity_name: str = Field(alias="managedIdentityName")
    app_insights_connection_string: str = Field(alias="appInsightsConnectionString")
    deployed_genai: bool = Field(alias="deployedGenAI")
    openai_endpoint: str | None = Field(None, alias="openAIEndpoint")
    openai_model_name: str | None = Field(None, alias="openAIModelName")
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC), alias="createdAt")

    @model_validator(mode="after")
    def validate_extended_fields(self) -> DeploymentContext:
        has_extended = self.openai_endpoint is not None and self.openai_model_name is not None
        if self.deployed_genai and not has_extended:
            raise ValueError("deployedGenAI is true but the OpenAI endpoint or model is missing")
        if not self.deployed_genai and (
            self.openai_endpoint is not None or self.openai_model_name is not None
        ):
            raise ValueError("OpenAI fields are only allowed when deployedGenAI is true")
        return self

    @property
    def app_url(self) -> str:
        return f"https://{self.web_app_hostname}"

    @classmethod
    def from_outputs(cls, resource_group: str, outputs: DeploymentOutputs) -> DeploymentContext:
        return cls(
            resource_group=resource_group,
            web_app_name=outputs.web_app_name,
            web_app_hostname=outputs.web_app_hostname,
            sql_server_fqdn=outputs.sql_server_fqdn,
            database_name=outputs.database_name,
            managed_identity_client_id=outputs.managed_identity_client_id,
            managed_identity_name=outputs.managed_identity_name,
            app_insights_connection_string=outputs.app_insights_connection_string,
            deployed_genai=outputs.has_extended_features,
            openai_endpoint=outputs.openai_endpoint,
            openai_model_name=outputs.openai_model_name,
        )

    def to_json(self) -> str:
        data = self.model_dump(mode="json", by_alias=True, exclude_none=True)
        return json.dumps(data, indent=2) + "\n"


def write_context(
    context: DeploymentContext,
    directory: Path | None = None,
    filename: str = DEFAULT_CONTEXT_FILENAME,
) -> Path:
    """Write (overwrite) the context file.

    Args:
        context: Context to write.
        directory: Project root; defaults to the current directory.
        filename: Context file name.

    Returns:
        Path of the written file.
    """
    path = (directory or Path.cwd()) / filename
    tmp_path = path.with_name(f"{path.name}.tmp")
    tmp_path.write_text(context.to_json(), encoding="utf-8")
    tmp_path.replace(path)

    logger.info("Wrote deployment context", extra={"path": str(path)})
    return path


def find_context_file(
    start: Path | None = None,
    filename: str = DEFAULT_CONTEXT_FILENAME,
) -> Path | None:
    """Look for the context file in ``start`` (default: cwd), then its parent."""
    base = (start or Path.cwd()).resolve()
    for directory in (base, base.parent):
        candidate = directory / filename
        if candidate.is_file():
            return candidate
    return None


def read_context(
    start: Path | None = None,
    filename: str = DEFAULT_CONTEXT_FILENAME,
) -> DeploymentContext:
    """Read and validate the context file.

    Raises:
        ContextNotFoundError: If the file is missing or invalid.
    """
    path = find_context_file(start, filename)
    if path is None:
        raise ContextNotFoundError(
            f"No {filename} found in the current or parent directory. "
            "Run 'azp provision-infrastructure' first."
        )

    try:
        context = DeploymentContext.model_validate_json(path.read_text(encoding="utf-8"))
    except (OSError, ValidationError) as e:
        raise ContextNotFoundError(f"Deployment context {path} is unreadable: {e}") from e

    logger.info("Loaded deployment context", extra={"path": str(path)})
    return context
