"""Pydantic models for the infrastructure module graph.

These models provide:
1. Type-safe YAML parsing of ``infra/modules.yaml``
2. Validation at the boundary (fail fast, fail loudly)
3. The static graph the dependency compiler turns into an execution plan

Input bindings are strings of two forms:
- ``$location``: a top-level deployment parameter
- ``telemetry.connectionString``: an output of another module
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Annotated

from pydantic import BaseModel, Field, field_validator, model_validator

MODULE_NAME_PATTERN = r"^[a-z][a-z0-9-]{0,40}$"
IDENTIFIER_PATTERN = r"^[A-Za-z][A-Za-z0-9]*$"


class DeploymentParameter(str, Enum):
    """Top-level parameters passed to every provisioning deployment."""

    LOCATION = "location"
    BASE_NAME = "baseName"
    ACTING_PRINCIPAL_ID = "actingPrincipalId"
    ACTING_PRINCIPAL_NAME = "actingPrincipalName"
    PRINCIPAL_KIND = "principalKind"
    ENABLE_EXTENDED_FEATURES = "enableExtendedFeatures"


# Boolean parameters usable as a module condition
CONDITION_PARAMETERS: frozenset[str] = frozenset(
    {DeploymentParameter.ENABLE_EXTENDED_FEATURES.value}
)


class OutputName(str, Enum):
    """Deployment outputs consumed after provisioning."""

    WEB_APP_NAME = "webAppName"
    WEB_APP_HOSTNAME = "webAppHostname"
    SQL_SERVER_FQDN = "sqlServerFqdn"
    DATABASE_NAME = "databaseName"
    MANAGED_IDENTITY_CLIENT_ID = "managedIdentityClientId"
    MANAGED_IDENTITY_PRINCIPAL_ID = "managedIdentityPrincipalId"
    MANAGED_IDENTITY_NAME = "managedIdentityName"
    APP_INSIGHTS_CONNECTION_STRING = "appInsightsConnectionString"
    OPENAI_ENDPOINT = "openAIEndpoint"
    OPENAI_MODEL_NAME = "openAIModelName"


EXTENDED_OUTPUTS: frozenset[OutputName] = frozenset(
    {OutputName.OPENAI_ENDPOINT, OutputName.OPENAI_MODEL_NAME}
)
REQUIRED_OUTPUTS: frozenset[OutputName] = frozenset(OutputName) - EXTENDED_OUTPUTS


def parse_binding(value: str) -> tuple[str | None, str]:
    """Split an input binding into (module, output).

    Returns (None, parameter) for ``$parameter`` bindings.

    Raises:
        ValueError: If the binding is malformed.
    """
    if value.startswith("$"):
        parameter = value[1:]
        valid = {p.value for p in DeploymentParameter}
        if parameter not in valid:
            raise ValueError(f"Unknown parameter '{value}'. Valid parameters: {sorted(valid)}")
        return None, parameter

    module, sep, output = value.partition(".")
    if not sep or not module or not output:
        raise ValueError(
            f"Invalid binding '{value}'. Use '$parameter' or 'module.output'."
        )
    return module, output


class AttachmentSpec(BaseModel):
    """Phase that attaches metadata (e.g. diagnostic settings) onto another module."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    name: Annotated[str, Field(pattern=MODULE_NAME_PATTERN)]
    template: Annotated[str, Field(min_length=1)]
    inputs: dict[str, str] = Field(default_factory=dict)


class ModuleSpec(BaseModel):
    """A single deployable module backed by a compiled ARM template."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    name: Annotated[str, Field(pattern=MODULE_NAME_PATTERN)]
    template: Annotated[str, Field(min_length=1)]
    inputs: dict[str, str] = Field(default_factory=dict)
    outputs: list[str] = Field(default_factory=list)

    # Deployment output name -> this module's output
    exports: dict[str, str] = Field(default_factory=dict)

    # Deploy only when this boolean parameter is true
    condition: str | None = None

    # Modules this one attaches metadata onto once they exist
    attaches_to: list[str] = Field(default_factory=list, alias="attachesTo")
    attachment: AttachmentSpec | None = None

    @field_validator("outputs")
    @classmethod
    def validate_outputs(cls, v: list[str]) -> list[str]:
        for output in v:
            if not re.match(IDENTIFIER_PATTERN, output):
                raise ValueError(f"Output names must be identifiers: {output!r}")
        if len(set(v)) != len(v):
            raise ValueError("Output names must be unique")
        return v

    @field_validator("condition")
    @classmethod
    def validate_condition(cls, v: str | None) -> str | None:
        if v is not None and v not in CONDITION_PARAMETERS:
            raise ValueError(f"condition must be one of {sorted(CONDITION_PARAMETERS)}")
        return v

    @model_validator(mode="after")
    def validate_module(self) -> ModuleSpec:
        bindings = list(self.inputs.values())
        if self.attachment is not None:
            bindings.extend(self.attachment.inputs.values())
        for binding in bindings:
            parse_binding(binding)

        for export_name, output in self.exports.items():
            if output not in self.outputs:
                raise ValueError(
                    f"Export '{export_name}' refers to undeclared output '{output}'"
                )

        if self.attachment is not None and not self.attaches_to:
            raise ValueError("attachment requires attachesTo")
        if self.name in self.attaches_to:
            raise ValueError("A module cannot attach onto itself")
        return self


class InfrastructureSpec(BaseModel):
    """The full static module graph."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    modules: list[ModuleSpec] = Field(min_length=1)

    @model_validator(mode="after")
    def validate_graph(self) -> InfrastructureSpec:
        by_name: dict[str, ModuleSpec] = {}
        for module in self.modules:
            if module.name in by_name:
                raise ValueError(f"Duplicate module name '{module.name}'")
            by_name[module.name] = module

        attachment_names = {m.attachment.name for m in self.modules if m.attachment}
        reserved = set(by_name) | {f"{n}-core" for n in by_name}
        clashes = attachment_names & reserved
        if clashes:
            raise ValueError(f"Attachment names clash with module names: {sorted(clashes)}")

        for module in self.modules:
            bindings = list(module.inputs.values())
            if module.attachment:
                bindings.extend(module.attachment.inputs.values())
            for binding in bindings:
                source, output = parse_binding(binding)
                if source is None:
                    continue
                if source not in by_name:
                    raise ValueError(f"Module '{module.name}' references unknown module '{source}'")
                if output not in by_name[source].outputs:
                    raise ValueError(
                        f"Module '{module.name}' references undeclared output '{binding}'"
                    )
                if by_name[source].condition and by_name[source].condition != module.condition:
                    raise ValueError(
                        f"Module '{module.name}' cannot consume '{binding}': "
                        f"'{source}' is only deployed when {by_name[source].condition} is true"
                    )
            for target in module.attaches_to:
                if target not in by_name:
                    raise ValueError(f"Module '{module.name}' attaches to unknown module '{target}'")

        exported: dict[str, str] = {}
        for module in self.modules:
            for export_name in module.exports:
                if export_name in exported:
                    raise ValueError(
                        f"Output '{export_name}' exported by both "
                        f"'{exported[export_name]}' and '{module.name}'"
                    )
                exported[export_name] = module.name

        missing = sorted(o.value for o in REQUIRED_OUTPUTS if o.value not in exported)
        if missing:
            raise ValueError(f"Module graph does not export required outputs: {missing}")

        for output in EXTENDED_OUTPUTS:
            if output.value in exported and by_name[exported[output.value]].condition is None:
                raise ValueError(
                    f"Output '{output.value}' must come from a module with a condition"
                )
        return self

    def get_module(self, name: str) -> ModuleSpec:
        for module in self.modules:
            if module.name == name:
                return module
        raise KeyError(name)
