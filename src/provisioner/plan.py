"""Rendering of a compiled execution plan into one ARM deployment template.

Every plan node becomes a nested ``Microsoft.Resources/deployments`` resource
named ``module-<node>``. Ordering is carried by ``dependsOn``, data flow by
``reference()`` expressions, and conditional modules by ``condition``. The
control plane therefore receives the whole plan in a single submission.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from .dependency import ExecutionPlan, ModuleNode
from .environment import RunContext
from .models import DeploymentParameter, parse_binding
from .spec_loader import SpecLoadError, load_template

logger = logging.getLogger(__name__)

DEPLOYMENT_TEMPLATE_SCHEMA = (
    "https://schema.management.azure.com/schemas/2019-04-01/deploymentTemplate.json#"
)
NESTED_DEPLOYMENT_TYPE = "Microsoft.Resources/deployments"
NESTED_DEPLOYMENT_API_VERSION = "2022-09-01"
MODULE_DEPLOYMENT_PREFIX = "module-"

PARAMETER_TYPES: dict[DeploymentParameter, str] = {
    DeploymentParameter.LOCATION: "string",
    DeploymentParameter.BASE_NAME: "string",
    DeploymentParameter.ACTING_PRINCIPAL_ID: "string",
    DeploymentParameter.ACTING_PRINCIPAL_NAME: "string",
    DeploymentParameter.PRINCIPAL_KIND: "string",
    DeploymentParameter.ENABLE_EXTENDED_FEATURES: "bool",
}


def module_deployment_name(node_name: str) -> str:
    return f"{MODULE_DEPLOYMENT_PREFIX}{node_name}"


def _deployment_id(node_name: str) -> str:
    return f"[resourceId('{NESTED_DEPLOYMENT_TYPE}', '{module_deployment_name(node_name)}')]"


def _output_expression(node_name: str, output: str) -> str:
    return (
        f"[reference(resourceId('{NESTED_DEPLOYMENT_TYPE}', "
        f"'{module_deployment_name(node_name)}')).outputs.{output}.value]"
    )


def binding_expression(binding: str) -> str:
    """Translate an input binding into an ARM template expression."""
    source, name = parse_binding(binding)
    if source is None:
        return f"[parameters('{name}')]"
    return _output_expression(source, name)


def _check_template_contract(node: ModuleNode, template: Mapping[str, Any]) -> None:
    """Verify the compiled template accepts the node's inputs and yields its outputs.

    Raises:
        SpecLoadError: If a parameter or output is missing from the template.
    """
    parameters = template.get("parameters") or {}
    outputs = template.get("outputs") or {}

    unknown_inputs = sorted(p for p, _ in node.inputs if p not in parameters)
    if unknown_inputs:
        raise SpecLoadError(
            f"Template '{node.template}' for module '{node.name}' "
            f"does not declare parameters: {unknown_inputs}"
        )

    missing_outputs = sorted(o for o in node.declared_outputs if o not in outputs)
    if missing_outputs:
        raise SpecLoadError(
            f"Template '{node.template}' for module '{node.name}' "
            f"does not declare outputs: {missing_outputs}"
        )


def _nested_deployment(node: ModuleNode, template: dict[str, Any]) -> dict[str, Any]:
    resource: dict[str, Any] = {
        "type": NESTED_DEPLOYMENT_TYPE,
        "apiVersion": NESTED_DEPLOYMENT_API_VERSION,
        "name": module_deployment_name(node.name),
    }
    if node.condition:
        resource["condition"] = f"[parameters('{node.condition}')]"
    if node.depends_on:
        resource["dependsOn"] = [_deployment_id(dep) for dep in sorted(node.depends_on)]
    resource["properties"] = {
        "mode": "Incremental",
        "expressionEvaluationOptions": {"scope": "inner"},
        "template": template,
        "parameters": {
            parameter: {"value": binding_expression(binding)} for parameter, binding in node.inputs
        },
    }
    return resource


def render_template(plan: ExecutionPlan, templates: Mapping[str, dict[str, Any]]) -> dict[str, Any]:
    """Render the plan as a single deployment template.

    Args:
        plan: Compiled, topologically sorted plan.
        templates: Template name -> compiled ARM template.

    Returns:
        ARM deployment template.

    Raises:
        SpecLoadError: If a node's template is missing or violates its contract.
    """
    resources = []
    outputs: dict[str, Any] = {}

    for node in plan.nodes:
        template = templates.get(node.template)
        if template is None:
            raise SpecLoadError(f"No template loaded for module '{node.name}': {node.template}")
        _check_template_contract(node, template)
        resources.append(_nested_deployment(node, template))

        template_outputs = template.get("outputs") or {}
        for export_name, output in node.exports:
            exported: dict[str, Any] = {
                "type": template_outputs.get(output, {}).get("type", "string"),
                "value": _output_expression(node.name, output),
            }
            if node.condition:
                exported["condition"] = f"[parameters('{node.condition}')]"
            outputs[export_name] = exported

    return {
        "$schema": DEPLOYMENT_TEMPLATE_SCHEMA,
        "contentVersion": "1.0.0.0",
        "parameters": {p.value: {"type": t} for p, t in PARAMETER_TYPES.items()},
        "resources": resources,
        "outputs": outputs,
    }


def build_deployment_template(plan: ExecutionPlan, templates_dir: Path) -> dict[str, Any]:
    """Load every template the plan uses and render the deployment template.

    Raises:
        SpecLoadError: If a template cannot be loaded or violates its contract.
    """
    templates: dict[str, dict[str, Any]] = {}
    for node in plan.nodes:
        if node.template not in templates:
            templates[node.template] = load_template(templates_dir, node.template)

    template = render_template(plan, templates)
    logger.info(
        "Rendered deployment template",
        extra={"modules": len(plan.nodes), "templates": sorted(templates)},
    )
    return template


def build_parameters(
    run_context: RunContext,
    location: str,
    base_name: str,
    enable_extended_features: bool,
) -> dict[str, dict[str, Any]]:
    """Build the ARM parameter set for the provisioning deployment."""
    values: dict[DeploymentParameter, Any] = {
        DeploymentParameter.LOCATION: location,
        DeploymentParameter.BASE_NAME: base_name,
        DeploymentParameter.ACTING_PRINCIPAL_ID: run_context.principal_id,
        DeploymentParameter.ACTING_PRINCIPAL_NAME: run_context.principal_name,
        DeploymentParameter.PRINCIPAL_KIND: run_context.principal_kind.value,
        DeploymentParameter.ENABLE_EXTENDED_FEATURES: enable_extended_features,
    }
    return {parameter.value: {"value": value} for parameter, value in values.items()}
