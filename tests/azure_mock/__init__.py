"""Azure API Mock for Integration Testing.

This package provides mock implementations of the Azure Resource Manager APIs
and of the external command runner, so the provisioning pipeline can be
exercised without Azure connectivity.

Key Features:
- In-memory resource groups and deployment history
- Configurable submission outcomes (success, empty response, error, failure)
- Token credential simulation
- Recording command runner for az and sqlcmd

Usage:
    from azure_mock import FakeCommandRunner, MockAzureContext

    with MockAzureContext(outputs=SAMPLE_OUTPUTS) as ctx:
        runner = FakeCommandRunner()
        await Orchestrator(config, runner=runner).run()

        assert ctx.state.deployment_count == 1
"""

from .commands import FakeCommandRunner, RecordedCommand
from .context import MockAzureContext, mock_azure_context
from .credential import MockTokenCredential
from .resources import (
    DeploymentProvisioningState,
    MockResourceClient,
    MockResourceState,
    SubmitOutcome,
    arm_outputs,
)

__all__ = [
    "DeploymentProvisioningState",
    "FakeCommandRunner",
    "MockAzureContext",
    "MockResourceClient",
    "MockResourceState",
    "MockTokenCredential",
    "RecordedCommand",
    "SubmitOutcome",
    "arm_outputs",
    "mock_azure_context",
]
