"""Azure Mock Context for integration testing.

Provides a context manager that patches Azure SDK components with mock implementations.
"""

from __future__ import annotations

from collections.abc import Generator
from contextlib import contextmanager
from typing import Any
from unittest import mock

from .credential import MockTokenCredential
from .resources import MockResourceClient, MockResourceState, SubmitOutcome


class MockAzureContext:
    """Context manager for Azure API mocking in integration tests.

    Patches:
    - provisioner.security.AzureCliCredential / DefaultAzureCredential -> MockTokenCredential
    - provisioner.orchestrator.ResourceManagementClient -> MockResourceClient

    Usage:
        with MockAzureContext(outputs=SAMPLE_OUTPUTS) as ctx:
            await Orchestrator(config, runner=runner).run()

            assert ctx.state.deployment_count == 1
    """

    def __init__(
        self,
        *,
        outputs: dict[str, Any] | None = None,
        submit_outcome: SubmitOutcome = SubmitOutcome.SUCCEED,
        existing_resource_groups: dict[str, str] | None = None,
    ) -> None:
        """Initialize mock context.

        Args:
            outputs: Plain output values recorded on successful deployments.
            submit_outcome: How submissions behave.
            existing_resource_groups: Resource group name -> location to pre-create.
        """
        self._outputs = outputs or {}
        self._submit_outcome = submit_outcome
        self._existing_resource_groups = existing_resource_groups or {}

        # These are set when context is entered
        self._state: MockResourceState | None = None
        self._patches: list[Any] = []
        self.credentials: list[MockTokenCredential] = []
        self.clients: list[MockResourceClient] = []

    @property
    def state(self) -> MockResourceState:
        """Get the mock resource state.

        Raises:
            RuntimeError: If accessed outside of context.
        """
        if self._state is None:
            raise RuntimeError("MockAzureContext must be used as a context manager")
        return self._state

    def __enter__(self) -> MockAzureContext:
        """Enter the mock context, applying patches."""
        self._state = MockResourceState()
        self._state.submit_outcome = self._submit_outcome
        self._state.deployment_outputs = dict(self._outputs)
        for name, location in self._existing_resource_groups.items():
            self._state.add_resource_group(name, location)

        def create_credential(kind: str) -> Any:
            def factory(*args: Any, **kwargs: Any) -> MockTokenCredential:
                credential = MockTokenCredential(kind)
                self.credentials.append(credential)
                return credential

            return factory

        def create_mock_client(credential: Any, subscription_id: str) -> MockResourceClient:
            client = MockResourceClient(state=self.state, subscription_id=subscription_id)
            self.clients.append(client)
            return client

        self._patches = [
            mock.patch(
                "provisioner.security.AzureCliCredential", side_effect=create_credential("cli")
            ),
            mock.patch(
                "provisioner.security.DefaultAzureCredential",
                side_effect=create_credential("default"),
            ),
            mock.patch(
                "provisioner.orchestrator.ResourceManagementClient",
                side_effect=create_mock_client,
            ),
        ]

        for patch in self._patches:
            patch.start()

        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Exit the mock context, removing patches."""
        for patch in reversed(self._patches):
            patch.stop()
        self._patches.clear()


@contextmanager
def mock_azure_context(**kwargs: Any) -> Generator[MockAzureContext, None, None]:
    """Convenience function for creating a mock Azure context."""
    with MockAzureContext(**kwargs) as ctx:
        yield ctx
