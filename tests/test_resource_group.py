"""Tests for resource group create-if-absent."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from azure.core.exceptions import HttpResponseError
from azure_mock import MockResourceClient, MockResourceState

from provisioner.resource_group import MANAGED_BY_TAG, ensure_resource_group, normalize_region


@pytest.fixture
def state() -> MockResourceState:
    return MockResourceState()


@pytest.fixture
def client(state: MockResourceState) -> MockResourceClient:
    return MockResourceClient(state, "00000000-0000-0000-0000-000000000000")


class TestEnsureResourceGroup:
    """Tests for ensure_resource_group."""

    def test_creates_missing_group(self, state: MockResourceState, client: MockResourceClient) -> None:
        assert ensure_resource_group(client, "rg-expenses", "uksouth") is True

        group = state.resource_groups["rg-expenses"]
        assert group.location == "uksouth"
        assert group.tags["managedBy"] == MANAGED_BY_TAG

    def test_existing_group_untouched(
        self, state: MockResourceState, client: MockResourceClient
    ) -> None:
        """Test that a second run does not recreate the group."""
        state.add_resource_group("rg-expenses", "uksouth")

        assert ensure_resource_group(client, "RG-Expenses", "uksouth") is False
        assert state.resource_group_creations == 0

    def test_region_mismatch_is_a_warning(
        self,
        state: MockResourceState,
        client: MockResourceClient,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """Test that an existing group in another region is reused, not moved."""
        state.add_resource_group("rg-expenses", "westeurope")

        created = ensure_resource_group(client, "rg-expenses", "uksouth")

        assert created is False
        assert state.resource_groups["rg-expenses"].location == "westeurope"
        assert "already exists in 'westeurope'" in caplog.text

    def test_display_name_region_matches(
        self,
        state: MockResourceState,
        client: MockResourceClient,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        state.add_resource_group("rg-expenses", "UK South")

        ensure_resource_group(client, "rg-expenses", "uksouth")

        assert "not 'uksouth'" not in caplog.text

    def test_create_failure_propagates(self) -> None:
        client = MagicMock()
        client.resource_groups.check_existence.return_value = False
        client.resource_groups.create_or_update.side_effect = HttpResponseError(
            message="AuthorizationFailed"
        )

        with pytest.raises(HttpResponseError):
            ensure_resource_group(client, "rg-expenses", "uksouth")


class TestNormalizeRegion:
    def test_display_name(self) -> None:
        assert normalize_region("West Europe") == "westeurope"
