"""Resource group create-if-absent."""

from __future__ import annotations

import logging
from typing import Any

from azure.core.exceptions import HttpResponseError
from azure.mgmt.resource.resources.models import ResourceGroup

logger = logging.getLogger(__name__)

MANAGED_BY_TAG = "azure-provisioner"


def normalize_region(region: str) -> str:
    """Normalize display names like 'West Europe' to 'westeurope'."""
    return region.replace(" ", "").lower()


def ensure_resource_group(
    client: Any,
    name: str,
    location: str,
    tags: dict[str, str] | None = None,
) -> bool:
    """Ensure the resource group exists.

    An existing group is left untouched, even if it lives in a different
    region; the mismatch is logged as a warning and not reconciled.

    Args:
        client: ResourceManagementClient.
        name: Resource group name.
        location: Desired region.
        tags: Tags applied when the group is created.

    Returns:
        True if the group was created, False if it already existed.

    Raises:
        HttpResponseError: If the control plane rejects the request.
    """
    if client.resource_groups.check_existence(name):
        existing = client.resource_groups.get(name)
        if normalize_region(existing.location or "") != normalize_region(location):
            logger.warning(
                f"Resource group '{name}' already exists in '{existing.location}', "
                f"not '{location}'. Resources will be deployed into the existing group; "
                "its region is not changed.",
                extra={
                    "resource_group": name,
                    "existing_location": existing.location,
                    "requested_location": location,
                },
            )
        else:
            logger.info(f"Resource group '{name}' already exists in {existing.location}")
        return False

    try:
        client.resource_groups.create_or_update(
            name,
            ResourceGroup(location=location, tags={**(tags or {}), "managedBy": MANAGED_BY_TAG}),
        )
    except HttpResponseError as e:
        logger.error(f"Failed to create resource group '{name}': {e}")
        raise

    logger.info(f"Resource group '{name}' created in {location}")
    return True
