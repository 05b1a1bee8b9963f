"""Azure Resource Manager provider.

Maps each resource kind to an ARM resource type and drives it through the
generic resources API of azure-mgmt-resource, so no per-service SDK is
needed. Calls block until the long-running operation completes; the
executor runs them in a thread pool with a timeout.

SECURITY: Authenticates with a managed identity only. SecretRef locators are
forwarded as-is (e.g. Key Vault secret URIs); secret contents are never
fetched.
"""

from __future__ import annotations

import logging
from typing import Any

from azure.core.exceptions import (
    AzureError,
    HttpResponseError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceResponseError,
)
from azure.mgmt.resource.resources import ResourceManagementClient
from azure.mgmt.resource.resources.models import GenericResource

from ..config import ArmSettings
from ..diff import REMOVE, PropertyChange
from ..models import ResourceKind
from ..security import get_managed_identity_credential
from .base import FatalProviderError, ProviderResult, RetryableProviderError

logger = logging.getLogger(__name__)


# Resource type and API version per kind
ARM_RESOURCE_TYPES: dict[ResourceKind, tuple[str, str]] = {
    ResourceKind.NETWORK: ("Microsoft.Network/virtualNetworks", "2023-09-01"),
    ResourceKind.DATABASE: ("Microsoft.DBforPostgreSQL/flexibleServers", "2022-12-01"),
    ResourceKind.PROXY: ("Microsoft.Network/privateEndpoints", "2023-09-01"),
    ResourceKind.COMPUTE_SERVICE: ("Microsoft.App/containerApps", "2023-05-01"),
    ResourceKind.GATEWAY: ("Microsoft.ApiManagement/service", "2022-08-01"),
}

# HTTP statuses worth retrying
RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


def classify_azure_error(error: AzureError, operation: str) -> Exception:
    """Translate an Azure SDK error into the provider error taxonomy."""
    if isinstance(error, ServiceRequestError | ServiceResponseError):
        return RetryableProviderError(f"{operation} failed: transport error: {error}", cause=error)

    if isinstance(error, HttpResponseError):
        status = error.status_code
        if status is not None and (status in RETRYABLE_STATUS_CODES or status >= 500):
            return RetryableProviderError(f"{operation} failed ({status}): {error.message}", cause=error)
        return FatalProviderError(f"{operation} failed ({status}): {error.message}", cause=error)

    return FatalProviderError(f"{operation} failed: {error}", cause=error)


class ArmProvider:
    """Generic-resource provider for every resource kind."""

    def __init__(self, settings: ArmSettings, client: Any | None = None) -> None:
        """Initialize the provider.

        Args:
            settings: Subscription, resource group and location to deploy to.
            client: Pre-built ResourceManagementClient (tests); created with a
                managed identity credential when omitted.
        """
        self._settings = settings
        if client is None:
            credential = get_managed_identity_credential(settings.client_id)
            client = ResourceManagementClient(
                credential=credential,
                subscription_id=settings.subscription_id,
            )
        self._client = client

    def resource_id(self, kind: ResourceKind, name: str) -> str:
        resource_type, _ = ARM_RESOURCE_TYPES[kind]
        return (
            f"/subscriptions/{self._settings.subscription_id}"
            f"/resourceGroups/{self._settings.resource_group}"
            f"/providers/{resource_type}/{name}"
        )

    @staticmethod
    def _api_version(provider_id: str) -> str:
        lowered = provider_id.lower()
        for resource_type, api_version in ARM_RESOURCE_TYPES.values():
            if f"/providers/{resource_type.lower()}/" in lowered:
                return api_version
        raise FatalProviderError(f"Unsupported resource type in id: {provider_id}")

    def create(self, kind: ResourceKind, properties: dict[str, Any], *, name: str) -> ProviderResult:
        provider_id = self.resource_id(kind, name)
        _, api_version = ARM_RESOURCE_TYPES[kind]
        logger.info(
            "Creating ARM resource",
            extra={"resource_id": provider_id, "api_version": api_version},
        )

        try:
            poller = self._client.resources.begin_create_or_update_by_id(
                provider_id,
                api_version,
                GenericResource(location=self._settings.location, properties=properties),
            )
            resource = poller.result()
        except AzureError as e:
            raise classify_azure_error(e, f"Create {provider_id}") from e

        return ProviderResult(
            provider_id=getattr(resource, "id", None) or provider_id,
            properties=dict(getattr(resource, "properties", None) or properties),
        )

    def update(self, provider_id: str, diff: list[PropertyChange]) -> dict[str, Any]:
        api_version = self._api_version(provider_id)
        patch = {change.key: None if change.action == REMOVE else change.after for change in diff}
        logger.info(
            "Updating ARM resource",
            extra={"resource_id": provider_id, "keys": sorted(patch)},
        )

        try:
            poller = self._client.resources.begin_update_by_id(
                provider_id,
                api_version,
                GenericResource(properties=patch),
            )
            resource = poller.result()
        except AzureError as e:
            raise classify_azure_error(e, f"Update {provider_id}") from e

        return dict(getattr(resource, "properties", None) or patch)

    def delete(self, provider_id: str) -> None:
        api_version = self._api_version(provider_id)
        logger.info("Deleting ARM resource", extra={"resource_id": provider_id})

        try:
            poller = self._client.resources.begin_delete_by_id(provider_id, api_version)
            poller.result()
        except ResourceNotFoundError:
            logger.info("ARM resource already gone", extra={"resource_id": provider_id})
        except AzureError as e:
            raise classify_azure_error(e, f"Delete {provider_id}") from e
