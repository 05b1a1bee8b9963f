"""Deterministic local provider.

Simulates a cloud backend without any remote calls, so stacks can be planned
and applied end to end on a workstation or in CI. The provider is stateless:
identifiers and generated outputs are derived from the kind and the name, so
re-running a create yields the same result.
"""

from __future__ import annotations

import logging
from typing import Any

from ..diff import REMOVE, PropertyChange
from ..models import ResourceKind
from .base import FatalProviderError, ProviderResult

logger = logging.getLogger(__name__)

PROVIDER_ID_PREFIX = "local:"

# Outputs each kind reports after create/update
_GENERATED_OUTPUTS: dict[ResourceKind, tuple[str, ...]] = {
    ResourceKind.NETWORK: ("networkId",),
    ResourceKind.DATABASE: ("endpoint", "port"),
    ResourceKind.PROXY: ("endpoint",),
    ResourceKind.COMPUTE_SERVICE: ("serviceUrl",),
    ResourceKind.GATEWAY: ("invokeUrl",),
}

_DEFAULT_PORTS: dict[str, int] = {"postgres": 5432, "mysql": 3306}


def _parse_id(provider_id: str) -> tuple[ResourceKind, str]:
    if not provider_id.startswith(PROVIDER_ID_PREFIX):
        raise FatalProviderError(f"Not a local provider id: {provider_id}")
    kind_name, _, name = provider_id[len(PROVIDER_ID_PREFIX):].partition("/")
    try:
        kind = ResourceKind(kind_name)
    except ValueError:
        raise FatalProviderError(f"Unknown resource kind in provider id: {provider_id}") from None
    if not name:
        raise FatalProviderError(f"Missing resource name in provider id: {provider_id}")
    return kind, name


def _outputs(kind: ResourceKind, name: str, properties: dict[str, Any]) -> dict[str, Any]:
    outputs: dict[str, Any] = {}
    for key in _GENERATED_OUTPUTS[kind]:
        if key == "networkId":
            outputs[key] = f"net-{name}"
        elif key == "endpoint":
            outputs[key] = f"{name}.local"
        elif key == "port":
            outputs[key] = _DEFAULT_PORTS.get(str(properties.get("engine", "")).lower(), 5432)
        elif key == "serviceUrl":
            outputs[key] = f"http://{name}.svc.local"
        elif key == "invokeUrl":
            outputs[key] = f"https://{name}.gateway.local"
    return outputs


class LocalProvider:
    """Stateless provider for every resource kind."""

    def create(self, kind: ResourceKind, properties: dict[str, Any], *, name: str) -> ProviderResult:
        provider_id = f"{PROVIDER_ID_PREFIX}{kind.value}/{name}"
        logger.info("Creating resource", extra={"provider_id": provider_id})
        return ProviderResult(
            provider_id=provider_id,
            properties={**properties, **_outputs(kind, name, properties)},
        )

    def update(self, provider_id: str, diff: list[PropertyChange]) -> dict[str, Any]:
        kind, name = _parse_id(provider_id)
        logger.info(
            "Updating resource",
            extra={"provider_id": provider_id, "keys": [change.key for change in diff]},
        )
        changed = {change.key: change.after for change in diff if change.action != REMOVE}
        outputs = _outputs(kind, name, changed)
        if "engine" not in changed:
            outputs.pop("port", None)
        return {**changed, **outputs}

    def delete(self, provider_id: str) -> None:
        _parse_id(provider_id)
        logger.info("Deleting resource", extra={"provider_id": provider_id})
