"""Provider capability set and error taxonomy.

A provider performs the remote side of a plan operation for one or more
resource kinds. Provider calls are blocking (cloud SDKs poll long-running
operations); the executor runs them in a thread pool.

ERROR CONTRACT:
- RetryableProviderError: transient (throttling, 5xx, transport); retried
- FatalProviderError: the operation cannot succeed as requested; dependents halt
- Any other exception escaping a provider is treated as fatal
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from ..diff import PropertyChange
from ..models import ResourceKind


class ProviderError(Exception):
    """Base class for provider failures."""

    def __init__(self, message: str, node: str | None = None, cause: BaseException | None = None) -> None:
        self.node = node
        self.cause = cause
        super().__init__(message)


class RetryableProviderError(ProviderError):
    """Transient failure; the same call may succeed later."""

    pass


class FatalProviderError(ProviderError):
    """Permanent failure; retrying will not help."""

    pass


class MissingProviderError(Exception):
    """Raised when a plan contains a kind no provider is registered for."""

    def __init__(self, kinds: list[ResourceKind]) -> None:
        self.kinds = kinds
        names = ", ".join(kind.value for kind in kinds)
        super().__init__(f"No provider registered for resource kind(s): {names}")


@dataclass(frozen=True)
class ProviderResult:
    """Outcome of a successful create.

    Attributes:
        provider_id: Identifier the provider assigned to the resource.
        properties: Resource properties as reported by the provider,
            including generated outputs.
    """

    provider_id: str
    properties: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class ResourceProvider(Protocol):
    """Remote operations for one or more resource kinds.

    `properties` and `diff` values arrive with references already resolved;
    secrets still appear as `{secretRef: <locator>}` and must be passed
    through to the platform as locators.
    """

    def create(self, kind: ResourceKind, properties: dict[str, Any], *, name: str) -> ProviderResult:
        ...

    def update(self, provider_id: str, diff: list[PropertyChange]) -> dict[str, Any]:
        ...

    def delete(self, provider_id: str) -> None:
        ...


class ProviderRegistry:
    """Maps resource kinds to the provider responsible for them."""

    def __init__(self, providers: Mapping[ResourceKind, ResourceProvider] | None = None) -> None:
        self._providers: dict[ResourceKind, ResourceProvider] = dict(providers or {})

    @classmethod
    def uniform(cls, provider: ResourceProvider) -> ProviderRegistry:
        """Registry that routes every kind to the same provider."""
        return cls({kind: provider for kind in ResourceKind})

    def register(self, kind: ResourceKind, provider: ResourceProvider) -> None:
        self._providers[kind] = provider

    def __contains__(self, kind: object) -> bool:
        return kind in self._providers

    def for_kind(self, kind: ResourceKind) -> ResourceProvider:
        try:
            return self._providers[kind]
        except KeyError:
            raise MissingProviderError([kind]) from None

    def check(self, kinds: Iterable[ResourceKind]) -> None:
        """Fail before any call if a kind has no provider.

        Raises:
            MissingProviderError: Listing every unregistered kind.
        """
        missing = sorted({kind for kind in kinds if kind not in self._providers}, key=lambda k: k.value)
        if missing:
            raise MissingProviderError(missing)
