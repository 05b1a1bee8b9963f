"""Pydantic models for the desired-state resource graph.

These models provide:
1. Type-safe YAML parsing of stack files
2. Validation at the boundary (fail fast, fail loudly)
3. A canonical JSON form of property bags for diffing and snapshots
"""

from __future__ import annotations

from collections.abc import Iterator
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator, model_validator

# Node names double as snapshot keys and provider resource names
NAME_PATTERN = r"^[a-z][a-z0-9-]{0,61}[a-z0-9]$|^[a-z]$"


class ResourceKind(str, Enum):
    """Resource kinds a stack can declare."""

    NETWORK = "Network"
    DATABASE = "Database"
    PROXY = "Proxy"
    COMPUTE_SERVICE = "ComputeService"
    GATEWAY = "Gateway"


# Properties whose change cannot be applied in place.
# A node may add more via `replaceOn`.
REPLACEMENT_PROPERTIES: dict[ResourceKind, frozenset[str]] = {
    ResourceKind.NETWORK: frozenset({"cidr"}),
    ResourceKind.DATABASE: frozenset({"engine", "dbName"}),
    ResourceKind.PROXY: frozenset({"engine"}),
    ResourceKind.COMPUTE_SERVICE: frozenset({"cluster"}),
    ResourceKind.GATEWAY: frozenset({"protocol"}),
}


# =============================================================================
# Property values
# =============================================================================


class Reference(BaseModel):
    """Typed reference to another node in the same graph.

    Without an attribute it resolves to the target's provider identifier,
    with one to the named output of the target (e.g. a proxy `endpoint`).
    Resolution happens at apply time; planning compares references as-is.
    """

    model_config = {"frozen": True, "extra": "forbid", "populate_by_name": True}

    target: Annotated[str, Field(min_length=1, alias="ref")]
    attribute: str | None = None

    def to_json(self) -> dict[str, Any]:
        data: dict[str, Any] = {"ref": self.target}
        if self.attribute is not None:
            data["attribute"] = self.attribute
        return data


class SecretRef(BaseModel):
    """Opaque locator of secret material.

    The locator is handed to providers verbatim. Secret contents are never
    read, stored in a snapshot, or logged.
    """

    model_config = {"frozen": True, "extra": "forbid", "populate_by_name": True}

    locator: Annotated[str, Field(min_length=1, alias="secretRef")]

    def to_json(self) -> dict[str, Any]:
        return {"secretRef": self.locator}


_REFERENCE_KEYS = frozenset({"ref", "attribute"})


def parse_value(value: Any) -> Any:
    """Parse a raw property value, turning `{ref: ...}` and `{secretRef: ...}`
    mappings into Reference and SecretRef instances.

    Raises:
        ValueError: If the value has an unsupported type.
    """
    if isinstance(value, Reference | SecretRef):
        return value
    if value is None or isinstance(value, bool | int | float | str):
        return value
    if isinstance(value, dict):
        keys = set(value)
        if "ref" in keys and keys <= _REFERENCE_KEYS:
            return Reference.model_validate(value)
        if keys == {"secretRef"}:
            return SecretRef.model_validate(value)
        return {str(k): parse_value(v) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [parse_value(v) for v in value]
    raise ValueError(f"unsupported property value type: {type(value).__name__}")


def encode_value(value: Any) -> Any:
    """Encode a parsed property value into its canonical JSON form."""
    if isinstance(value, Reference | SecretRef):
        return value.to_json()
    if isinstance(value, dict):
        return {k: encode_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [encode_value(v) for v in value]
    return value


def iter_values(value: Any) -> Iterator[Any]:
    """Yield every leaf value (including references) of a property value."""
    if isinstance(value, dict):
        for v in value.values():
            yield from iter_values(v)
    elif isinstance(value, list):
        for v in value:
            yield from iter_values(v)
    else:
        yield value


# =============================================================================
# Resource nodes
# =============================================================================


class ResourceNode(BaseModel):
    """A declared resource: identity, kind, property bag and references."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    name: Annotated[str, Field(min_length=1, max_length=63, pattern=NAME_PATTERN)]
    kind: ResourceKind
    properties: dict[str, Any] = Field(default_factory=dict)

    # Explicit ordering edges in addition to references found in properties
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")

    # Property keys the provider may rewrite; excluded from diffing
    generated: list[str] = Field(default_factory=list)

    # Extra property keys whose change forces replacement
    replace_on: list[str] = Field(default_factory=list, alias="replaceOn")

    @field_validator("properties", mode="before")
    @classmethod
    def parse_properties(cls, v: Any) -> Any:
        if v is None:
            return {}
        if not isinstance(v, dict):
            raise ValueError("properties must be a mapping")
        return {str(key): parse_value(value) for key, value in v.items()}

    @model_validator(mode="after")
    def reject_self_reference(self) -> ResourceNode:
        if self.name in self.references():
            raise ValueError(f"resource '{self.name}' cannot reference itself")
        return self

    def references(self) -> list[str]:
        """Names of nodes this node depends on, in first-seen order."""
        seen: dict[str, None] = {}
        for value in iter_values(self.properties):
            if isinstance(value, Reference):
                seen.setdefault(value.target, None)
        for dep in self.depends_on:
            seen.setdefault(dep, None)
        return list(seen)

    def references_to(self, target: str) -> list[str]:
        """Top-level property keys whose value references `target`."""
        keys = []
        for key, value in self.properties.items():
            if any(
                isinstance(leaf, Reference) and leaf.target == target
                for leaf in iter_values(value)
            ):
                keys.append(key)
        return keys

    def canonical_properties(self) -> dict[str, Any]:
        """Property bag in canonical JSON form (as stored in snapshots)."""
        return encode_value(self.properties)

    def replacement_keys(self) -> frozenset[str]:
        return REPLACEMENT_PROPERTIES.get(self.kind, frozenset()) | frozenset(self.replace_on)


class StackSpec(BaseModel):
    """A stack file: the full desired state of one application's resources."""

    model_config = {"extra": "ignore"}

    name: Annotated[str, Field(min_length=1, max_length=63)] = "default"
    resources: list[ResourceNode] = Field(default_factory=list)
