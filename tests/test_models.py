"""Tests for the resource model."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from stackctl.models import (
    Reference,
    ResourceKind,
    ResourceNode,
    SecretRef,
    StackSpec,
    encode_value,
    parse_value,
)


class TestParseValue:
    """Tests for property value parsing."""

    def test_scalars_pass_through(self) -> None:
        """Test that scalars are returned unchanged."""
        for value in ("x", 1, 1.5, True, None):
            assert parse_value(value) == value

    def test_reference(self) -> None:
        """Test that {ref: name} becomes a Reference."""
        value = parse_value({"ref": "network"})

        assert value == Reference(target="network")
        assert value.attribute is None

    def test_reference_with_attribute(self) -> None:
        """Test that an attribute is kept on the reference."""
        value = parse_value({"ref": "db-proxy", "attribute": "endpoint"})

        assert isinstance(value, Reference)
        assert value.target == "db-proxy"
        assert value.attribute == "endpoint"

    def test_secret_ref(self) -> None:
        """Test that {secretRef: locator} becomes a SecretRef."""
        value = parse_value({"secretRef": "secrets/app/db"})

        assert value == SecretRef(locator="secrets/app/db")

    def test_mapping_with_extra_keys_is_plain(self) -> None:
        """Test that a mapping with other keys is not a reference."""
        value = parse_value({"ref": "main", "repository": "app"})

        assert value == {"ref": "main", "repository": "app"}

    def test_nested_values(self) -> None:
        """Test that references nested in lists and mappings are parsed."""
        value = parse_value({"routes": [{"backend": {"ref": "service"}}]})

        assert value["routes"][0]["backend"] == Reference(target="service")

    def test_unsupported_type_rejected(self) -> None:
        """Test that non-JSON values are rejected."""
        with pytest.raises(ValueError, match="unsupported"):
            parse_value({1, 2})

    def test_encode_restores_declared_form(self) -> None:
        """Test the canonical JSON form of parsed values."""
        raw = {
            "vpc": {"ref": "network"},
            "host": {"ref": "db-proxy", "attribute": "endpoint"},
            "credentials": {"secretRef": "secrets/app/db"},
            "ports": [80, 443],
        }

        assert encode_value(parse_value(raw)) == raw


class TestResourceNode:
    """Tests for ResourceNode validation and helpers."""

    def test_references_in_first_seen_order(self) -> None:
        """Test that references are collected from properties, then dependsOn."""
        node = ResourceNode.model_validate(
            {
                "name": "user-service",
                "kind": "ComputeService",
                "properties": {
                    "network": {"ref": "network"},
                    "env": {"DB_HOST": {"ref": "db-proxy", "attribute": "endpoint"}},
                    "subnet": {"ref": "network", "attribute": "privateSubnet"},
                },
                "dependsOn": ["database"],
            }
        )

        assert node.references() == ["network", "db-proxy", "database"]

    def test_references_to_returns_top_level_keys(self) -> None:
        """Test that references_to names the keys holding a reference."""
        node = ResourceNode.model_validate(
            {
                "name": "user-service",
                "kind": "ComputeService",
                "properties": {
                    "network": {"ref": "network"},
                    "env": {"DB_HOST": {"ref": "db-proxy", "attribute": "endpoint"}},
                },
            }
        )

        assert node.references_to("db-proxy") == ["env"]
        assert node.references_to("database") == []

    def test_self_reference_rejected(self) -> None:
        """Test that a node cannot reference itself."""
        with pytest.raises(ValidationError, match="cannot reference itself"):
            ResourceNode.model_validate(
                {"name": "network", "kind": "Network", "properties": {"peer": {"ref": "network"}}}
            )

    @pytest.mark.parametrize("name", ["Network", "-db", "db_proxy", "a" * 64, ""])
    def test_invalid_names_rejected(self, name: str) -> None:
        """Test the node name pattern."""
        with pytest.raises(ValidationError):
            ResourceNode(name=name, kind=ResourceKind.NETWORK)

    def test_unknown_kind_rejected(self) -> None:
        """Test that only known kinds are accepted."""
        with pytest.raises(ValidationError):
            ResourceNode.model_validate({"name": "queue", "kind": "Queue"})

    def test_unknown_field_rejected(self) -> None:
        """Test that misspelled fields fail loudly."""
        with pytest.raises(ValidationError):
            ResourceNode.model_validate({"name": "network", "kind": "Network", "depends": ["x"]})

    def test_null_properties_become_empty(self) -> None:
        """Test that `properties:` with no value is an empty bag."""
        node = ResourceNode.model_validate({"name": "network", "kind": "Network", "properties": None})

        assert node.properties == {}

    def test_replacement_keys_include_replace_on(self) -> None:
        """Test that replaceOn extends the kind's identity properties."""
        node = ResourceNode.model_validate(
            {"name": "database", "kind": "Database", "replaceOn": ["storageType"]}
        )

        assert node.replacement_keys() == frozenset({"engine", "dbName", "storageType"})


class TestStackSpec:
    """Tests for the stack document."""

    def test_defaults(self) -> None:
        """Test an empty stack."""
        stack = StackSpec()

        assert stack.name == "default"
        assert stack.resources == []

    def test_resources_parsed(self) -> None:
        """Test that resources are parsed into nodes."""
        stack = StackSpec.model_validate(
            {"name": "app", "resources": [{"name": "network", "kind": "Network"}]}
        )

        assert stack.resources[0].kind == ResourceKind.NETWORK
