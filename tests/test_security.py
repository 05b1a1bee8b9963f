"""Tests for secret handling guards.

These tests verify that literal secrets are rejected before planning and
that ARM credentials can only come from a managed identity.
"""

from __future__ import annotations

import logging
import os
from unittest import mock

import pytest

from stackctl.dependency import ValidationError
from stackctl.models import ResourceNode
from stackctl.security import (
    FORBIDDEN_CREDENTIAL_ENV_VARS,
    SecretLiteralError,
    SecretlessViolationError,
    assert_no_secret_literals,
    enforce_secretless_environment,
    get_managed_identity_credential,
    is_secret_key,
)


def _node(properties: dict) -> ResourceNode:
    return ResourceNode.model_validate(
        {"name": "user-service", "kind": "ComputeService", "properties": properties}
    )


class TestSecretKeyDetection:
    """Tests for secret-looking property keys."""

    @pytest.mark.parametrize(
        "key",
        ["password", "DB_PASSWORD", "secretKeyBase", "SECRET_KEY_BASE", "apiKey", "authToken", "credentials"],
    )
    def test_secret_keys(self, key: str) -> None:
        """Test keys that mark secret material."""
        assert is_secret_key(key)

    @pytest.mark.parametrize("key", ["image", "dbName", "engine", "DB_HOST", "desiredCount"])
    def test_plain_keys(self, key: str) -> None:
        """Test keys that do not."""
        assert not is_secret_key(key)


class TestSecretLiterals:
    """Tests for assert_no_secret_literals."""

    def test_secret_ref_allowed(self) -> None:
        """Test that locators are accepted under secret keys."""
        node = _node({"secrets": {"DB_SECRET": {"secretRef": "secrets/app/db"}}})

        assert_no_secret_literals(node)

    def test_literal_password_rejected(self) -> None:
        """Test that a literal password is rejected."""
        node = _node({"environment": {"DB_PASSWORD": "hunter2"}})

        with pytest.raises(SecretLiteralError) as exc_info:
            assert_no_secret_literals(node)

        assert exc_info.value.node == "user-service"
        assert exc_info.value.path == "environment.DB_PASSWORD"

    def test_literal_under_secret_parent_rejected(self) -> None:
        """Test that every string below a secret-looking key is rejected."""
        node = _node({"secrets": {"SESSION": "abc123"}})

        with pytest.raises(SecretLiteralError) as exc_info:
            assert_no_secret_literals(node)

        assert exc_info.value.path == "secrets.SESSION"

    def test_literal_in_list_rejected(self) -> None:
        """Test that list items are checked with their parent's context."""
        node = _node({"apiKeys": ["k1"]})

        with pytest.raises(SecretLiteralError, match=r"apiKeys\[0\]"):
            assert_no_secret_literals(node)

    def test_non_string_values_allowed(self) -> None:
        """Test that numbers and flags under secret keys are not secrets."""
        node = _node({"tokenTtlSeconds": 300, "passwordAuth": False})

        assert_no_secret_literals(node)

    def test_error_never_contains_value(self, caplog: pytest.LogCaptureFixture) -> None:
        """Test that neither the error nor the log carries the secret."""
        node = _node({"password": "s3cr3t-value"})

        with caplog.at_level(logging.ERROR):
            with pytest.raises(SecretLiteralError) as exc_info:
                assert_no_secret_literals(node)

        assert "s3cr3t-value" not in str(exc_info.value)
        assert "s3cr3t-value" not in caplog.text
        assert isinstance(exc_info.value, ValidationError)


class TestSecretlessEnforcement:
    """Tests for secretless environment enforcement."""

    def test_clean_environment_passes(self) -> None:
        """Test that enforcement passes with no credential env vars."""
        with mock.patch.dict(os.environ, {}, clear=True):
            enforce_secretless_environment()

    @pytest.mark.parametrize("env_var", FORBIDDEN_CREDENTIAL_ENV_VARS)
    def test_forbidden_env_var_raises(self, env_var: str) -> None:
        """Test that each forbidden env var raises SecretlessViolationError."""
        with mock.patch.dict(os.environ, {env_var: "some-secret-value"}):
            with pytest.raises(SecretlessViolationError) as exc_info:
                enforce_secretless_environment()

            assert env_var in str(exc_info.value)
            assert "some-secret-value" not in str(exc_info.value)


class TestGetManagedIdentityCredential:
    """Tests for managed identity credential getter."""

    def test_rejects_secret_env_var(self) -> None:
        """Test that get_managed_identity_credential enforces secretless."""
        with mock.patch.dict(os.environ, {"AZURE_CLIENT_SECRET": "secret"}):
            with pytest.raises(SecretlessViolationError):
                get_managed_identity_credential()

    @mock.patch("stackctl.security.ManagedIdentityCredential")
    def test_returns_system_assigned_by_default(self, mock_credential_class: mock.Mock) -> None:
        """Test that system-assigned MI is used when no client_id."""
        mock_credential = mock.Mock()
        mock_credential_class.return_value = mock_credential

        with mock.patch.dict(os.environ, {}, clear=True):
            result = get_managed_identity_credential()

        mock_credential_class.assert_called_once_with()
        assert result is mock_credential

    @mock.patch("stackctl.security.ManagedIdentityCredential")
    def test_returns_user_assigned_with_client_id(self, mock_credential_class: mock.Mock) -> None:
        """Test that user-assigned MI is used when client_id provided."""
        client_id = "test-client-id-12345"

        with mock.patch.dict(os.environ, {}, clear=True):
            get_managed_identity_credential(client_id=client_id)

        mock_credential_class.assert_called_once_with(client_id=client_id)
