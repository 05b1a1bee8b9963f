"""Secret handling guards.

SECURITY INVARIANTS:
1. Secret contents never appear in desired state, snapshots or logs.
   Stack files carry `secretRef` locators only; a literal value under a
   secret-looking key is rejected before planning.
2. ARM calls authenticate with a managed identity. Credential secrets in the
   environment block the credential from being created.
"""

from __future__ import annotations

import logging
import os
from typing import Any

from azure.identity import ManagedIdentityCredential

from .dependency import ValidationError
from .models import ResourceNode, SecretRef

logger = logging.getLogger(__name__)

# Key fragments (lower-cased) that mark a property as secret material
SECRET_KEY_MARKERS: tuple[str, ...] = (
    "password",
    "passwd",
    "secret",
    "token",
    "apikey",
    "api_key",
    "privatekey",
    "private_key",
    "credential",
)

# Environment variables that indicate credential leakage
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "AZURE_CLIENT_SECRET",
    "AZURE_CLIENT_CERTIFICATE_PATH",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD",
    "AZURE_USERNAME",
    "AZURE_PASSWORD",
)


class SecretLiteralError(ValidationError):
    """Raised when a property bag carries a literal secret value."""

    def __init__(self, node: str, path: str) -> None:
        self.node = node
        self.path = path
        super().__init__(
            f"Resource '{node}' property '{path}' holds a literal secret; "
            f"use {{secretRef: <locator>}} instead"
        )


class SecretlessViolationError(Exception):
    """Raised when credential secrets are present in the environment."""

    pass


def is_secret_key(key: str) -> bool:
    """Check whether a property key names secret material."""
    lowered = key.lower()
    return any(marker in lowered for marker in SECRET_KEY_MARKERS)


def _find_secret_literal(value: Any, path: str, secret_context: bool) -> str | None:
    if isinstance(value, SecretRef):
        return None
    if isinstance(value, dict):
        for key, item in value.items():
            found = _find_secret_literal(
                item, f"{path}.{key}", secret_context or is_secret_key(key)
            )
            if found:
                return found
        return None
    if isinstance(value, list):
        for index, item in enumerate(value):
            found = _find_secret_literal(item, f"{path}[{index}]", secret_context)
            if found:
                return found
        return None
    if secret_context and isinstance(value, str) and value:
        return path
    return None


def assert_no_secret_literals(node: ResourceNode) -> None:
    """Reject a node whose property bag holds a literal secret.

    Raises:
        SecretLiteralError: Naming the node and the property path (never the value).
    """
    for key, value in node.properties.items():
        found = _find_secret_literal(value, key, is_secret_key(key))
        if found:
            logger.error(
                "Literal secret in resource properties",
                extra={
                    "security_event": "secret_literal_rejected",
                    "node": node.name,
                    "property": found,
                },
            )
            raise SecretLiteralError(node.name, found)


def enforce_secretless_environment() -> None:
    """Enforce that no credential secrets are present in the environment.

    Raises:
        SecretlessViolationError: If any credential environment variable is set.
    """
    for env_var in FORBIDDEN_CREDENTIAL_ENV_VARS:
        if os.environ.get(env_var):
            logger.critical(
                "Secretless architecture violation",
                extra={
                    "security_event": "credential_detected",
                    "env_var": env_var,
                    "action": "startup_blocked",
                },
            )
            raise SecretlessViolationError(
                f"{env_var} is set. Remove credential variables and assign a "
                f"managed identity to the runner instead."
            )


def get_managed_identity_credential(
    client_id: str | None = None,
) -> ManagedIdentityCredential:
    """Get a ManagedIdentityCredential after verifying the environment.

    Args:
        client_id: Optional client ID for a user-assigned managed identity.
                   If None, uses the system-assigned managed identity.

    Raises:
        SecretlessViolationError: If credential environment variables are detected.
    """
    enforce_secretless_environment()

    if client_id:
        logger.info(
            "Using user-assigned managed identity",
            extra={"client_id": client_id[:8] + "..." if len(client_id) > 8 else client_id},
        )
        return ManagedIdentityCredential(client_id=client_id)

    logger.info("Using system-assigned managed identity")
    return ManagedIdentityCredential()
