"""Boot-time expansion of a JSON secret payload into environment variables.

The platform injects a database secret into the application container as a
single JSON document (e.g. `DB_SECRET={"username": ..., "password": ...}`).
Before the application starts, its fields are copied into the individual
variables the application reads. This runs inside the container, at the
point where the platform has already resolved the SecretRef; stackctl
itself never sees the payload.

SECURITY: Error messages and logs name variables and fields only, never the
payload or its values.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping

logger = logging.getLogger(__name__)

DEFAULT_SOURCE_VAR = "DB_SECRET"
DEFAULT_FIELD_MAP: dict[str, str] = {"username": "DB_USERNAME", "password": "DB_PASSWORD"}
DEFAULT_APP_ENV_VAR = "APP_ENV"
DEFAULT_ACTIVE_ENVS: tuple[str, ...] = ("production",)


class SecretPayloadError(Exception):
    """Raised when the secret payload is missing or malformed."""

    pass


def expand_secret_env(
    environ: Mapping[str, str],
    source_var: str = DEFAULT_SOURCE_VAR,
    field_map: Mapping[str, str] | None = None,
    app_env_var: str = DEFAULT_APP_ENV_VAR,
    active_envs: Iterable[str] = DEFAULT_ACTIVE_ENVS,
) -> dict[str, str]:
    """Return a copy of `environ` with the payload's fields mapped into variables.

    Args:
        environ: Current environment.
        source_var: Variable holding the JSON payload.
        field_map: Payload field -> target variable.
        app_env_var: Variable naming the application environment.
        active_envs: Environments in which expansion happens; elsewhere the
            environment is returned unchanged.

    Raises:
        SecretPayloadError: If the payload is missing, not a JSON object, or
            lacks a mapped field.
    """
    result = dict(environ)
    fields = dict(DEFAULT_FIELD_MAP if field_map is None else field_map)

    app_env = environ.get(app_env_var, "")
    if app_env not in set(active_envs):
        logger.debug(
            "Secret expansion skipped",
            extra={"app_env_var": app_env_var, "app_env": app_env},
        )
        return result

    payload = environ.get(source_var)
    if not payload:
        raise SecretPayloadError(f"{source_var} is not set")

    try:
        data = json.loads(payload)
    except json.JSONDecodeError:
        # The decoder message quotes the input; do not chain it
        raise SecretPayloadError(f"{source_var} is not valid JSON") from None

    if not isinstance(data, dict):
        raise SecretPayloadError(f"{source_var} must hold a JSON object")

    for field_name, target_var in fields.items():
        value = data.get(field_name)
        if value is None:
            raise SecretPayloadError(f"{source_var} has no '{field_name}' field")
        if not isinstance(value, str):
            raise SecretPayloadError(f"{source_var} field '{field_name}' must be a string")
        result[target_var] = value

    logger.info(
        "Expanded secret payload",
        extra={"source_var": source_var, "targets": sorted(fields.values())},
    )
    return result
