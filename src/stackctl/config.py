"""Configuration management with validation.

Limits are enforced at configuration load time so that a run never starts
with an unbounded worker pool or retry budget.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class ProviderName(str, Enum):
    """Supported provisioning backends."""

    LOCAL = "local"
    ARM = "arm"


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_SPEC_FILE = "stack.yaml"
DEFAULT_STATE_FILE = ".stackctl/state.json"

DEFAULT_MAX_CONCURRENCY = 4
MIN_MAX_CONCURRENCY = 1
MAX_MAX_CONCURRENCY = 32

DEFAULT_MAX_ATTEMPTS = 3
MAX_MAX_ATTEMPTS = 10

DEFAULT_BACKOFF_BASE_SECONDS = 2.0
DEFAULT_BACKOFF_MAX_SECONDS = 60.0

DEFAULT_OPERATION_TIMEOUT_SECONDS = 900
MAX_OPERATION_TIMEOUT_SECONDS = 3600

# Input limits
MAX_SPEC_FILE_SIZE_BYTES = 1024 * 1024  # 1MB max stack file
MAX_STATE_FILE_SIZE_BYTES = 10 * 1024 * 1024  # 10MB max snapshot
MAX_RESOURCES_PER_STACK = 500

VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_LOCATION_PATTERN = r"^[a-z]{2,}[a-z0-9]*$"


@dataclass(frozen=True)
class ArmSettings:
    """Azure Resource Manager target for the `arm` provider."""

    subscription_id: str = ""
    resource_group: str = ""
    location: str = ""
    client_id: str | None = None


@dataclass(frozen=True)
class Config:
    """Run configuration.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-apply.
    """

    spec_file: Path = field(default_factory=lambda: Path(DEFAULT_SPEC_FILE))
    state_file: Path = field(default_factory=lambda: Path(DEFAULT_STATE_FILE))

    provider: ProviderName = ProviderName.LOCAL

    # Executor
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_base_seconds: float = DEFAULT_BACKOFF_BASE_SECONDS
    backoff_max_seconds: float = DEFAULT_BACKOFF_MAX_SECONDS
    operation_timeout_seconds: int = DEFAULT_OPERATION_TIMEOUT_SECONDS

    log_level: str = "INFO"

    arm: ArmSettings = field(default_factory=ArmSettings)

    def __post_init__(self) -> None:
        """Validate configuration after initialization (fail-fast)."""
        errors: list[str] = []

        if not (MIN_MAX_CONCURRENCY <= self.max_concurrency <= MAX_MAX_CONCURRENCY):
            errors.append(
                f"STACKCTL_MAX_CONCURRENCY must be between {MIN_MAX_CONCURRENCY} "
                f"and {MAX_MAX_CONCURRENCY}"
            )

        if not (1 <= self.max_attempts <= MAX_MAX_ATTEMPTS):
            errors.append(f"STACKCTL_MAX_ATTEMPTS must be between 1 and {MAX_MAX_ATTEMPTS}")

        if self.backoff_base_seconds < 0:
            errors.append("STACKCTL_BACKOFF_BASE_SECONDS must not be negative")
        if self.backoff_max_seconds < self.backoff_base_seconds:
            errors.append("STACKCTL_BACKOFF_MAX_SECONDS must be >= STACKCTL_BACKOFF_BASE_SECONDS")

        if not (1 <= self.operation_timeout_seconds <= MAX_OPERATION_TIMEOUT_SECONDS):
            errors.append(
                f"STACKCTL_OPERATION_TIMEOUT must be between 1 and "
                f"{MAX_OPERATION_TIMEOUT_SECONDS} seconds"
            )

        if self.log_level.upper() not in VALID_LOG_LEVELS:
            errors.append(f"STACKCTL_LOG_LEVEL must be one of {list(VALID_LOG_LEVELS)}")

        if self.state_file.exists() and self.state_file.is_dir():
            errors.append(f"State file path is a directory: {self.state_file}")

        # Provider-specific validation
        if self.provider == ProviderName.ARM:
            if not self.arm.subscription_id:
                errors.append("AZURE_SUBSCRIPTION_ID is required for the arm provider")
            elif not re.match(VALID_SUBSCRIPTION_ID_PATTERN, self.arm.subscription_id.lower()):
                errors.append(
                    f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.arm.subscription_id}"
                )
            if not self.arm.resource_group:
                errors.append("AZURE_RESOURCE_GROUP is required for the arm provider")
            if not self.arm.location:
                errors.append("AZURE_LOCATION is required for the arm provider")
            elif not re.match(VALID_LOCATION_PATTERN, self.arm.location.lower()):
                errors.append(f"AZURE_LOCATION must be a valid Azure region: {self.arm.location}")

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @property
    def lock_file(self) -> Path:
        """Lock file guarding the snapshot against concurrent runs."""
        return self.state_file.with_name(self.state_file.name + ".lock")

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables.

        Environment Variables:
            STACKCTL_SPEC_FILE: Desired-state YAML file (default: stack.yaml)
            STACKCTL_STATE_FILE: Snapshot path (default: .stackctl/state.json)
            STACKCTL_PROVIDER: One of local, arm (default: local)
            STACKCTL_MAX_CONCURRENCY: Parallel operations (default: 4)
            STACKCTL_MAX_ATTEMPTS: Attempts per operation (default: 3)
            STACKCTL_BACKOFF_BASE_SECONDS: First retry delay (default: 2)
            STACKCTL_BACKOFF_MAX_SECONDS: Retry delay cap (default: 60)
            STACKCTL_OPERATION_TIMEOUT: Per-attempt timeout in seconds (default: 900)
            STACKCTL_LOG_LEVEL: Logging level (default: INFO)

        ARM provider variables:
            AZURE_SUBSCRIPTION_ID, AZURE_RESOURCE_GROUP, AZURE_LOCATION
            AZURE_MANAGED_IDENTITY_CLIENT_ID: Optional user-assigned identity
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_float(key: str, default: float) -> float:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return float(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be a number: {value}") from e

        def get_provider(value: str | None) -> ProviderName:
            if not value:
                return ProviderName.LOCAL
            try:
                return ProviderName(value.lower())
            except ValueError as e:
                valid = [p.value for p in ProviderName]
                raise ConfigurationError(f"STACKCTL_PROVIDER must be one of {valid}: {value}") from e

        return cls(
            spec_file=Path(os.environ.get("STACKCTL_SPEC_FILE", DEFAULT_SPEC_FILE)),
            state_file=Path(os.environ.get("STACKCTL_STATE_FILE", DEFAULT_STATE_FILE)),
            provider=get_provider(os.environ.get("STACKCTL_PROVIDER")),
            max_concurrency=get_int("STACKCTL_MAX_CONCURRENCY", DEFAULT_MAX_CONCURRENCY),
            max_attempts=get_int("STACKCTL_MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS),
            backoff_base_seconds=get_float(
                "STACKCTL_BACKOFF_BASE_SECONDS", DEFAULT_BACKOFF_BASE_SECONDS
            ),
            backoff_max_seconds=get_float(
                "STACKCTL_BACKOFF_MAX_SECONDS", DEFAULT_BACKOFF_MAX_SECONDS
            ),
            operation_timeout_seconds=get_int(
                "STACKCTL_OPERATION_TIMEOUT", DEFAULT_OPERATION_TIMEOUT_SECONDS
            ),
            log_level=os.environ.get("STACKCTL_LOG_LEVEL", "INFO").upper(),
            arm=ArmSettings(
                subscription_id=os.environ.get("AZURE_SUBSCRIPTION_ID", ""),
                resource_group=os.environ.get("AZURE_RESOURCE_GROUP", ""),
                location=os.environ.get("AZURE_LOCATION", ""),
                client_id=os.environ.get("AZURE_MANAGED_IDENTITY_CLIENT_ID") or None,
            ),
        )
