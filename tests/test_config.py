"""Tests for configuration loading and validation."""

from __future__ import annotations

import os
from pathlib import Path
from unittest import mock

import pytest

from stackctl.config import (
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_CONCURRENCY,
    ArmSettings,
    Config,
    ConfigurationError,
    ProviderName,
)

VALID_SUBSCRIPTION = "00000000-0000-0000-0000-000000000001"


class TestConfigValidation:
    """Tests for Config.__post_init__ validation."""

    def test_defaults_are_valid(self) -> None:
        """Test that a default config passes validation."""
        config = Config()

        assert config.provider == ProviderName.LOCAL
        assert config.max_concurrency == DEFAULT_MAX_CONCURRENCY
        assert config.max_attempts == DEFAULT_MAX_ATTEMPTS

    def test_lock_file_sits_beside_state_file(self) -> None:
        """Test that the lock file is derived from the state file."""
        config = Config(state_file=Path("/tmp/x/state.json"))

        assert config.lock_file == Path("/tmp/x/state.json.lock")

    @pytest.mark.parametrize("value", [0, 33, -1])
    def test_concurrency_out_of_bounds(self, value: int) -> None:
        """Test that worker pool size is bounded."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(max_concurrency=value)

        assert "STACKCTL_MAX_CONCURRENCY" in str(exc_info.value)

    @pytest.mark.parametrize("value", [0, 11])
    def test_attempts_out_of_bounds(self, value: int) -> None:
        """Test that the retry budget is bounded."""
        with pytest.raises(ConfigurationError, match="STACKCTL_MAX_ATTEMPTS"):
            Config(max_attempts=value)

    def test_backoff_max_below_base_rejected(self) -> None:
        """Test that the backoff cap cannot be below the base delay."""
        with pytest.raises(ConfigurationError, match="STACKCTL_BACKOFF_MAX_SECONDS"):
            Config(backoff_base_seconds=10.0, backoff_max_seconds=5.0)

    def test_invalid_log_level_rejected(self) -> None:
        """Test that unknown log levels are rejected."""
        with pytest.raises(ConfigurationError, match="STACKCTL_LOG_LEVEL"):
            Config(log_level="VERBOSE")

    def test_state_file_directory_rejected(self, tmp_path: Path) -> None:
        """Test that a directory cannot be used as the state file."""
        with pytest.raises(ConfigurationError, match="directory"):
            Config(state_file=tmp_path)

    def test_errors_are_collected(self) -> None:
        """Test that all validation errors are reported at once."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(max_concurrency=0, max_attempts=0)

        message = str(exc_info.value)
        assert "STACKCTL_MAX_CONCURRENCY" in message
        assert "STACKCTL_MAX_ATTEMPTS" in message


class TestArmSettingsValidation:
    """Tests for provider-specific validation."""

    def test_local_provider_ignores_arm_settings(self) -> None:
        """Test that ARM fields are not required for the local provider."""
        Config(provider=ProviderName.LOCAL, arm=ArmSettings())

    def test_arm_provider_requires_settings(self) -> None:
        """Test that the ARM provider requires subscription, group and location."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(provider=ProviderName.ARM)

        message = str(exc_info.value)
        assert "AZURE_SUBSCRIPTION_ID" in message
        assert "AZURE_RESOURCE_GROUP" in message
        assert "AZURE_LOCATION" in message

    def test_arm_subscription_must_be_guid(self) -> None:
        """Test that the subscription id is validated as a GUID."""
        with pytest.raises(ConfigurationError, match="valid GUID"):
            Config(
                provider=ProviderName.ARM,
                arm=ArmSettings(subscription_id="not-a-guid", resource_group="rg", location="westeurope"),
            )

    def test_valid_arm_settings(self) -> None:
        """Test a complete ARM configuration."""
        config = Config(
            provider=ProviderName.ARM,
            arm=ArmSettings(
                subscription_id=VALID_SUBSCRIPTION,
                resource_group="rg-app",
                location="westeurope",
            ),
        )

        assert config.arm.resource_group == "rg-app"


class TestConfigFromEnv:
    """Tests for Config.from_env()."""

    def test_defaults_from_empty_environment(self) -> None:
        """Test that an empty environment yields the defaults."""
        with mock.patch.dict(os.environ, {}, clear=True):
            config = Config.from_env()

        assert config.spec_file == Path("stack.yaml")
        assert config.state_file == Path(".stackctl/state.json")
        assert config.log_level == "INFO"

    def test_reads_all_variables(self) -> None:
        """Test that every variable is picked up."""
        env = {
            "STACKCTL_SPEC_FILE": "infra/app.yaml",
            "STACKCTL_STATE_FILE": "infra/state.json",
            "STACKCTL_PROVIDER": "ARM",
            "STACKCTL_MAX_CONCURRENCY": "8",
            "STACKCTL_MAX_ATTEMPTS": "5",
            "STACKCTL_BACKOFF_BASE_SECONDS": "0.5",
            "STACKCTL_BACKOFF_MAX_SECONDS": "10",
            "STACKCTL_OPERATION_TIMEOUT": "120",
            "STACKCTL_LOG_LEVEL": "debug",
            "AZURE_SUBSCRIPTION_ID": VALID_SUBSCRIPTION,
            "AZURE_RESOURCE_GROUP": "rg-app",
            "AZURE_LOCATION": "westeurope",
            "AZURE_MANAGED_IDENTITY_CLIENT_ID": "client-123",
        }
        with mock.patch.dict(os.environ, env, clear=True):
            config = Config.from_env()

        assert config.spec_file == Path("infra/app.yaml")
        assert config.provider == ProviderName.ARM
        assert config.max_concurrency == 8
        assert config.max_attempts == 5
        assert config.backoff_base_seconds == 0.5
        assert config.backoff_max_seconds == 10.0
        assert config.operation_timeout_seconds == 120
        assert config.log_level == "DEBUG"
        assert config.arm.client_id == "client-123"

    def test_non_integer_rejected(self) -> None:
        """Test that a non-numeric integer variable is a configuration error."""
        with mock.patch.dict(os.environ, {"STACKCTL_MAX_CONCURRENCY": "many"}, clear=True):
            with pytest.raises(ConfigurationError, match="must be an integer"):
                Config.from_env()

    def test_unknown_provider_rejected(self) -> None:
        """Test that an unknown provider name is a configuration error."""
        with mock.patch.dict(os.environ, {"STACKCTL_PROVIDER": "aws"}, clear=True):
            with pytest.raises(ConfigurationError, match="STACKCTL_PROVIDER"):
                Config.from_env()
