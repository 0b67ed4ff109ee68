"""Tests for configuration loading and validation."""

import os
from collections.abc import Callable
from pathlib import Path
from unittest.mock import patch

import pytest

from deployer.config import (
    DEFAULT_DEPLOYMENT_NAME,
    MIN_FILE_SHARE_QUOTA_GIB,
    Config,
    ConfigurationError,
)


class TestConfig:
    """Tests for Config class."""

    def test_valid_config(self, config: Config) -> None:
        """Test creating a valid configuration with defaults."""
        assert config.location == "westeurope"
        assert config.deployment_name == DEFAULT_DEPLOYMENT_NAME
        assert config.file_share_quota_gib == MIN_FILE_SHARE_QUOTA_GIB
        assert config.cpu == 1.0
        assert config.memory_gi == 2.0

    def test_config_is_frozen(self, config: Config) -> None:
        """Test that configuration cannot be mutated."""
        with pytest.raises(AttributeError):
            config.location = "northeurope"  # type: ignore[misc]

    def test_missing_required_fields_reported_together(self, tmp_path: Path) -> None:
        """Test that all missing fields are collected into one error."""
        with pytest.raises(ConfigurationError) as exc_info:
            Config(subscription_id="", resource_group_name="", location="", source_dir=tmp_path)

        message = str(exc_info.value)
        assert "AZURE_SUBSCRIPTION_ID" in message
        assert "RESOURCE_GROUP_NAME" in message
        assert "AZURE_LOCATION" in message

    def test_invalid_subscription_id(self, make_config: Callable[..., Config]) -> None:
        """Test that a non-GUID subscription is rejected."""
        with pytest.raises(ConfigurationError) as exc_info:
            make_config(subscription_id="not-a-guid")

        assert "GUID" in str(exc_info.value)

    def test_missing_source_dir(self, make_config: Callable[..., Config], tmp_path: Path) -> None:
        """Test that the build context must exist."""
        with pytest.raises(ConfigurationError) as exc_info:
            make_config(source_dir=tmp_path / "missing")

        assert "Source directory" in str(exc_info.value)

    def test_cpu_memory_pair_must_match(self, make_config: Callable[..., Config]) -> None:
        """Test that only Container Apps CPU/memory pairs are allowed."""
        with pytest.raises(ConfigurationError) as exc_info:
            make_config(cpu=1.0, memory_gi=4.0)

        assert "APP_MEMORY_GI" in str(exc_info.value)

    def test_allowed_cpu_memory_pair(self, make_config: Callable[..., Config]) -> None:
        config = make_config(cpu=0.5, memory_gi=1.0)
        assert config.cpu == 0.5

    def test_apps_subnet_too_small(self, make_config: Callable[..., Config]) -> None:
        """Test that the delegated subnet must be at least a /27."""
        with pytest.raises(ConfigurationError) as exc_info:
            make_config(apps_subnet_prefix="10.40.0.0/28")

        assert "APPS_SUBNET_PREFIX" in str(exc_info.value)

    def test_subnet_outside_vnet(self, make_config: Callable[..., Config]) -> None:
        """Test that subnets must fall inside the VNet."""
        with pytest.raises(ConfigurationError) as exc_info:
            make_config(private_link_subnet_prefix="10.99.0.0/24")

        assert "PRIVATE_LINK_SUBNET_PREFIX" in str(exc_info.value)

    def test_overlapping_subnets(self, make_config: Callable[..., Config]) -> None:
        """Test that the two subnets may not overlap."""
        with pytest.raises(ConfigurationError) as exc_info:
            make_config(private_link_subnet_prefix="10.40.1.0/24")

        assert "overlaps" in str(exc_info.value)

    def test_quota_below_premium_minimum(self, make_config: Callable[..., Config]) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            make_config(file_share_quota_gib=50)

        assert "FILE_SHARE_QUOTA_GIB" in str(exc_info.value)

    def test_relative_mount_path(self, make_config: Callable[..., Config]) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            make_config(mount_path="data")

        assert "MOUNT_PATH" in str(exc_info.value)

    def test_ready_timeout_bounded(self, make_config: Callable[..., Config]) -> None:
        """Test that the readiness poll cannot wait unbounded."""
        with pytest.raises(ConfigurationError) as exc_info:
            make_config(ready_timeout_seconds=3600)

        assert "READY_TIMEOUT" in str(exc_info.value)

    def test_invalid_image_tag(self, make_config: Callable[..., Config]) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            make_config(image_tag="bad tag!")

        assert "IMAGE_TAG" in str(exc_info.value)

    @pytest.mark.parametrize("model", ["gpt-4o; rm -rf /", "gpt 4o", "$(whoami)", "gpt-4o\n"])
    def test_gateway_model_rejects_shell_syntax(
        self, make_config: Callable[..., Config], model: str
    ) -> None:
        """Test that the model cannot break out of the remote command."""
        with pytest.raises(ConfigurationError) as exc_info:
            make_config(gateway_model=model)

        assert "GATEWAY_MODEL" in str(exc_info.value)

    def test_gateway_model_with_provider_and_version(self, make_config: Callable[..., Config]) -> None:
        assert make_config(gateway_model="azure/gpt-4o:2024-08").gateway_model == "azure/gpt-4o:2024-08"

    def test_app_cli_rejects_arguments(self, make_config: Callable[..., Config]) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            make_config(app_cli="gateway --x")

        assert "APP_CLI" in str(exc_info.value)

    def test_app_cli_path(self, make_config: Callable[..., Config]) -> None:
        assert make_config(app_cli="/usr/local/bin/gateway").app_cli == "/usr/local/bin/gateway"


class TestWithOverrides:
    """Tests for layering overrides onto a configuration."""

    def test_overrides_replace_fields(self, config: Config) -> None:
        updated = config.with_overrides(location="northeurope", image_tag="v2")

        assert updated.location == "northeurope"
        assert updated.image_tag == "v2"
        assert config.location == "westeurope"

    def test_none_values_ignored(self, config: Config) -> None:
        updated = config.with_overrides(location=None)
        assert updated.location == config.location

    def test_unknown_field_rejected(self, config: Config) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            config.with_overrides(colour="blue")

        assert "colour" in str(exc_info.value)

    def test_overrides_are_validated(self, config: Config) -> None:
        with pytest.raises(ConfigurationError):
            config.with_overrides(app_port=70000)


class TestFromEnv:
    """Tests for environment variable loading."""

    def test_from_env(self, tmp_path: Path) -> None:
        """Test loading configuration from environment."""
        env = {
            "AZURE_SUBSCRIPTION_ID": "12345678-1234-1234-1234-123456789012",
            "RESOURCE_GROUP_NAME": "rg-env",
            "AZURE_LOCATION": "northeurope",
            "SOURCE_DIR": str(tmp_path),
            "APP_PORT": "9000",
            "APP_COMMAND": "gateway serve --bind 0.0.0.0",
            "APP_CPU": "0.5",
            "APP_MEMORY_GI": "1.0",
        }

        with patch.dict(os.environ, env, clear=True):
            config = Config.from_env()

        assert config.resource_group_name == "rg-env"
        assert config.location == "northeurope"
        assert config.app_port == 9000
        assert config.app_command == ("gateway", "serve", "--bind", "0.0.0.0")
        assert config.cpu == 0.5
        assert config.image_tag is None

    def test_non_integer_env_value(self, tmp_path: Path) -> None:
        env = {
            "AZURE_SUBSCRIPTION_ID": "12345678-1234-1234-1234-123456789012",
            "RESOURCE_GROUP_NAME": "rg-env",
            "AZURE_LOCATION": "northeurope",
            "SOURCE_DIR": str(tmp_path),
            "APP_PORT": "eighty",
        }

        with patch.dict(os.environ, env, clear=True):
            with pytest.raises(ConfigurationError) as exc_info:
                Config.from_env()

        assert "APP_PORT" in str(exc_info.value)

    def test_env_values_not_validated(self) -> None:
        """Test that raw values can be read before a file is layered on top."""
        with patch.dict(os.environ, {}, clear=True):
            values = Config.env_values()

        assert values["subscription_id"] == ""
        assert values["deployment_name"] == DEFAULT_DEPLOYMENT_NAME
