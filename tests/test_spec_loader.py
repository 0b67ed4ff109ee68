"""Tests for deployment file loading."""

import os
from pathlib import Path
from unittest.mock import patch

import pytest

from deployer.config import ConfigurationError
from deployer.spec_loader import (
    MAX_DEPLOYMENT_FILE_SIZE_BYTES,
    SpecLoadError,
    load_config,
    load_deployment_file,
)

from conftest import RESOURCE_GROUP, SUBSCRIPTION_ID


@pytest.fixture
def env(tmp_path: Path):
    values = {
        "AZURE_SUBSCRIPTION_ID": SUBSCRIPTION_ID,
        "RESOURCE_GROUP_NAME": RESOURCE_GROUP,
        "AZURE_LOCATION": "westeurope",
        "SOURCE_DIR": str(tmp_path),
    }
    with patch.dict(os.environ, values, clear=True):
        yield values


class TestLoadDeploymentFile:
    """Tests for load_deployment_file()."""

    def test_flat_mapping(self, tmp_path: Path) -> None:
        path = tmp_path / "deploy.yaml"
        path.write_text("location: northeurope\nappPort: 9000\n")

        spec = load_deployment_file(path)

        assert spec.location == "northeurope"
        assert spec.app_port == 9000

    def test_wrapped_spec(self, tmp_path: Path) -> None:
        path = tmp_path / "deploy.yaml"
        path.write_text(
            "apiVersion: deployer/v1\n"
            "kind: GatewayDeployment\n"
            "spec:\n"
            "  resourceGroupName: rg-wrapped\n"
            "  appCommand: [gateway, serve, --verbose]\n"
        )

        spec = load_deployment_file(path)

        assert spec.resource_group_name == "rg-wrapped"
        assert spec.app_command == ["gateway", "serve", "--verbose"]

    def test_empty_file(self, tmp_path: Path) -> None:
        path = tmp_path / "deploy.yaml"
        path.write_text("")

        spec = load_deployment_file(path)

        assert spec.to_config_values() == {}

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(SpecLoadError) as exc_info:
            load_deployment_file(tmp_path / "missing.yaml")

        assert "not found" in str(exc_info.value)

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "deploy.yaml"
        path.write_text("location: [unclosed\n")

        with pytest.raises(SpecLoadError) as exc_info:
            load_deployment_file(path)

        assert "Invalid YAML" in str(exc_info.value)

    def test_non_mapping(self, tmp_path: Path) -> None:
        path = tmp_path / "deploy.yaml"
        path.write_text("- a\n- b\n")

        with pytest.raises(SpecLoadError):
            load_deployment_file(path)

    def test_file_too_large(self, tmp_path: Path) -> None:
        """Test that oversized files are rejected before parsing."""
        path = tmp_path / "deploy.yaml"
        path.write_text("#" * (MAX_DEPLOYMENT_FILE_SIZE_BYTES + 1))

        with pytest.raises(SpecLoadError) as exc_info:
            load_deployment_file(path)

        assert "maximum size" in str(exc_info.value)

    def test_unknown_field(self, tmp_path: Path) -> None:
        path = tmp_path / "deploy.yaml"
        path.write_text("replicas: 3\n")

        with pytest.raises(SpecLoadError) as exc_info:
            load_deployment_file(path)

        assert "replicas" in str(exc_info.value)


class TestLoadConfig:
    """Tests for configuration precedence."""

    def test_environment_only(self, env: dict[str, str]) -> None:
        config = load_config()

        assert config.resource_group_name == RESOURCE_GROUP
        assert config.location == "westeurope"

    def test_file_overrides_environment(self, env: dict[str, str], tmp_path: Path) -> None:
        path = tmp_path / "deploy.yaml"
        path.write_text("location: northeurope\nfileShareQuotaGib: 200\n")

        config = load_config(path)

        assert config.location == "northeurope"
        assert config.file_share_quota_gib == 200
        assert config.subscription_id == SUBSCRIPTION_ID

    def test_overrides_win(self, env: dict[str, str], tmp_path: Path) -> None:
        path = tmp_path / "deploy.yaml"
        path.write_text("location: northeurope\n")

        config = load_config(path, location="swedencentral", image_tag=None)

        assert config.location == "swedencentral"
        assert config.image_tag is None

    def test_relative_source_dir(self, env: dict[str, str], tmp_path: Path) -> None:
        (tmp_path / "app").mkdir()
        path = tmp_path / "deploy.yaml"
        path.write_text("sourceDir: app\n")

        config = load_config(path)

        assert config.source_dir == tmp_path / "app"

    def test_invalid_merged_config(self, env: dict[str, str], tmp_path: Path) -> None:
        path = tmp_path / "deploy.yaml"
        path.write_text("appPort: 0\n")

        with pytest.raises(ConfigurationError):
            load_config(path)
