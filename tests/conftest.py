"""Pytest configuration and fixtures."""

import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for azure_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from deployer.config import Config  # noqa: E402

SUBSCRIPTION_ID = "00000000-0000-0000-0000-000000000001"
RESOURCE_GROUP = "rg-gateway-dev"
LOCATION = "westeurope"


@pytest.fixture
def make_config(tmp_path: Path) -> Callable[..., Config]:
    """Factory for valid configurations with a real source directory."""
    source_dir = tmp_path / "app"
    source_dir.mkdir(exist_ok=True)

    def factory(**overrides: Any) -> Config:
        values: dict[str, Any] = {
            "subscription_id": SUBSCRIPTION_ID,
            "resource_group_name": RESOURCE_GROUP,
            "location": LOCATION,
            "source_dir": source_dir,
            "image_tag": "v1",
        }
        values.update(overrides)
        return Config(**values)

    return factory


@pytest.fixture
def config(make_config: Callable[..., Config]) -> Config:
    """A valid configuration for the default test resource group."""
    return make_config()


@pytest.fixture(autouse=True)
def clean_credential_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Ensure no service principal secrets leak in from the host environment."""
    for var in (
        "AZURE_CLIENT_SECRET",
        "AZURE_CLIENT_CERTIFICATE_PATH",
        "AZURE_CLIENT_CERTIFICATE_PASSWORD",
        "AZURE_USERNAME",
        "AZURE_PASSWORD",
    ):
        monkeypatch.delenv(var, raising=False)
