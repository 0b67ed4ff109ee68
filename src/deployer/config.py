"""Deployment configuration with validation.

All inputs are validated at construction time so a bad value fails before
any Azure call is made. The configuration is immutable and passed explicitly
to the coordinator; nothing reads process-wide state after startup.
"""

from __future__ import annotations

import dataclasses
import ipaddress
import os
import re
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""

    pass


# Configuration constants with documented bounds
DEFAULT_DEPLOYMENT_NAME = "aca-deploy-infra"
DEFAULT_IMAGE_REPOSITORY = "gateway"
DEFAULT_APP_PORT = 8080
DEFAULT_APP_COMMAND = ("gateway", "serve")
DEFAULT_APP_CLI = "gateway"
DEFAULT_GATEWAY_MODEL = "gpt-4o"
DEFAULT_CPU = 1.0
DEFAULT_MEMORY_GI = 2.0

DEFAULT_VNET_ADDRESS_PREFIX = "10.40.0.0/16"
DEFAULT_APPS_SUBNET_PREFIX = "10.40.0.0/23"
DEFAULT_PRIVATE_LINK_SUBNET_PREFIX = "10.40.2.0/24"
# Workload-profile environments need at least a /27 for the delegated subnet
MAX_APPS_SUBNET_PREFIX_LENGTH = 27

DEFAULT_FILE_SHARE_NAME = "data"
DEFAULT_MOUNT_PATH = "/data"
# Premium FileStorage (required for NFS) provisions at least 100 GiB
MIN_FILE_SHARE_QUOTA_GIB = 100
MAX_FILE_SHARE_QUOTA_GIB = 102400

DEFAULT_APPLY_TIMEOUT_SECONDS = 1800
DEFAULT_BUILD_TIMEOUT_SECONDS = 1800
DEFAULT_EXEC_TIMEOUT_SECONDS = 120
DEFAULT_READY_TIMEOUT_SECONDS = 300
MAX_READY_TIMEOUT_SECONDS = 900
DEFAULT_READY_POLL_INTERVAL_SECONDS = 10
MAX_READY_POLL_INTERVAL_SECONDS = 60

MAX_DEPLOYMENT_NAME_LENGTH = 64
MAX_RESOURCE_GROUP_NAME_LENGTH = 90

# CPU/memory pairs accepted by Container Apps consumption workloads
ALLOWED_CPU_MEMORY: dict[float, float] = {
    0.25: 0.5,
    0.5: 1.0,
    0.75: 1.5,
    1.0: 2.0,
    1.25: 2.5,
    1.5: 3.0,
    1.75: 3.5,
    2.0: 4.0,
}

# Input validation patterns
VALID_SUBSCRIPTION_ID_PATTERN = r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$"
VALID_LOCATION_PATTERN = r"^[a-z]{2,}[a-z0-9]*$"
VALID_RESOURCE_GROUP_PATTERN = r"^[-\w\._\(\)]+$"
VALID_DEPLOYMENT_NAME_PATTERN = r"^[-\w\._\(\)]+$"
VALID_REPOSITORY_PATTERN = r"^[a-z0-9]+(?:[._/-][a-z0-9]+)*$"
VALID_TAG_PATTERN = r"^[\w][\w.-]{0,127}$"
VALID_SHARE_NAME_PATTERN = r"^[a-z0-9](?:[a-z0-9]|-(?=[a-z0-9])){2,62}$"
# Spliced into remote shell commands
VALID_REMOTE_ARG_PATTERN = r"^[\w./:-]+\Z"


@dataclass(frozen=True)
class Config:
    """Deployment configuration loaded from environment variables or a file.

    All fields are validated at construction time. Invalid configurations
    raise ConfigurationError immediately rather than failing mid-deployment.
    """

    # Required fields
    subscription_id: str
    resource_group_name: str
    location: str

    # Image build
    source_dir: Path = field(default_factory=lambda: Path("."))
    image_repository: str = DEFAULT_IMAGE_REPOSITORY
    image_tag: str | None = None

    # Application runtime
    app_port: int = DEFAULT_APP_PORT
    app_command: tuple[str, ...] = DEFAULT_APP_COMMAND
    app_cli: str = DEFAULT_APP_CLI
    gateway_model: str = DEFAULT_GATEWAY_MODEL
    cpu: float = DEFAULT_CPU
    memory_gi: float = DEFAULT_MEMORY_GI

    # Network sizing
    vnet_address_prefix: str = DEFAULT_VNET_ADDRESS_PREFIX
    apps_subnet_prefix: str = DEFAULT_APPS_SUBNET_PREFIX
    private_link_subnet_prefix: str = DEFAULT_PRIVATE_LINK_SUBNET_PREFIX

    # Storage
    file_share_name: str = DEFAULT_FILE_SHARE_NAME
    file_share_quota_gib: int = MIN_FILE_SHARE_QUOTA_GIB
    mount_path: str = DEFAULT_MOUNT_PATH

    # Deployment record
    deployment_name: str = DEFAULT_DEPLOYMENT_NAME
    tags: dict[str, str] = field(default_factory=dict)

    # Timing
    apply_timeout_seconds: int = DEFAULT_APPLY_TIMEOUT_SECONDS
    build_timeout_seconds: int = DEFAULT_BUILD_TIMEOUT_SECONDS
    exec_timeout_seconds: int = DEFAULT_EXEC_TIMEOUT_SECONDS
    ready_timeout_seconds: int = DEFAULT_READY_TIMEOUT_SECONDS
    ready_poll_interval_seconds: int = DEFAULT_READY_POLL_INTERVAL_SECONDS

    def __post_init__(self) -> None:
        """Validate configuration after initialization.

        All errors are collected and reported together.
        """
        errors: list[str] = []

        if not self.subscription_id:
            errors.append("AZURE_SUBSCRIPTION_ID is required")
        elif not re.match(VALID_SUBSCRIPTION_ID_PATTERN, self.subscription_id.lower()):
            errors.append(f"AZURE_SUBSCRIPTION_ID must be a valid GUID: {self.subscription_id}")

        if not self.resource_group_name:
            errors.append("RESOURCE_GROUP_NAME is required")
        elif len(self.resource_group_name) > MAX_RESOURCE_GROUP_NAME_LENGTH:
            errors.append(
                f"RESOURCE_GROUP_NAME exceeds maximum length of {MAX_RESOURCE_GROUP_NAME_LENGTH}"
            )
        elif not re.match(VALID_RESOURCE_GROUP_PATTERN, self.resource_group_name):
            errors.append(f"RESOURCE_GROUP_NAME contains invalid characters: {self.resource_group_name}")

        if not self.location:
            errors.append("AZURE_LOCATION is required")
        elif not re.match(VALID_LOCATION_PATTERN, self.location.lower()):
            errors.append(f"AZURE_LOCATION must be a valid Azure region: {self.location}")

        if not self.source_dir.is_dir():
            errors.append(f"Source directory does not exist: {self.source_dir}")

        if not re.match(VALID_REPOSITORY_PATTERN, self.image_repository):
            errors.append(f"IMAGE_REPOSITORY is not a valid repository name: {self.image_repository}")

        if self.image_tag is not None and not re.match(VALID_TAG_PATTERN, self.image_tag):
            errors.append(f"IMAGE_TAG is not a valid tag: {self.image_tag}")

        if not 1 <= self.app_port <= 65535:
            errors.append(f"APP_PORT must be between 1 and 65535: {self.app_port}")

        if not self.app_command:
            errors.append("APP_COMMAND must not be empty")

        if not self.app_cli:
            errors.append("APP_CLI is required")
        elif not re.match(VALID_REMOTE_ARG_PATTERN, self.app_cli):
            errors.append(f"APP_CLI contains invalid characters: {self.app_cli}")

        if not self.gateway_model:
            errors.append("GATEWAY_MODEL is required")
        elif not re.match(VALID_REMOTE_ARG_PATTERN, self.gateway_model):
            errors.append(f"GATEWAY_MODEL contains invalid characters: {self.gateway_model}")

        expected_memory = ALLOWED_CPU_MEMORY.get(self.cpu)
        if expected_memory is None:
            errors.append(f"APP_CPU must be one of {sorted(ALLOWED_CPU_MEMORY)}: {self.cpu}")
        elif expected_memory != self.memory_gi:
            errors.append(
                f"APP_MEMORY_GI must be {expected_memory} for {self.cpu} CPU: {self.memory_gi}"
            )

        errors.extend(self._validate_network())

        if not re.match(VALID_SHARE_NAME_PATTERN, self.file_share_name):
            errors.append(f"FILE_SHARE_NAME is not a valid share name: {self.file_share_name}")

        if not MIN_FILE_SHARE_QUOTA_GIB <= self.file_share_quota_gib <= MAX_FILE_SHARE_QUOTA_GIB:
            errors.append(
                f"FILE_SHARE_QUOTA_GIB must be between {MIN_FILE_SHARE_QUOTA_GIB} "
                f"and {MAX_FILE_SHARE_QUOTA_GIB}"
            )

        if not self.mount_path.startswith("/"):
            errors.append(f"MOUNT_PATH must be absolute: {self.mount_path}")

        if not self.deployment_name:
            errors.append("DEPLOYMENT_NAME is required")
        elif len(self.deployment_name) > MAX_DEPLOYMENT_NAME_LENGTH:
            errors.append(f"DEPLOYMENT_NAME exceeds maximum length of {MAX_DEPLOYMENT_NAME_LENGTH}")
        elif not re.match(VALID_DEPLOYMENT_NAME_PATTERN, self.deployment_name):
            errors.append(f"DEPLOYMENT_NAME contains invalid characters: {self.deployment_name}")

        # Timing validation
        for name, value in (
            ("APPLY_TIMEOUT", self.apply_timeout_seconds),
            ("BUILD_TIMEOUT", self.build_timeout_seconds),
            ("EXEC_TIMEOUT", self.exec_timeout_seconds),
        ):
            if value < 1:
                errors.append(f"{name} must be at least 1 second")

        if not 1 <= self.ready_timeout_seconds <= MAX_READY_TIMEOUT_SECONDS:
            errors.append(
                f"READY_TIMEOUT must be between 1 and {MAX_READY_TIMEOUT_SECONDS} seconds"
            )

        if not 1 <= self.ready_poll_interval_seconds <= MAX_READY_POLL_INTERVAL_SECONDS:
            errors.append(
                f"READY_POLL_INTERVAL must be between 1 and {MAX_READY_POLL_INTERVAL_SECONDS} seconds"
            )

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    def _validate_network(self) -> list[str]:
        """Validate VNet and subnet prefixes."""
        errors: list[str] = []
        try:
            vnet = ipaddress.ip_network(self.vnet_address_prefix)
            apps = ipaddress.ip_network(self.apps_subnet_prefix)
            private_link = ipaddress.ip_network(self.private_link_subnet_prefix)
        except ValueError as e:
            return [f"Invalid network prefix: {e}"]

        if apps.prefixlen > MAX_APPS_SUBNET_PREFIX_LENGTH:
            errors.append(
                f"APPS_SUBNET_PREFIX must be /{MAX_APPS_SUBNET_PREFIX_LENGTH} or larger: {apps}"
            )
        for name, subnet in (("APPS_SUBNET_PREFIX", apps), ("PRIVATE_LINK_SUBNET_PREFIX", private_link)):
            if subnet.version != vnet.version or not subnet.subnet_of(vnet):  # type: ignore[arg-type]
                errors.append(f"{name} {subnet} is not inside VNET_ADDRESS_PREFIX {vnet}")
        if apps.overlaps(private_link):
            errors.append(f"APPS_SUBNET_PREFIX {apps} overlaps PRIVATE_LINK_SUBNET_PREFIX {private_link}")
        return errors

    def with_overrides(self, **overrides: Any) -> Config:
        """Return a validated copy with the given fields replaced.

        None values are ignored so partially filled sources can be layered.
        """
        values = {k: v for k, v in overrides.items() if v is not None}
        unknown = set(values) - {f.name for f in dataclasses.fields(self)}
        if unknown:
            raise ConfigurationError(f"Unknown configuration fields: {sorted(unknown)}")
        return dataclasses.replace(self, **values)

    @classmethod
    def env_values(cls) -> dict[str, Any]:
        """Read raw configuration values from environment variables.

        Values are not validated here so that a deployment file can be
        layered on top before the Config is constructed.

        Environment Variables:
            AZURE_SUBSCRIPTION_ID: Target Azure subscription
            RESOURCE_GROUP_NAME: Target resource group (the naming seed)
            AZURE_LOCATION: Deployment region
            SOURCE_DIR: Directory containing the Dockerfile (default: .)
            IMAGE_REPOSITORY: Registry repository (default: gateway)
            IMAGE_TAG: Image tag (default: UTC timestamp at build time)
            APP_PORT: Ingress target port (default: 8080)
            APP_COMMAND: Container start command, shell-quoted
            APP_CLI: Executable used for remote configuration (default: gateway)
            GATEWAY_MODEL: Model pushed during remote configuration
            APP_CPU / APP_MEMORY_GI: Container sizing (default: 1.0 / 2.0)
            VNET_ADDRESS_PREFIX, APPS_SUBNET_PREFIX, PRIVATE_LINK_SUBNET_PREFIX
            FILE_SHARE_NAME, FILE_SHARE_QUOTA_GIB, MOUNT_PATH
            DEPLOYMENT_NAME: Name of the phase-1 deployment record
            APPLY_TIMEOUT, BUILD_TIMEOUT, EXEC_TIMEOUT, READY_TIMEOUT,
            READY_POLL_INTERVAL: Timeouts in seconds
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

        def get_command(key: str, default: tuple[str, ...]) -> tuple[str, ...]:
            value = os.environ.get(key)
            if not value:
                return default
            return tuple(shlex.split(value))

        return dict(
            subscription_id=os.environ.get("AZURE_SUBSCRIPTION_ID", ""),
            resource_group_name=os.environ.get("RESOURCE_GROUP_NAME", ""),
            location=os.environ.get("AZURE_LOCATION", ""),
            source_dir=Path(os.environ.get("SOURCE_DIR", ".")),
            image_repository=os.environ.get("IMAGE_REPOSITORY", DEFAULT_IMAGE_REPOSITORY),
            image_tag=os.environ.get("IMAGE_TAG") or None,
            app_port=get_int("APP_PORT", DEFAULT_APP_PORT),
            app_command=get_command("APP_COMMAND", DEFAULT_APP_COMMAND),
            app_cli=os.environ.get("APP_CLI", DEFAULT_APP_CLI),
            gateway_model=os.environ.get("GATEWAY_MODEL", DEFAULT_GATEWAY_MODEL),
            cpu=get_float("APP_CPU", DEFAULT_CPU),
            memory_gi=get_float("APP_MEMORY_GI", DEFAULT_MEMORY_GI),
            vnet_address_prefix=os.environ.get("VNET_ADDRESS_PREFIX", DEFAULT_VNET_ADDRESS_PREFIX),
            apps_subnet_prefix=os.environ.get("APPS_SUBNET_PREFIX", DEFAULT_APPS_SUBNET_PREFIX),
            private_link_subnet_prefix=os.environ.get(
                "PRIVATE_LINK_SUBNET_PREFIX", DEFAULT_PRIVATE_LINK_SUBNET_PREFIX
            ),
            file_share_name=os.environ.get("FILE_SHARE_NAME", DEFAULT_FILE_SHARE_NAME),
            file_share_quota_gib=get_int("FILE_SHARE_QUOTA_GIB", MIN_FILE_SHARE_QUOTA_GIB),
            mount_path=os.environ.get("MOUNT_PATH", DEFAULT_MOUNT_PATH),
            deployment_name=os.environ.get("DEPLOYMENT_NAME", DEFAULT_DEPLOYMENT_NAME),
            apply_timeout_seconds=get_int("APPLY_TIMEOUT", DEFAULT_APPLY_TIMEOUT_SECONDS),
            build_timeout_seconds=get_int("BUILD_TIMEOUT", DEFAULT_BUILD_TIMEOUT_SECONDS),
            exec_timeout_seconds=get_int("EXEC_TIMEOUT", DEFAULT_EXEC_TIMEOUT_SECONDS),
            ready_timeout_seconds=get_int("READY_TIMEOUT", DEFAULT_READY_TIMEOUT_SECONDS),
            ready_poll_interval_seconds=get_int(
                "READY_POLL_INTERVAL", DEFAULT_READY_POLL_INTERVAL_SECONDS
            ),
        )

    @classmethod
    def from_env(cls) -> Config:
        """Build and validate a configuration from environment variables only."""
        return cls(**cls.env_values())
