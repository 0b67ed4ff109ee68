"""Pydantic models for the application runtime spec and deployment files.

These models provide:
1. Type-safe parsing of deployment YAML files
2. Validation at the boundary (fail fast, fail loudly)
3. Clean transformation to ARM request bodies at the SDK boundary
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator, model_validator

# Secret names referenced from the container spec
TOKEN_SECRET_NAME = "gateway-token"
REGISTRY_SECRET_NAME = "registry-password"
TOKEN_ENV_VAR = "GATEWAY_TOKEN"
DATA_VOLUME_NAME = "data"

# First GA version with NfsAzureFile storages and volumes
APP_API_VERSION = "2025-01-01"


# =============================================================================
# Application Runtime
# =============================================================================


class EnvironmentVariable(BaseModel):
    """Container environment variable: a literal value or a secret reference."""

    model_config = {"extra": "forbid", "frozen": True, "populate_by_name": True}

    name: Annotated[str, Field(min_length=1)]
    value: str | None = None
    secret_ref: str | None = Field(None, alias="secretRef")

    @model_validator(mode="after")
    def check_exactly_one_source(self) -> EnvironmentVariable:
        if (self.value is None) == (self.secret_ref is None):
            raise ValueError("exactly one of value or secretRef must be set")
        return self

    def to_arm(self) -> dict[str, str]:
        if self.secret_ref is not None:
            return {"name": self.name, "secretRef": self.secret_ref}
        return {"name": self.name, "value": self.value or ""}


class AppSecret(BaseModel):
    """Container app secret."""

    model_config = {"extra": "forbid", "frozen": True, "populate_by_name": True}

    name: Annotated[str, Field(min_length=1, max_length=253, pattern=r"^[a-z0-9][a-z0-9-]*$")]
    value: str = Field(repr=False)


class RegistryBinding(BaseModel):
    """Credentials the app uses to pull from the registry."""

    model_config = {"extra": "forbid", "frozen": True, "populate_by_name": True}

    server: Annotated[str, Field(min_length=1)]
    username: Annotated[str, Field(min_length=1)]
    password_secret_ref: str = Field(REGISTRY_SECRET_NAME, alias="passwordSecretRef")


class VolumeBinding(BaseModel):
    """Environment storage mounted into the container."""

    model_config = {"extra": "forbid", "frozen": True, "populate_by_name": True}

    volume_name: str = DATA_VOLUME_NAME
    storage_name: Annotated[str, Field(min_length=1)]
    mount_path: Annotated[str, Field(pattern=r"^/")]
    storage_type: str = "NfsAzureFile"


class ContainerAppRuntimeSpec(BaseModel):
    """Full desired runtime state of the application.

    Phase 2 always sends the complete spec, never a patch, so nothing from an
    earlier run survives an update.
    """

    model_config = {"extra": "forbid", "frozen": True, "populate_by_name": True}

    container_name: str = "gateway"
    image: Annotated[str, Field(min_length=1)]
    command: list[str] = Field(default_factory=list)
    cpu: Annotated[float, Field(gt=0)]
    memory_gi: Annotated[float, Field(gt=0)]
    target_port: Annotated[int, Field(ge=1, le=65535)]
    env: list[EnvironmentVariable] = Field(default_factory=list)
    secrets: list[AppSecret] = Field(default_factory=list)
    registry: RegistryBinding
    volume: VolumeBinding
    min_replicas: Annotated[int, Field(ge=0, le=1)] = 1
    max_replicas: Annotated[int, Field(ge=1, le=1)] = 1

    @model_validator(mode="after")
    def check_secret_references(self) -> ContainerAppRuntimeSpec:
        declared = {s.name for s in self.secrets}
        referenced = {e.secret_ref for e in self.env if e.secret_ref is not None}
        referenced.add(self.registry.password_secret_ref)
        missing = referenced - declared
        if missing:
            raise ValueError(f"secret references without a secret: {sorted(missing)}")
        return self

    def to_arm_properties(self, environment_id: str) -> dict[str, Any]:
        """Render the ``properties`` body of a Microsoft.App/containerApps PUT."""
        return {
            "managedEnvironmentId": environment_id,
            "configuration": {
                "activeRevisionsMode": "Single",
                "ingress": {
                    "external": True,
                    "targetPort": self.target_port,
                    "transport": "auto",
                    "allowInsecure": False,
                },
                "secrets": [{"name": s.name, "value": s.value} for s in self.secrets],
                "registries": [
                    {
                        "server": self.registry.server,
                        "username": self.registry.username,
                        "passwordSecretRef": self.registry.password_secret_ref,
                    }
                ],
            },
            "template": {
                "containers": [
                    {
                        "name": self.container_name,
                        "image": self.image,
                        "command": list(self.command),
                        "resources": {"cpu": self.cpu, "memory": f"{self.memory_gi}Gi"},
                        "env": [e.to_arm() for e in self.env],
                        "volumeMounts": [
                            {
                                "volumeName": self.volume.volume_name,
                                "mountPath": self.volume.mount_path,
                            }
                        ],
                    }
                ],
                "volumes": [
                    {
                        "name": self.volume.volume_name,
                        "storageType": self.volume.storage_type,
                        "storageName": self.volume.storage_name,
                    }
                ],
                "scale": {"minReplicas": self.min_replicas, "maxReplicas": self.max_replicas},
            },
        }


# =============================================================================
# Deployment File
# =============================================================================


class DeploymentFileSpec(BaseModel):
    """Optional YAML deployment file layered over environment variables.

    Field names follow the camelCase used in the YAML; every field is
    optional so a file only needs to state what differs from the defaults.
    """

    model_config = {"extra": "forbid", "populate_by_name": True}

    subscription_id: str | None = Field(None, alias="subscriptionId")
    resource_group_name: str | None = Field(None, alias="resourceGroupName")
    location: str | None = None
    source_dir: Path | None = Field(None, alias="sourceDir")
    image_repository: str | None = Field(None, alias="imageRepository")
    image_tag: str | None = Field(None, alias="imageTag")
    app_port: int | None = Field(None, alias="appPort")
    app_command: list[str] | None = Field(None, alias="appCommand")
    app_cli: str | None = Field(None, alias="appCli")
    gateway_model: str | None = Field(None, alias="gatewayModel")
    cpu: float | None = None
    memory_gi: float | None = Field(None, alias="memoryGi")
    vnet_address_prefix: str | None = Field(None, alias="vnetAddressPrefix")
    apps_subnet_prefix: str | None = Field(None, alias="appsSubnetPrefix")
    private_link_subnet_prefix: str | None = Field(None, alias="privateLinkSubnetPrefix")
    file_share_name: str | None = Field(None, alias="fileShareName")
    file_share_quota_gib: int | None = Field(None, alias="fileShareQuotaGib")
    mount_path: str | None = Field(None, alias="mountPath")
    deployment_name: str | None = Field(None, alias="deploymentName")
    tags: dict[str, str] | None = None

    @field_validator("app_command")
    @classmethod
    def validate_command(cls, v: list[str] | None) -> list[str] | None:
        if v is not None and not v:
            raise ValueError("appCommand must not be empty")
        return v

    def to_config_values(self, base_dir: Path | None = None) -> dict[str, Any]:
        """Return the fields set in the file, keyed by Config field name.

        A relative ``sourceDir`` is resolved against ``base_dir`` (the
        directory containing the file).
        """
        values = self.model_dump(exclude_none=True)
        if "app_command" in values:
            values["app_command"] = tuple(values["app_command"])
        source_dir = values.get("source_dir")
        if source_dir is not None and base_dir is not None and not source_dir.is_absolute():
            values["source_dir"] = base_dir / source_dir
        return values
