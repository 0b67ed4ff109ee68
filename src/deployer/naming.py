"""Deterministic resource naming.

Names are derived from a stable seed (the ARM id of the target resource
group) so that re-running a deployment against the same resource group
resolves to the same resources, while two resource groups never collide:

    name = policy(role + digest(seed))

The digest is 13 lowercase base32 characters taken from SHA-256, the same
length ARM uses for ``uniqueString()``. Cryptographic strength is not the
point; stability across processes and a low collision rate are.

Character rules differ per resource kind. Storage accounts and container
registries reject hyphens, most other kinds allow them. Sanitization is
therefore applied per kind through a CharacterPolicy, never globally.
"""

from __future__ import annotations

import base64
import hashlib
import re
from dataclasses import dataclass
from enum import Enum

from .errors import InvalidNameDerivation

DIGEST_BYTES = 8
DIGEST_LENGTH = 13

# Fixed names that are not derived from the seed
PRIVATE_DNS_ZONE_NAME = "privatelink.file.core.windows.net"
DNS_ZONE_GROUP_NAME = "default"
APPS_SUBNET_NAME = "snet-apps"
PRIVATE_LINK_SUBNET_NAME = "snet-private-link"


class ResourceRole(str, Enum):
    """Role prefixes for derived names."""

    NETWORK = "vnet-"
    STORAGE = "st-"
    PRIVATE_ENDPOINT = "pe-"
    DNS_LINK = "link-"
    REGISTRY = "cr-"
    LOG_WORKSPACE = "log-"
    ENVIRONMENT = "cae-"
    ENVIRONMENT_STORAGE = "nfs-"
    APPLICATION = "ca-"


@dataclass(frozen=True)
class CharacterPolicy:
    """Legality rules for one resource kind.

    Attributes:
        allowed: Regex character class body of allowed characters.
        strip: Separator characters removed before validation.
        min_length: Minimum name length.
        max_length: Maximum name length.
        lowercase: Whether the name is lowercased first.
        leading_letter: Whether the name must start with a letter.
    """

    allowed: str
    min_length: int
    max_length: int
    strip: str = ""
    lowercase: bool = True
    leading_letter: bool = False

    def apply(self, raw: str) -> str:
        """Sanitize a raw name and verify the result is legal.

        Raises:
            InvalidNameDerivation: If the sanitized name breaks the policy.
        """
        name = raw.lower() if self.lowercase else raw
        for char in self.strip:
            name = name.replace(char, "")

        if not re.fullmatch(f"[{self.allowed}]+", name):
            raise InvalidNameDerivation(
                f"Name '{name}' contains characters outside [{self.allowed}]"
            )
        if self.leading_letter and not name[0].isalpha():
            raise InvalidNameDerivation(f"Name '{name}' must start with a letter")
        if not self.min_length <= len(name) <= self.max_length:
            raise InvalidNameDerivation(
                f"Name '{name}' has length {len(name)}, "
                f"allowed {self.min_length}-{self.max_length}"
            )
        return name


# Alphanumeric only: hyphens in the role prefix are stripped
STORAGE_POLICY = CharacterPolicy(allowed="a-z0-9", strip="-_.", min_length=3, max_length=24)
REGISTRY_POLICY = CharacterPolicy(allowed="a-z0-9", strip="-_.", min_length=5, max_length=50)

# Hyphen-tolerant kinds
NETWORK_POLICY = CharacterPolicy(allowed="a-z0-9._-", min_length=2, max_length=64)
PRIVATE_ENDPOINT_POLICY = CharacterPolicy(allowed="a-z0-9._-", min_length=2, max_length=64)
DNS_LINK_POLICY = CharacterPolicy(allowed="a-z0-9._-", min_length=1, max_length=80)
LOG_WORKSPACE_POLICY = CharacterPolicy(allowed="a-z0-9-", min_length=4, max_length=63)
ENVIRONMENT_POLICY = CharacterPolicy(
    allowed="a-z0-9-", min_length=2, max_length=60, leading_letter=True
)
ENVIRONMENT_STORAGE_POLICY = CharacterPolicy(allowed="a-z0-9-", min_length=2, max_length=32)
APPLICATION_POLICY = CharacterPolicy(
    allowed="a-z0-9-", min_length=2, max_length=32, leading_letter=True
)

KIND_POLICIES: dict[ResourceRole, CharacterPolicy] = {
    ResourceRole.NETWORK: NETWORK_POLICY,
    ResourceRole.STORAGE: STORAGE_POLICY,
    ResourceRole.PRIVATE_ENDPOINT: PRIVATE_ENDPOINT_POLICY,
    ResourceRole.DNS_LINK: DNS_LINK_POLICY,
    ResourceRole.REGISTRY: REGISTRY_POLICY,
    ResourceRole.LOG_WORKSPACE: LOG_WORKSPACE_POLICY,
    ResourceRole.ENVIRONMENT: ENVIRONMENT_POLICY,
    ResourceRole.ENVIRONMENT_STORAGE: ENVIRONMENT_STORAGE_POLICY,
    ResourceRole.APPLICATION: APPLICATION_POLICY,
}


def seed_digest(seed: str) -> str:
    """Render a stable 13-character lowercase alphanumeric digest of a seed."""
    digest = hashlib.sha256(seed.encode("utf-8")).digest()[:DIGEST_BYTES]
    return base64.b32encode(digest).decode("ascii").rstrip("=").lower()


def seed_for(subscription_id: str, resource_group: str) -> str:
    """Build the canonical seed for a resource group.

    Subscription GUIDs and resource group names are case-insensitive in ARM,
    so the seed is lowercased to keep names stable across spellings.
    """
    return f"/subscriptions/{subscription_id}/resourceGroups/{resource_group}".lower()


def resolve(seed: str, role: ResourceRole, policy: CharacterPolicy | None = None) -> str:
    """Derive a legal, deterministic resource name.

    Args:
        seed: Stable identifier of the deployment target.
        role: Role prefix of the resource.
        policy: Character policy to apply. Defaults to the role's policy.

    Returns:
        A name that satisfies the policy.

    Raises:
        InvalidNameDerivation: If the seed is empty or the name is illegal.
    """
    if not seed:
        raise InvalidNameDerivation("Seed must not be empty")

    policy = policy or KIND_POLICIES[role]
    return policy.apply(f"{role.value}{seed_digest(seed)}")


@dataclass(frozen=True)
class ResourceNames:
    """Every name used by the fixed topology."""

    network: str
    storage_account: str
    private_endpoint: str
    dns_link: str
    registry: str
    log_workspace: str
    environment: str
    environment_storage: str
    application: str
    dns_zone: str = PRIVATE_DNS_ZONE_NAME
    dns_zone_group: str = DNS_ZONE_GROUP_NAME


class NameResolver:
    """Resolves all resource names for one seed."""

    def __init__(self, seed: str) -> None:
        if not seed:
            raise InvalidNameDerivation("Seed must not be empty")
        self._seed = seed

    @property
    def seed(self) -> str:
        return self._seed

    def name_for(self, role: ResourceRole) -> str:
        return resolve(self._seed, role)

    def resolve_all(self) -> ResourceNames:
        return ResourceNames(
            network=self.name_for(ResourceRole.NETWORK),
            storage_account=self.name_for(ResourceRole.STORAGE),
            private_endpoint=self.name_for(ResourceRole.PRIVATE_ENDPOINT),
            dns_link=self.name_for(ResourceRole.DNS_LINK),
            registry=self.name_for(ResourceRole.REGISTRY),
            log_workspace=self.name_for(ResourceRole.LOG_WORKSPACE),
            environment=self.name_for(ResourceRole.ENVIRONMENT),
            environment_storage=self.name_for(ResourceRole.ENVIRONMENT_STORAGE),
            application=self.name_for(ResourceRole.APPLICATION),
        )
