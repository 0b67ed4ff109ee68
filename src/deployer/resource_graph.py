"""Dependency-ordered resource graph for the declarative phase.

This module implements:
1. The fixed topology of typed resource nodes (``declare_graph``)
2. Validation: acyclic, and every edge points at a declared node
3. Topological ordering with ties broken by declaration order
4. Rendering to an ARM template with an explicit ``dependsOn`` for every edge

EXPLICIT EDGES:
ARM infers ordering only from references inside resource properties. The
environment storage link references neither the private DNS zone group nor
the VNet link, but its NFS mount only validates once the private endpoint
resolves. Every edge is therefore emitted as ``dependsOn``.

The graph is built as plain data and serialized only at the SDK boundary.
"""

from __future__ import annotations

import heapq
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .config import Config
from .errors import CyclicDependencyError, UnknownDependencyError
from .models import APP_API_VERSION
from .naming import APPS_SUBNET_NAME, PRIVATE_LINK_SUBNET_NAME, ResourceNames
from .platform import resource_id

logger = logging.getLogger(__name__)

ARM_TEMPLATE_SCHEMA = (
    "https://schema.management.azure.com/schemas/2019-04-01/deploymentTemplate.json#"
)

# Placeholder image used until phase 2 builds the real one
PLACEHOLDER_IMAGE = "mcr.microsoft.com/k8se/quickstart:latest"
PLACEHOLDER_PORT = 80


class ResourceKind(str, Enum):
    """Kinds of resources in the fixed topology."""

    NETWORK = "network"
    LOG_WORKSPACE = "log-workspace"
    REGISTRY = "registry"
    STORAGE_ACCOUNT = "storage-account"
    FILE_SHARE = "file-share"
    PRIVATE_ENDPOINT = "private-endpoint"
    DNS_ZONE = "dns-zone"
    DNS_LINK = "dns-link"
    DNS_ZONE_GROUP = "dns-zone-group"
    COMPUTE_ENVIRONMENT = "compute-environment"
    ENVIRONMENT_STORAGE_LINK = "environment-storage-link"
    APPLICATION = "application"


# ARM resource type and API version per kind
RESOURCE_TYPES: dict[ResourceKind, tuple[str, str]] = {
    ResourceKind.NETWORK: ("Microsoft.Network/virtualNetworks", "2023-09-01"),
    ResourceKind.LOG_WORKSPACE: ("Microsoft.OperationalInsights/workspaces", "2022-10-01"),
    ResourceKind.REGISTRY: ("Microsoft.ContainerRegistry/registries", "2023-07-01"),
    ResourceKind.STORAGE_ACCOUNT: ("Microsoft.Storage/storageAccounts", "2023-01-01"),
    ResourceKind.FILE_SHARE: (
        "Microsoft.Storage/storageAccounts/fileServices/shares",
        "2023-01-01",
    ),
    ResourceKind.PRIVATE_ENDPOINT: ("Microsoft.Network/privateEndpoints", "2023-09-01"),
    ResourceKind.DNS_ZONE: ("Microsoft.Network/privateDnsZones", "2020-06-01"),
    ResourceKind.DNS_LINK: (
        "Microsoft.Network/privateDnsZones/virtualNetworkLinks",
        "2020-06-01",
    ),
    ResourceKind.DNS_ZONE_GROUP: (
        "Microsoft.Network/privateEndpoints/privateDnsZoneGroups",
        "2023-09-01",
    ),
    ResourceKind.COMPUTE_ENVIRONMENT: ("Microsoft.App/managedEnvironments", APP_API_VERSION),
    ResourceKind.ENVIRONMENT_STORAGE_LINK: (
        "Microsoft.App/managedEnvironments/storages",
        APP_API_VERSION,
    ),
    ResourceKind.APPLICATION: ("Microsoft.App/containerApps", APP_API_VERSION),
}


@dataclass
class ResourceNode:
    """One declared piece of infrastructure.

    Attributes:
        kind: Resource kind; also the node's key in the graph.
        name: ARM name, slash-separated for nested types.
        depends_on: Kinds that must exist before this node is submitted.
        spec: Kind-specific ARM body (everything except type/name/dependsOn).
    """

    kind: ResourceKind
    name: str
    depends_on: tuple[ResourceKind, ...] = ()
    spec: dict[str, Any] = field(default_factory=dict)

    @property
    def resource_type(self) -> str:
        return RESOURCE_TYPES[self.kind][0]

    @property
    def api_version(self) -> str:
        return RESOURCE_TYPES[self.kind][1]

    @property
    def short_name(self) -> str:
        """Last name segment, as shown by the portal."""
        return self.name.rsplit("/", 1)[-1]


@dataclass
class ResourceGraph:
    """Directed acyclic graph of resource nodes in declaration order."""

    nodes: dict[ResourceKind, ResourceNode] = field(default_factory=dict)

    def add(self, node: ResourceNode) -> None:
        """Add a node. Each kind may appear once.

        Raises:
            ValueError: If the kind is already declared.
        """
        if node.kind in self.nodes:
            raise ValueError(f"Node '{node.kind.value}' is already declared")
        self.nodes[node.kind] = node

    def __iter__(self):  # type: ignore[no-untyped-def]
        return iter(self.nodes.values())

    def __len__(self) -> int:
        return len(self.nodes)

    def validate(self) -> None:
        """Check that every edge resolves and the graph is acyclic.

        Raises:
            UnknownDependencyError: If a node depends on an undeclared node.
            CyclicDependencyError: If a cycle is detected.
        """
        for node in self.nodes.values():
            missing = [dep.value for dep in node.depends_on if dep not in self.nodes]
            if missing:
                raise UnknownDependencyError(
                    f"Node '{node.kind.value}' depends on undeclared nodes: {missing}"
                )
            if node.kind in node.depends_on:
                raise CyclicDependencyError(f"Node '{node.kind.value}' depends on itself")

        order = self._kahn()
        if len(order) != len(self.nodes):
            cycle_nodes = [k.value for k in self.nodes if k not in set(order)]
            raise CyclicDependencyError(f"Circular dependency detected involving: {cycle_nodes}")

    def topological_sort(self) -> list[ResourceNode]:
        """Return nodes in submission order (dependencies first).

        Among nodes that are ready at the same time, the one declared first
        comes first, so the order is deterministic.

        Raises:
            UnknownDependencyError: If a node depends on an undeclared node.
            CyclicDependencyError: If a cycle is detected.
        """
        self.validate()
        return [self.nodes[kind] for kind in self._kahn()]

    def _kahn(self) -> list[ResourceKind]:
        """Kahn's algorithm, using declaration index as the tie-breaker."""
        index = {kind: i for i, kind in enumerate(self.nodes)}
        dependents: dict[ResourceKind, list[ResourceKind]] = {kind: [] for kind in self.nodes}
        in_degree: dict[ResourceKind, int] = {kind: 0 for kind in self.nodes}

        for node in self.nodes.values():
            for dep in set(node.depends_on):
                if dep in dependents:
                    dependents[dep].append(node.kind)
                    in_degree[node.kind] += 1

        ready = [(index[kind], kind) for kind, degree in in_degree.items() if degree == 0]
        heapq.heapify(ready)
        result: list[ResourceKind] = []

        while ready:
            _, current = heapq.heappop(ready)
            result.append(current)
            for dependent in dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    heapq.heappush(ready, (index[dependent], dependent))

        return result

    def resource_id(self, kind: ResourceKind, subscription_id: str, resource_group: str) -> str:
        node = self.nodes[kind]
        return resource_id(subscription_id, resource_group, node.resource_type, node.name)


def declare_graph(config: Config, names: ResourceNames) -> ResourceGraph:
    """Declare the fixed topology for one deployment target.

    Pure: no I/O. Node ids are computed locally so that cross-node
    references are literal strings rather than template expressions.
    """
    sub = config.subscription_id
    rg = config.resource_group_name
    location = config.location
    tags = {**config.tags, "managedBy": "aca-deployer"}

    def rid(kind: ResourceKind, name: str) -> str:
        return resource_id(sub, rg, RESOURCE_TYPES[kind][0], name)

    network_id = rid(ResourceKind.NETWORK, names.network)
    storage_id = rid(ResourceKind.STORAGE_ACCOUNT, names.storage_account)
    dns_zone_id = rid(ResourceKind.DNS_ZONE, names.dns_zone)
    log_id = rid(ResourceKind.LOG_WORKSPACE, names.log_workspace)
    environment_id = rid(ResourceKind.COMPUTE_ENVIRONMENT, names.environment)
    log_api = RESOURCE_TYPES[ResourceKind.LOG_WORKSPACE][1]

    graph = ResourceGraph()

    graph.add(
        ResourceNode(
            kind=ResourceKind.NETWORK,
            name=names.network,
            spec={
                "location": location,
                "tags": tags,
                "properties": {
                    "addressSpace": {"addressPrefixes": [config.vnet_address_prefix]},
                    "subnets": [
                        {
                            "name": APPS_SUBNET_NAME,
                            "properties": {
                                "addressPrefix": config.apps_subnet_prefix,
                                "delegations": [
                                    {
                                        "name": "Microsoft.App.environments",
                                        "properties": {
                                            "serviceName": "Microsoft.App/environments"
                                        },
                                    }
                                ],
                            },
                        },
                        {
                            "name": PRIVATE_LINK_SUBNET_NAME,
                            "properties": {
                                "addressPrefix": config.private_link_subnet_prefix,
                                "privateEndpointNetworkPolicies": "Disabled",
                            },
                        },
                    ],
                },
            },
        )
    )

    graph.add(
        ResourceNode(
            kind=ResourceKind.LOG_WORKSPACE,
            name=names.log_workspace,
            spec={
                "location": location,
                "tags": tags,
                "properties": {"sku": {"name": "PerGB2018"}, "retentionInDays": 30},
            },
        )
    )

    graph.add(
        ResourceNode(
            kind=ResourceKind.REGISTRY,
            name=names.registry,
            spec={
                "location": location,
                "tags": tags,
                "sku": {"name": "Basic"},
                # Admin user lets phase 2 list pull credentials for the app
                "properties": {"adminUserEnabled": True},
            },
        )
    )

    graph.add(
        ResourceNode(
            kind=ResourceKind.STORAGE_ACCOUNT,
            name=names.storage_account,
            spec={
                "location": location,
                "tags": tags,
                "kind": "FileStorage",
                "sku": {"name": "Premium_LRS"},
                "properties": {
                    # NFS shares reject secure transfer and are reached privately
                    "supportsHttpsTrafficOnly": False,
                    "publicNetworkAccess": "Disabled",
                    "minimumTlsVersion": "TLS1_2",
                    "networkAcls": {"defaultAction": "Deny", "bypass": "AzureServices"},
                },
            },
        )
    )

    graph.add(
        ResourceNode(
            kind=ResourceKind.FILE_SHARE,
            name=f"{names.storage_account}/default/{config.file_share_name}",
            depends_on=(ResourceKind.STORAGE_ACCOUNT,),
            spec={
                "properties": {
                    "enabledProtocols": "NFS",
                    "rootSquash": "NoRootSquash",
                    "shareQuota": config.file_share_quota_gib,
                },
            },
        )
    )

    graph.add(
        ResourceNode(
            kind=ResourceKind.PRIVATE_ENDPOINT,
            name=names.private_endpoint,
            depends_on=(ResourceKind.STORAGE_ACCOUNT, ResourceKind.NETWORK),
            spec={
                "location": location,
                "tags": tags,
                "properties": {
                    "subnet": {"id": f"{network_id}/subnets/{PRIVATE_LINK_SUBNET_NAME}"},
                    "privateLinkServiceConnections": [
                        {
                            "name": names.private_endpoint,
                            "properties": {
                                "privateLinkServiceId": storage_id,
                                "groupIds": ["file"],
                            },
                        }
                    ],
                },
            },
        )
    )

    graph.add(
        ResourceNode(
            kind=ResourceKind.DNS_ZONE,
            name=names.dns_zone,
            spec={"location": "global", "tags": tags, "properties": {}},
        )
    )

    graph.add(
        ResourceNode(
            kind=ResourceKind.DNS_LINK,
            name=f"{names.dns_zone}/{names.dns_link}",
            depends_on=(ResourceKind.DNS_ZONE, ResourceKind.NETWORK),
            spec={
                "location": "global",
                "tags": tags,
                "properties": {
                    "registrationEnabled": False,
                    "virtualNetwork": {"id": network_id},
                },
            },
        )
    )

    graph.add(
        ResourceNode(
            kind=ResourceKind.DNS_ZONE_GROUP,
            name=f"{names.private_endpoint}/{names.dns_zone_group}",
            depends_on=(ResourceKind.PRIVATE_ENDPOINT, ResourceKind.DNS_ZONE),
            spec={
                "properties": {
                    "privateDnsZoneConfigs": [
                        {
                            "name": names.dns_zone.replace(".", "-"),
                            "properties": {"privateDnsZoneId": dns_zone_id},
                        }
                    ],
                },
            },
        )
    )

    graph.add(
        ResourceNode(
            kind=ResourceKind.COMPUTE_ENVIRONMENT,
            name=names.environment,
            depends_on=(ResourceKind.NETWORK, ResourceKind.LOG_WORKSPACE),
            spec={
                "location": location,
                "tags": tags,
                "properties": {
                    "vnetConfiguration": {
                        "infrastructureSubnetId": f"{network_id}/subnets/{APPS_SUBNET_NAME}",
                        "internal": False,
                    },
                    "workloadProfiles": [
                        {"name": "Consumption", "workloadProfileType": "Consumption"}
                    ],
                    "appLogsConfiguration": {
                        "destination": "log-analytics",
                        "logAnalyticsConfiguration": {
                            "customerId": f"[reference('{log_id}', '{log_api}').customerId]",
                            "sharedKey": f"[listKeys('{log_id}', '{log_api}').primarySharedKey]",
                        },
                    },
                },
            },
        )
    )

    graph.add(
        ResourceNode(
            kind=ResourceKind.ENVIRONMENT_STORAGE_LINK,
            name=f"{names.environment}/{names.environment_storage}",
            depends_on=(
                ResourceKind.COMPUTE_ENVIRONMENT,
                ResourceKind.DNS_ZONE_GROUP,
                ResourceKind.DNS_LINK,
                ResourceKind.FILE_SHARE,
            ),
            spec={
                "properties": {
                    "nfsAzureFile": {
                        "server": f"{names.storage_account}.file.core.windows.net",
                        "shareName": f"/{names.storage_account}/{config.file_share_name}",
                        "accessMode": "ReadWrite",
                    },
                },
            },
        )
    )

    graph.add(
        ResourceNode(
            kind=ResourceKind.APPLICATION,
            name=names.application,
            depends_on=(ResourceKind.COMPUTE_ENVIRONMENT,),
            spec={
                "location": location,
                "tags": tags,
                "properties": {
                    "managedEnvironmentId": environment_id,
                    "configuration": {
                        "activeRevisionsMode": "Single",
                        "ingress": {"external": True, "targetPort": PLACEHOLDER_PORT},
                    },
                    "template": {
                        "containers": [
                            {
                                "name": "placeholder",
                                "image": PLACEHOLDER_IMAGE,
                                "resources": {"cpu": 0.25, "memory": "0.5Gi"},
                            }
                        ],
                        "scale": {"minReplicas": 1, "maxReplicas": 1},
                    },
                },
            },
        )
    )

    logger.debug("Declared resource graph", extra={"node_count": len(graph)})
    return graph


def render_template(graph: ResourceGraph, subscription_id: str, resource_group: str) -> dict[str, Any]:
    """Serialize the graph to an ARM template.

    Resources are emitted in topological order and every edge becomes an
    explicit ``dependsOn`` entry. Outputs expose what phase 2 needs to find
    without the caller re-supplying any derived name.
    """
    ordered = graph.topological_sort()

    def rid(kind: ResourceKind) -> str:
        return graph.resource_id(kind, subscription_id, resource_group)

    resources: list[dict[str, Any]] = []
    for node in ordered:
        resource: dict[str, Any] = {
            "type": node.resource_type,
            "apiVersion": node.api_version,
            "name": node.name,
            **node.spec,
        }
        if node.depends_on:
            resource["dependsOn"] = [rid(dep) for dep in node.depends_on]
        resources.append(resource)

    app = graph.nodes[ResourceKind.APPLICATION]
    registry = graph.nodes[ResourceKind.REGISTRY]
    storage_link = graph.nodes[ResourceKind.ENVIRONMENT_STORAGE_LINK]
    app_id = rid(ResourceKind.APPLICATION)
    registry_id = rid(ResourceKind.REGISTRY)

    outputs: dict[str, dict[str, str]] = {
        "endpointFqdn": {
            "type": "string",
            "value": f"[reference('{app_id}', '{app.api_version}').configuration.ingress.fqdn]",
        },
        "registryName": {"type": "string", "value": registry.name},
        "registryLoginServer": {
            "type": "string",
            "value": f"[reference('{registry_id}', '{registry.api_version}').loginServer]",
        },
        "registryId": {"type": "string", "value": registry_id},
        "appName": {"type": "string", "value": app.name},
        "appId": {"type": "string", "value": app_id},
        "environmentId": {"type": "string", "value": rid(ResourceKind.COMPUTE_ENVIRONMENT)},
        "environmentStorageName": {"type": "string", "value": storage_link.short_name},
    }

    return {
        "$schema": ARM_TEMPLATE_SCHEMA,
        "contentVersion": "1.0.0.0",
        "resources": resources,
        "outputs": outputs,
    }
