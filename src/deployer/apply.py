"""Declarative apply of the resource graph via ARM.

The whole graph is submitted as one incremental deployment with a fixed
name. ARM honors the explicit ``dependsOn`` edges, so a node is never
created before the nodes it depends on. Re-running with an unchanged graph
updates the same deployment record in place and creates nothing new.

Flow:
1. Ensure the resource group exists (idempotent)
2. ARM WhatIf: classify each node as created, updated or unchanged
3. Deployment: submit and wait with a bounded timeout
4. On failure, read deployment operations to name the failing node

FAILURE POLICY:
No retry and no rollback. Nodes that completed before the failure remain
in place; the error lists them so the operator knows what exists.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from azure.core.exceptions import HttpResponseError
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.resource.resources.models import (
    Deployment,
    DeploymentMode,
    DeploymentProperties,
    DeploymentWhatIf,
    DeploymentWhatIfProperties,
    ResourceGroup,
)

from .config import Config
from .errors import DependencyUnresolved, PlatformApplyFailure
from .resource_graph import ResourceGraph, ResourceKind, render_template

logger = logging.getLogger(__name__)

# SECURITY: Bound the number of WhatIf changes processed from a response
MAX_WHATIF_CHANGES = 500


class ChangeType(str, Enum):
    """ARM WhatIf change types."""

    CREATE = "Create"
    DELETE = "Delete"
    DEPLOY = "Deploy"
    IGNORE = "Ignore"
    MODIFY = "Modify"
    NO_CHANGE = "NoChange"
    UNSUPPORTED = "Unsupported"


# Deployment output name -> DeploymentOutcome field
OUTPUT_FIELDS: dict[str, str] = {
    "endpointFqdn": "endpoint_fqdn",
    "registryName": "registry_name",
    "registryLoginServer": "registry_login_server",
    "registryId": "registry_id",
    "appName": "app_name",
    "appId": "app_id",
    "environmentId": "environment_id",
    "environmentStorageName": "environment_storage_name",
}


def enum_value(value: Any) -> str:
    """Return the string value of an SDK enum or plain string."""
    return str(getattr(value, "value", value) or "")


@dataclass
class DeploymentOutcome:
    """What phase 1 produced and phase 2 needs.

    The change lists hold node kinds as reported by WhatIf before the
    apply; they are empty when the outcome was read back from an existing
    deployment record.
    """

    endpoint_fqdn: str
    registry_name: str
    registry_login_server: str
    registry_id: str
    app_name: str
    app_id: str
    environment_id: str
    environment_storage_name: str
    created: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)

    @classmethod
    def from_outputs(cls, outputs: dict[str, Any] | None) -> DeploymentOutcome:
        """Build an outcome from ARM deployment outputs.

        Raises:
            DependencyUnresolved: If any expected output is missing or empty.
        """
        outputs = outputs or {}
        values: dict[str, str] = {}
        missing: list[str] = []
        for output_name, field_name in OUTPUT_FIELDS.items():
            value = outputs.get(output_name, {}).get("value")
            if not value:
                missing.append(output_name)
            else:
                values[field_name] = str(value)

        if missing:
            raise DependencyUnresolved(f"Deployment outputs missing: {missing}")
        return cls(**values)


class GraphApplier:
    """Applies a ResourceGraph to one resource group."""

    def __init__(self, client: ResourceManagementClient, config: Config) -> None:
        self._client = client
        self._config = config

    def apply(self, graph: ResourceGraph) -> DeploymentOutcome:
        """Apply the graph and return the deployment outcome.

        Raises:
            CyclicDependencyError: If the graph contains a cycle.
            UnknownDependencyError: If an edge points at an undeclared node.
            PlatformApplyFailure: If the platform rejects any node.
            DependencyUnresolved: If the deployment succeeded without outputs.
        """
        sub = self._config.subscription_id
        rg = self._config.resource_group_name
        template = render_template(graph, sub, rg)

        self._ensure_resource_group()
        changes = self.preview(graph, template)

        logger.info(
            "Applying resource graph",
            extra={
                "phase": "declarative",
                "deployment_name": self._config.deployment_name,
                "resource_group": rg,
                "create_count": len(changes[ChangeType.CREATE]),
                "modify_count": len(changes[ChangeType.MODIFY]),
            },
        )

        deployment = Deployment(
            properties=DeploymentProperties(
                mode=DeploymentMode.INCREMENTAL,
                template=template,
                parameters={},
            )
        )

        try:
            poller = self._client.deployments.begin_create_or_update(
                resource_group_name=rg,
                deployment_name=self._config.deployment_name,
                parameters=deployment,
            )
            result = poller.result(timeout=self._config.apply_timeout_seconds)
        except HttpResponseError as e:
            raise self._attribute_failure(graph, str(e.message or e)) from e

        if not poller.done():
            raise PlatformApplyFailure(
                f"deployment did not finish within {self._config.apply_timeout_seconds}s",
                kind="deployment",
                name=self._config.deployment_name,
            )

        outputs = result.properties.outputs if result is not None and result.properties else None
        outcome = DeploymentOutcome.from_outputs(outputs)
        outcome.created = [kind.value for kind in changes[ChangeType.CREATE]]
        outcome.updated = [kind.value for kind in changes[ChangeType.MODIFY]]
        outcome.unchanged = [kind.value for kind in changes[ChangeType.NO_CHANGE]]

        logger.info(
            "Resource graph applied",
            extra={
                "phase": "declarative",
                "created_nodes": outcome.created,
                "updated_nodes": outcome.updated,
                "unchanged_count": len(outcome.unchanged),
            },
        )
        return outcome

    def preview(
        self, graph: ResourceGraph, template: dict[str, Any] | None = None
    ) -> dict[ChangeType, list[ResourceKind]]:
        """Classify every node with ARM WhatIf.

        Creates are grouped under CREATE, modifications and redeploys under
        MODIFY, everything else under NO_CHANGE.

        Raises:
            PlatformApplyFailure: If the WhatIf call fails.
        """
        sub = self._config.subscription_id
        rg = self._config.resource_group_name
        if template is None:
            template = render_template(graph, sub, rg)

        whatif = DeploymentWhatIf(
            properties=DeploymentWhatIfProperties(
                template=template,
                parameters={},
                mode=DeploymentMode.INCREMENTAL,
            )
        )

        try:
            poller = self._client.deployments.begin_what_if(
                resource_group_name=rg,
                deployment_name=self._config.deployment_name,
                parameters=whatif,
            )
            whatif_result = poller.result(timeout=self._config.apply_timeout_seconds)
        except HttpResponseError as e:
            raise PlatformApplyFailure(
                str(e.message or e), kind="what-if", name=self._config.deployment_name
            ) from e

        reported: dict[str, str] = {}
        if whatif_result is not None and whatif_result.properties is not None:
            changes = whatif_result.properties.changes or []
            if len(changes) > MAX_WHATIF_CHANGES:
                raise PlatformApplyFailure(
                    f"WhatIf returned {len(changes)} changes, exceeding limit of {MAX_WHATIF_CHANGES}",
                    kind="what-if",
                    name=self._config.deployment_name,
                )
            for change in changes:
                if change.resource_id:
                    reported[change.resource_id.lower()] = enum_value(change.change_type)

        classified: dict[ChangeType, list[ResourceKind]] = {
            ChangeType.CREATE: [],
            ChangeType.MODIFY: [],
            ChangeType.NO_CHANGE: [],
        }
        for node in graph.topological_sort():
            node_id = graph.resource_id(node.kind, sub, rg).lower()
            change_type = reported.get(node_id, ChangeType.NO_CHANGE.value)
            if change_type == ChangeType.CREATE.value:
                classified[ChangeType.CREATE].append(node.kind)
            elif change_type in (ChangeType.MODIFY.value, ChangeType.DEPLOY.value):
                classified[ChangeType.MODIFY].append(node.kind)
            else:
                classified[ChangeType.NO_CHANGE].append(node.kind)

        return classified

    def _ensure_resource_group(self) -> None:
        """Ensure the target resource group exists, create if not."""
        rg = self._config.resource_group_name
        try:
            self._client.resource_groups.create_or_update(
                resource_group_name=rg,
                parameters=ResourceGroup(
                    location=self._config.location,
                    tags={**self._config.tags, "managedBy": "aca-deployer"},
                ),
            )
        except HttpResponseError as e:
            raise PlatformApplyFailure(
                str(e.message or e), kind="resource-group", name=rg
            ) from e
        logger.info(f"Resource group '{rg}' ensured in {self._config.location}")

    def _attribute_failure(self, graph: ResourceGraph, message: str) -> PlatformApplyFailure:
        """Map a failed deployment back to the node that failed.

        Deployment operations report one entry per resource. The first
        failed entry names the node; succeeded entries are the nodes left
        in place.
        """
        sub = self._config.subscription_id
        rg = self._config.resource_group_name
        by_id = {graph.resource_id(node.kind, sub, rg).lower(): node for node in graph}

        failed_node = None
        failed_message = message
        succeeded: list[str] = []

        try:
            operations = list(
                self._client.deployment_operations.list(
                    resource_group_name=rg,
                    deployment_name=self._config.deployment_name,
                )
            )
        except HttpResponseError as e:
            logger.warning(
                "Could not read deployment operations",
                extra={"deployment_name": self._config.deployment_name, "error": str(e)},
            )
            operations = []

        for operation in operations:
            props = operation.properties
            if props is None or props.target_resource is None or not props.target_resource.id:
                continue
            node = by_id.get(props.target_resource.id.lower())
            if node is None:
                continue
            state = enum_value(props.provisioning_state)
            if state == "Succeeded":
                succeeded.append(node.kind.value)
            elif state == "Failed" and failed_node is None:
                failed_node = node
                failed_message = _operation_error(props) or message

        if failed_node is None:
            kind, name = "deployment", self._config.deployment_name
        else:
            kind, name = failed_node.kind.value, failed_node.name

        logger.error(
            "Resource graph apply failed",
            extra={
                "phase": "declarative",
                "kind": kind,
                "resource_name": name,
                "succeeded": succeeded,
                "error": failed_message,
            },
        )
        return PlatformApplyFailure(failed_message, kind=kind, name=name, succeeded=succeeded)


def _operation_error(props: Any) -> str | None:
    """Extract the platform error message from a deployment operation."""
    status_message = props.status_message
    if status_message is None:
        return None
    error = getattr(status_message, "error", None)
    if error is not None and getattr(error, "message", None):
        return f"{error.code}: {error.message}" if getattr(error, "code", None) else error.message
    status = getattr(status_message, "status", None)
    return str(status) if status else None
