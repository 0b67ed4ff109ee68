"""Azure API mock for integration testing.

In-memory implementation of the ARM, container registry and az CLI
surfaces the deployer uses, so both phases run without Azure.

Key Features:
- Ordered deployment execution with dependsOn checks
- WhatIf simulation comparing template properties to state
- Deployment operations for failure attribution
- Generic resource GET/PUT by id with full-replace semantics
- Error injection per resource type and per phase-2 step

Usage:
    from azure_mock import MockAzureContext

    with MockAzureContext() as ctx:
        coordinator = DeploymentCoordinator(config)
        coordinator.deploy()
        assert ctx.az.exec_commands
"""

from .azcli import MockAzCli
from .context import MockAzureContext
from .credential import MockAzureCliCredential, create_mock_credential
from .registry import MockRegistryClient
from .resources import MockResourceClient, MockResourceState

__all__ = [
    "MockAzCli",
    "MockAzureCliCredential",
    "MockAzureContext",
    "MockRegistryClient",
    "MockResourceClient",
    "MockResourceState",
    "create_mock_credential",
]
