"""Two-phase apply coordinator.

PHASE 1 (declarative):
    Resolve names -> declare graph -> apply as one ARM deployment. The
    application node is created with a public placeholder image because the
    real image cannot exist before the registry does.

PHASE 2 (imperative):
    1. Discover the phase-1 outcome from the deployment record
    2. Generate a fresh credential token
    3. Build the image in the registry (az acr build)
    4. List registry credentials
    5. Full-replace PUT of the application
    6. Poll until the application reports running (bounded)
    7. Run the remote configuration state machine (az containerapp exec)

Every phase-2 run rotates the token: the previous token stops working as
soon as the new revision is live. Re-running phase 1 alone resets the
application to the placeholder image, so phase 1 is always followed by
phase 2.

Everything is sequential and blocking. There are no retries; the first
failure aborts the phase with an error naming the step or node.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from azure.core.exceptions import AzureError, HttpResponseError, ResourceNotFoundError
from azure.mgmt.containerregistry import ContainerRegistryManagementClient
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.resource.resources.models import GenericResource

from .apply import DeploymentOutcome, GraphApplier, enum_value
from .config import Config
from .configuration import ConfigurationMachine, ConfigurationState, StepResult, gateway_steps
from .errors import (
    ArtifactBuildFailure,
    CredentialDiscoveryFailure,
    DependencyUnresolved,
    DeploymentError,
    PlatformApplyFailure,
    ReadinessTimeout,
)
from .models import (
    APP_API_VERSION,
    REGISTRY_SECRET_NAME,
    TOKEN_ENV_VAR,
    TOKEN_SECRET_NAME,
    AppSecret,
    ContainerAppRuntimeSpec,
    EnvironmentVariable,
    RegistryBinding,
    VolumeBinding,
)
from .naming import NameResolver, ResourceNames, seed_for
from .platform import AzCli, AzCliError
from .resource_graph import ResourceGraph, declare_graph
from .security import generate_credential_token, get_azure_credential, mask_token

logger = logging.getLogger(__name__)

IMAGE_TAG_FORMAT = "%Y%m%d%H%M%S"
DATA_DIR_ENV_VAR = "GATEWAY_DATA_DIR"


@dataclass
class FinalState:
    """Result of a completed phase 2.

    ``token`` is the live gateway credential. It is shown to the operator
    once and must not be persisted.
    """

    image: str
    endpoint_fqdn: str
    token: str = field(repr=False)
    configuration_state: ConfigurationState
    steps: list[StepResult] = field(default_factory=list)

    @property
    def access_url(self) -> str:
        return f"https://{self.endpoint_fqdn}/?token={self.token}"


class DeploymentCoordinator:
    """Runs the declarative and imperative phases against one resource group.

    Configuration is passed in explicitly; nothing is read from the process
    environment after construction.
    """

    def __init__(
        self,
        config: Config,
        *,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._config = config
        self._sleep = sleep

        # SECURITY: Secretless - the operator's az login session only
        credential = get_azure_credential()
        self._resource_client = ResourceManagementClient(
            credential=credential,
            subscription_id=config.subscription_id,
        )
        self._registry_client = ContainerRegistryManagementClient(
            credential=credential,
            subscription_id=config.subscription_id,
        )
        self._az = AzCli()

    @property
    def config(self) -> Config:
        return self._config

    def resolve_names(self) -> ResourceNames:
        """Resolve every resource name from the resource-group seed."""
        seed = seed_for(self._config.subscription_id, self._config.resource_group_name)
        return NameResolver(seed).resolve_all()

    def declare(self) -> ResourceGraph:
        """Declare and validate the resource graph without touching Azure."""
        graph = declare_graph(self._config, self.resolve_names())
        graph.validate()
        return graph

    # =========================================================================
    # Phase 1
    # =========================================================================

    def phase1_declarative(self) -> DeploymentOutcome:
        """Apply the declarative resource graph.

        Raises:
            InvalidNameDerivation: If a name cannot be derived.
            GraphError: If the graph is malformed.
            PlatformApplyFailure: If a node fails; earlier nodes stay in place.
        """
        logger.info(
            "Starting declarative phase",
            extra={"phase": "declarative", "resource_group": self._config.resource_group_name},
        )
        graph = self.declare()
        return GraphApplier(self._resource_client, self._config).apply(graph)

    def discover_outcome(self) -> DeploymentOutcome:
        """Read the phase-1 outcome back from its deployment record.

        Raises:
            DependencyUnresolved: If phase 1 has not completed for this target.
            PlatformApplyFailure: If the deployment record cannot be read.
        """
        rg = self._config.resource_group_name
        name = self._config.deployment_name
        try:
            deployment = self._resource_client.deployments.get(
                resource_group_name=rg,
                deployment_name=name,
            )
        except ResourceNotFoundError as e:
            raise DependencyUnresolved(
                f"Deployment '{name}' not found in '{rg}'; run the declarative phase first"
            ) from e
        except HttpResponseError as e:
            raise PlatformApplyFailure(
                str(e.message or e), kind="deployment", name=name, phase="imperative"
            ) from e

        props = deployment.properties if deployment is not None else None
        state = enum_value(props.provisioning_state) if props is not None else ""
        if state != "Succeeded":
            raise DependencyUnresolved(
                f"Deployment '{name}' is in state '{state or 'unknown'}'; "
                "run the declarative phase first"
            )

        outcome = DeploymentOutcome.from_outputs(props.outputs)
        expected = self.resolve_names().application
        if outcome.app_name != expected:
            raise DependencyUnresolved(
                f"Deployment '{name}' describes application '{outcome.app_name}', expected '{expected}'"
            )
        return outcome

    # =========================================================================
    # Phase 2
    # =========================================================================

    def phase2_imperative(self, outcome: DeploymentOutcome | None = None) -> FinalState:
        """Build, rotate, replace and configure the application.

        Args:
            outcome: Phase-1 outcome. Discovered from Azure when omitted.

        Raises:
            DependencyUnresolved: If phase 1 has not completed.
            ArtifactBuildFailure: If the image build fails.
            CredentialDiscoveryFailure: If registry credentials are unavailable.
            PlatformApplyFailure: If the application update fails.
            ReadinessTimeout: If the application does not start in time.
            RemoteConfigurationFailure: If a configuration step fails.

        Errors raised after the application update carry the new token in
        ``token``.
        """
        if outcome is None:
            outcome = self.discover_outcome()

        logger.info(
            "Starting imperative phase",
            extra={"phase": "imperative", "app_name": outcome.app_name},
        )

        token = generate_credential_token()
        logger.info("Generated credential token", extra={"token": mask_token(token)})

        image = self._build_image(outcome)
        username, password = self._registry_credentials(outcome)
        spec = self._runtime_spec(outcome, image, username, password, token)
        self._replace_application(outcome, spec)

        # The running application now holds the new token
        machine = ConfigurationMachine(
            gateway_steps(self._config.app_cli, self._config.gateway_model),
            lambda command: self._exec(outcome, command),
        )
        try:
            fqdn = self._wait_until_ready(outcome)
            steps = machine.run()
        except DeploymentError as e:
            e.token = token
            raise

        logger.info(
            "Imperative phase completed",
            extra={"phase": "imperative", "image": image, "endpoint_fqdn": fqdn},
        )
        return FinalState(
            image=image,
            endpoint_fqdn=fqdn,
            token=token,
            configuration_state=machine.state,
            steps=steps,
        )

    def deploy(self) -> FinalState:
        """Run phase 1 followed by phase 2."""
        outcome = self.phase1_declarative()
        return self.phase2_imperative(outcome)

    def image_reference(self, outcome: DeploymentOutcome) -> str:
        tag = self._config.image_tag or datetime.now(UTC).strftime(IMAGE_TAG_FORMAT)
        return f"{outcome.registry_login_server}/{self._config.image_repository}:{tag}"

    def _build_image(self, outcome: DeploymentOutcome) -> str:
        image = self.image_reference(outcome)
        repository_tag = image.removeprefix(f"{outcome.registry_login_server}/")

        try:
            self._az.ensure_available()
            self._az.run(
                [
                    "acr",
                    "build",
                    "--registry",
                    outcome.registry_name,
                    "--resource-group",
                    self._config.resource_group_name,
                    "--subscription",
                    self._config.subscription_id,
                    "--image",
                    repository_tag,
                    "--only-show-errors",
                    str(self._config.source_dir),
                ],
                timeout=self._config.build_timeout_seconds,
            )
        except AzCliError as e:
            raise ArtifactBuildFailure(f"Image build for '{image}' failed: {e}") from e

        logger.info("Image built", extra={"phase": "imperative", "image": image})
        return image

    def _registry_credentials(self, outcome: DeploymentOutcome) -> tuple[str, str]:
        try:
            credentials = self._registry_client.registries.list_credentials(
                resource_group_name=self._config.resource_group_name,
                registry_name=outcome.registry_name,
            )
        except HttpResponseError as e:
            raise CredentialDiscoveryFailure(
                f"Could not list credentials for registry '{outcome.registry_name}': {e.message or e}"
            ) from e

        passwords = [p.value for p in (credentials.passwords or []) if p.value]
        if not credentials.username or not passwords:
            raise CredentialDiscoveryFailure(
                f"Registry '{outcome.registry_name}' returned no admin credentials"
            )
        return credentials.username, passwords[0]

    def _runtime_spec(
        self,
        outcome: DeploymentOutcome,
        image: str,
        username: str,
        password: str,
        token: str,
    ) -> ContainerAppRuntimeSpec:
        return ContainerAppRuntimeSpec(
            image=image,
            command=list(self._config.app_command),
            cpu=self._config.cpu,
            memory_gi=self._config.memory_gi,
            target_port=self._config.app_port,
            env=[
                EnvironmentVariable(name=TOKEN_ENV_VAR, secret_ref=TOKEN_SECRET_NAME),
                EnvironmentVariable(name=DATA_DIR_ENV_VAR, value=self._config.mount_path),
            ],
            secrets=[
                AppSecret(name=TOKEN_SECRET_NAME, value=token),
                AppSecret(name=REGISTRY_SECRET_NAME, value=password),
            ],
            registry=RegistryBinding(server=outcome.registry_login_server, username=username),
            volume=VolumeBinding(
                storage_name=outcome.environment_storage_name,
                mount_path=self._config.mount_path,
            ),
        )

    def _replace_application(self, outcome: DeploymentOutcome, spec: ContainerAppRuntimeSpec) -> None:
        """PUT the complete application spec; nothing from the placeholder survives."""
        resource = GenericResource(
            location=self._config.location,
            tags={**self._config.tags, "managedBy": "aca-deployer"},
            properties=spec.to_arm_properties(outcome.environment_id),
        )
        try:
            poller = self._resource_client.resources.begin_create_or_update_by_id(
                resource_id=outcome.app_id,
                api_version=APP_API_VERSION,
                parameters=resource,
            )
            poller.result(timeout=self._config.apply_timeout_seconds)
        except HttpResponseError as e:
            raise PlatformApplyFailure(
                str(e.message or e),
                kind="application",
                name=outcome.app_name,
                phase="imperative",
            ) from e

        if not poller.done():
            raise PlatformApplyFailure(
                f"application update did not finish within {self._config.apply_timeout_seconds}s",
                kind="application",
                name=outcome.app_name,
                phase="imperative",
            )

        logger.info(
            "Application replaced",
            extra={"phase": "imperative", "app_name": outcome.app_name, "image": spec.image},
        )

    def _wait_until_ready(self, outcome: DeploymentOutcome) -> str:
        """Poll the application until it is provisioned and running.

        Returns:
            The ingress FQDN reported by the application.

        Raises:
            PlatformApplyFailure: If provisioning ends in Failed.
            ReadinessTimeout: If the bound elapses first.
        """
        timeout = self._config.ready_timeout_seconds
        interval = self._config.ready_poll_interval_seconds
        deadline = time.monotonic() + timeout
        last_seen = "unknown"

        while True:
            try:
                app = self._resource_client.resources.get_by_id(
                    resource_id=outcome.app_id,
                    api_version=APP_API_VERSION,
                )
                props = (app.properties if app is not None else None) or {}
                provisioning = props.get("provisioningState", "")
                running = props.get("runningStatus", "")
                last_seen = f"provisioningState={provisioning}, runningStatus={running}"

                if provisioning == "Failed":
                    raise PlatformApplyFailure(
                        "application provisioning failed",
                        kind="application",
                        name=outcome.app_name,
                        phase="imperative",
                    )
                if provisioning == "Succeeded" and running == "Running":
                    ingress = props.get("configuration", {}).get("ingress", {})
                    return ingress.get("fqdn") or outcome.endpoint_fqdn

            except ResourceNotFoundError:
                logger.debug(f"Application '{outcome.app_name}' not yet visible, waiting...")
            except AzureError as e:
                logger.warning(
                    f"Azure error checking application '{outcome.app_name}': {e}",
                    extra={"app_name": outcome.app_name, "error_type": type(e).__name__},
                )

            if time.monotonic() >= deadline:
                raise ReadinessTimeout(
                    f"Application '{outcome.app_name}' not running after {timeout}s ({last_seen})"
                )
            self._sleep(interval)

    def _exec(self, outcome: DeploymentOutcome, command: str) -> str:
        result = self._az.run(
            [
                "containerapp",
                "exec",
                "--name",
                outcome.app_name,
                "--resource-group",
                self._config.resource_group_name,
                "--subscription",
                self._config.subscription_id,
                "--command",
                command,
            ],
            timeout=self._config.exec_timeout_seconds,
        )
        return result.stdout
