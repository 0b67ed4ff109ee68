"""Error taxonomy for the two-phase deployment.

Every failure aborts the current phase. Nothing is retried or rolled back:
resources created before the failure stay in place for inspection or a
re-run. Platform messages are carried verbatim in ``str(error)``.
"""

from __future__ import annotations


class DeploymentError(Exception):
    """Base class for all deployment failures."""

    phase: str = "deployment"
    # Set once the application runs with a freshly rotated token
    token: str | None = None


class InvalidNameDerivation(DeploymentError):
    """Raised when a seed and role cannot produce a legal resource name."""

    phase = "naming"


class GraphError(DeploymentError):
    """Raised when the declared resource graph is malformed."""

    phase = "declarative"


class CyclicDependencyError(GraphError):
    """Raised when a dependency cycle is detected."""

    pass


class UnknownDependencyError(GraphError):
    """Raised when a node depends on a node that is not declared."""

    pass


class DependencyUnresolved(DeploymentError):
    """Raised when phase 2 cannot find what phase 1 should have created.

    Treated as "phase 1 was never run against this target".
    """

    phase = "imperative"


class PlatformApplyFailure(DeploymentError):
    """Raised when the platform rejects or fails a node creation or update.

    Attributes:
        kind: Resource kind of the failing node.
        name: Resource name of the failing node.
        succeeded: Names of nodes that were created before the failure.
    """

    def __init__(
        self,
        message: str,
        *,
        kind: str,
        name: str,
        phase: str = "declarative",
        succeeded: list[str] | None = None,
    ) -> None:
        super().__init__(f"{phase} phase failed on {kind} '{name}': {message}")
        self.kind = kind
        self.name = name
        self.phase = phase
        self.succeeded = succeeded or []


class ArtifactBuildFailure(DeploymentError):
    """Raised when the image build step fails."""

    phase = "imperative"


class CredentialDiscoveryFailure(DeploymentError):
    """Raised when registry credentials cannot be retrieved."""

    phase = "imperative"


class ReadinessTimeout(DeploymentError):
    """Raised when the application does not converge within the poll bound."""

    phase = "imperative"


class RemoteConfigurationFailure(DeploymentError):
    """Raised when a remote configuration step fails.

    Attributes:
        step: Name of the step that failed.
    """

    phase = "imperative"

    def __init__(self, message: str, *, step: str) -> None:
        super().__init__(f"configuration step '{step}' failed: {message}")
        self.step = step
