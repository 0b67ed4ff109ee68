"""Thin helpers around the Azure platform tooling.

Two collaborators live here:
- ``resource_id()`` builds ARM resource ids, including nested types such as
  ``Microsoft.Storage/storageAccounts/fileServices/shares``.
- ``AzCli`` runs ``az`` commands for the operations that have no SDK
  surface in this stack: registry builds (``az acr build``) and remote
  execution inside a running container app (``az containerapp exec``).
"""

from __future__ import annotations

import logging
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

AZ_EXECUTABLE = "az"
MAX_CAPTURED_OUTPUT_CHARS = 4000


class AzCliError(Exception):
    """Raised when an az command cannot be started, times out or exits non-zero.

    Attributes:
        returncode: Exit code, or None when the command never completed.
        stderr: Captured standard error.
    """

    def __init__(self, message: str, *, returncode: int | None = None, stderr: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


def resource_id(subscription_id: str, resource_group: str, resource_type: str, name: str) -> str:
    """Build an ARM resource id for a (possibly nested) resource type.

    Args:
        subscription_id: Subscription GUID.
        resource_group: Resource group name.
        resource_type: Full type, e.g. ``Microsoft.Network/privateDnsZones/virtualNetworkLinks``.
        name: Slash-separated name with one segment per type level,
            e.g. ``privatelink.file.core.windows.net/link-abc``.

    Raises:
        ValueError: If the number of name segments does not match the type.
    """
    namespace, _, type_path = resource_type.partition("/")
    types = type_path.split("/")
    names = name.split("/")
    if not namespace or len(types) != len(names):
        raise ValueError(f"Name '{name}' does not match resource type '{resource_type}'")

    segments = "/".join(f"{t}/{n}" for t, n in zip(types, names, strict=True))
    return (
        f"/subscriptions/{subscription_id}/resourceGroups/{resource_group}"
        f"/providers/{namespace}/{segments}"
    )


def _truncate(text: str) -> str:
    if len(text) <= MAX_CAPTURED_OUTPUT_CHARS:
        return text
    return text[-MAX_CAPTURED_OUTPUT_CHARS:]


@dataclass
class AzResult:
    """Output of a completed az command."""

    args: list[str]
    returncode: int
    stdout: str
    stderr: str


class AzCli:
    """Runs az commands synchronously with a timeout.

    Commands block until they exit. Output is captured so failures can be
    reported verbatim; arguments that carry secrets must be passed through
    ``redact`` so they never reach the logs.
    """

    def __init__(self, executable: str = AZ_EXECUTABLE) -> None:
        self._executable = executable

    def ensure_available(self) -> None:
        """Check that the Azure CLI is installed.

        Raises:
            AzCliError: If the executable cannot be found.
        """
        if not shutil.which(self._executable):
            raise AzCliError(
                f"Azure CLI ({self._executable}) not found. "
                "Install from https://aka.ms/installazurecli"
            )

    def run(
        self,
        args: list[str],
        *,
        timeout: int,
        cwd: Path | None = None,
        redact: tuple[str, ...] = (),
    ) -> AzResult:
        """Run ``az <args>`` and return its output.

        Args:
            args: Arguments after the executable.
            timeout: Seconds before the command is killed.
            cwd: Working directory.
            redact: Values replaced with ``***`` in log output.

        Raises:
            AzCliError: If the command is missing, times out or exits non-zero.
        """
        cmd = [self._executable, *args]
        printable = " ".join(cmd)
        for value in redact:
            if value:
                printable = printable.replace(value, "***")

        logger.info("Running az command", extra={"command": printable, "timeout_seconds": timeout})

        try:
            completed = subprocess.run(
                cmd,
                cwd=cwd,
                timeout=timeout,
                capture_output=True,
                text=True,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise AzCliError(f"Command timed out after {timeout}s: {printable}") from e
        except FileNotFoundError as e:
            raise AzCliError(f"Command not found: {self._executable}") from e

        result = AzResult(
            args=cmd,
            returncode=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
        )
        if result.returncode != 0:
            stderr = _truncate(result.stderr.strip())
            raise AzCliError(
                f"Command failed with exit code {result.returncode}: {stderr or printable}",
                returncode=result.returncode,
                stderr=stderr,
            )
        return result
