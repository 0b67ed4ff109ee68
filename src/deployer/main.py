"""Main entry point for the deployer.

Runs one phase (or both) against the resource group named in the
configuration and maps failures to exit codes:

    0  success
    1  deployment or configuration failure
    2  security violation (credential secrets in the environment)

Logs are JSON lines. Results meant for the operator, including the one-time
display of the gateway token, go through a separate ``report`` callable so
they never pass through the logging pipeline.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import IO

from azure.core.exceptions import AzureError

from .apply import DeploymentOutcome
from .config import Config, ConfigurationError
from .coordinator import DeploymentCoordinator, FinalState
from .errors import DeploymentError, PlatformApplyFailure, RemoteConfigurationFailure
from .security import SecretlessViolationError
from .spec_loader import SpecLoadError, load_config

PHASE_INFRA = "infra"
PHASE_APP = "app"
PHASE_ALL = "all"
PHASES = (PHASE_INFRA, PHASE_APP, PHASE_ALL)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_SECURITY_VIOLATION = 2

# LogRecord attributes that are not user-supplied extra fields
_RESERVED_RECORD_KEYS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_RECORD_KEYS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO, stream: IO[str] | None = None) -> None:
    """Configure structured logging with JSON output."""
    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def summarize_outcome(outcome: DeploymentOutcome) -> list[str]:
    """Plain status lines for a phase-1 outcome."""
    return [
        f"Application:  {outcome.app_name}",
        f"Endpoint:     https://{outcome.endpoint_fqdn}",
        f"Registry:     {outcome.registry_login_server}",
        f"Created:      {', '.join(outcome.created) or '-'}",
        f"Updated:      {', '.join(outcome.updated) or '-'}",
        f"Unchanged:    {len(outcome.unchanged)} resources",
    ]


def summarize_token(token: str) -> list[str]:
    return [
        "",
        "Gateway token (shown once, store it in a secret manager):",
        f"  {token}",
    ]


def summarize_final_state(state: FinalState) -> list[str]:
    """Plain status lines for a phase-2 result, including the live token."""
    return [
        f"Image:        {state.image}",
        f"Endpoint:     https://{state.endpoint_fqdn}",
        f"Config:       {state.configuration_state.value}",
        *summarize_token(state.token),
        f"Access URL:   {state.access_url}",
    ]


def run_phase(
    config: Config,
    phase: str,
    report: Callable[[str], None],
) -> int:
    """Run a phase and return the exit code.

    Args:
        config: Validated configuration.
        phase: One of ``infra``, ``app`` or ``all``.
        report: Receives operator-facing status lines.
    """
    logger = logging.getLogger(__name__)

    if phase not in PHASES:
        logger.error("Unknown phase", extra={"requested_phase": phase})
        return EXIT_FAILURE

    logger.info(
        "Starting deployment",
        extra={
            "requested_phase": phase,
            "subscription_id": config.subscription_id,
            "resource_group": config.resource_group_name,
            "location": config.location,
        },
    )

    try:
        coordinator = DeploymentCoordinator(config)
        if phase == PHASE_INFRA:
            for line in summarize_outcome(coordinator.phase1_declarative()):
                report(line)
        elif phase == PHASE_APP:
            for line in summarize_final_state(coordinator.phase2_imperative()):
                report(line)
        else:
            outcome = coordinator.phase1_declarative()
            for line in summarize_outcome(outcome):
                report(line)
            for line in summarize_final_state(coordinator.phase2_imperative(outcome)):
                report(line)

    except SecretlessViolationError as e:
        # SECURITY: Credential detected in environment - fatal security error
        logger.critical(
            "Security violation: credentials detected in environment",
            extra={"error": str(e)},
        )
        return EXIT_SECURITY_VIOLATION

    except DeploymentError as e:
        extra: dict[str, object] = {"failed_phase": e.phase, "error": str(e)}
        if isinstance(e, PlatformApplyFailure):
            extra.update(kind=e.kind, resource_name=e.name, succeeded=e.succeeded)
        elif isinstance(e, RemoteConfigurationFailure):
            extra["step"] = e.step
        logger.error("Deployment failed", extra=extra)
        report(f"FAILED: {e}")
        if e.token:
            # The application already runs with this token
            for line in summarize_token(e.token):
                report(line)
        return EXIT_FAILURE

    except AzureError as e:
        # Authentication and transport failures outside a specific node
        logger.error(
            "Azure error",
            extra={"error": str(e), "error_type": type(e).__name__},
        )
        report(f"FAILED: {e}")
        return EXIT_FAILURE

    logger.info("Deployment completed", extra={"requested_phase": phase})
    return EXIT_OK


def main() -> int:
    """Run the deployer from environment variables.

    Environment Variables:
        DEPLOY_PHASE: infra, app or all (default: all)
        DEPLOYMENT_FILE: Optional YAML deployment file
        LOG_LEVEL: Logging level (default: INFO)
    """
    level = logging.getLevelName(os.environ.get("LOG_LEVEL", "INFO").upper())
    setup_logging(level if isinstance(level, int) else logging.INFO)
    logger = logging.getLogger(__name__)

    deployment_file = os.environ.get("DEPLOYMENT_FILE")
    try:
        config = load_config(Path(deployment_file) if deployment_file else None)
    except (ConfigurationError, SpecLoadError) as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return EXIT_FAILURE

    def report(line: str) -> None:
        sys.stdout.write(line + "\n")

    return run_phase(config, os.environ.get("DEPLOY_PHASE", PHASE_ALL), report)


def run() -> None:
    """Entry point for ``python -m deployer.main``."""
    sys.exit(main())


if __name__ == "__main__":
    run()
