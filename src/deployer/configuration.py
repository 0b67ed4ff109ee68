"""Remote configuration of the running application.

After the full-replace update converges, the gateway is configured by
running its own CLI inside the container. The steps are modelled as a
small state machine rather than bare sequential calls:

    IDLE -> CONFIGURING -> MODEL_SET -> UI_ENABLED -> DONE
                 \\             \\             \\
                  +-------------+-------------+--> FAILED

Each named step runs exactly one remote command and yields a StepResult.
A failed step moves the machine to FAILED, which is absorbing: the machine
records which step failed and refuses to run again.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from .errors import RemoteConfigurationFailure
from .platform import AzCliError

logger = logging.getLogger(__name__)

# Output kept per step for diagnostics
MAX_STEP_OUTPUT_CHARS = 2000


class ConfigurationState(str, Enum):
    """States of the remote configuration machine."""

    IDLE = "Idle"
    CONFIGURING = "Configuring"
    MODEL_SET = "ModelSet"
    UI_ENABLED = "UiEnabled"
    DONE = "Done"
    FAILED = "Failed"


@dataclass(frozen=True)
class ConfigStep:
    """One named remote command and the transition it drives."""

    name: str
    command: str
    source: ConfigurationState
    target: ConfigurationState


@dataclass(frozen=True)
class StepResult:
    """Typed outcome of one configuration step."""

    step: str
    success: bool
    output: str = ""
    error: str | None = None


def gateway_steps(cli: str, model: str) -> tuple[ConfigStep, ...]:
    """Build the gateway configuration sequence.

    Args:
        cli: Executable inside the container, e.g. ``gateway``.
        model: Default model to configure.
    """
    return (
        ConfigStep(
            name="configure-gateway",
            command=f"{cli} config set gateway.auth.mode token",
            source=ConfigurationState.IDLE,
            target=ConfigurationState.CONFIGURING,
        ),
        ConfigStep(
            name="set-model",
            command=f"{cli} config set agents.defaults.model {model}",
            source=ConfigurationState.CONFIGURING,
            target=ConfigurationState.MODEL_SET,
        ),
        ConfigStep(
            name="enable-ui",
            command=f"{cli} config set gateway.controlUi.enabled true",
            source=ConfigurationState.MODEL_SET,
            target=ConfigurationState.UI_ENABLED,
        ),
    )


class ConfigurationMachine:
    """Runs configuration steps in order through a remote executor.

    The executor takes one command string, runs it inside the application
    and returns its output. It signals failure by raising AzCliError.
    """

    def __init__(
        self,
        steps: tuple[ConfigStep, ...],
        execute: Callable[[str], str],
    ) -> None:
        if not steps:
            raise ValueError("At least one configuration step is required")
        expected = ConfigurationState.IDLE
        for step in steps:
            if step.source != expected:
                raise ValueError(
                    f"Step '{step.name}' starts from {step.source.value}, expected {expected.value}"
                )
            expected = step.target

        self._steps = steps
        self._execute = execute
        self._state = ConfigurationState.IDLE
        self._results: list[StepResult] = []
        self._failed_step: str | None = None

    @property
    def state(self) -> ConfigurationState:
        return self._state

    @property
    def results(self) -> list[StepResult]:
        return list(self._results)

    @property
    def failed_step(self) -> str | None:
        return self._failed_step

    def run(self) -> list[StepResult]:
        """Run every step from IDLE to DONE.

        Returns:
            One StepResult per step, in order.

        Raises:
            RemoteConfigurationFailure: If a step fails, or if the machine
                already finished or failed.
        """
        if self._state == ConfigurationState.FAILED:
            raise RemoteConfigurationFailure(
                "configuration already failed", step=self._failed_step or "unknown"
            )
        if self._state != ConfigurationState.IDLE:
            raise RemoteConfigurationFailure(
                f"machine is in state {self._state.value}", step=self._steps[0].name
            )

        for step in self._steps:
            result = self._run_step(step)
            self._results.append(result)
            if not result.success:
                self._state = ConfigurationState.FAILED
                self._failed_step = step.name
                logger.error(
                    "Configuration step failed",
                    extra={"phase": "imperative", "step": step.name, "error": result.error},
                )
                raise RemoteConfigurationFailure(result.error or "unknown error", step=step.name)

            self._state = step.target
            logger.info(
                "Configuration step completed",
                extra={"phase": "imperative", "step": step.name, "state": self._state.value},
            )

        self._state = ConfigurationState.DONE
        return list(self._results)

    def _run_step(self, step: ConfigStep) -> StepResult:
        try:
            output = self._execute(step.command)
        except AzCliError as e:
            return StepResult(step=step.name, success=False, error=str(e))
        return StepResult(step=step.name, success=True, output=output[-MAX_STEP_OUTPUT_CHARS:])
