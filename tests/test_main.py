"""Tests for the entry point: exit codes, reporting and JSON logging."""

import io
import json
import logging
import os
from unittest.mock import patch

import pytest

from azure_mock import MockAzureContext

from deployer.config import Config
from deployer.main import (
    EXIT_FAILURE,
    EXIT_OK,
    EXIT_SECURITY_VIOLATION,
    JsonFormatter,
    main,
    run_phase,
    setup_logging,
)


class Reporter:
    def __init__(self) -> None:
        self.lines: list[str] = []

    def __call__(self, line: str) -> None:
        self.lines.append(line)

    @property
    def text(self) -> str:
        return "\n".join(self.lines)


class TestRunPhase:
    """Tests for run_phase() exit codes."""

    def test_infra(self, config: Config) -> None:
        report = Reporter()
        with MockAzureContext() as ctx:
            code = run_phase(config, "infra", report)

            assert ctx.az.calls == []

        assert code == EXIT_OK
        assert "Application:" in report.text
        assert "Gateway token" not in report.text

    def test_all_reports_token_once(self, config: Config) -> None:
        report = Reporter()
        with MockAzureContext() as ctx:
            code = run_phase(config, "all", report)
            _, properties = ctx.state.generic_puts[-1]

        token = next(s["value"] for s in properties["configuration"]["secrets"] if s["name"] == "gateway-token")
        assert code == EXIT_OK
        assert sum(line.strip() == token for line in report.lines) == 1
        assert f"?token={token}" in report.text

    def test_app_without_infra_fails(self, config: Config) -> None:
        report = Reporter()
        with MockAzureContext():
            code = run_phase(config, "app", report)

        assert code == EXIT_FAILURE
        assert report.lines[-1].startswith("FAILED:")

    def test_node_failure(self, config: Config, caplog: pytest.LogCaptureFixture) -> None:
        report = Reporter()
        with MockAzureContext(fail_on_resource_types={"Microsoft.Network/privateEndpoints"}):
            code = run_phase(config, "infra", report)

        assert code == EXIT_FAILURE
        failure = next(r for r in caplog.records if r.getMessage() == "Deployment failed")
        assert failure.kind == "private-endpoint"
        assert "network" in failure.succeeded

    def test_remote_step_failure_logged(
        self, config: Config, caplog: pytest.LogCaptureFixture
    ) -> None:
        with MockAzureContext(fail_command="controlUi"):
            code = run_phase(config, "all", Reporter())

        assert code == EXIT_FAILURE
        failure = next(r for r in caplog.records if r.getMessage() == "Deployment failed")
        assert failure.step == "enable-ui"

    def test_remote_step_failure_reports_token(self, config: Config) -> None:
        """Test that the rotated token is not lost when configuration fails."""
        report = Reporter()
        with MockAzureContext(fail_command="controlUi") as ctx:
            code = run_phase(config, "all", report)
            _, properties = ctx.state.generic_puts[-1]

        token = next(s["value"] for s in properties["configuration"]["secrets"] if s["name"] == "gateway-token")
        assert code == EXIT_FAILURE
        assert any(line.startswith("FAILED:") for line in report.lines)
        assert sum(line.strip() == token for line in report.lines) == 1

    def test_build_failure_reports_no_token(self, config: Config) -> None:
        report = Reporter()
        with MockAzureContext(fail_build=True):
            code = run_phase(config, "all", report)

        assert code == EXIT_FAILURE
        assert "Gateway token" not in report.text

    def test_security_violation(self, config: Config) -> None:
        with patch.dict(os.environ, {"AZURE_CLIENT_SECRET": "secret"}):
            with MockAzureContext():
                code = run_phase(config, "infra", Reporter())

        assert code == EXIT_SECURITY_VIOLATION

    def test_unknown_phase(self, config: Config) -> None:
        assert run_phase(config, "everything", Reporter()) == EXIT_FAILURE


class TestMain:
    """Tests for the environment-driven entry point."""

    @patch("deployer.main.setup_logging")
    def test_missing_configuration(self, _setup_logging) -> None:
        with patch.dict(os.environ, {}, clear=True):
            assert main() == EXIT_FAILURE

    @patch("deployer.main.setup_logging")
    def test_infra_phase_from_env(self, _setup_logging, config: Config, capsys) -> None:
        env = {
            "AZURE_SUBSCRIPTION_ID": config.subscription_id,
            "RESOURCE_GROUP_NAME": config.resource_group_name,
            "AZURE_LOCATION": config.location,
            "SOURCE_DIR": str(config.source_dir),
            "DEPLOY_PHASE": "infra",
        }
        with patch.dict(os.environ, env, clear=True):
            with MockAzureContext():
                assert main() == EXIT_OK

        assert "Application:" in capsys.readouterr().out


class TestJsonLogging:
    """Tests for structured log output."""

    def test_extra_fields_included(self) -> None:
        record = logging.LogRecord("deployer.test", logging.INFO, __file__, 1, "hello", None, None)
        record.phase = "declarative"

        data = json.loads(JsonFormatter().format(record))

        assert data["message"] == "hello"
        assert data["level"] == "INFO"
        assert data["phase"] == "declarative"
        assert data["timestamp"].endswith("Z")

    def test_setup_logging_writes_json(self) -> None:
        stream = io.StringIO()
        root = logging.getLogger()
        saved_handlers, saved_level = list(root.handlers), root.level
        try:
            setup_logging(logging.INFO, stream=stream)
            logging.getLogger("deployer.test").info("ready", extra={"resource_group": "rg"})
        finally:
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)

        data = json.loads(stream.getvalue().strip())
        assert data["resource_group"] == "rg"
        assert logging.getLogger("azure").level == logging.WARNING

    def test_full_run_at_info(self, config: Config) -> None:
        """Test that every record of a full run serializes and the token stays out."""
        stream = io.StringIO()
        root = logging.getLogger()
        saved_handlers, saved_level = list(root.handlers), root.level
        report = Reporter()
        try:
            setup_logging(logging.INFO, stream=stream)
            with MockAzureContext() as ctx:
                code = run_phase(config, "all", report)
                _, properties = ctx.state.generic_puts[-1]
        finally:
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)

        token = next(s["value"] for s in properties["configuration"]["secrets"] if s["name"] == "gateway-token")
        records = [json.loads(line) for line in stream.getvalue().splitlines()]
        applied = next(r for r in records if r["message"] == "Resource graph applied")
        assert code == EXIT_OK
        assert len(applied["created_nodes"]) == 12
        assert records[-1]["message"] == "Deployment completed"
        assert token not in stream.getvalue()
