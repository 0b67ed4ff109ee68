"""Tests for credential handling.

These tests verify that the deployer rejects service principal secrets,
uses the Azure CLI session and never derives the gateway token from
anything predictable.
"""

from __future__ import annotations

import logging
import os
from unittest import mock

import pytest

from deployer.security import (
    FORBIDDEN_CREDENTIAL_ENV_VARS,
    SecretlessViolationError,
    enforce_secretless_architecture,
    generate_credential_token,
    get_azure_credential,
    mask_token,
)


class TestSecretlessEnforcement:
    """Tests for secretless architecture enforcement."""

    def test_clean_environment_passes(self) -> None:
        with mock.patch.dict(os.environ, {}, clear=True):
            enforce_secretless_architecture()

    @pytest.mark.parametrize("env_var", FORBIDDEN_CREDENTIAL_ENV_VARS)
    def test_forbidden_env_var_raises(self, env_var: str) -> None:
        """Test that each forbidden env var raises SecretlessViolationError."""
        with mock.patch.dict(os.environ, {env_var: "some-secret-value"}):
            with pytest.raises(SecretlessViolationError) as exc_info:
                enforce_secretless_architecture()

            assert env_var in str(exc_info.value)

    def test_secret_value_not_in_error(self) -> None:
        with mock.patch.dict(os.environ, {"AZURE_CLIENT_SECRET": "hunter2"}):
            with pytest.raises(SecretlessViolationError) as exc_info:
                enforce_secretless_architecture()

            assert "hunter2" not in str(exc_info.value)


class TestGetAzureCredential:
    """Tests for the credential getter."""

    def test_rejects_secret_env_var(self) -> None:
        with mock.patch.dict(os.environ, {"AZURE_CLIENT_SECRET": "secret"}):
            with pytest.raises(SecretlessViolationError):
                get_azure_credential()

    @mock.patch("deployer.security.AzureCliCredential")
    def test_returns_cli_credential(self, mock_credential_class: mock.Mock) -> None:
        """Test that the az login session is the credential."""
        credential = get_azure_credential()

        mock_credential_class.assert_called_once_with()
        assert credential is mock_credential_class.return_value


class TestCredentialToken:
    """Tests for gateway token generation and masking."""

    def test_token_format(self) -> None:
        token = generate_credential_token()

        assert len(token) == 64
        assert all(c in "0123456789abcdef" for c in token)

    def test_tokens_are_unique(self) -> None:
        tokens = {generate_credential_token() for _ in range(100)}
        assert len(tokens) == 100

    def test_mask_keeps_only_prefix(self) -> None:
        token = "abcd" + "0" * 60

        masked = mask_token(token)

        assert masked == "abcd***"
        assert token not in masked

    def test_mask_short_value(self) -> None:
        assert mask_token("abc") == "***"

    def test_token_never_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        """Test that generating a token emits nothing containing it."""
        with caplog.at_level(logging.DEBUG, logger="deployer"):
            token = generate_credential_token()

        assert token not in caplog.text
