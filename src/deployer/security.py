"""Credential handling for the deployer.

Two different secrets are involved and they are handled differently:

1. The Azure identity of the operator. The deployer runs from a workstation
   or pipeline that is already logged in with ``az login``. The SDK uses the
   same session through AzureCliCredential, so the SDK calls and the ``az``
   commands (image build, remote exec) always act as the same principal.
   Service-principal secrets in the environment are rejected outright.

2. The gateway credential token. A fresh 256-bit random value on every
   phase-2 run, unrelated to any resource name or seed. It is stored only
   as a container app secret and returned to the caller once. It is never
   logged and never written to disk.

SECURITY INVARIANTS:
1. AZURE_CLIENT_SECRET and friends must never be present in the environment
2. The token comes from the OS CSPRNG (``secrets``), never from the seed
3. Log lines carry at most a masked prefix of the token
"""

from __future__ import annotations

import logging
import os
import secrets

from azure.identity import AzureCliCredential

logger = logging.getLogger(__name__)

TOKEN_BYTES = 32
MASK_VISIBLE_CHARS = 4

# Environment variables that indicate service principal or password auth
FORBIDDEN_CREDENTIAL_ENV_VARS: tuple[str, ...] = (
    "AZURE_CLIENT_SECRET",
    "AZURE_CLIENT_CERTIFICATE_PATH",
    "AZURE_CLIENT_CERTIFICATE_PASSWORD",
    "AZURE_USERNAME",
    "AZURE_PASSWORD",
)

SECRETLESS_VIOLATION_MESSAGE = (
    "Secretless deployment violated: {env_var} is set.\n"
    "The deployer authenticates with the Azure CLI session only (az login).\n"
    "Remove service principal or password variables from the environment."
)


class SecretlessViolationError(Exception):
    """Raised when credential secrets are found in the environment.

    Fatal: the deployer must not proceed when credentials are detected.
    """

    pass


def enforce_secretless_architecture() -> None:
    """Enforce that no credential secrets are present in the environment.

    Raises:
        SecretlessViolationError: If any credential environment variable is set.
    """
    for env_var in FORBIDDEN_CREDENTIAL_ENV_VARS:
        if os.environ.get(env_var):
            logger.critical(
                "Secretless architecture violation",
                extra={
                    "security_event": "credential_detected",
                    "env_var": env_var,
                    "action": "startup_blocked",
                },
            )
            raise SecretlessViolationError(SECRETLESS_VIOLATION_MESSAGE.format(env_var=env_var))

    logger.debug(
        "Secretless architecture verified",
        extra={"security_event": "secretless_verified", "credential_type": "AzureCli"},
    )


def get_azure_credential() -> AzureCliCredential:
    """Get the Azure CLI credential after verifying the environment.

    This is the only way to obtain credentials in this codebase.

    Raises:
        SecretlessViolationError: If credential environment variables are detected.
    """
    enforce_secretless_architecture()
    return AzureCliCredential()


def generate_credential_token() -> str:
    """Generate a fresh gateway token: 64 hex characters from the OS CSPRNG."""
    return secrets.token_hex(TOKEN_BYTES)


def mask_token(token: str) -> str:
    """Render a token safely for logs."""
    if len(token) <= MASK_VISIBLE_CHARS * 2:
        return "***"
    return f"{token[:MASK_VISIBLE_CHARS]}***"
