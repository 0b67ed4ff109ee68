"""Deployment file loading with validation.

A deployment file is optional YAML layered over environment variables:
anything the file sets wins, anything it omits falls back to the
environment or the built-in default.

SECURITY: File size is checked before reading. The token is never read
from or written to this file.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import Config
from .models import DeploymentFileSpec

logger = logging.getLogger(__name__)

MAX_DEPLOYMENT_FILE_SIZE_BYTES = 64 * 1024


class SpecLoadError(Exception):
    """Raised when a deployment file cannot be loaded or fails validation."""

    pass


def load_deployment_file(path: Path) -> DeploymentFileSpec:
    """Load and validate a deployment file.

    Both a flat mapping and a Kubernetes-style wrapper
    (``apiVersion``/``kind``/``spec``) are accepted.

    Raises:
        SpecLoadError: If the file cannot be read or fails validation.
    """
    if not path.exists():
        raise SpecLoadError(f"Deployment file not found: {path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat deployment file {path}: {e}") from e

    if file_size > MAX_DEPLOYMENT_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Deployment file exceeds maximum size of {MAX_DEPLOYMENT_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read deployment file {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e

    if raw_data is None:
        raw_data = {}
    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Deployment file must contain a YAML mapping: {path}")

    if "apiVersion" in raw_data and "spec" in raw_data:
        spec_data = raw_data.get("spec") or {}
        if not isinstance(spec_data, dict):
            raise SpecLoadError(f"Spec section must be a mapping: {path}")
    else:
        spec_data = raw_data

    try:
        spec = DeploymentFileSpec.model_validate(spec_data)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"  - {loc}: {error['msg']}")
        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {path}:\n{error_list}") from e

    logger.info("Loaded deployment file from %s", path)
    return spec


def load_config(path: Path | None = None, **overrides: Any) -> Config:
    """Build the configuration from environment, optional file and overrides.

    Precedence, lowest first: built-in defaults, environment variables, the
    deployment file, explicit overrides (None values are ignored).

    Raises:
        ConfigurationError: If the merged configuration is invalid.
        SpecLoadError: If the deployment file cannot be loaded.
    """
    values = Config.env_values()
    if path is not None:
        spec = load_deployment_file(path)
        values.update(spec.to_config_values(base_dir=path.parent))
    values.update({k: v for k, v in overrides.items() if v is not None})
    return Config(**values)
