"""Cluster configuration loading with validation.

SECURITY: File reads enforce a size limit to prevent DoS attacks via large
files. Input validation is performed at the boundary.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_CONFIG_FILE_SIZE_BYTES
from .models import ClusterConfig

logger = logging.getLogger(__name__)


class SpecLoadError(Exception):
    """Raised when configuration loading or validation fails."""

    pass


def format_validation_error(error: ValidationError) -> str:
    """Render pydantic errors as one `  - location: message` line each."""
    lines = []
    for item in error.errors():
        loc = ".".join(str(x) for x in item["loc"])
        lines.append(f"  - {loc}: {item['msg']}" if loc else f"  - {item['msg']}")
    return "\n".join(lines)


def load_config(path: Path) -> ClusterConfig:
    """Load and validate a cluster configuration from YAML.

    Args:
        path: Path to the YAML file.

    Returns:
        Validated cluster configuration.

    Raises:
        SpecLoadError: If the file cannot be loaded or fails validation.
    """
    if not path.exists():
        raise SpecLoadError(f"Config file not found: {path}")

    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat config file {path}: {e}") from e

    if file_size > MAX_CONFIG_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"Config file exceeds maximum size of {MAX_CONFIG_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read config file {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"Config file must contain a YAML mapping: {path}")

    try:
        config = ClusterConfig.model_validate(raw_data)
    except ValidationError as e:
        raise SpecLoadError(f"Validation failed for {path}:\n{format_validation_error(e)}") from e

    logger.info(
        "Loaded cluster config",
        extra={
            "path": str(path),
            "cluster": config.cluster_name,
            "auto_scaling_groups": len(config.auto_scaling_groups),
            "load_balancers": len(config.load_balancers),
            "applications": len(config.applications),
        },
    )
    return config


def dump_config(document: dict[str, Any]) -> str:
    """Render a configuration document as YAML, preserving key order."""
    return yaml.safe_dump(
        document,
        sort_keys=False,
        indent=2,
        default_flow_style=False,
        allow_unicode=True,
    )
