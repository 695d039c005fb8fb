"""Workspace-level configuration and scaffolding."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from dataport.errors import ValidationError

CONFIG_FILENAME = "dataport.yaml"

DEFAULT_CONFIG = {
    "inference_threshold": 0.9,
    "inference_sample_rows": 1000,
    "max_import_rows": 100_000,
    "max_import_cols": 200,
    "max_upload_bytes": 50 * 1024 * 1024,  # 50 MB
    "fetch_timeout_seconds": 30.0,
    "sync_interval_seconds": 3600,
    "sync_lease_seconds": 600,
    "sheets_api_base": "https://sheets.googleapis.com",
    "logging_fsync": False,
    "logging_tail_bytes": 2_097_152,  # 2 MB
}

DEFAULT_CONFIG_YAML = """\
# dataport workspace configuration
inference_threshold: 0.9
inference_sample_rows: 1000
max_import_rows: 100000
max_import_cols: 200
fetch_timeout_seconds: 30
sync_interval_seconds: 3600
sync_lease_seconds: 600
# sheets_api_base: https://sheets.googleapis.com
"""

_POSITIVE_KEYS = (
    "inference_sample_rows",
    "max_import_rows",
    "max_import_cols",
    "max_upload_bytes",
    "fetch_timeout_seconds",
    "sync_interval_seconds",
    "sync_lease_seconds",
)


def load_config(workspace: Path) -> dict[str, Any]:
    """Load workspace configuration from ``dataport.yaml``, with defaults.

    Args:
        workspace: Root of the dataport workspace.

    Returns:
        Merged configuration dict.

    Raises:
        ValidationError: If the file is not a mapping or a value is out of range.
    """
    config = dict(DEFAULT_CONFIG)
    config_path = workspace / CONFIG_FILENAME
    if config_path.exists():
        user_config = yaml.safe_load(config_path.read_text()) or {}
        if not isinstance(user_config, dict):
            raise ValidationError(f"{CONFIG_FILENAME} must contain a mapping")
        config.update(user_config)
    validate_config(config)
    return config


def validate_config(config: dict[str, Any]) -> None:
    """Reject configuration values the engine cannot operate with."""
    threshold = config.get("inference_threshold")
    if not isinstance(threshold, (int, float)) or not 0 < threshold <= 1:
        raise ValidationError(
            f"inference_threshold must be in (0, 1], got {threshold!r}"
        )
    for key in _POSITIVE_KEYS:
        value = config.get(key)
        if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
            raise ValidationError(f"{key} must be a positive number, got {value!r}")


def scaffold_workspace(target_dir: Path) -> Path:
    """Create an empty workspace with a default ``dataport.yaml``.

    Args:
        target_dir: Directory to create (may already exist if empty).

    Returns:
        The workspace path.

    Raises:
        FileExistsError: If a ``dataport.yaml`` already exists there.
    """
    config_path = target_dir / CONFIG_FILENAME
    if config_path.exists():
        raise FileExistsError(f"Workspace already initialised at {target_dir}")
    target_dir.mkdir(parents=True, exist_ok=True)
    config_path.write_text(DEFAULT_CONFIG_YAML)
    for d in ("datasets", "uploads", "logs"):
        (target_dir / d).mkdir(exist_ok=True)
    return target_dir
