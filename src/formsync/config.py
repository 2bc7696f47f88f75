"""Configuration loading for the sync pipeline."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("config/formsync.json")

# Environment variables that override values from the config file
ENV_OVERRIDES: dict[str, str] = {
    "FORMSYNC_DB": "db_path",
    "FORMSYNC_REMOTE_ROOT": "remote_root",
    "FORMSYNC_LOG_LEVEL": "log_level",
}


@dataclass
class SyncConfig:
    """Pipeline configuration with defaults suitable for a single operator.

    Controls where records and the remote tree live, how many records upload
    at once, and the automatic retry policy.
    """

    db_path: Path = field(default_factory=lambda: Path("data/formsync.db"))
    remote_root: Path = field(default_factory=lambda: Path("data/remote"))
    max_concurrent_uploads: int = 1
    evict_on_complete: bool = True
    auto_retry_on_start: bool = True
    max_attempts: int = 5
    retry_min_wait: float = 1.0  # seconds between automatic retry rounds
    retry_max_wait: float = 30.0
    max_blob_bytes: int = 25 * 1024 * 1024
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        """Ensure paths are Path objects and limits are usable."""
        if isinstance(self.db_path, str):
            self.db_path = Path(self.db_path)
        if isinstance(self.remote_root, str):
            self.remote_root = Path(self.remote_root)
        self.log_level = self.log_level.upper()
        if self.max_concurrent_uploads < 1:
            raise ValueError("max_concurrent_uploads must be at least 1")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.retry_min_wait < 0 or self.retry_max_wait < self.retry_min_wait:
            raise ValueError("retry waits must satisfy 0 <= retry_min_wait <= retry_max_wait")


def load_config(config_path: Path | None = None) -> SyncConfig:
    """Load pipeline configuration from JSON, merging with defaults.

    Reads ``config/formsync.json`` when *config_path* is ``None``; a missing
    default file is not an error.  ``FORMSYNC_DB``, ``FORMSYNC_REMOTE_ROOT``
    and ``FORMSYNC_LOG_LEVEL`` override whatever the file says.

    Args:
        config_path: Optional explicit path to a JSON config file.

    Returns:
        SyncConfig populated from file + environment overrides.

    Raises:
        FileNotFoundError: If an explicit *config_path* does not exist.
        ValueError: If the file is not a JSON object or a value is invalid.
    """
    data: dict = {}
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH
        if config_path.exists():
            data = _read_json(config_path)
    else:
        data = _read_json(config_path)

    # Build kwargs from JSON data, only including recognised fields
    field_names = {f.name for f in fields(SyncConfig)}
    kwargs = {k: v for k, v in data.items() if k in field_names}
    unknown = sorted(set(data) - field_names)
    if unknown:
        logger.warning("Ignoring unknown config keys in %s: %s", config_path, ", ".join(unknown))

    for env_var, name in ENV_OVERRIDES.items():
        value = os.environ.get(env_var)
        if value:
            kwargs[name] = value

    return SyncConfig(**kwargs)


def _read_json(path: Path) -> dict:
    with open(path) as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a JSON object")
    return data
