"""Runtime settings resolved from defaults, environment and CLI overrides."""

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Optional

from edgeup.constants import (
    CATALOG_URL,
    PACKAGE_NAME,
    PLUGIN_PATH_VAR,
    RELEASE_API_URL,
    RELEASE_BASE_URL,
)

ENV_PREFIX = "EDGEUP_"

# Directory layout under the root
VERSIONS_DIR = "versions"
STAGING_DIR = ".staging"
STATE_FILE = "state.json"
LOCK_FILE = ".lock"
PLUGIN_DIR = "plugin"


def default_root() -> Path:
    return Path(os.path.expanduser("~")) / ".wasmedge"


@dataclass(frozen=True)
class Settings:
    """edgeup configuration"""
    root: Path
    tmpdir: Optional[Path] = None
    catalog_url: str = CATALOG_URL
    release_base_url: str = RELEASE_BASE_URL
    release_api_url: str = RELEASE_API_URL
    package_name: str = PACKAGE_NAME
    plugin_path_var: str = PLUGIN_PATH_VAR
    connect_timeout: float = 15.0  # seconds
    request_timeout: float = 90.0  # seconds
    lock_attempts: int = 5
    lock_backoff: float = 0.2  # seconds, doubled per attempt
    fetch_retries: int = 0

    @classmethod
    def load(cls, **overrides: Any) -> "Settings":
        """Build settings from defaults, EDGEUP_* variables, then explicit overrides.

        Overrides set to None are ignored so CLI options can be passed through
        unconditionally.
        """
        values: dict[str, Any] = {"root": default_root()}
        env_values = {
            "root": os.environ.get(f"{ENV_PREFIX}HOME"),
            "tmpdir": os.environ.get(f"{ENV_PREFIX}TMPDIR"),
            "catalog_url": os.environ.get(f"{ENV_PREFIX}CATALOG_URL"),
            "release_base_url": os.environ.get(f"{ENV_PREFIX}RELEASE_BASE_URL"),
            "release_api_url": os.environ.get(f"{ENV_PREFIX}RELEASE_API_URL"),
        }
        values.update({k: v for k, v in env_values.items() if v})
        values.update({k: v for k, v in overrides.items() if v is not None})

        known = {f.name for f in fields(cls)}
        unknown = set(values) - known
        if unknown:
            raise ValueError(f"Unknown settings: {', '.join(sorted(unknown))}")

        values["root"] = Path(values["root"]).expanduser()
        if values.get("tmpdir"):
            values["tmpdir"] = Path(values["tmpdir"]).expanduser()
        return cls(**values)

    def with_overrides(self, **overrides: Any) -> "Settings":
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

    @property
    def versions_dir(self) -> Path:
        return self.root / VERSIONS_DIR

    @property
    def staging_dir(self) -> Path:
        # Staging must share a filesystem with versions_dir for atomic renames
        return self.root / STAGING_DIR

    @property
    def state_file(self) -> Path:
        return self.root / STATE_FILE

    @property
    def lock_file(self) -> Path:
        return self.root / LOCK_FILE

    def version_dir(self, version: str) -> Path:
        return self.versions_dir / version

    def plugin_dir(self, version: str) -> Path:
        return self.version_dir(version) / PLUGIN_DIR
