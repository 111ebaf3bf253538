"""
Runtime configuration — assembled once at the process boundary.

``load_config`` is the only function that looks at environment
variables. Everything below the CLI receives a ``RushConfig`` and never
reads the environment itself, so tests can build one by hand.

Resolution order for each setting:
    environment variable  >  default derived from the home directory
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from pathlib import Path

from pydantic import BaseModel

logger = logging.getLogger(__name__)

# Default URL to fetch the registry from, overridable by RUSH_REGISTRY_URL
DEFAULT_REGISTRY_URL = "https://github.com/ekourtakis/rush/archive/refs/heads/main.tar.gz"

ENV_REGISTRY = "RUSH_REGISTRY_URL"
ENV_HOME = "RUSH_HOME"
ENV_BIN_DIR = "RUSH_BIN_DIR"
ENV_DATA_DIR = "RUSH_DATA_DIR"

STATE_FILE = "installed.json"


class ConfigError(Exception):
    """Raised when a configuration value is unusable."""


class RushConfig(BaseModel):
    """Resolved settings for one invocation."""

    registry_source: str = DEFAULT_REGISTRY_URL
    home: Path
    bin_dir: Path
    data_dir: Path

    fetch_timeout: float = 30.0
    fetch_attempts: int = 4
    lock_timeout: float = 10.0

    @property
    def state_file(self) -> Path:
        return self.data_dir / STATE_FILE

    @property
    def lock_file(self) -> Path:
        return self.data_dir / f"{STATE_FILE}.lock"

    @property
    def cache_dir(self) -> Path:
        """Cached remote registries, one sub-directory per source."""
        return self.data_dir / "registry"

    @property
    def work_dir(self) -> Path:
        """Scratch space for downloads and extraction."""
        return self.data_dir / "tmp"

    @classmethod
    def for_root(cls, root: Path, registry_source: str = DEFAULT_REGISTRY_URL) -> RushConfig:
        """Standard layout below ``root`` (``~/.local/bin``, ``~/.local/share/rush``)."""
        return cls(
            registry_source=registry_source,
            home=root,
            bin_dir=root / ".local" / "bin",
            data_dir=root / ".local" / "share" / "rush",
        )

    def ensure_dirs(self) -> None:
        for path in (self.bin_dir, self.data_dir, self.work_dir):
            path.mkdir(parents=True, exist_ok=True)


def load_config(environ: Mapping[str, str], home: Path | None = None) -> RushConfig:
    """Build the configuration from environment variables and defaults.

    Args:
        environ: Usually ``os.environ``.
        home: Fallback root directory (default: ``Path.home()``).

    Raises:
        ConfigError: If no home directory can be determined.
    """
    root_value = environ.get(ENV_HOME)
    if root_value:
        root = Path(root_value).expanduser()
    else:
        try:
            root = home or Path.home()
        except RuntimeError as e:
            raise ConfigError(f"Cannot determine home directory: {e}") from e

    config = RushConfig.for_root(
        root,
        registry_source=environ.get(ENV_REGISTRY) or DEFAULT_REGISTRY_URL,
    )

    updates: dict[str, Path] = {}
    if environ.get(ENV_BIN_DIR):
        updates["bin_dir"] = Path(environ[ENV_BIN_DIR]).expanduser()
    if environ.get(ENV_DATA_DIR):
        updates["data_dir"] = Path(environ[ENV_DATA_DIR]).expanduser()
    if updates:
        config = config.model_copy(update=updates)

    logger.debug(
        "Config: registry=%s bin_dir=%s data_dir=%s",
        config.registry_source,
        config.bin_dir,
        config.data_dir,
    )
    return config
