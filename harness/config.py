"""Configuration management for the varnish-vtest suite.

This module handles configuration for instances and the admin client:
- The varnishd binary to spawn
- Where named varnishd workdirs live
- Where ephemeral instance workdirs are created
- Polling and start timeout settings

Configuration is loaded from (in order of precedence):
1. Environment variables (VTEST_* prefix)
2. Project-local .vtest.toml
3. User config ~/.config/varnish-vtest/config.toml
4. Built-in defaults
"""

import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Any

try:
    import tomllib
except ImportError:
    import tomli as tomllib


@dataclass
class Config:
    """Main configuration for the test suite."""

    # varnishd executable (name on PATH or full path)
    varnishd: str = "varnishd"

    # Parent of named varnishd workdirs (varnishd's own default)
    workdir_base: Path = Path("/var/lib/varnish")

    # Directory ephemeral instance workdirs are created in
    tmp_dir: Path = field(default_factory=lambda: Path(tempfile.gettempdir()))

    # Prefix of ephemeral instance workdir names
    workdir_prefix: str = "vtest-py."

    # Seconds between two status polls while waiting for the child
    poll_interval: float = 0.2

    # Default start deadline in seconds (None waits forever)
    start_timeout: Optional[float] = None

    def __post_init__(self):
        # Ensure paths are Path objects
        if isinstance(self.workdir_base, str):
            self.workdir_base = Path(self.workdir_base)
        if isinstance(self.tmp_dir, str):
            self.tmp_dir = Path(self.tmp_dir)

        # Expand ~ in paths
        self.workdir_base = self.workdir_base.expanduser()
        self.tmp_dir = self.tmp_dir.expanduser()


# Default configuration file locations
USER_CONFIG_PATH = Path.home() / ".config" / "varnish-vtest" / "config.toml"
PROJECT_CONFIG_NAME = ".vtest.toml"


def _find_project_config() -> Optional[Path]:
    """Find project-local config file by walking up from cwd."""
    current = Path.cwd()
    while current != current.parent:
        config_path = current / PROJECT_CONFIG_NAME
        if config_path.exists():
            return config_path
        current = current.parent
    return None


def _load_toml(path: Path) -> Dict[str, Any]:
    """Load a TOML file and return its contents."""
    if not path.exists():
        return {}
    with open(path, "rb") as f:
        return tomllib.load(f)


def _apply(config: Config, data: Dict[str, Any]) -> None:
    """Merge one parsed config file into ``config``."""
    if "varnishd" in data:
        varnishd = data["varnishd"]
        if "binary" in varnishd:
            config.varnishd = str(varnishd["binary"])
        if "workdir_base" in varnishd:
            config.workdir_base = Path(varnishd["workdir_base"]).expanduser()

    if "instances" in data:
        instances = data["instances"]
        if "tmp_dir" in instances:
            config.tmp_dir = Path(instances["tmp_dir"]).expanduser()
        if "workdir_prefix" in instances:
            config.workdir_prefix = str(instances["workdir_prefix"])
        if "poll_interval" in instances:
            config.poll_interval = float(instances["poll_interval"])
        if "start_timeout" in instances:
            config.start_timeout = float(instances["start_timeout"])


def load_config() -> Config:
    """Load configuration from files and environment.

    Returns:
        Config object with merged settings.
    """
    config = Config()

    # Load user config
    user_data = _load_toml(USER_CONFIG_PATH)

    # Load project config (overrides user)
    project_path = _find_project_config()
    project_data = _load_toml(project_path) if project_path else {}

    for data in [user_data, project_data]:
        if data:
            _apply(config, data)

    # Environment overrides (highest precedence)
    if env_binary := os.environ.get("VTEST_VARNISHD"):
        config.varnishd = env_binary
    if env_base := os.environ.get("VTEST_WORKDIR_BASE"):
        config.workdir_base = Path(env_base).expanduser()
    if env_tmp := os.environ.get("VTEST_TMP_DIR"):
        config.tmp_dir = Path(env_tmp).expanduser()
    if env_prefix := os.environ.get("VTEST_WORKDIR_PREFIX"):
        config.workdir_prefix = env_prefix
    if env_interval := os.environ.get("VTEST_POLL_INTERVAL"):
        config.poll_interval = float(env_interval)
    if env_timeout := os.environ.get("VTEST_START_TIMEOUT"):
        config.start_timeout = float(env_timeout)

    return config


def get_config() -> Config:
    """Get the current configuration (cached).

    Returns:
        Config object.
    """
    global _cached_config
    if _cached_config is None:
        _cached_config = load_config()
    return _cached_config


def reset_config():
    """Reset the cached configuration."""
    global _cached_config
    _cached_config = None


# Cached config instance
_cached_config: Optional[Config] = None


def generate_sample_config() -> str:
    """Generate a sample configuration file.

    Returns:
        Sample TOML configuration as a string.
    """
    return '''# varnish-vtest configuration
# Place this file at ~/.config/varnish-vtest/config.toml (user)
# or .vtest.toml in your project directory (project)

[varnishd]
# varnishd executable, looked up on PATH unless absolute
binary = "varnishd"

# Parent directory of named workdirs (used by `vtest adm -n NAME`)
workdir_base = "/var/lib/varnish"

[instances]
# Where ephemeral instance workdirs are created
# tmp_dir = "/tmp"

# Prefix of ephemeral workdir names (also used by `vtest clean`)
workdir_prefix = "vtest-py."

# Seconds between status polls while waiting for the child to run
poll_interval = 0.2

# Give up starting an instance after this many seconds (unset: wait forever)
# start_timeout = 30.0
'''
