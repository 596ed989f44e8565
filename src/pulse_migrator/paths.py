"""
Pulse Migrator Paths

Resolves the application root and its standard directories.

- Portable mode: if `userdata/` exists next to the executable, use that directory.
- Installed mode: `$PULSE_HOME`, or `~/.pulse-migrator`.
"""

import os
import sys
from pathlib import Path
from typing import Optional, List


APP_DIR_NAME = ".pulse-migrator"


def get_app_root(override: Optional[Path] = None) -> Path:
    """Determine the application root directory."""
    if override:
        return Path(override)

    env_home = os.environ.get("PULSE_HOME")
    if env_home:
        return Path(env_home).expanduser()

    exe_dir = Path(sys.argv[0]).resolve().parent if sys.argv and sys.argv[0] else None
    if exe_dir and (exe_dir / "userdata").is_dir():
        return exe_dir

    return Path.home() / APP_DIR_NAME


def get_userdata_dir(root: Path) -> Path:
    """Config, profiles and backups live here."""
    return root / "userdata"


def get_backups_dir(root: Path) -> Path:
    return get_userdata_dir(root) / "backups"


def get_drivers_dir(root: Path) -> Path:
    """Installed driver bundles (pg_dump, psql, ...)."""
    return root / "drivers"


def get_logs_dir(root: Path) -> Path:
    return root / "logs"


def get_config_path(root: Path) -> Path:
    return get_userdata_dir(root) / "config.yaml"


def get_profiles_path(root: Path) -> Path:
    return get_userdata_dir(root) / "profiles.yaml"


def ensure_directories(root: Path) -> List[Path]:
    """Create all required directories.

    Returns:
        List of directories that were newly created
    """
    created = []
    for directory in (
        get_userdata_dir(root),
        get_backups_dir(root),
        get_drivers_dir(root),
        get_logs_dir(root),
    ):
        if not directory.exists():
            directory.mkdir(parents=True, exist_ok=True)
            created.append(directory)
    return created
