"""
Pulse Migrator Configuration

User settings (release channel, timeouts, driver source) and saved endpoint
profiles, stored as YAML under the userdata directory.
"""

import platform as _platform
from dataclasses import dataclass, field, asdict, fields
from pathlib import Path
from typing import Optional, Dict, Any, List

import yaml

from pulse_migrator.exceptions import ConfigError
from pulse_migrator.paths import get_config_path, get_profiles_path


DEFAULT_MANIFEST_URL = (
    "https://raw.githubusercontent.com/devpulse-tools/dptools-deps/main/deps/apps/ezdb/manifest.json"
)
DEFAULT_GITHUB_REPO = "devpulse-tools/drivers"
CHANNELS = ("stable", "insider")


def detect_platform() -> str:
    """Platform key used in driver manifests, e.g. 'win32-x64' or 'linux-x64'."""
    system = _platform.system().lower()
    machine = _platform.machine().lower()
    arch = "arm64" if machine in ("arm64", "aarch64") else "x64"
    if system == "windows":
        return f"win32-{arch}"
    if system == "darwin":
        return f"darwin-{arch}"
    return f"linux-{arch}"


@dataclass
class MigratorConfig:
    """Persistent settings for the migrator."""
    channel: str = "stable"
    release_api_url: str = ""
    release_api_key: str = ""
    manifest_fallback_url: str = DEFAULT_MANIFEST_URL
    github_repo: str = DEFAULT_GITHUB_REPO
    driver_package: str = "postgres-15"
    platform: str = field(default_factory=detect_platform)
    use_system_path: bool = False
    verify_timeout: float = 10.0
    stage_timeout: float = 3600.0
    cancel_grace_period: float = 10.0
    functions_api_url: str = ""

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MigratorConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(
                f"Unknown configuration keys: {', '.join(unknown)}",
                config_key=unknown[0],
            )
        config = cls(**data)
        config.validate()
        return config

    def validate(self):
        if self.channel not in CHANNELS:
            raise ConfigError(
                f"Invalid channel '{self.channel}'",
                config_key="channel",
                remediation=f"Use one of: {', '.join(CHANNELS)}",
            )
        for key in ("verify_timeout", "stage_timeout", "cancel_grace_period"):
            value = getattr(self, key)
            if not isinstance(value, (int, float)) or isinstance(value, bool) or value <= 0:
                raise ConfigError(f"{key} must be a positive number", config_key=key)
        if "/" not in self.github_repo:
            raise ConfigError("github_repo must be in owner/name form", config_key="github_repo")


def load_config(root: Path) -> MigratorConfig:
    """Load config.yaml, or defaults if it does not exist."""
    config_path = get_config_path(root)
    if not config_path.exists():
        return MigratorConfig()

    try:
        data = yaml.safe_load(config_path.read_text()) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Malformed {config_path.name}", details=str(e), config_key="config.yaml")

    if not isinstance(data, dict):
        raise ConfigError(f"{config_path.name} must contain a mapping", config_key="config.yaml")
    return MigratorConfig.from_dict(data)


def save_config(root: Path, config: MigratorConfig) -> Path:
    """Write config.yaml and return its path."""
    config.validate()
    config_path = get_config_path(root)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(yaml.safe_dump(config.to_dict(), default_flow_style=False, sort_keys=False))
    return config_path


def list_profiles(root: Path) -> List[Dict[str, Any]]:
    """Saved endpoint profiles (name, url, optional database_url)."""
    profiles_path = get_profiles_path(root)
    if not profiles_path.exists():
        return []
    try:
        data = yaml.safe_load(profiles_path.read_text()) or []
    except yaml.YAMLError as e:
        raise ConfigError(f"Malformed {profiles_path.name}", details=str(e), config_key="profiles.yaml")
    if not isinstance(data, list):
        raise ConfigError(f"{profiles_path.name} must contain a list", config_key="profiles.yaml")
    return [p for p in data if isinstance(p, dict) and p.get("name")]


def get_profile(root: Path, name: str) -> Optional[Dict[str, Any]]:
    for profile in list_profiles(root):
        if profile["name"] == name:
            return profile
    return None
