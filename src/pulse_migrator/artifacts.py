"""
Backup directory layout, manifest and restore compatibility checks.
"""

import json
from datetime import datetime
from pathlib import Path
from typing import Dict, Any

from pulse_migrator.exceptions import ArtifactError
from pulse_migrator.models import OperationRun, OperationConfig, StageStatus, STAGE_ORDER


BACKUP_FORMAT_VERSION = 1
MANIFEST_NAME = "manifest.json"


def new_backup_dir(backups_dir: Path, run: OperationRun) -> Path:
    """Create backups/<timestamp>-<run id prefix>/."""
    stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    path = Path(backups_dir) / f"{stamp}-{run.id[:8]}"
    path.mkdir(parents=True, exist_ok=False)
    return path


def write_manifest(backup_dir: Path, run: OperationRun, config: OperationConfig) -> Path:
    """Record what this backup contains. Partial backups are recorded as such."""
    from pulse_migrator import __version__

    manifest = {
        "format_version": BACKUP_FORMAT_VERSION,
        "tool_version": __version__,
        "created_at": run.created_at,
        "run_id": run.id,
        "source_url": config.source_url,
        "overall_status": run.overall_status.value,
        "stages": {
            s.name.value: {"status": s.status.value, "artifact": s.artifact} for s in run.stages
        },
    }
    path = backup_dir / MANIFEST_NAME
    path.write_text(json.dumps(manifest, indent=2))
    return path


def check_artifact(path: Path) -> Dict[str, Any]:
    """Validate a backup directory for restore.

    Returns:
        The parsed manifest

    Raises:
        ArtifactError: missing, unreadable, incompatible or partial backup
    """
    path = Path(path)
    if not path.exists():
        raise ArtifactError(f"Backup not found: {path}", path=str(path))

    manifest_path = path / MANIFEST_NAME if path.is_dir() else path
    if not manifest_path.is_file():
        raise ArtifactError(f"No {MANIFEST_NAME} in {path}", path=str(path))

    try:
        manifest = json.loads(manifest_path.read_text())
    except (json.JSONDecodeError, OSError) as e:
        raise ArtifactError("Unreadable backup manifest", path=str(path), details=str(e))

    version = manifest.get("format_version")
    if version != BACKUP_FORMAT_VERSION:
        raise ArtifactError(
            f"Incompatible backup format {version} (expected {BACKUP_FORMAT_VERSION})",
            path=str(path),
        )

    stages = manifest.get("stages", {})
    incomplete = [
        stage.value for stage in STAGE_ORDER
        if stages.get(stage.value, {}).get("status") != StageStatus.DONE.value
    ]
    if incomplete:
        raise ArtifactError(
            f"Backup is partial: {', '.join(incomplete)} not captured",
            path=str(path),
        )
    return manifest
