"""
Pulse Migrator Data Model

Stage, run and event records shared by the engine and front ends.
"""

import copy
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional, Dict, Any, List, Tuple

from pulse_migrator.exceptions import ConfigError


class StageName(str, Enum):
    DATABASE = "DATABASE"
    STORAGE = "STORAGE"
    FUNCTIONS = "FUNCTIONS"
    AUTH = "AUTH"


STAGE_ORDER: Tuple[StageName, ...] = (
    StageName.DATABASE,
    StageName.STORAGE,
    StageName.FUNCTIONS,
    StageName.AUTH,
)


class StageStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    DONE = "DONE"
    ERROR = "ERROR"
    SKIPPED = "SKIPPED"

    @property
    def is_terminal(self) -> bool:
        return self in (StageStatus.DONE, StageStatus.ERROR, StageStatus.SKIPPED)


# Allowed stage transitions; anything else is a programming error
STAGE_TRANSITIONS = {
    StageStatus.PENDING: {StageStatus.RUNNING, StageStatus.SKIPPED},
    StageStatus.RUNNING: {StageStatus.DONE, StageStatus.ERROR},
    StageStatus.DONE: set(),
    StageStatus.ERROR: set(),
    StageStatus.SKIPPED: set(),
}


class RunKind(str, Enum):
    BACKUP = "BACKUP"
    RESTORE = "RESTORE"
    INSTALL = "INSTALL"


class RunStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED)


class OrchestratorPhase(str, Enum):
    IDLE = "IDLE"
    LINKING = "LINKING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class DriverStatus(str, Enum):
    READY = "READY"
    MISSING = "MISSING"


class ConnectionFailure(str, Enum):
    UNAUTHORIZED = "UNAUTHORIZED"
    UNREACHABLE = "UNREACHABLE"
    TIMEOUT = "TIMEOUT"


class LogLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"


class InvalidTransition(Exception):
    """Raised when a stage status would regress or skip a step."""


def _now() -> str:
    return datetime.now().isoformat()


@dataclass(frozen=True)
class OperationConfig:
    """Input of a backup or restore run. Frozen once a run is accepted."""
    kind: RunKind = RunKind.BACKUP
    source_url: str = ""
    source_key: str = ""
    target_url: str = ""
    target_key: str = ""
    artifact_path: Optional[Path] = None
    output_dir: Optional[Path] = None
    database_url: str = ""
    functions_source: Optional[Path] = None

    @property
    def endpoint(self) -> str:
        """The endpoint probed before the run starts."""
        return self.target_url if self.kind == RunKind.RESTORE else self.source_url

    @property
    def credential(self) -> str:
        return self.target_key if self.kind == RunKind.RESTORE else self.source_key

    def missing_fields(self) -> List[str]:
        required = {
            RunKind.BACKUP: ["source_url", "source_key"],
            RunKind.RESTORE: ["target_url", "target_key", "artifact_path"],
            RunKind.INSTALL: [],
        }[self.kind]
        missing = []
        for name in required:
            value = getattr(self, name)
            if value is None or (isinstance(value, str) and not value.strip()):
                missing.append(name)
        return missing

    def validate(self) -> "OperationConfig":
        """Raise ConfigError if required fields for this kind are absent."""
        missing = self.missing_fields()
        if missing:
            raise ConfigError(
                f"Incomplete {self.kind.value.lower()} configuration",
                missing=missing,
            )
        return self


@dataclass
class Stage:
    """One named unit of backup/restore work."""
    name: StageName
    status: StageStatus = StageStatus.PENDING
    started_at: Optional[str] = None
    ended_at: Optional[str] = None
    error_detail: Optional[str] = None
    artifact: Optional[str] = None

    def transition(self, new_status: StageStatus, error_detail: Optional[str] = None):
        """Move to new_status, enforcing monotonic progression."""
        if new_status not in STAGE_TRANSITIONS[self.status]:
            raise InvalidTransition(
                f"{self.name.value}: {self.status.value} -> {new_status.value}"
            )
        self.status = new_status
        if new_status == StageStatus.RUNNING:
            self.started_at = _now()
        elif new_status in (StageStatus.DONE, StageStatus.ERROR):
            self.ended_at = _now()
        if error_detail:
            self.error_detail = error_detail

    def to_dict(self) -> dict:
        return {
            "name": self.name.value,
            "status": self.status.value,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "error_detail": self.error_detail,
            "artifact": self.artifact,
        }


@dataclass
class OperationRun:
    """One end-to-end backup, restore or install invocation."""
    kind: RunKind
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    stages: Tuple[Stage, ...] = ()
    overall_status: RunStatus = RunStatus.PENDING
    phase: OrchestratorPhase = OrchestratorPhase.IDLE
    created_at: str = field(default_factory=_now)
    finished_at: Optional[str] = None
    failed_stage: Optional[StageName] = None
    error: Optional[str] = None
    artifact_dir: Optional[str] = None

    @classmethod
    def create(cls, kind: RunKind) -> "OperationRun":
        """Create a run with its fixed stage timeline. Installs have no stages."""
        stages = () if kind == RunKind.INSTALL else tuple(Stage(name) for name in STAGE_ORDER)
        return cls(kind=kind, stages=stages)

    def stage(self, name: StageName) -> Stage:
        for stage in self.stages:
            if stage.name == name:
                return stage
        raise KeyError(name)

    def pending_after(self, name: StageName) -> List[Stage]:
        """Stages after `name` that never started."""
        names = [s.name for s in self.stages]
        index = names.index(name)
        return [s for s in self.stages[index + 1:] if s.status == StageStatus.PENDING]

    def running_stage(self) -> Optional[Stage]:
        for stage in self.stages:
            if stage.status == StageStatus.RUNNING:
                return stage
        return None

    @property
    def is_terminal(self) -> bool:
        return self.overall_status.is_terminal

    def snapshot(self) -> "OperationRun":
        """Return a detached copy safe to hand to callers."""
        return copy.deepcopy(self)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "overall_status": self.overall_status.value,
            "phase": self.phase.value,
            "created_at": self.created_at,
            "finished_at": self.finished_at,
            "failed_stage": self.failed_stage.value if self.failed_stage else None,
            "error": self.error,
            "artifact_dir": self.artifact_dir,
            "stages": [s.to_dict() for s in self.stages],
        }


@dataclass
class DriverState:
    """Installed/ready status of the external client binaries."""
    installed: bool = False
    version: Optional[str] = None
    install_path: Optional[str] = None

    @property
    def status(self) -> DriverStatus:
        return DriverStatus.READY if self.installed else DriverStatus.MISSING

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class LogEvent:
    message: str
    level: LogLevel = LogLevel.INFO
    timestamp: str = field(default_factory=_now)
    type: str = field(default="log", init=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "timestamp": self.timestamp,
            "level": self.level.value,
            "message": self.message,
        }


@dataclass(frozen=True)
class ProgressEvent:
    stage: StageName
    status: StageStatus
    type: str = field(default="progress", init=False)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "stage": self.stage.value, "status": self.status.value}


@dataclass(frozen=True)
class StatusEvent:
    """Terminal outcome of a run."""
    run_id: str
    kind: RunKind
    status: RunStatus
    detail: Optional[str] = None
    type: str = field(default="status", init=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "run_id": self.run_id,
            "kind": self.kind.value,
            "status": self.status.value,
            "detail": self.detail,
        }
