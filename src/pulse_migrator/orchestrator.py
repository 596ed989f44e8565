"""
Pulse Migrator Orchestrator

Sequences driver checks, connection verification and the backup/restore
stages, holding the concurrency gate for the whole run and reporting
everything through the event bus.

State machine: IDLE -> LINKING -> RUNNING -> {COMPLETED, FAILED, CANCELLED} -> IDLE
"""

import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Optional, Dict, List, Callable

from pulse_migrator.artifacts import check_artifact, new_backup_dir, write_manifest
from pulse_migrator.cancellation import CancellationToken
from pulse_migrator.drivers import DriverManager
from pulse_migrator.events import EventBus
from pulse_migrator.exceptions import (
    DriverError, StageError, OperationCancelled, MigratorError
)
from pulse_migrator.gate import ConcurrencyGate, GateHandle
from pulse_migrator.logging_config import get_logger
from pulse_migrator.models import (
    OperationConfig, OperationRun, OrchestratorPhase, RunKind, RunStatus,
    Stage, StageStatus, StatusEvent, DriverStatus, LogLevel,
)
from pulse_migrator.stages import StageOperation, restore_operations
from pulse_migrator.verifier import ConnectionVerifier


logger = get_logger("orchestrator")

TERMINAL_PHASES = {
    RunStatus.COMPLETED: OrchestratorPhase.COMPLETED,
    RunStatus.FAILED: OrchestratorPhase.FAILED,
    RunStatus.CANCELLED: OrchestratorPhase.CANCELLED,
}


class _ActiveRun:
    """Bookkeeping for the run that currently holds the gate."""

    def __init__(self, run: OperationRun, config: Optional[OperationConfig], handle: GateHandle):
        self.run = run
        self.config = config
        self.handle = handle
        self.token = CancellationToken()
        self.lock = threading.RLock()
        self.done = threading.Event()
        self.finalized = False


class MigrationOrchestrator:
    """Top-level coordinator. One instance per process."""

    def __init__(
        self,
        driver_manager: DriverManager,
        verifier: Optional[ConnectionVerifier] = None,
        backup_operations: Optional[Dict] = None,
        restore_ops: Optional[Dict] = None,
        backups_dir: Optional[Path] = None,
        stage_timeout: Optional[float] = None,
        cancel_grace_period: float = 10.0,
    ):
        self.driver_manager = driver_manager
        self.gate: ConcurrencyGate = driver_manager.gate
        self.bus: EventBus = driver_manager.bus
        self.verifier = verifier or ConnectionVerifier()
        if backup_operations is None:
            from pulse_migrator.stages import BackupStages
            backup_operations = BackupStages(driver_manager, driver_manager.config).operations()
        self.backup_operations: Dict = backup_operations
        self.restore_operations: Dict = restore_ops or restore_operations()
        self.backups_dir = Path(backups_dir) if backups_dir else None
        self.stage_timeout = stage_timeout
        self.cancel_grace_period = cancel_grace_period

        self._lock = threading.Lock()
        self._closed = False
        self._active: Optional[_ActiveRun] = None
        self._last: Optional[_ActiveRun] = None
        self._runs: Dict[str, OperationRun] = {}

    @classmethod
    def create(cls, root: Optional[Path] = None, bus: Optional[EventBus] = None) -> "MigrationOrchestrator":
        """Build an orchestrator wired to the on-disk app root and its config."""
        from pulse_migrator.config import load_config
        from pulse_migrator.paths import (
            get_app_root, ensure_directories, get_drivers_dir, get_backups_dir
        )

        root = get_app_root(root)
        ensure_directories(root)
        config = load_config(root)
        driver_manager = DriverManager(
            get_drivers_dir(root), ConcurrencyGate(), bus or EventBus(), config=config
        )
        return cls(
            driver_manager,
            verifier=ConnectionVerifier(timeout=config.verify_timeout),
            backups_dir=get_backups_dir(root),
            stage_timeout=config.stage_timeout,
            cancel_grace_period=config.cancel_grace_period,
        )

    # Read-only views

    @property
    def phase(self) -> OrchestratorPhase:
        with self._lock:
            active = self._active
        if active is None:
            return OrchestratorPhase.IDLE
        with active.lock:
            return active.run.phase

    def current_run(self) -> Optional[OperationRun]:
        """Snapshot of the active run, if any."""
        with self._lock:
            active = self._active
        if active is None:
            return None
        with active.lock:
            return active.run.snapshot()

    def get_run(self, run_id: str) -> Optional[OperationRun]:
        with self._lock:
            run = self._runs.get(run_id)
            active = self._active
        if run is None:
            return None
        if active is not None and active.run is run:
            with active.lock:
                return run.snapshot()
        return run.snapshot()

    def runs(self) -> List[OperationRun]:
        """Snapshots of every run of this process, oldest first."""
        with self._lock:
            ids = list(self._runs)
        return [r for r in (self.get_run(i) for i in ids) if r is not None]

    # Control surface

    def check_driver_status(self) -> DriverStatus:
        status = self.driver_manager.check_status()
        if status == DriverStatus.READY:
            self.bus.log(f"Drivers mounted: {self.driver_manager.config.driver_package} ready.")
        else:
            self.bus.log("Missing drivers: driver pack required.", LogLevel.WARNING)
        return status

    def start_backup(self, config: OperationConfig) -> OperationRun:
        """Accept or reject a backup. Work continues on the worker thread.

        Raises:
            ConfigError: required fields missing
            DriverError: drivers are not installed
            BusyError: another operation is running
        """
        return self._start(replace(config, kind=RunKind.BACKUP))

    def start_restore(self, config: OperationConfig) -> OperationRun:
        """Accept or reject a restore. Stage bodies are not implemented yet."""
        return self._start(replace(config, kind=RunKind.RESTORE))

    def install_drivers(self) -> OperationRun:
        """Start a driver install under the gate.

        Raises:
            BusyError: another operation is running
        """
        handle = self.gate.acquire(RunKind.INSTALL)
        return self._launch(RunKind.INSTALL, None, handle, self._execute_install)

    def cancel_current_operation(self, grace_period: Optional[float] = None) -> bool:
        """Cancel the active run.

        Signals the in-flight work, then waits up to grace_period for it to
        wind down. If it does not, the run is finalized here anyway so the
        gate is always released.

        Returns:
            False if nothing was running
        """
        with self._lock:
            active = self._active
        if active is None or active.finalized:
            return False

        grace = self.cancel_grace_period if grace_period is None else grace_period
        self.bus.log("Cancellation requested...", LogLevel.WARNING)
        active.token.cancel("cancelled")
        if not active.done.wait(grace):
            logger.warning("Run %s did not stop within %ss; forcing cancellation", active.run.id, grace)
            self._finalize(active, RunStatus.CANCELLED, "Cancelled (work did not stop within grace period)")
        return True

    def wait(self, timeout: Optional[float] = None) -> Optional[OperationRun]:
        """Block until the active (or most recent) run is terminal.

        Returns:
            Snapshot of that run, or None if there has been no run
        """
        with self._lock:
            active = self._active or self._last
        if active is None:
            return None
        active.done.wait(timeout)
        with active.lock:
            return active.run.snapshot()

    def shutdown(self):
        """Cancel any active run and refuse new ones."""
        with self._lock:
            self._closed = True
        self.cancel_current_operation()

    # Internals

    def _start(self, config: OperationConfig) -> OperationRun:
        config.validate()
        if self.driver_manager.check_status() != DriverStatus.READY:
            raise DriverError(
                "Database drivers are not installed",
                reason="missing",
                package=self.driver_manager.config.driver_package,
            )
        handle = self.gate.acquire(config.kind)
        return self._launch(config.kind, config, handle, self._execute_migration)

    def _launch(
        self,
        kind: RunKind,
        config: Optional[OperationConfig],
        handle: GateHandle,
        body: Callable[[_ActiveRun], None],
    ) -> OperationRun:
        with self._lock:
            closed = self._closed
        if closed:
            handle.release()
            raise MigratorError("Orchestrator is shut down")

        run = OperationRun.create(kind)
        run.overall_status = RunStatus.RUNNING
        run.phase = OrchestratorPhase.LINKING
        active = _ActiveRun(run, config, handle)

        with self._lock:
            self._active = active
            self._last = active
            self._runs[run.id] = run

        snapshot = run.snapshot()
        self.bus.log(f"=== {kind.value} INITIATED ===")
        # One worker per run; a stage abandoned by a forced cancel keeps its own thread.
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"pulse-run-{run.id[:8]}")
        try:
            executor.submit(self._worker, active, body)
        except RuntimeError as e:
            self._finalize(active, RunStatus.FAILED, f"Could not start worker: {e}")
            raise MigratorError("Could not start worker thread") from e
        finally:
            executor.shutdown(wait=False)
        return snapshot

    def _worker(self, active: _ActiveRun, body: Callable[[_ActiveRun], None]):
        try:
            body(active)
        except OperationCancelled as e:
            self._finalize(active, RunStatus.CANCELLED, e.message)
        except StageError as e:
            self._finalize(active, RunStatus.FAILED, e.message, failed_stage=e.stage)
        except MigratorError as e:
            self._finalize(active, RunStatus.FAILED, e.message)
        except Exception as e:
            logger.exception("Unexpected failure in %s run", active.run.kind.value)
            self._finalize(active, RunStatus.FAILED, f"Unexpected error: {e}")
        else:
            self._finalize(active, RunStatus.COMPLETED)

    def _set_phase(self, active: _ActiveRun, phase: OrchestratorPhase):
        with active.lock:
            if active.finalized:
                raise OperationCancelled()
            active.run.phase = phase

    def _transition(
        self,
        active: _ActiveRun,
        stage: Stage,
        status: StageStatus,
        detail: Optional[str] = None,
        artifact: Optional[str] = None,
    ):
        """Move one stage and publish it. Refused once the run is finalized."""
        with active.lock:
            if active.finalized:
                raise OperationCancelled()
            stage.transition(status, detail)
            if artifact:
                stage.artifact = artifact
            self.bus.progress(stage.name, status)

    def _fail_stage(self, active: _ActiveRun, stage: Stage, detail: str):
        """ERROR for stage, SKIPPED for everything after it."""
        with active.lock:
            if active.finalized:
                raise OperationCancelled()
            stage.transition(StageStatus.ERROR, detail)
            self.bus.progress(stage.name, StageStatus.ERROR)
            for later in active.run.pending_after(stage.name):
                later.transition(StageStatus.SKIPPED)
                self.bus.progress(later.name, StageStatus.SKIPPED)

    def _preflight(self, active: _ActiveRun):
        config = active.config
        self.bus.log(f"Connecting to project: {config.endpoint}")

        if self.driver_manager.check_status() != DriverStatus.READY:
            raise DriverError("Database drivers disappeared before the run started", reason="missing")

        message = self.verifier.verify(config.endpoint, config.credential)
        self.bus.log(message)

        if config.kind == RunKind.RESTORE:
            self.bus.log(f"Checking backup artifact: {config.artifact_path}")
            manifest = check_artifact(config.artifact_path)
            self.bus.log(f"Backup compatible (format {manifest['format_version']}, created {manifest.get('created_at')})")

        active.token.raise_if_cancelled()

    def _execute_migration(self, active: _ActiveRun):
        run, config, token = active.run, active.config, active.token

        try:
            self._preflight(active)
        except MigratorError as e:
            if not isinstance(e, OperationCancelled):
                self.bus.log(f"Pre-flight failed: {e.message}", LogLevel.ERROR)
            raise

        self._set_phase(active, OrchestratorPhase.RUNNING)

        if config.kind == RunKind.BACKUP:
            operations = self.backup_operations
            if config.output_dir:
                out_dir = Path(config.output_dir)
                out_dir.mkdir(parents=True, exist_ok=True)
            elif self.backups_dir:
                out_dir = new_backup_dir(self.backups_dir, run)
            else:
                raise MigratorError("No backup directory configured")
            with active.lock:
                run.artifact_dir = str(out_dir)
        else:
            operations = self.restore_operations
            out_dir = Path(config.artifact_path)

        for stage in run.stages:
            operation: StageOperation = operations[stage.name]
            self._transition(active, stage, StageStatus.RUNNING)
            self.bus.log(f"Capturing {stage.name.value} snapshot...")

            token.start_deadline(self.stage_timeout)
            try:
                try:
                    artifact = operation(config, out_dir, token)
                finally:
                    token.clear_deadline()
                # A deadline that expired as the stage returned still fails it
                token.raise_if_cancelled()
            except OperationCancelled as e:
                if not e.timed_out:
                    raise
                self._fail_stage(active, stage, e.message)
                self.bus.log(f"{stage.name.value} {e.message}", LogLevel.ERROR)
                raise StageError(f"{stage.name.value} stage {e.message}", stage=stage.name, cause=e)
            except Exception as e:
                if token.cancelled and not token.timed_out:
                    raise OperationCancelled() from e
                detail = str(e) if isinstance(e, MigratorError) else f"{type(e).__name__}: {e}"
                self._fail_stage(active, stage, detail)
                self.bus.log(f"{stage.name.value} failed: {getattr(e, 'message', e)}", LogLevel.ERROR)
                raise StageError(
                    f"{stage.name.value} stage failed: {getattr(e, 'message', e)}",
                    stage=stage.name,
                    cause=e,
                ) from e

            self._transition(
                active, stage, StageStatus.DONE, artifact=str(artifact) if artifact else None
            )
            self.bus.log(f"{stage.name.value} secured.")
            token.raise_if_cancelled()

    def _execute_install(self, active: _ActiveRun):
        self._set_phase(active, OrchestratorPhase.RUNNING)
        self.bus.log("Connecting to driver depot...")
        self.driver_manager.install(handle=active.handle)
        active.token.raise_if_cancelled()

    def _finalize(
        self,
        active: _ActiveRun,
        status: RunStatus,
        detail: Optional[str] = None,
        failed_stage=None,
    ) -> bool:
        """Record the terminal outcome and release the gate. First caller wins."""
        with active.lock:
            if active.finalized:
                return False
            active.finalized = True
            run = active.run

            if status == RunStatus.CANCELLED:
                running = run.running_stage()
                if running is not None:
                    running.transition(StageStatus.ERROR, "cancelled")
                    self.bus.progress(running.name, StageStatus.ERROR)
                for stage in run.stages:
                    if stage.status == StageStatus.PENDING:
                        stage.transition(StageStatus.SKIPPED)
                        self.bus.progress(stage.name, StageStatus.SKIPPED)

            run.overall_status = status
            run.phase = TERMINAL_PHASES[status]
            run.finished_at = datetime.now().isoformat()
            run.error = detail
            run.failed_stage = failed_stage

            if run.kind == RunKind.BACKUP and run.artifact_dir:
                try:
                    write_manifest(Path(run.artifact_dir), run, active.config)
                except OSError as e:
                    self.bus.log(f"Could not write backup manifest: {e}", LogLevel.ERROR)

        active.token.clear_deadline()
        active.handle.release()

        with self._lock:
            if self._active is active:
                self._active = None

        suffix = f": {detail}" if detail else ""
        level = LogLevel.INFO if status == RunStatus.COMPLETED else LogLevel.ERROR
        self.bus.log(f"=== {run.kind.value} {status.value}{suffix} ===", level)
        self.bus.publish(StatusEvent(
            run_id=run.id,
            kind=run.kind,
            status=status,
            detail=f"{failed_stage.value}: {detail}" if failed_stage else detail,
        ))
        active.done.set()
        return True
