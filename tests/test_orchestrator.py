"""Tests for the migration orchestrator."""

import threading
import time

import pytest


WAIT = 5


def progress_pairs(recorder):
    return [(e.stage.value, e.status.value) for e in recorder.of_type("progress")]


def log_messages(recorder):
    return [e.message for e in recorder.of_type("log")]


def failing_probe(url, credential, timeout):
    from pulse_migrator.exceptions import ConnectionFailedError
    from pulse_migrator.models import ConnectionFailure

    raise ConnectionFailedError("Validation failed (status 401)", reason=ConnectionFailure.UNAUTHORIZED)


def blocking_operations(stage_ops, release: threading.Event, started: threading.Event, honour_cancel=True):
    """DATABASE blocks until released (or cancelled); the rest succeed."""
    from pulse_migrator.models import StageName

    operations = stage_ops()

    def blocked(config, out_dir, token):
        started.set()
        if honour_cancel:
            token.wait(WAIT)
            token.raise_if_cancelled()
        else:
            release.wait(WAIT)
        return out_dir / "database.dump"

    operations[StageName.DATABASE] = blocked
    return operations


class TestBackupRun:
    """Test a complete backup run."""

    def test_successful_backup(self, make_orchestrator, backup_config):
        """Test every stage completes and the gate is released."""
        from pulse_migrator.events import EventRecorder
        from pulse_migrator.models import OrchestratorPhase, RunStatus, StageStatus

        orchestrator = make_orchestrator()
        recorder = EventRecorder()
        orchestrator.bus.subscribe(recorder)

        accepted = orchestrator.start_backup(backup_config)
        assert accepted.overall_status == RunStatus.RUNNING
        assert accepted.phase == OrchestratorPhase.LINKING

        run = orchestrator.wait(WAIT)

        assert run.id == accepted.id
        assert run.overall_status == RunStatus.COMPLETED
        assert all(s.status == StageStatus.DONE for s in run.stages)
        assert all(s.artifact for s in run.stages)
        assert not orchestrator.gate.is_busy()
        assert orchestrator.phase == OrchestratorPhase.IDLE
        assert orchestrator.current_run() is None

        (status,) = recorder.of_type("status")
        assert status.status == RunStatus.COMPLETED
        assert status.run_id == run.id

    def test_backup_writes_manifest(self, make_orchestrator, backup_config):
        """Test the backup directory receives a restorable manifest."""
        from pathlib import Path
        from pulse_migrator.artifacts import check_artifact

        orchestrator = make_orchestrator()
        orchestrator.start_backup(backup_config)
        run = orchestrator.wait(WAIT)

        manifest = check_artifact(Path(run.artifact_dir))
        assert manifest["run_id"] == run.id

    def test_output_dir_override(self, make_orchestrator, backup_config, temp_root):
        """Test an explicit output directory is used as is."""
        from dataclasses import replace

        out = temp_root / "my-backup"
        orchestrator = make_orchestrator()
        orchestrator.start_backup(replace(backup_config, output_dir=out))
        run = orchestrator.wait(WAIT)

        assert run.artifact_dir == str(out)
        assert (out / "manifest.json").is_file()

    def test_stages_run_in_order(self, make_orchestrator, backup_config, stage_ops):
        """Test stages execute sequentially in timeline order."""
        from pulse_migrator.models import STAGE_ORDER

        calls = []
        orchestrator = make_orchestrator(operations=stage_ops(calls))
        orchestrator.start_backup(backup_config)
        orchestrator.wait(WAIT)

        assert calls == list(STAGE_ORDER)

    def test_status_sequences_are_monotonic(self, make_orchestrator, backup_config, stage_ops):
        """Test each stage moves PENDING -> RUNNING -> DONE/ERROR or straight to SKIPPED."""
        from pulse_migrator.events import EventRecorder
        from pulse_migrator.models import StageName

        orchestrator = make_orchestrator(operations=stage_ops(fail_at=StageName.FUNCTIONS))
        recorder = EventRecorder()
        orchestrator.bus.subscribe(recorder)
        orchestrator.start_backup(backup_config)
        orchestrator.wait(WAIT)

        per_stage = {}
        for stage, status in progress_pairs(recorder):
            per_stage.setdefault(stage, []).append(status)

        allowed = (["RUNNING", "DONE"], ["RUNNING", "ERROR"], ["SKIPPED"])
        assert all(sequence in allowed for sequence in per_stage.values())
        assert per_stage["AUTH"] == ["SKIPPED"]


class TestStageFailure:
    """Test failure handling inside the stage loop."""

    def test_database_failure_event_sequence(self, make_orchestrator, backup_config, stage_ops):
        """Test a failing DATABASE stage skips everything after it."""
        from pulse_migrator.events import EventRecorder
        from pulse_migrator.models import RunStatus, StageName

        orchestrator = make_orchestrator(operations=stage_ops(fail_at=StageName.DATABASE))
        recorder = EventRecorder()
        orchestrator.bus.subscribe(recorder)

        orchestrator.start_backup(backup_config)
        run = orchestrator.wait(WAIT)

        assert progress_pairs(recorder) == [
            ("DATABASE", "RUNNING"),
            ("DATABASE", "ERROR"),
            ("STORAGE", "SKIPPED"),
            ("FUNCTIONS", "SKIPPED"),
            ("AUTH", "SKIPPED"),
        ]
        assert run.overall_status == RunStatus.FAILED
        assert run.failed_stage == StageName.DATABASE
        (status,) = recorder.of_type("status")
        assert status.status == RunStatus.FAILED
        assert status.detail.startswith("DATABASE")

    @pytest.mark.parametrize("failing", ["DATABASE", "STORAGE", "FUNCTIONS", "AUTH"])
    def test_failure_at_each_stage(self, make_orchestrator, backup_config, stage_ops, failing):
        """Test earlier stages stay DONE, later ones SKIPPED, and the gate is free."""
        from pulse_migrator.models import RunKind, RunStatus, StageName, StageStatus, STAGE_ORDER

        failing = StageName(failing)
        orchestrator = make_orchestrator(operations=stage_ops(fail_at=failing))
        orchestrator.start_backup(backup_config)
        run = orchestrator.wait(WAIT)

        index = STAGE_ORDER.index(failing)
        statuses = [s.status for s in run.stages]
        assert statuses[:index] == [StageStatus.DONE] * index
        assert statuses[index] == StageStatus.ERROR
        assert statuses[index + 1:] == [StageStatus.SKIPPED] * (len(STAGE_ORDER) - index - 1)
        assert run.overall_status == RunStatus.FAILED

        orchestrator.gate.acquire(RunKind.BACKUP).release()

    def test_error_detail_recorded(self, make_orchestrator, backup_config, stage_ops):
        """Test the tool error is kept on the stage and the run."""
        from pulse_migrator.exceptions import ToolError
        from pulse_migrator.models import StageName

        error = ToolError("storage: GET returned 500", tool="storage", exit_code=500)
        orchestrator = make_orchestrator(operations=stage_ops(fail_at=StageName.STORAGE, error=error))
        orchestrator.start_backup(backup_config)
        run = orchestrator.wait(WAIT)

        assert "500" in run.stage(StageName.STORAGE).error_detail
        assert "STORAGE" in run.error

    def test_unexpected_exception_fails_stage(self, make_orchestrator, backup_config, stage_ops):
        """Test arbitrary exceptions from a stage are contained."""
        from pulse_migrator.models import RunStatus, StageName, StageStatus

        orchestrator = make_orchestrator(operations=stage_ops(fail_at=StageName.AUTH, error=KeyError("users")))
        orchestrator.start_backup(backup_config)
        run = orchestrator.wait(WAIT)

        assert run.overall_status == RunStatus.FAILED
        assert run.stage(StageName.AUTH).status == StageStatus.ERROR
        assert "KeyError" in run.stage(StageName.AUTH).error_detail

    def test_stage_timeout(self, make_orchestrator, backup_config, stage_ops):
        """Test a stage exceeding its deadline fails the run."""
        from pulse_migrator.models import RunStatus, StageName, StageStatus

        release, started = threading.Event(), threading.Event()
        orchestrator = make_orchestrator(
            operations=blocking_operations(stage_ops, release, started), stage_timeout=0.2
        )
        orchestrator.start_backup(backup_config)
        run = orchestrator.wait(WAIT)

        assert run.overall_status == RunStatus.FAILED
        assert run.failed_stage == StageName.DATABASE
        assert "timed out" in run.stage(StageName.DATABASE).error_detail
        assert run.stage(StageName.STORAGE).status == StageStatus.SKIPPED
        assert not orchestrator.gate.is_busy()

    def test_deadline_expiring_as_stage_returns(self, make_orchestrator, backup_config, stage_ops):
        """Test a deadline hit just before the stage returned is a timeout, not a cancel."""
        from pulse_migrator.models import RunStatus, StageName, StageStatus

        operations = stage_ops()

        def expires_on_return(config, out_dir, token):
            token.cancel("timed out after 60s", timed_out=True)
            return out_dir / "database.dump"

        operations[StageName.DATABASE] = expires_on_return
        orchestrator = make_orchestrator(operations=operations, stage_timeout=60)
        orchestrator.start_backup(backup_config)
        run = orchestrator.wait(WAIT)

        assert run.overall_status == RunStatus.FAILED
        assert run.failed_stage == StageName.DATABASE
        assert run.stage(StageName.DATABASE).status == StageStatus.ERROR
        assert "timed out" in run.stage(StageName.DATABASE).error_detail
        assert run.stage(StageName.STORAGE).status == StageStatus.SKIPPED


class TestPreflight:
    """Test rejection and pre-flight failures."""

    def test_verifier_failure_leaves_stages_pending(self, make_orchestrator, backup_config, stage_ops):
        """Test no stage leaves PENDING when the connection check fails."""
        from pulse_migrator.events import EventRecorder
        from pulse_migrator.models import RunStatus, StageStatus

        calls = []
        orchestrator = make_orchestrator(operations=stage_ops(calls), probe=failing_probe)
        recorder = EventRecorder()
        orchestrator.bus.subscribe(recorder)

        orchestrator.start_backup(backup_config)
        run = orchestrator.wait(WAIT)

        assert run.overall_status == RunStatus.FAILED
        assert all(s.status == StageStatus.PENDING for s in run.stages)
        assert recorder.of_type("progress") == []
        assert calls == []
        assert any("Pre-flight failed" in m for m in log_messages(recorder))
        assert not orchestrator.gate.is_busy()

    def test_missing_drivers_rejected_before_gate(self, make_orchestrator, backup_config):
        """Test a backup with MISSING drivers is refused with no events."""
        from pulse_migrator.events import EventRecorder
        from pulse_migrator.exceptions import DriverError

        orchestrator = make_orchestrator(ready=False)
        recorder = EventRecorder()
        orchestrator.bus.subscribe(recorder)

        with pytest.raises(DriverError):
            orchestrator.start_backup(backup_config)

        assert recorder.events == []
        assert not orchestrator.gate.is_busy()
        assert orchestrator.runs() == []

    def test_incomplete_config_rejected(self, make_orchestrator):
        """Test missing fields are a ConfigError before anything starts."""
        from pulse_migrator.exceptions import ConfigError
        from pulse_migrator.models import OperationConfig

        orchestrator = make_orchestrator()
        with pytest.raises(ConfigError) as exc_info:
            orchestrator.start_backup(OperationConfig(source_url="https://abc"))
        assert exc_info.value.missing == ["source_key"]
        assert not orchestrator.gate.is_busy()

    def test_phase_is_linking_during_verification(self, make_orchestrator, backup_config):
        """Test the run sits in LINKING while the probe runs."""
        from pulse_migrator.models import OrchestratorPhase, RunStatus

        entered, release = threading.Event(), threading.Event()

        def slow_probe(url, credential, timeout):
            entered.set()
            release.wait(WAIT)
            return "ok"

        orchestrator = make_orchestrator(probe=slow_probe)
        orchestrator.start_backup(backup_config)
        assert entered.wait(WAIT)
        assert orchestrator.phase == OrchestratorPhase.LINKING
        assert orchestrator.current_run().overall_status == RunStatus.RUNNING

        release.set()
        assert orchestrator.wait(WAIT).overall_status == RunStatus.COMPLETED


class TestConcurrency:
    """Test the single-operation rule."""

    def test_second_start_is_busy(self, make_orchestrator, backup_config, stage_ops):
        """Test a second start fails without touching the running run."""
        from pulse_migrator.exceptions import BusyError
        from pulse_migrator.models import RunStatus

        release, started = threading.Event(), threading.Event()
        orchestrator = make_orchestrator(
            operations=blocking_operations(stage_ops, release, started, honour_cancel=False)
        )
        first = orchestrator.start_backup(backup_config)
        assert started.wait(WAIT)
        before = orchestrator.get_run(first.id).to_dict()

        with pytest.raises(BusyError):
            orchestrator.start_backup(backup_config)
        with pytest.raises(BusyError):
            orchestrator.install_drivers()

        assert orchestrator.get_run(first.id).to_dict() == before
        running = [r for r in orchestrator.runs() if r.overall_status == RunStatus.RUNNING]
        assert [r.id for r in running] == [first.id]

        release.set()
        assert orchestrator.wait(WAIT).overall_status == RunStatus.COMPLETED

    def test_concurrent_starts_have_one_winner(self, make_orchestrator, backup_config, stage_ops):
        """Test racing starts accept exactly one run."""
        from pulse_migrator.exceptions import BusyError

        release, started = threading.Event(), threading.Event()
        orchestrator = make_orchestrator(
            operations=blocking_operations(stage_ops, release, started, honour_cancel=False)
        )
        barrier = threading.Barrier(5)
        accepted, busy = [], []

        def attempt():
            barrier.wait()
            try:
                accepted.append(orchestrator.start_backup(backup_config))
            except BusyError:
                busy.append(1)

        threads = [threading.Thread(target=attempt) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(WAIT)

        assert len(accepted) == 1
        assert len(busy) == 4
        release.set()
        orchestrator.wait(WAIT)

    def test_sequential_runs_reuse_gate(self, make_orchestrator, backup_config):
        """Test the gate is free for the next run after completion."""
        from pulse_migrator.models import RunStatus

        orchestrator = make_orchestrator()
        for _ in range(3):
            orchestrator.start_backup(backup_config)
            assert orchestrator.wait(WAIT).overall_status == RunStatus.COMPLETED
        assert len(orchestrator.runs()) == 3


class TestCancellation:
    """Test cancel_current_operation."""

    def test_cancel_running_stage(self, make_orchestrator, backup_config, stage_ops):
        """Test cancelling marks the running stage ERROR and the rest SKIPPED."""
        from pulse_migrator.events import EventRecorder
        from pulse_migrator.models import RunStatus, StageName, StageStatus

        release, started = threading.Event(), threading.Event()
        orchestrator = make_orchestrator(operations=blocking_operations(stage_ops, release, started))
        recorder = EventRecorder()
        orchestrator.bus.subscribe(recorder)

        orchestrator.start_backup(backup_config)
        assert started.wait(WAIT)
        assert orchestrator.cancel_current_operation() is True
        run = orchestrator.wait(WAIT)

        assert run.overall_status == RunStatus.CANCELLED
        assert run.stage(StageName.DATABASE).status == StageStatus.ERROR
        assert run.stage(StageName.DATABASE).error_detail == "cancelled"
        assert all(run.stage(n).status == StageStatus.SKIPPED
                   for n in (StageName.STORAGE, StageName.FUNCTIONS, StageName.AUTH))
        assert not orchestrator.gate.is_busy()
        (status,) = recorder.of_type("status")
        assert status.status == RunStatus.CANCELLED

    def test_forced_cancel_after_grace(self, make_orchestrator, backup_config, stage_ops):
        """Test a stage ignoring cancellation is abandoned and the gate still freed."""
        from pulse_migrator.events import EventRecorder
        from pulse_migrator.models import RunKind, RunStatus, StageName, StageStatus

        release, started = threading.Event(), threading.Event()
        orchestrator = make_orchestrator(
            operations=blocking_operations(stage_ops, release, started, honour_cancel=False)
        )
        recorder = EventRecorder()
        orchestrator.bus.subscribe(recorder)

        orchestrator.start_backup(backup_config)
        assert started.wait(WAIT)
        start = time.monotonic()
        assert orchestrator.cancel_current_operation(grace_period=0.2) is True
        assert time.monotonic() - start < 2

        run = orchestrator.wait(WAIT)
        assert run.overall_status == RunStatus.CANCELLED
        orchestrator.gate.acquire(RunKind.BACKUP).release()

        # The abandoned worker finishes later without reviving the run
        release.set()
        time.sleep(0.3)
        final = orchestrator.get_run(run.id)
        assert final.overall_status == RunStatus.CANCELLED
        assert final.stage(StageName.DATABASE).status == StageStatus.ERROR
        assert len(recorder.of_type("status")) == 1

    def test_cancel_during_linking(self, make_orchestrator, backup_config, stage_ops):
        """Test cancelling before any stage started skips every stage."""
        from pulse_migrator.models import RunStatus, StageStatus

        entered, release = threading.Event(), threading.Event()

        def slow_probe(url, credential, timeout):
            entered.set()
            release.wait(WAIT)
            return "ok"

        calls = []
        orchestrator = make_orchestrator(operations=stage_ops(calls), probe=slow_probe)
        orchestrator.start_backup(backup_config)
        assert entered.wait(WAIT)

        orchestrator.cancel_current_operation(grace_period=0.1)
        release.set()
        run = orchestrator.wait(WAIT)

        assert run.overall_status == RunStatus.CANCELLED
        assert all(s.status == StageStatus.SKIPPED for s in run.stages)
        time.sleep(0.2)
        assert calls == []

    def test_new_run_after_forced_cancel(self, make_orchestrator, backup_config, stage_ops):
        """Test a run accepted after a forced cancel makes progress while the old worker is stuck."""
        from pulse_migrator.models import RunStatus

        release, started = threading.Event(), threading.Event()
        probes = []

        def counting_probe(url, credential, timeout):
            probes.append(url)
            return "ok"

        orchestrator = make_orchestrator(
            operations=blocking_operations(stage_ops, release, started, honour_cancel=False),
            probe=counting_probe,
        )
        orchestrator.start_backup(backup_config)
        assert started.wait(WAIT)
        orchestrator.cancel_current_operation(grace_period=0.2)
        assert orchestrator.wait(WAIT).overall_status == RunStatus.CANCELLED

        started.clear()
        second = orchestrator.start_backup(backup_config)
        # The first worker is still blocked in DATABASE
        assert started.wait(WAIT)
        assert len(probes) == 2

        release.set()
        run = orchestrator.wait(WAIT)
        assert run.id == second.id
        assert run.overall_status == RunStatus.COMPLETED
        assert not orchestrator.gate.is_busy()

    def test_cancel_racing_completion(self, make_orchestrator, backup_config, stage_ops):
        """Test a cancel landing as the last stage returns yields one terminal status."""
        from pulse_migrator.events import EventRecorder
        from pulse_migrator.models import (
            RunStatus, StageName, StageStatus, STAGE_TRANSITIONS,
        )

        for _ in range(10):
            operations = stage_ops()
            finish_auth = operations[StageName.AUTH]
            cancellers = []
            orchestrator = None

            def racing_auth(config, out_dir, token):
                canceller = threading.Thread(
                    target=orchestrator.cancel_current_operation, kwargs={"grace_period": 0}
                )
                cancellers.append(canceller)
                canceller.start()
                return finish_auth(config, out_dir, token)

            operations[StageName.AUTH] = racing_auth
            orchestrator = make_orchestrator(operations=operations)
            recorder = EventRecorder()
            orchestrator.bus.subscribe(recorder)

            orchestrator.start_backup(backup_config)
            run = orchestrator.wait(WAIT)
            for canceller in cancellers:
                canceller.join(WAIT)

            assert run.overall_status in (RunStatus.COMPLETED, RunStatus.CANCELLED)
            assert len(recorder.of_type("status")) == 1
            assert not orchestrator.gate.is_busy()
            assert orchestrator.current_run() is None

            final = orchestrator.get_run(run.id)
            for stage in final.stages:
                seen = [e.status for e in recorder.of_type("progress") if e.stage == stage.name]
                previous = StageStatus.PENDING
                for status in seen:
                    assert status in STAGE_TRANSITIONS[previous]
                    previous = status
                assert stage.status == previous

    def test_cancel_when_idle(self, make_orchestrator):
        """Test cancelling with nothing running is a no-op."""
        orchestrator = make_orchestrator()
        assert orchestrator.cancel_current_operation() is False
        assert orchestrator.wait(0.1) is None


class TestDriverInstallRun:
    """Test installDrivers through the orchestrator."""

    def test_install_scenario(self, make_orchestrator):
        """Test MISSING -> install -> READY with logs in call order."""
        from pulse_migrator.events import EventRecorder
        from pulse_migrator.models import DriverStatus, RunKind, RunStatus

        orchestrator = make_orchestrator(ready=False)
        recorder = EventRecorder()
        orchestrator.bus.subscribe(recorder)

        assert orchestrator.check_driver_status() == DriverStatus.MISSING
        accepted = orchestrator.install_drivers()
        assert accepted.kind == RunKind.INSTALL
        run = orchestrator.wait(WAIT)
        assert run.overall_status == RunStatus.COMPLETED
        assert orchestrator.check_driver_status() == DriverStatus.READY

        messages = log_messages(recorder)
        order = [
            "Missing drivers: driver pack required.",
            "=== INSTALL INITIATED ===",
            "=== INSTALL COMPLETED ===",
            "Drivers mounted: postgres-15 ready.",
        ]
        positions = [messages.index(m) for m in order]
        assert positions == sorted(positions)
        assert any(m.startswith("Drivers installed") for m in messages)

    def test_failed_install_releases_gate(self, make_orchestrator, downloader_class):
        """Test a failing download ends FAILED with drivers MISSING."""
        from pulse_migrator.exceptions import DownloadError
        from pulse_migrator.models import DriverStatus, RunKind, RunStatus

        orchestrator = make_orchestrator(
            ready=False, downloader=downloader_class(error=DownloadError("offline"))
        )
        orchestrator.install_drivers()
        run = orchestrator.wait(WAIT)

        assert run.overall_status == RunStatus.FAILED
        assert orchestrator.check_driver_status() == DriverStatus.MISSING
        orchestrator.gate.acquire(RunKind.INSTALL).release()

    def test_backup_after_install(self, make_orchestrator, backup_config):
        """Test a backup is accepted once drivers are installed."""
        from pulse_migrator.models import RunStatus

        orchestrator = make_orchestrator(ready=False)
        orchestrator.install_drivers()
        orchestrator.wait(WAIT)
        orchestrator.start_backup(backup_config)
        assert orchestrator.wait(WAIT).overall_status == RunStatus.COMPLETED


class TestRestoreRun:
    """Restore runs up to the first unimplemented stage."""

    def _backup(self, orchestrator, backup_config):
        from pathlib import Path

        orchestrator.start_backup(backup_config)
        return Path(orchestrator.wait(WAIT).artifact_dir)

    def test_restore_stops_at_not_implemented(self, make_orchestrator, backup_config):
        """Test restore fails at DATABASE with the remaining stages skipped."""
        from pulse_migrator.models import OperationConfig, RunKind, RunStatus, StageName, StageStatus

        orchestrator = make_orchestrator()
        artifact = self._backup(orchestrator, backup_config)

        orchestrator.start_restore(OperationConfig(
            kind=RunKind.RESTORE,
            target_url="https://target.supabase.co",
            target_key="target-key",
            artifact_path=artifact,
        ))
        run = orchestrator.wait(WAIT)

        assert run.kind == RunKind.RESTORE
        assert run.overall_status == RunStatus.FAILED
        assert run.failed_stage == StageName.DATABASE
        assert "not implemented" in run.error
        assert run.stage(StageName.AUTH).status == StageStatus.SKIPPED

    def test_restore_rejects_bad_artifact(self, make_orchestrator, temp_root):
        """Test an incompatible artifact fails pre-flight without stage changes."""
        from pulse_migrator.models import OperationConfig, RunKind, RunStatus, StageStatus

        orchestrator = make_orchestrator()
        orchestrator.start_restore(OperationConfig(
            kind=RunKind.RESTORE,
            target_url="https://target.supabase.co",
            target_key="target-key",
            artifact_path=temp_root / "missing-backup",
        ))
        run = orchestrator.wait(WAIT)

        assert run.overall_status == RunStatus.FAILED
        assert "Backup not found" in run.error
        assert all(s.status == StageStatus.PENDING for s in run.stages)
