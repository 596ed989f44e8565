"""Shared fixtures for Pulse Migrator tests."""

import tempfile
import threading
from pathlib import Path

import pytest


BINARIES = ("pg_dump", "pg_restore", "psql")


def write_fake_binaries(directory: Path, names=BINARIES):
    """Create empty executables under directory/bin."""
    bin_dir = directory / "bin"
    bin_dir.mkdir(parents=True, exist_ok=True)
    for name in names:
        path = bin_dir / name
        path.write_text("#!/bin/sh\nexit 0\n")
        path.chmod(0o755)
    return bin_dir


class FakeDownloader:
    """Stands in for BundleDownloader; unpacks fake binaries into the staging dir."""

    def __init__(self, names=BINARIES, error=None, block: threading.Event = None):
        self.names = names
        self.error = error
        self.block = block
        self.started = threading.Event()
        self.calls = 0
        self.resolved_version = "15.4"
        self._lock = threading.Lock()

    def download_and_extract(self, platform, target_dir):
        with self._lock:
            self.calls += 1
        self.started.set()
        if self.block is not None:
            self.block.wait(5)
        if self.error is not None:
            raise self.error
        write_fake_binaries(Path(target_dir), self.names)
        return Path(target_dir)


@pytest.fixture
def temp_root():
    """Temporary application root."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def migrator_config():
    from pulse_migrator.config import MigratorConfig

    return MigratorConfig(platform="linux-x64")


@pytest.fixture
def fake_downloader():
    return FakeDownloader()


@pytest.fixture
def make_driver_manager(temp_root, migrator_config):
    """Factory for a DriverManager over temp_root/drivers."""
    from pulse_migrator.drivers import DriverManager
    from pulse_migrator.events import EventBus
    from pulse_migrator.gate import ConcurrencyGate

    def factory(ready=True, downloader=None, bus=None):
        drivers_dir = temp_root / "drivers"
        if ready:
            write_fake_binaries(drivers_dir / migrator_config.driver_package)
        return DriverManager(
            drivers_dir,
            ConcurrencyGate(),
            bus or EventBus(),
            downloader=downloader or FakeDownloader(),
            config=migrator_config,
        )

    return factory


def ok_probe(url, credential, timeout):
    return "Key validated: storage admin access confirmed"


def recording_operations(calls=None, fail_at=None, error=None):
    """Stage operations that write a marker file; one stage may raise."""
    from pulse_migrator.exceptions import ToolError
    from pulse_migrator.models import StageName

    calls = calls if calls is not None else []

    def make(stage):
        def operation(config, out_dir, token):
            calls.append(stage)
            if stage == fail_at:
                raise error or ToolError(f"{stage.value.lower()} tool exited with code 1", tool="fake", exit_code=1)
            artifact = Path(out_dir) / stage.value.lower()
            artifact.write_text("ok")
            return artifact
        return operation

    return {stage: make(stage) for stage in StageName}


@pytest.fixture
def make_orchestrator(temp_root, make_driver_manager):
    """Factory for an orchestrator with injectable probe and stage operations."""
    from pulse_migrator.orchestrator import MigrationOrchestrator
    from pulse_migrator.verifier import ConnectionVerifier

    created = []

    def factory(operations=None, probe=ok_probe, ready=True, downloader=None, bus=None, **kwargs):
        orchestrator = MigrationOrchestrator(
            make_driver_manager(ready=ready, downloader=downloader, bus=bus),
            verifier=ConnectionVerifier(probe=probe, timeout=1),
            backup_operations=operations if operations is not None else recording_operations(),
            backups_dir=temp_root / "userdata" / "backups",
            **kwargs,
        )
        created.append(orchestrator)
        return orchestrator

    yield factory

    for orchestrator in created:
        orchestrator.shutdown()


@pytest.fixture
def backup_config():
    from pulse_migrator.models import OperationConfig, RunKind

    return OperationConfig(
        kind=RunKind.BACKUP,
        source_url="https://abc.supabase.co",
        source_key="service-role-key",
        database_url="postgresql://postgres:pw@db.abc.supabase.co:5432/postgres",
    )


@pytest.fixture
def stage_ops():
    """recording_operations factory."""
    return recording_operations


@pytest.fixture
def downloader_class():
    return FakeDownloader


@pytest.fixture
def fake_binaries():
    """write_fake_binaries helper."""
    return write_fake_binaries
