"""
Pulse Migrator Driver Management

Tracks and installs the external Postgres client binaries.
"""

import shutil
import tempfile
import threading
import uuid
from pathlib import Path
from typing import Optional, List, Protocol

from pulse_migrator.config import MigratorConfig
from pulse_migrator.events import EventBus
from pulse_migrator.exceptions import DriverError
from pulse_migrator.gate import ConcurrencyGate, GateHandle
from pulse_migrator.logging_config import get_logger
from pulse_migrator.models import DriverState, DriverStatus, LogLevel, RunKind


REQUIRED_BINARIES = ("pg_dump", "pg_restore", "psql")
VERSION_FILE = ".pulse-version"

logger = get_logger("drivers")


class BundleSource(Protocol):
    def download_and_extract(self, platform: str, target_dir: Path) -> Path: ...


class DriverManager:
    """Owns DriverState. Mutations happen only while holding the gate."""

    def __init__(
        self,
        drivers_dir: Path,
        gate: ConcurrencyGate,
        bus: Optional[EventBus] = None,
        downloader: Optional[BundleSource] = None,
        config: Optional[MigratorConfig] = None,
    ):
        self.drivers_dir = Path(drivers_dir)
        self.gate = gate
        self.bus = bus or EventBus()
        self.config = config or MigratorConfig()
        if downloader is None:
            from pulse_migrator.downloader import BundleDownloader
            downloader = BundleDownloader(self.config, log=self.bus.log)
        self.downloader = downloader
        self._lock = threading.Lock()
        self._state = self._read_state()

    @property
    def package_dir(self) -> Path:
        return self.drivers_dir / self.config.driver_package

    @property
    def state(self) -> DriverState:
        """Snapshot of the current driver state."""
        with self._lock:
            return DriverState(**self._state.to_dict())

    def binary_name(self, name: str) -> str:
        return f"{name}.exe" if self.config.platform.startswith("win32") else name

    def _candidates(self, root: Path, binary: str) -> List[Path]:
        # Search order: root -> bin -> pgsql/bin
        return [root / binary, root / "bin" / binary, root / "pgsql" / "bin" / binary]

    def _find(self, root: Path, name: str) -> Optional[Path]:
        binary = self.binary_name(name)
        for path in self._candidates(root, binary):
            if path.is_file():
                return path
        if self.config.use_system_path and root == self.package_dir:
            found = shutil.which(binary)
            if found:
                return Path(found)
        return None

    def resolve(self, name: str) -> Path:
        """Locate an installed binary.

        Raises:
            DriverError: if the binary is not installed
        """
        path = self._find(self.package_dir, name)
        if path is None:
            raise DriverError(
                f"Binary {name} not found in package {self.config.driver_package}",
                reason="missing",
                package=self.config.driver_package,
            )
        return path

    def _missing(self, root: Path) -> List[str]:
        return [name for name in REQUIRED_BINARIES if self._find(root, name) is None]

    def check_status(self) -> DriverStatus:
        """Probe the disk for the required binaries. No side effects."""
        return DriverStatus.READY if not self._missing(self.package_dir) else DriverStatus.MISSING

    def installed_version(self) -> Optional[str]:
        version_file = self.package_dir / VERSION_FILE
        if version_file.exists():
            return version_file.read_text().strip() or None
        return None

    def _read_state(self) -> DriverState:
        if self.check_status() == DriverStatus.READY:
            return DriverState(
                installed=True,
                version=self.installed_version() or "detected",
                install_path=str(self.resolve("pg_dump").parent),
            )
        return DriverState()

    def install(self, handle: Optional[GateHandle] = None) -> DriverState:
        """Install the driver bundle if missing.

        Args:
            handle: A gate handle the caller already holds. Without one the
                gate is acquired here, and a concurrent install fails with BusyError.

        Returns:
            The resulting DriverState (READY)

        Raises:
            BusyError: another operation holds the gate
            DriverError: download, extraction or verification failed
        """
        owned = handle is None
        if owned:
            handle = self.gate.acquire(RunKind.INSTALL)
        elif not self.gate.holds(handle):
            raise DriverError("Driver install requires holding the operation gate", reason="gate")

        try:
            if self.check_status() == DriverStatus.READY:
                self.bus.log("Drivers already installed.")
                with self._lock:
                    self._state = self._read_state()
                return self.state
            return self._install_locked(handle)
        finally:
            if owned:
                handle.release()

    def _install_locked(self, handle: GateHandle) -> DriverState:
        platform = self.config.platform
        self.bus.log(f"Installing {self.config.driver_package} drivers for {platform}...")
        self.drivers_dir.mkdir(parents=True, exist_ok=True)
        staging = Path(tempfile.mkdtemp(prefix=".staging-", dir=self.drivers_dir))

        try:
            unpacked = Path(self.downloader.download_and_extract(platform, staging) or staging)
            missing = self._missing(unpacked)
            if missing:
                raise DriverError(
                    f"Driver bundle is incomplete: missing {', '.join(missing)}",
                    reason="verification",
                    package=self.config.driver_package,
                )

            version = getattr(self.downloader, "resolved_version", None) or "unknown"
            (unpacked / VERSION_FILE).write_text(f"{version}\n")
            if not self.gate.holds(handle):
                raise DriverError("Driver install aborted: the operation was cancelled", reason="cancelled")
            self._swap_into_place(unpacked)

            if self.check_status() != DriverStatus.READY:
                raise DriverError(
                    "Drivers not found after install",
                    reason="verification",
                    package=self.config.driver_package,
                )
        except DriverError as e:
            self.bus.log(f"Driver install failed: {e.message}", LogLevel.ERROR)
            raise
        except OSError as e:
            self.bus.log(f"Driver install failed: {e}", LogLevel.ERROR)
            raise DriverError(f"Driver install failed: {e}", reason="filesystem") from e
        finally:
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)

        with self._lock:
            self._state = self._read_state()
        self.bus.log(f"Drivers installed: {self.config.driver_package} v{self._state.version}")
        return self.state

    def _swap_into_place(self, unpacked: Path):
        """Replace the package directory with the verified bundle in one rename."""
        target = self.package_dir
        retired = None
        if target.exists():
            retired = self.drivers_dir / f".retired-{uuid.uuid4().hex[:8]}"
            target.rename(retired)
        try:
            unpacked.rename(target)
        except OSError:
            if retired is not None:
                retired.rename(target)
            raise
        if retired is not None:
            shutil.rmtree(retired, ignore_errors=True)
