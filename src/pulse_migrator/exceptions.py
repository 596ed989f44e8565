"""
Pulse Migrator Exceptions

Error taxonomy for the migration engine, with remediation suggestions.
"""

from typing import Optional, List


class MigratorError(Exception):
    """Base exception for all Pulse Migrator errors."""

    def __init__(
        self,
        message: str,
        remediation: Optional[str] = None,
        details: Optional[str] = None
    ):
        """Initialize the error.

        Args:
            message: Human-readable error message
            remediation: Suggested fix for the user
            details: Technical details for debugging
        """
        super().__init__(message)
        self.message = message
        self.remediation = remediation
        self.details = details

    def __str__(self) -> str:
        parts = [self.message]
        if self.details:
            parts.append(f"Details: {self.details}")
        if self.remediation:
            parts.append(f"To fix: {self.remediation}")
        return "\n".join(parts)


class ConfigError(MigratorError):
    """Invalid or incomplete operation input. Raised before the gate is taken."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        missing: Optional[List[str]] = None,
        remediation: Optional[str] = None,
        details: Optional[str] = None
    ):
        self.config_key = config_key
        self.missing = missing or []
        if not remediation:
            if self.missing:
                remediation = f"Provide the required fields: {', '.join(self.missing)}"
            elif config_key:
                remediation = f"Check your configuration for '{config_key}' in config.yaml"
        super().__init__(message, remediation, details)


class DriverError(MigratorError):
    """Driver readiness or installation failures. Drivers stay MISSING."""

    def __init__(
        self,
        message: str,
        reason: Optional[str] = None,
        package: Optional[str] = None,
        remediation: Optional[str] = None,
        details: Optional[str] = None
    ):
        self.reason = reason or message
        self.package = package
        if not remediation:
            remediation = "Run 'pulse-migrator drivers install' to install the database drivers"
        super().__init__(message, remediation, details)


class DownloadError(DriverError):
    """Driver bundle could not be fetched."""

    def __init__(
        self,
        message: str,
        url: Optional[str] = None,
        remediation: Optional[str] = None,
        details: Optional[str] = None
    ):
        self.url = url
        if not remediation:
            remediation = "Check your internet connection and try again. The release server may be temporarily unavailable."
        super().__init__(message, reason="download", remediation=remediation, details=details)


class ExtractError(DriverError):
    """Driver bundle could not be unpacked or failed verification."""

    def __init__(
        self,
        message: str,
        archive: Optional[str] = None,
        remediation: Optional[str] = None,
        details: Optional[str] = None
    ):
        self.archive = archive
        super().__init__(message, reason="extract", remediation=remediation, details=details)


class ConnectionFailedError(MigratorError):
    """Pre-flight endpoint probe failed (unauthorized, unreachable or timeout)."""

    def __init__(
        self,
        message: str,
        reason=None,
        endpoint: Optional[str] = None,
        remediation: Optional[str] = None,
        details: Optional[str] = None
    ):
        from pulse_migrator.models import ConnectionFailure

        self.reason = ConnectionFailure(reason) if reason else ConnectionFailure.UNREACHABLE
        self.endpoint = endpoint
        if not remediation:
            if self.reason is ConnectionFailure.UNAUTHORIZED:
                remediation = "Verify the service role key is correct and has storage admin rights"
            elif self.reason is ConnectionFailure.TIMEOUT:
                remediation = "The project did not answer in time. Check the URL or raise verify_timeout in config.yaml"
            else:
                remediation = "Check the project URL and your internet connection"
        super().__init__(message, remediation, details)


class ToolError(MigratorError):
    """An external tool (dump binary or HTTP export) failed."""

    def __init__(
        self,
        message: str,
        tool: Optional[str] = None,
        exit_code: int = -1,
        stderr_tail: str = "",
        remediation: Optional[str] = None,
    ):
        self.tool = tool
        self.exit_code = exit_code
        self.stderr_tail = stderr_tail
        super().__init__(message, remediation, details=stderr_tail or None)


class StageError(MigratorError):
    """A stage failed mid-run; remaining stages are skipped."""

    def __init__(
        self,
        message: str,
        stage=None,
        cause: Optional[BaseException] = None,
        remediation: Optional[str] = None,
        details: Optional[str] = None
    ):
        self.stage = stage
        self.cause = cause
        if details is None and isinstance(cause, ToolError):
            details = f"exit code {cause.exit_code}: {cause.stderr_tail}" if cause.stderr_tail else f"exit code {cause.exit_code}"
        super().__init__(message, remediation, details)


class BusyError(MigratorError):
    """Another long-running operation holds the gate."""

    def __init__(
        self,
        message: str = "Another operation is already running",
        holder=None,
        remediation: Optional[str] = None,
        details: Optional[str] = None
    ):
        self.holder = holder
        if not remediation:
            remediation = "Wait for the current operation to finish or cancel it first"
        super().__init__(message, remediation, details)


class OperationCancelled(MigratorError):
    """The operation was cancelled by the user or timed out."""

    def __init__(self, message: str = "Operation cancelled", timed_out: bool = False):
        self.timed_out = timed_out
        super().__init__(message)


class NotImplementedStageError(MigratorError):
    """The stage body is declared unsupported for this operation kind."""

    def __init__(self, stage=None, kind=None, message: Optional[str] = None):
        self.stage = stage
        self.kind = kind
        stage_name = getattr(stage, "value", stage)
        kind_name = getattr(kind, "value", kind)
        message = message or f"{kind_name} of {stage_name} is not implemented yet"
        super().__init__(
            message,
            remediation="Restore is not available in this release; backups remain valid for a later restore",
        )


class ArtifactError(MigratorError):
    """Backup artifact missing or incompatible (restore pre-flight)."""

    def __init__(
        self,
        message: str,
        path: Optional[str] = None,
        remediation: Optional[str] = None,
        details: Optional[str] = None
    ):
        self.path = path
        if not remediation and path:
            remediation = f"Check that {path} is a complete backup created by pulse-migrator"
        super().__init__(message, remediation, details)


# Error code mapping for CLI exit codes
ERROR_CODES = {
    ConfigError: 10,
    DownloadError: 12,
    ExtractError: 13,
    DriverError: 11,
    ConnectionFailedError: 14,
    ToolError: 15,
    StageError: 16,
    BusyError: 17,
    OperationCancelled: 130,
    NotImplementedStageError: 18,
    ArtifactError: 19,
    MigratorError: 1,
}


def get_error_code(error: Exception) -> int:
    """Get the exit code for an error type."""
    for error_type, code in ERROR_CODES.items():
        if isinstance(error, error_type):
            return code
    return 1
