"""Custom exceptions for media build operations.

Every stage classifies its own failures into one of these classes. The
pipeline controller turns them into stage state, and the CLI turns them into
process exit codes via ``exit_code``.

Exception Hierarchy:
    MediaBuildError (base)
        ├── ValidationError                   exit 1
        │   ├── WorkingDirectoryBusyError
        │   ├── StageUnavailableError
        │   └── StageBusyError
        ├── UnexpectedIOError                 exit 2
        │   └── CommandFailedError
        ├── InsufficientDiskSpaceError        exit 3
        ├── OperationCanceledError            exit 4
        └── ToolAcquisitionError              exit 5

Usage:
    from buildmedia.storage.exceptions import InsufficientDiskSpaceError

    if available < required:
        raise InsufficientDiskSpaceError("C:\\", 12.0, 3.5, "ISO extraction")
"""

from __future__ import annotations

from typing import Sequence


class MediaBuildError(Exception):
    """Base exception for all media build operations."""

    exit_code = 2


class ValidationError(MediaBuildError):
    """Input failed validation (bad directory, malformed XML, empty driver folder)."""

    exit_code = 1


class WorkingDirectoryBusyError(ValidationError):
    """Another pipeline already owns the working directory."""

    def __init__(self, path: str, owner: str = "", lock_path: str = ""):
        self.path = path
        self.owner = owner
        self.lock_path = lock_path
        msg = f"Working directory {path} is in use by another pipeline"
        if owner:
            msg += f" ({owner})"
        if lock_path:
            msg += (
                f". Lock file: {lock_path}; if no other pipeline is running, "
                f"remove it with `buildmedia unlock --workdir {path}`"
            )
        super().__init__(msg)


class StageUnavailableError(ValidationError):
    """A stage action was requested before its prerequisites completed."""

    def __init__(self, stage: str, reason: str):
        self.stage = stage
        self.reason = reason
        super().__init__(f"Stage {stage} is not available: {reason}")


class StageBusyError(ValidationError):
    """A stage action was requested while another one is still running."""

    def __init__(self, requested: str, running: str):
        self.requested = requested
        self.running = running
        super().__init__(
            f"Cannot start {requested} while {running} is still in progress"
        )


class UnexpectedIOError(MediaBuildError):
    """Filesystem or external-process failure not covered by a narrower class."""

    exit_code = 2


class CommandFailedError(UnexpectedIOError):
    """An external tool exited with a non-zero status."""

    def __init__(self, command: Sequence[str], returncode: int, output: str = ""):
        self.command = list(command)
        self.returncode = returncode
        self.output = output
        message = output.strip().splitlines()[-1] if output.strip() else ""
        text = f"Command failed with exit code {returncode}: {' '.join(self.command)}"
        if message:
            text += f": {message}"
        super().__init__(text)


class InsufficientDiskSpaceError(MediaBuildError):
    """Target drive does not have enough free space for the operation."""

    exit_code = 3

    def __init__(
        self,
        drive_name: str,
        required_gb: float,
        available_gb: float,
        operation: str = "",
    ):
        self.drive_name = drive_name
        self.required_gb = required_gb
        self.available_gb = available_gb
        self.operation = operation
        prefix = f"Insufficient disk space for {operation}" if operation else (
            "Insufficient disk space"
        )
        super().__init__(
            f"{prefix} on {drive_name}: "
            f"required {required_gb:.2f} GB, available {available_gb:.2f} GB"
        )

    @property
    def shortfall_gb(self) -> float:
        return max(0.0, self.required_gb - self.available_gb)


class OperationCanceledError(MediaBuildError):
    """The operation was cancelled through its cancellation scope."""

    exit_code = 4

    def __init__(self, message: str = "Operation cancelled"):
        super().__init__(message)


class ToolAcquisitionError(MediaBuildError):
    """A download or installation of an external resource failed."""

    exit_code = 5
