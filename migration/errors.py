"""
Failure taxonomy for checkpoint and restore operations.

Components raise these; `MigrationDriver` is the only place that turns them
into an `OperationResult`.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional


class MigrationError(Exception):
    """Base class for failures reported to the caller as a typed result."""

    kind = "migration_error"


class UnsupportedCapability(MigrationError):
    """The checkpoint/restore engine is not available on this host."""

    kind = "unsupported_capability"


class EngineUnavailable(UnsupportedCapability):
    """Raised by the incapable engine variant for every request."""


class ResourceAcquisitionFailure(MigrationError):
    """A directory, descriptor or mount required by the operation could not be acquired."""

    kind = "resource_acquisition_failure"


class ExternalResourceResolutionFailure(MigrationError):
    """A resource living outside the checkpointed process set could not be mapped."""

    kind = "external_resource_resolution_failure"


class EngineInvocationFailure(MigrationError):
    """The engine itself reported failure."""

    kind = "engine_invocation_failure"

    def __init__(self, message: str, *, log_path: Optional[Path] = None, returncode: Optional[int] = None) -> None:
        super().__init__(message)
        self.log_path = log_path
        self.returncode = returncode

    def __str__(self) -> str:
        base = super().__str__()
        if self.log_path is not None:
            return f"{base} (see {self.log_path})"
        return base


class EngineInvocationFailed(EngineInvocationFailure):
    """Nonzero exit from the engine binary or a negative libcriu return code."""


class CleanupFailure(MigrationError):
    """A best-effort teardown step failed. Logged, never escalated over the primary result."""

    kind = "cleanup_failure"


class EngineOptionRejected(ValueError):
    """A malformed engine option. This is a defect in the caller, not a user-facing failure."""
