"""
Shared dataclasses for checkpoint and restore requests and their results.

These stay free of engine or filesystem logic so the CLI, the HTTP service and
the driver can all build them cheaply.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional, Union

from migration.errors import ExternalResourceResolutionFailure, MigrationError


_TTY_KEY_RE = re.compile(r"tty\[([0-9a-f]+):([0-9a-f]+)\]")


@dataclass(frozen=True)
class TtyIdentity:
    """
    Device numbers of the external pty slave attached to a container.

    The rendered key is the stable name under which the tty is declared to the
    engine at dump time and re-attached at restore time.
    """

    major: int
    minor: int

    def __post_init__(self) -> None:
        if self.major < 0 or self.minor < 0:
            raise ValueError(f"device numbers must be non-negative: {self.major}:{self.minor}")

    @property
    def key(self) -> str:
        return f"tty[{self.major:x}:{self.minor:x}]"

    @classmethod
    def from_stat(cls, st: os.stat_result) -> "TtyIdentity":
        return cls(major=os.major(st.st_rdev), minor=os.minor(st.st_rdev))

    @classmethod
    def parse(cls, text: str) -> "TtyIdentity":
        """Parse a sidecar line. Only a single newline terminator is tolerated."""
        line = text[:-1] if text.endswith("\n") else text
        match = _TTY_KEY_RE.fullmatch(line)
        if not match:
            raise ExternalResourceResolutionFailure(f"Malformed tty identity: {text!r}")
        return cls(major=int(match.group(1), 16), minor=int(match.group(2), 16))


@dataclass(frozen=True)
class ExternalMount:
    """A mount the container uses but does not own."""

    name: str
    mountpoint: str
    host_path: Optional[str] = None

    @property
    def dump_key(self) -> str:
        return f"mnt[{self.mountpoint}]:{self.name}"

    @property
    def restore_key(self) -> str:
        if not self.host_path:
            raise ExternalResourceResolutionFailure(f"External mount {self.name!r} has no host path for restore")
        return f"mnt[{self.name}]:{self.host_path}"


@dataclass(frozen=True)
class CheckpointRequest:
    pid: int
    image_dir: Union[Path, int]
    rootfs_source: Path
    name: str
    console: bool = True
    external_mounts: tuple[ExternalMount, ...] = ()


@dataclass(frozen=True)
class RestoreRequest:
    image_dir_fd: int
    tty_fd: Optional[int]
    rootfs_source: Path
    name: str
    external_mounts: tuple[ExternalMount, ...] = ()
    cgroup_root: Optional[Path] = None


class Stage(str, Enum):
    INIT = "init"
    DIRECTORY_READY = "directory_ready"
    ROOT_MOUNTED = "root_mounted"
    DIRECTORY_RESOLVED = "directory_resolved"
    OPTIONS_BUILT = "options_built"
    EXTERNALS_RESOLVED = "externals_resolved"
    ENGINE_INVOKED = "engine_invoked"
    DONE = "done"
    FAILED = "failed"


class ResultStatus(str, Enum):
    OK = "ok"
    DEGRADED = "degraded"
    FAILED = "failed"


@dataclass
class OperationResult:
    """Outcome of one checkpoint or restore call."""

    operation: str
    status: ResultStatus
    stage: Stage
    error: Optional[MigrationError] = None
    failed_at: Optional[Stage] = None
    warnings: List[str] = field(default_factory=list)
    image_dir: Optional[str] = None
    log_path: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is not ResultStatus.FAILED

    @property
    def degraded(self) -> bool:
        return self.status is ResultStatus.DEGRADED

    @property
    def error_kind(self) -> Optional[str]:
        return self.error.kind if self.error is not None else None

    def raise_for_status(self) -> None:
        if self.error is not None:
            raise self.error

    def to_dict(self) -> dict:
        return {
            "operation": self.operation,
            "status": self.status.value,
            "stage": self.stage.value,
            "failed_at": self.failed_at.value if self.failed_at else None,
            "error": str(self.error) if self.error else None,
            "error_kind": self.error_kind,
            "warnings": list(self.warnings),
            "image_dir": self.image_dir,
            "log_path": self.log_path,
        }
