"""
Immutable engine options and the builder that produces them.

Every checkpoint or restore call starts from a fresh `EngineOptionsBuilder`, so
nothing configured for one container can leak into the next call.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from migration.config import MigrationConfig
from migration.errors import EngineOptionRejected


MAX_LOG_LEVEL = 4


class CgroupMode(str, Enum):
    NONE = "none"
    SOFT = "soft"
    FULL = "full"


@dataclass(frozen=True)
class EngineOptions:
    images_dir_fd: int
    images_dir_path: Optional[str] = None
    log_file: str = "criu.log"
    log_level: int = 2
    pid: Optional[int] = None
    tcp_established: bool = False
    file_locks: bool = False
    link_remap: bool = False
    force_irmap: bool = False
    manage_cgroups: bool = False
    auto_ext_mnt: bool = False
    ext_sharing: bool = False
    ext_masters: bool = False
    ext_unix_sk: bool = False
    leave_running: bool = False
    enable_fs: frozenset[str] = frozenset()
    externals: tuple[str, ...] = ()
    inherit_fds: tuple[tuple[str, int], ...] = ()
    skip_mounts: tuple[str, ...] = ()
    root: Optional[str] = None
    cgroup_mode: Optional[CgroupMode] = None
    cgroup_root: Optional[str] = None

    @property
    def log_path(self) -> Optional[str]:
        if self.images_dir_path is None:
            return None
        return f"{self.images_dir_path.rstrip('/')}/{self.log_file}"


class EngineOptionsBuilder:
    """Accumulates options for exactly one engine call."""

    def __init__(self) -> None:
        self._images_dir_fd: Optional[int] = None
        self._images_dir_path: Optional[str] = None
        self._log_file = "criu.log"
        self._log_level = 2
        self._pid: Optional[int] = None
        self._flags: dict[str, bool] = {}
        self._enable_fs: list[str] = []
        self._externals: list[str] = []
        self._inherit_fds: list[tuple[str, int]] = []
        self._skip_mounts: list[str] = []
        self._root: Optional[str] = None
        self._cgroup_mode: Optional[CgroupMode] = None
        self._cgroup_root: Optional[str] = None
        self._built = False

    def images_dir(self, fd: int, path: Optional[str] = None) -> "EngineOptionsBuilder":
        self._images_dir_fd = fd
        self._images_dir_path = path
        return self

    def log(self, log_file: str, level: int) -> "EngineOptionsBuilder":
        self._log_file = log_file
        self._log_level = level
        return self

    def pid(self, pid: int) -> "EngineOptionsBuilder":
        self._pid = pid
        return self

    def flag(self, name: str, value: bool = True) -> "EngineOptionsBuilder":
        if name not in _FLAG_NAMES:
            raise EngineOptionRejected(f"Unknown engine flag: {name}")
        self._flags[name] = bool(value)
        return self

    def enable_fs(self, *fs_types: str) -> "EngineOptionsBuilder":
        for fs_type in fs_types:
            if fs_type not in self._enable_fs:
                self._enable_fs.append(fs_type)
        return self

    def external(self, key: str) -> "EngineOptionsBuilder":
        if key not in self._externals:
            self._externals.append(key)
        return self

    def inherit_fd(self, key: str, fd: int) -> "EngineOptionsBuilder":
        self._inherit_fds.append((key, fd))
        return self

    def skip_mount(self, *paths: str) -> "EngineOptionsBuilder":
        for path in paths:
            if path not in self._skip_mounts:
                self._skip_mounts.append(path)
        return self

    def root(self, path: str) -> "EngineOptionsBuilder":
        self._root = path
        return self

    def cgroups(self, mode: CgroupMode, root: Optional[str] = None) -> "EngineOptionsBuilder":
        self._cgroup_mode = mode
        self._cgroup_root = root
        return self

    def build(self) -> EngineOptions:
        if self._built:
            raise EngineOptionRejected("EngineOptionsBuilder.build() called twice")
        self._validate()
        self._built = True
        return EngineOptions(
            images_dir_fd=self._images_dir_fd,  # type: ignore[arg-type]
            images_dir_path=self._images_dir_path,
            log_file=self._log_file,
            log_level=self._log_level,
            pid=self._pid,
            enable_fs=frozenset(self._enable_fs),
            externals=tuple(self._externals),
            inherit_fds=tuple(self._inherit_fds),
            skip_mounts=tuple(self._skip_mounts),
            root=self._root,
            cgroup_mode=self._cgroup_mode,
            cgroup_root=self._cgroup_root,
            **self._flags,
        )

    def _validate(self) -> None:
        if self._images_dir_fd is None or self._images_dir_fd < 0:
            raise EngineOptionRejected("images directory descriptor is required")
        if not 0 <= self._log_level <= MAX_LOG_LEVEL:
            raise EngineOptionRejected(f"log level out of range: {self._log_level}")
        if not self._log_file or "/" in self._log_file:
            raise EngineOptionRejected(f"log file must be a bare file name: {self._log_file!r}")
        if self._pid is not None and self._pid <= 0:
            raise EngineOptionRejected(f"invalid pid: {self._pid}")
        for fs_type in self._enable_fs:
            if not fs_type or "," in fs_type:
                raise EngineOptionRejected(f"invalid filesystem type: {fs_type!r}")
        for key in self._externals:
            if not key:
                raise EngineOptionRejected("external key must not be empty")
        seen: set[str] = set()
        for key, fd in self._inherit_fds:
            if not key or fd < 0:
                raise EngineOptionRejected(f"invalid inherit-fd declaration: {key!r} -> {fd}")
            if key in seen:
                raise EngineOptionRejected(f"duplicate inherit-fd key: {key}")
            seen.add(key)
        for path in self._skip_mounts:
            if not path.startswith("/"):
                raise EngineOptionRejected(f"skip-mount path must be absolute: {path!r}")
        if self._cgroup_mode is not None and not self._flags.get("manage_cgroups", False):
            raise EngineOptionRejected("cgroup mode requires manage_cgroups")


_FLAG_NAMES = {
    "tcp_established",
    "file_locks",
    "link_remap",
    "force_irmap",
    "manage_cgroups",
    "auto_ext_mnt",
    "ext_sharing",
    "ext_masters",
    "ext_unix_sk",
    "leave_running",
}


def baseline_options(config: MigrationConfig) -> EngineOptionsBuilder:
    """Start a builder with the options every container checkpoint or restore needs."""
    builder = EngineOptionsBuilder()
    for name in ("tcp_established", "file_locks", "link_remap", "force_irmap", "auto_ext_mnt", "ext_sharing", "ext_masters"):
        builder.flag(name)
    builder.enable_fs(*config.enable_fs)
    return builder


def dump_options(config: MigrationConfig, *, pid: int, images_fd: int, images_path: Optional[str]) -> EngineOptionsBuilder:
    builder = baseline_options(config)
    builder.images_dir(images_fd, images_path)
    builder.log(config.dump_log_file, config.criu_log_level)
    builder.pid(pid)
    builder.skip_mount(*config.skip_mounts)
    # The caller's cgroup manager owns the layout, the engine only records membership.
    builder.flag("manage_cgroups", False)
    builder.flag("leave_running", config.leave_running)
    builder.flag("ext_unix_sk", config.ext_unix_sk)
    return builder


def restore_options(
    config: MigrationConfig,
    *,
    images_fd: int,
    images_path: Optional[str],
    root: str,
    cgroup_root: Optional[str] = None,
) -> EngineOptionsBuilder:
    builder = baseline_options(config)
    builder.images_dir(images_fd, images_path)
    builder.log(config.restore_log_file, config.criu_log_level)
    builder.root(root)
    builder.flag("manage_cgroups", True)
    builder.flag("ext_unix_sk", config.ext_unix_sk)
    # "none" leaves cgroup properties alone and fails when a dumped cgroup is missing,
    # "soft" lets the engine create missing cgroups.
    mode = CgroupMode.SOFT if config.cgroup_policy == "soft" else CgroupMode.NONE
    builder.cgroups(mode, cgroup_root)
    return builder
