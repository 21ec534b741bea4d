"""
In-process engine transport through libcriu.

libcriu keeps its option set in library-global state; `criu_init_opts()` is
called at the start of every request so each call starts from defaults.
"""

from __future__ import annotations

import ctypes
import ctypes.util
import os
from pathlib import Path
from typing import Any, Optional

from migration.engine.base import CriuEngine
from migration.engine.options import CgroupMode, EngineOptions
from migration.errors import EngineInvocationFailed, EngineOptionRejected


# enum criu_cg_mode from criu/criu.h
_CG_MODES = {
    CgroupMode.NONE: 1,
    CgroupMode.SOFT: 3,
    CgroupMode.FULL: 4,
}

_BOOL_SETTERS = (
    ("tcp_established", "criu_set_tcp_established"),
    ("file_locks", "criu_set_file_locks"),
    ("link_remap", "criu_set_link_remap"),
    ("force_irmap", "criu_set_force_irmap"),
    ("manage_cgroups", "criu_set_manage_cgroups"),
    ("auto_ext_mnt", "criu_set_auto_ext_mnt"),
    ("ext_sharing", "criu_set_ext_sharing"),
    ("ext_masters", "criu_set_ext_masters"),
    ("ext_unix_sk", "criu_set_ext_unix_sk"),
    ("leave_running", "criu_set_leave_running"),
)


def load_libcriu(name: Optional[str] = None) -> Optional[Any]:
    """Load the shared library, returning None when it is not installed."""
    path = name or ctypes.util.find_library("criu")
    if not path:
        return None
    try:
        lib = ctypes.CDLL(path, use_errno=True)
    except OSError:
        return None
    try:
        for func in ("criu_set_log_file", "criu_set_root", "criu_add_external", "criu_add_skip_mnt", "criu_add_enable_fs"):
            getattr(lib, func).argtypes = [ctypes.c_char_p]
        lib.criu_add_inherit_fd.argtypes = [ctypes.c_int, ctypes.c_char_p]
        lib.criu_add_cg_root.argtypes = [ctypes.c_char_p, ctypes.c_char_p]
        lib.criu_set_manage_cgroups_mode.restype = None
    except AttributeError:
        # Too old to provide every call the adapter relies on.
        return None
    return lib


class LibCriuEngine(CriuEngine):
    name = "libcriu"

    def __init__(self, *, lib: Optional[Any] = None, **kwargs) -> None:
        super().__init__(**kwargs)
        self._lib = lib
        self._loaded = lib is not None

    @property
    def lib(self) -> Optional[Any]:
        if not self._loaded:
            self._lib = load_libcriu()
            self._loaded = True
        return self._lib

    def check_available(self) -> bool:
        lib = self.lib
        if lib is None:
            return False
        if lib.criu_init_opts() < 0:
            return False
        return lib.criu_check() == 0

    def dump(self, options: EngineOptions) -> None:
        self._apply(options, action="dump")
        ret = self.lib.criu_dump()
        if ret < 0:
            raise EngineInvocationFailed(f"criu_dump failed with {ret}", log_path=_log_path(options), returncode=ret)

    def restore(self, options: EngineOptions) -> None:
        self._apply(options, action="restore")
        ret = self.lib.criu_restore()
        if ret < 0:
            raise EngineInvocationFailed(f"criu_restore failed with {ret}", log_path=_log_path(options), returncode=ret)
        self.logger.debug("criu_restore pid=%s", ret)

    def _apply(self, options: EngineOptions, *, action: str) -> None:
        lib = self.lib
        if lib is None:
            raise EngineInvocationFailed("libcriu is not loaded")
        if lib.criu_init_opts() < 0:
            raise EngineInvocationFailed("criu_init_opts failed")

        lib.criu_set_images_dir_fd(options.images_dir_fd)
        lib.criu_set_log_file(options.log_file.encode())
        lib.criu_set_log_level(options.log_level)
        if action == "dump":
            if options.pid is None:
                raise EngineOptionRejected("dump requires a target pid")
            lib.criu_set_pid(options.pid)

        for attr, setter in _BOOL_SETTERS:
            getattr(lib, setter)(bool(getattr(options, attr)))
        if options.cgroup_mode is not None:
            lib.criu_set_manage_cgroups_mode(_CG_MODES[options.cgroup_mode])
        if options.cgroup_root:
            _checked(lib.criu_add_cg_root(None, options.cgroup_root.encode()), "criu_add_cg_root")
        for fs_type in sorted(options.enable_fs):
            _checked(lib.criu_add_enable_fs(fs_type.encode()), "criu_add_enable_fs")
        for key in options.externals:
            _checked(lib.criu_add_external(key.encode()), "criu_add_external")
        for key, fd in options.inherit_fds:
            # libcriu execs the criu service, which must still see the descriptor.
            os.set_inheritable(fd, True)
            _checked(lib.criu_add_inherit_fd(fd, key.encode()), "criu_add_inherit_fd")
        for path in options.skip_mounts:
            _checked(lib.criu_add_skip_mnt(path.encode()), "criu_add_skip_mnt")
        if options.root:
            _checked(lib.criu_set_root(options.root.encode()), "criu_set_root")


def _checked(ret: int, func: str) -> None:
    if ret is not None and ret < 0:
        raise EngineOptionRejected(f"{func} rejected its argument ({ret})")


def _log_path(options: EngineOptions) -> Optional[Path]:
    return Path(options.log_path) if options.log_path else None
