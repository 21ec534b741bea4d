"""
Image directory lifecycle: creation, descriptor handoff and the tty sidecar.

The directory itself belongs to the caller and is never deleted here. Only the
descriptors this module opens are closed by it.
"""

from __future__ import annotations

import logging
import os
import stat
from pathlib import Path
from typing import Optional

from migration.errors import ExternalResourceResolutionFailure, ResourceAcquisitionFailure
from migration.models import TtyIdentity


TTY_INFO = "tty.info"
PROC_SELF_FD = Path("/proc/self/fd")


def resolve_for_restore(fd: int) -> Path:
    """
    Resolve an open directory descriptor to an absolute path.

    The path comes from the kernel's view of the descriptor, and is checked to
    still name the same inode, so a directory swapped in behind the caller's
    back is detected instead of used.
    """
    try:
        fd_stat = os.fstat(fd)
    except OSError as exc:
        raise ResourceAcquisitionFailure(f"Image directory descriptor {fd} is not open: {exc}") from exc
    if not stat.S_ISDIR(fd_stat.st_mode):
        raise ResourceAcquisitionFailure(f"Descriptor {fd} does not refer to a directory")

    try:
        target = os.readlink(PROC_SELF_FD / str(fd))
    except OSError as exc:
        raise ResourceAcquisitionFailure(f"Cannot resolve descriptor {fd}: {exc}") from exc
    if not target.startswith("/") or target.endswith(" (deleted)"):
        raise ResourceAcquisitionFailure(f"Descriptor {fd} no longer has a reachable path ({target})")

    try:
        path_stat = os.stat(target)
    except OSError as exc:
        raise ResourceAcquisitionFailure(f"Resolved image directory {target} is not accessible: {exc}") from exc
    if (path_stat.st_dev, path_stat.st_ino) != (fd_stat.st_dev, fd_stat.st_ino):
        raise ResourceAcquisitionFailure(f"Image directory {target} was replaced while in use")
    return Path(target)


class ImageDirectory:
    """A handle on one checkpoint's image directory."""

    def __init__(self, fd: int, path: Optional[Path], *, owned: bool, logger: Optional[logging.Logger] = None) -> None:
        self.fd = fd
        self.path = path
        self.owned = owned
        self.logger = logger or logging.getLogger("lxmigrate.images")
        self._closed = False

    @classmethod
    def prepare_for_dump(cls, path: Path, *, logger: Optional[logging.Logger] = None) -> "ImageDirectory":
        """Create `path` (and parents) when missing and open it."""
        path = Path(path).absolute()
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ResourceAcquisitionFailure(f"Can't create checkpoint directory {path}: {exc}") from exc
        try:
            fd = os.open(path, os.O_RDONLY | os.O_DIRECTORY | os.O_CLOEXEC)
        except OSError as exc:
            raise ResourceAcquisitionFailure(f"Failed to open directory {path}: {exc}") from exc
        return cls(fd, path, owned=True, logger=logger)

    @classmethod
    def from_descriptor(cls, fd: int, *, logger: Optional[logging.Logger] = None) -> "ImageDirectory":
        """Borrow a caller-owned descriptor. It is left open on close()."""
        return cls(fd, resolve_for_restore(fd), owned=False, logger=logger)

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if not self.owned:
            return
        try:
            os.close(self.fd)
        except OSError as exc:
            self.logger.warning("image_dir_close_failed fd=%s path=%s err=%s", self.fd, self.path, exc)

    def __enter__(self) -> "ImageDirectory":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def write_tty_info(self, identity: TtyIdentity) -> None:
        flags = os.O_WRONLY | os.O_CREAT | os.O_TRUNC | os.O_CLOEXEC
        try:
            fd = os.open(TTY_INFO, flags, 0o644, dir_fd=self.fd)
        except OSError as exc:
            raise ResourceAcquisitionFailure(f"Can't create {TTY_INFO} in {self.path}: {exc}") from exc
        try:
            with os.fdopen(fd, "w", encoding="ascii") as handle:
                handle.write(identity.key + "\n")
        except OSError as exc:
            raise ResourceAcquisitionFailure(f"Can't write {TTY_INFO} in {self.path}: {exc}") from exc
        self.logger.debug("tty_info_written path=%s key=%s", self.path, identity.key)

    def read_tty_info(self) -> Optional[TtyIdentity]:
        """Return the recorded tty, or None when the checkpoint has no console."""
        try:
            fd = os.open(TTY_INFO, os.O_RDONLY | os.O_CLOEXEC, dir_fd=self.fd)
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise ExternalResourceResolutionFailure(f"Can't read {TTY_INFO} in {self.path}: {exc}") from exc
        try:
            with os.fdopen(fd, "rb") as handle:
                raw = handle.read(256)
        except OSError as exc:
            raise ExternalResourceResolutionFailure(f"Can't read {TTY_INFO} in {self.path}: {exc}") from exc
        try:
            text = raw.decode("ascii")
        except UnicodeDecodeError as exc:
            raise ExternalResourceResolutionFailure(f"Malformed {TTY_INFO} in {self.path}") from exc
        return TtyIdentity.parse(text)
