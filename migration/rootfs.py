"""
Bind-mounted root for restore.

CRIU can only pivot into a directory that is the root of some mount, so the
container's root filesystem source is bind-mounted onto a name-scoped directory
under the runtime directory for the duration of the restore.
"""

from __future__ import annotations

import logging
import re
import subprocess
from pathlib import Path
from typing import Optional

from migration.errors import CleanupFailure, ResourceAcquisitionFailure
from migration.process import run


_NAME_RE = re.compile(r"[A-Za-z0-9][A-Za-z0-9_.-]*")


class RootMount:
    """One restore's bind mount. `teardown()` is safe to call any number of times."""

    def __init__(self, run_dir: Path, *, logger: Optional[logging.Logger] = None) -> None:
        self.run_dir = Path(run_dir)
        self.logger = logger or logging.getLogger("lxmigrate.rootfs")
        self.path: Optional[Path] = None
        self._mounted = False
        self._created = False

    @property
    def mounted(self) -> bool:
        return self._mounted

    def mountpoint_for(self, name: str) -> Path:
        if not _NAME_RE.fullmatch(name) or name in {".", ".."}:
            raise ResourceAcquisitionFailure(f"Invalid container name for a mount path: {name!r}")
        return self.run_dir / f"{name}.root"

    def prepare(self, name: str, source: Path) -> Path:
        """Bind-mount `source` onto the container's scoped directory and return it."""
        target = self.mountpoint_for(name)
        source = Path(source)
        if not source.is_dir():
            raise ResourceAcquisitionFailure(f"Root filesystem source {source} is not a directory")
        if target.exists() and any(target.iterdir()):
            raise ResourceAcquisitionFailure(f"Mount path {target} is busy")

        created = not target.exists()
        try:
            target.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ResourceAcquisitionFailure(f"Can't create mount path {target}: {exc}") from exc
        self.path = target
        self._created = created

        try:
            run(["mount", "--bind", str(source), str(target)])
        except (subprocess.CalledProcessError, OSError) as exc:
            if self._created:
                self._remove_dir()
            detail = getattr(exc, "stderr", None) or str(exc)
            raise ResourceAcquisitionFailure(f"Failed to bind-mount {source} on {target}: {detail.strip()}") from exc

        self._mounted = True
        self.logger.info("root_mounted name=%s source=%s target=%s", name, source, target)
        return target

    def teardown(self) -> None:
        """Unmount and remove the mount path. Raises CleanupFailure when the unmount fails."""
        if self._mounted and self.path is not None:
            try:
                run(["umount", str(self.path)])
            except (subprocess.CalledProcessError, OSError) as exc:
                raise CleanupFailure(f"Failed to unmount {self.path}: {exc}") from exc
            self._mounted = False
            self.logger.info("root_unmounted target=%s", self.path)
        if self._created:
            self._remove_dir()

    def _remove_dir(self) -> None:
        if self.path is None:
            return
        try:
            self.path.rmdir()
        except FileNotFoundError:
            pass
        except OSError as exc:
            self.logger.warning("mount_path_remove_failed target=%s err=%s", self.path, exc)
            return
        self._created = False
