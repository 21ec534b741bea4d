"""
Map host resources that straddle the checkpoint boundary onto engine options.

Two resource classes are handled:

- the controlling terminal, whose slave side lives in the checkpointed tree
  while the master side does not. It is declared external under a key derived
  from its device numbers, and that identity is recorded next to the images so
  a replacement tty can be inherited under the same key at restore time.
- bind mounts the container uses but does not own, declared external by name
  at dump time and mapped back to a host path at restore time.
"""

from __future__ import annotations

import logging
import os
import stat
from typing import List, Optional

from migration.config import MigrationConfig
from migration.engine.options import EngineOptionsBuilder
from migration.errors import ExternalResourceResolutionFailure, ResourceAcquisitionFailure
from migration.images import ImageDirectory
from migration.models import CheckpointRequest, RestoreRequest, TtyIdentity


DEGRADED_CONSOLE = "checkpoint has no recorded console; restored without an interactive tty"
NO_TTY_SUPPLIED = "no tty descriptor supplied; restored without an interactive tty"


class ExternalResourceMapper:
    def __init__(self, config: MigrationConfig, *, logger: Optional[logging.Logger] = None) -> None:
        self.config = config
        self.logger = logger or logging.getLogger("lxmigrate.externals")

    def console_path(self, pid: int) -> str:
        return self.config.console_path.format(pid=pid)

    def resolve_tty(self, pid: int) -> TtyIdentity:
        """Identify the pty slave of the container whose init process is `pid`."""
        path = self.console_path(pid)
        try:
            st = os.stat(path)
        except OSError as exc:
            raise ExternalResourceResolutionFailure(f"Unable to stat console {path}: {exc}") from exc
        if not stat.S_ISCHR(st.st_mode):
            raise ExternalResourceResolutionFailure(f"Console {path} is not a character device")
        return TtyIdentity.from_stat(st)

    def declare_for_dump(self, builder: EngineOptionsBuilder, request: CheckpointRequest, images: ImageDirectory) -> Optional[TtyIdentity]:
        identity: Optional[TtyIdentity] = None
        if request.console:
            identity = self.resolve_tty(request.pid)
            images.write_tty_info(identity)
            builder.external(identity.key)
            self.logger.info("tty_external name=%s key=%s", request.name, identity.key)

        for mount in request.external_mounts:
            builder.external(mount.dump_key)
            self.logger.debug("mount_external name=%s key=%s", request.name, mount.dump_key)
        return identity

    def declare_for_restore(self, builder: EngineOptionsBuilder, request: RestoreRequest, images: ImageDirectory) -> List[str]:
        """Add inherit/external declarations and return warnings for degraded resources."""
        warnings: List[str] = []
        identity = images.read_tty_info()
        if identity is None:
            self.logger.warning("tty_info_missing name=%s path=%s", request.name, images.path)
            warnings.append(DEGRADED_CONSOLE)
        elif request.tty_fd is None:
            self.logger.warning("tty_fd_missing name=%s key=%s", request.name, identity.key)
            warnings.append(NO_TTY_SUPPLIED)
        else:
            try:
                os.fstat(request.tty_fd)
            except OSError as exc:
                raise ResourceAcquisitionFailure(f"tty descriptor {request.tty_fd} is not open: {exc}") from exc
            builder.inherit_fd(identity.key, request.tty_fd)
            self.logger.info("tty_inherit name=%s fd=%s key=%s", request.name, request.tty_fd, identity.key)

        for mount in request.external_mounts:
            builder.external(mount.restore_key)
            self.logger.debug("mount_external name=%s key=%s", request.name, mount.restore_key)
        # Anything not listed above is still picked up by the engine's auto-detection.
        builder.flag("auto_ext_mnt")
        return warnings
