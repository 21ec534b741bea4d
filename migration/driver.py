"""
Checkpoint and restore orchestration.

`MigrationDriver` sequences the image directory manager, the external resource
mapper, the root mount setup and the engine adapter. Each operation walks a
linear list of stages; resources acquired along the way are registered on an
`ExitStack` so they are released in reverse order whether the operation
completes or fails. The driver is the only component that converts failures
into an `OperationResult`.
"""

from __future__ import annotations

import logging
import os
from contextlib import ExitStack
from pathlib import Path, PurePosixPath
from typing import Callable, Optional

from migration.config import MigrationConfig
from migration.engine.base import CriuEngine, select_engine
from migration.engine.options import dump_options, restore_options
from migration.errors import CleanupFailure, ExternalResourceResolutionFailure, MigrationError, UnsupportedCapability
from migration.externals import ExternalResourceMapper
from migration.images import ImageDirectory
from migration.models import CheckpointRequest, OperationResult, RestoreRequest, ResultStatus, Stage
from migration.rootfs import RootMount


class _Progress:
    """Tracks the stage an operation has reached, for logging and the result."""

    def __init__(self, operation: str, name: str, logger: logging.Logger) -> None:
        self.operation = operation
        self.name = name
        self.logger = logger
        self.stage = Stage.INIT
        self.image_dir: Optional[str] = None
        self.log_path: Optional[str] = None

    def advance(self, stage: Stage) -> None:
        self.stage = stage
        self.logger.debug("stage op=%s name=%s stage=%s", self.operation, self.name, stage.value)

    def succeeded(self, warnings: list[str]) -> OperationResult:
        status = ResultStatus.DEGRADED if warnings else ResultStatus.OK
        self.logger.info("%s_done name=%s status=%s image_dir=%s", self.operation, self.name, status.value, self.image_dir)
        return OperationResult(
            operation=self.operation,
            status=status,
            stage=Stage.DONE,
            warnings=list(warnings),
            image_dir=self.image_dir,
            log_path=self.log_path,
        )

    def failed(self, exc: MigrationError, warnings: list[str]) -> OperationResult:
        log_path = getattr(exc, "log_path", None)
        self.logger.error(
            "%s_failed name=%s stage=%s kind=%s err=%s", self.operation, self.name, self.stage.value, exc.kind, exc
        )
        return OperationResult(
            operation=self.operation,
            status=ResultStatus.FAILED,
            stage=Stage.FAILED,
            error=exc,
            failed_at=self.stage,
            warnings=list(warnings),
            image_dir=self.image_dir,
            log_path=str(log_path) if log_path else self.log_path,
        )


class MigrationDriver:
    def __init__(
        self,
        engine: Optional[CriuEngine] = None,
        *,
        config: Optional[MigrationConfig] = None,
        root_mount_factory: Optional[Callable[[Path], RootMount]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.config = config or MigrationConfig.from_env()
        self.logger = logger or logging.getLogger("lxmigrate.driver")
        self.engine = engine or select_engine(self.config, logger=self.logger.getChild("engine"))
        self.externals = ExternalResourceMapper(self.config, logger=self.logger.getChild("externals"))
        self._root_mount_factory = root_mount_factory or (lambda run_dir: RootMount(run_dir, logger=self.logger.getChild("rootfs")))

    def check(self) -> bool:
        return self.engine.check_available()

    def checkpoint(self, request: CheckpointRequest) -> OperationResult:
        progress = _Progress("checkpoint", request.name, self.logger)
        self.logger.info("checkpoint_start name=%s pid=%s image_dir=%s", request.name, request.pid, request.image_dir)
        try:
            self._require_engine()
            with ExitStack() as stack:
                images = self._open_for_dump(request.image_dir)
                stack.callback(images.close)
                progress.image_dir = str(images.path) if images.path else None
                progress.advance(Stage.DIRECTORY_READY)

                builder = dump_options(
                    self.config,
                    pid=request.pid,
                    images_fd=images.fd,
                    images_path=str(images.path) if images.path else None,
                )
                progress.advance(Stage.OPTIONS_BUILT)

                self.externals.declare_for_dump(builder, request, images)
                options = builder.build()
                progress.log_path = options.log_path
                progress.advance(Stage.EXTERNALS_RESOLVED)

                self.logger.debug("about to checkpoint name=%s pid=%s", request.name, request.pid)
                progress.advance(Stage.ENGINE_INVOKED)
                self.engine.dump(options)
        except MigrationError as exc:
            return progress.failed(exc, [])
        return progress.succeeded([])

    def restore(self, request: RestoreRequest) -> OperationResult:
        progress = _Progress("restore", request.name, self.logger)
        warnings: list[str] = []
        self.logger.info("restore_start name=%s image_dir_fd=%s tty_fd=%s", request.name, request.image_dir_fd, request.tty_fd)
        try:
            self._require_engine()
            with ExitStack() as stack:
                root = self._root_mount_factory(self.config.run_dir)
                stack.callback(self._teardown_root, root, warnings)
                mounted = root.prepare(request.name, request.rootfs_source)
                progress.advance(Stage.ROOT_MOUNTED)

                images = ImageDirectory.from_descriptor(request.image_dir_fd, logger=self.logger.getChild("images"))
                stack.callback(images.close)
                progress.image_dir = str(images.path)
                progress.advance(Stage.DIRECTORY_RESOLVED)

                builder = restore_options(
                    self.config,
                    images_fd=images.fd,
                    images_path=str(images.path),
                    root=str(mounted),
                    cgroup_root=self._checked_cgroup_root(request.cgroup_root),
                )
                progress.advance(Stage.OPTIONS_BUILT)

                warnings.extend(self.externals.declare_for_restore(builder, request, images))
                options = builder.build()
                progress.log_path = options.log_path
                progress.advance(Stage.EXTERNALS_RESOLVED)

                progress.advance(Stage.ENGINE_INVOKED)
                self.engine.restore(options)
        except MigrationError as exc:
            return progress.failed(exc, warnings)
        return progress.succeeded(warnings)

    def _require_engine(self) -> None:
        if not self.engine.check_available():
            raise UnsupportedCapability(f"Checkpoint/restore engine {self.engine.name!r} is not available")

    def _open_for_dump(self, image_dir) -> ImageDirectory:
        if isinstance(image_dir, int):
            return ImageDirectory.from_descriptor(image_dir, logger=self.logger.getChild("images"))
        return ImageDirectory.prepare_for_dump(Path(image_dir), logger=self.logger.getChild("images"))

    def _checked_cgroup_root(self, cgroup_root: Optional[Path]) -> Optional[str]:
        """Validate a cgroup path given relative to the cgroup hierarchy root, e.g. `/lxc/demo`."""
        if cgroup_root is None:
            return None
        cgroup_root = PurePosixPath(cgroup_root)
        if not cgroup_root.is_absolute() or ".." in cgroup_root.parts:
            raise ExternalResourceResolutionFailure(f"cgroup root must be an absolute cgroup path: {cgroup_root}")
        # Strict policy: cgroups are owned by the caller's manager and must already exist.
        if self.config.cgroup_policy == "strict":
            host_path = self.config.cgroup_mount / cgroup_root.relative_to("/")
            if not os.path.isdir(host_path):
                raise ExternalResourceResolutionFailure(f"Required cgroup {cgroup_root} does not exist ({host_path})")
        return str(cgroup_root)

    def _teardown_root(self, root: RootMount, warnings: list[str]) -> None:
        try:
            root.teardown()
        except CleanupFailure as exc:
            self.logger.warning("cleanup_failed step=root_unmount path=%s err=%s", root.path, exc)
            warnings.append(str(exc))
