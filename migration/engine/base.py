from __future__ import annotations

import abc
import logging
from typing import Optional

from migration.config import MigrationConfig
from migration.engine.options import EngineOptions
from migration.errors import EngineUnavailable


class CriuEngine(abc.ABC):
    """A transport to the checkpoint/restore engine."""

    name = "criu"

    def __init__(self, *, logger: Optional[logging.Logger] = None) -> None:
        self.logger = logger or logging.getLogger("lxmigrate.engine")

    @abc.abstractmethod
    def check_available(self) -> bool:
        """Return True when dump and restore can be attempted on this host."""

    @abc.abstractmethod
    def dump(self, options: EngineOptions) -> None:
        """Checkpoint the process tree rooted at `options.pid`. Raises on failure."""

    @abc.abstractmethod
    def restore(self, options: EngineOptions) -> None:
        """Restore the process tree stored in the images directory. Raises on failure."""


class UnavailableEngine(CriuEngine):
    """Stand-in used when no transport is usable; every call reports the missing capability."""

    name = "unavailable"

    def __init__(self, reason: str = "CRIU support is not available", **kwargs) -> None:
        super().__init__(**kwargs)
        self.reason = reason

    def check_available(self) -> bool:
        return False

    def dump(self, options: EngineOptions) -> None:
        raise EngineUnavailable(self.reason)

    def restore(self, options: EngineOptions) -> None:
        raise EngineUnavailable(self.reason)


def select_engine(config: MigrationConfig, *, logger: Optional[logging.Logger] = None) -> CriuEngine:
    """Pick a transport according to `config.engine`, probing availability at runtime."""
    from migration.engine.cli import CriuCliEngine
    from migration.engine.libcriu import LibCriuEngine

    log = logger or logging.getLogger("lxmigrate.engine")
    candidates: list[CriuEngine] = []
    if config.engine in {"auto", "lib"}:
        candidates.append(LibCriuEngine(logger=logger))
    if config.engine in {"auto", "cli"}:
        candidates.append(CriuCliEngine(criu_bin=config.criu_bin, timeout_s=config.criu_timeout_s, logger=logger))

    for engine in candidates:
        if engine.check_available():
            log.info("engine_selected engine=%s", engine.name)
            return engine
        log.debug("engine_unavailable engine=%s", engine.name)

    log.warning("engine_selected engine=unavailable requested=%s", config.engine)
    return UnavailableEngine(f"No usable CRIU transport (requested: {config.engine})", logger=logger)
