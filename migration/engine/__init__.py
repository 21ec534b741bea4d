"""
Engine adapter: one options value, several transports to CRIU.

- `options.py`: `EngineOptions`, its builder and the baseline/dump/restore presets
- `base.py`: the `CriuEngine` contract, the incapable variant and runtime selection
- `cli.py`: transport spawning the `criu` binary
- `libcriu.py`: in-process transport through `ctypes`
"""

from migration.engine.base import CriuEngine, UnavailableEngine, select_engine
from migration.engine.cli import CriuCliEngine
from migration.engine.libcriu import LibCriuEngine
from migration.engine.options import (
    CgroupMode,
    EngineOptions,
    EngineOptionsBuilder,
    baseline_options,
    dump_options,
    restore_options,
)

__all__ = [
    "CgroupMode",
    "CriuCliEngine",
    "CriuEngine",
    "EngineOptions",
    "EngineOptionsBuilder",
    "LibCriuEngine",
    "UnavailableEngine",
    "baseline_options",
    "dump_options",
    "restore_options",
    "select_engine",
]
