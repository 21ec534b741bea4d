"""Environment-driven configuration for lxmigrate."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


DEFAULT_ENABLE_FS = ("hugetlbfs", "tracefs")
DEFAULT_SKIP_MOUNTS = ("/dev/console", "/dev/tty1")
DEFAULT_CONSOLE_PATH = "/proc/{pid}/root/dev/pts/0"

ENGINE_CHOICES = {"auto", "cli", "lib"}
CGROUP_POLICIES = {"strict", "soft"}


def _str_to_bool(value: str) -> bool:
    return value.lower() in {"1", "true", "yes", "on"}


def _env_int(key: str, default: int) -> int:
    try:
        return int(os.getenv(key, default))
    except (TypeError, ValueError):
        return default


def _env_float(key: str, default: Optional[float]) -> Optional[float]:
    raw = os.getenv(key)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_list(key: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(key)
    if raw is None:
        return default
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def _env_choice(key: str, default: str, choices: set[str]) -> str:
    value = os.getenv(key, default).strip().lower()
    return value if value in choices else default


@dataclass(frozen=True)
class MigrationConfig:
    """Settings shared by the engine adapter, mapper, root setup and driver."""

    engine: str = "auto"
    criu_bin: str = "criu"
    criu_timeout_s: Optional[float] = None
    criu_log_level: int = 4
    dump_log_file: str = "dump.log"
    restore_log_file: str = "restore.log"
    enable_fs: tuple[str, ...] = DEFAULT_ENABLE_FS
    skip_mounts: tuple[str, ...] = DEFAULT_SKIP_MOUNTS
    run_dir: Path = Path("/run/lxmigrate")
    console_path: str = DEFAULT_CONSOLE_PATH
    cgroup_policy: str = "strict"
    cgroup_mount: Path = Path("/sys/fs/cgroup")
    leave_running: bool = False
    ext_unix_sk: bool = False
    log_level: str = "INFO"
    api_host: str = "127.0.0.1"
    api_port: int = 8787

    @classmethod
    def from_env(cls) -> "MigrationConfig":
        enable_fs = _env_list("LXMIGRATE_ENABLE_FS", DEFAULT_ENABLE_FS)
        # hugetlbfs and tracefs are always allowed, extra entries extend the list.
        merged_fs = tuple(dict.fromkeys(DEFAULT_ENABLE_FS + enable_fs))
        return cls(
            engine=_env_choice("LXMIGRATE_ENGINE", "auto", ENGINE_CHOICES),
            criu_bin=os.getenv("LXMIGRATE_CRIU_BIN", "criu"),
            criu_timeout_s=_env_float("LXMIGRATE_CRIU_TIMEOUT", None),
            criu_log_level=_env_int("LXMIGRATE_CRIU_LOG_LEVEL", 4),
            enable_fs=merged_fs,
            skip_mounts=_env_list("LXMIGRATE_SKIP_MOUNTS", DEFAULT_SKIP_MOUNTS),
            run_dir=Path(os.getenv("LXMIGRATE_RUN_DIR", "/run/lxmigrate")),
            console_path=os.getenv("LXMIGRATE_CONSOLE_PATH", DEFAULT_CONSOLE_PATH),
            cgroup_policy=_env_choice("LXMIGRATE_CGROUP_POLICY", "strict", CGROUP_POLICIES),
            cgroup_mount=Path(os.getenv("LXMIGRATE_CGROUP_MOUNT", "/sys/fs/cgroup")),
            leave_running=_str_to_bool(os.getenv("LXMIGRATE_LEAVE_RUNNING", "false")),
            ext_unix_sk=_str_to_bool(os.getenv("LXMIGRATE_EXT_UNIX_SK", "false")),
            log_level=os.getenv("LXMIGRATE_LOG_LEVEL", "INFO").upper(),
            api_host=os.getenv("LXMIGRATE_API_HOST", "127.0.0.1"),
            api_port=_env_int("LXMIGRATE_API_PORT", 8787),
        )
