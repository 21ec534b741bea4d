"""
Pytest configuration and shared fixtures for all tests.
"""

from __future__ import annotations

import os
import subprocess
import sys
from pathlib import Path

import pytest

# Ensure the repo root is on `sys.path` so top-level imports work.
repo_root = Path(__file__).resolve().parents[1]
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from migration.config import MigrationConfig
from migration.engine.base import CriuEngine
from migration.engine.options import EngineOptions
from migration.errors import EngineInvocationFailed


class FakeEngine(CriuEngine):
    """Records every call instead of talking to CRIU."""

    name = "fake"

    def __init__(self, *, available: bool = True, fail_with: Exception | None = None) -> None:
        super().__init__()
        self.available = available
        self.fail_with = fail_with
        self.calls: list[tuple[str, EngineOptions]] = []

    def check_available(self) -> bool:
        return self.available

    def dump(self, options: EngineOptions) -> None:
        self.calls.append(("dump", options))
        if self.fail_with is not None:
            raise self.fail_with

    def restore(self, options: EngineOptions) -> None:
        self.calls.append(("restore", options))
        if self.fail_with is not None:
            raise self.fail_with

    @property
    def last_options(self) -> EngineOptions:
        return self.calls[-1][1]


class FakeMounts:
    """Stands in for `migration.rootfs.run`, recording mount/umount commands."""

    def __init__(self) -> None:
        self.commands: list[list[str]] = []
        self.fail_on: set[str] = set()

    def __call__(self, cmd, **kwargs):
        self.commands.append(list(cmd))
        if cmd[0] in self.fail_on:
            raise subprocess.CalledProcessError(32, cmd, "", f"{cmd[0]}: permission denied\n")
        return subprocess.CompletedProcess(cmd, 0, "", "")

    def count(self, program: str) -> int:
        return sum(1 for cmd in self.commands if cmd[0] == program)


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch):
    """Keep a developer's LXMIGRATE_* environment out of the tests."""
    for key in list(os.environ):
        if key.startswith("LXMIGRATE_"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def config(tmp_path) -> MigrationConfig:
    """Config with the runtime directory under tmp_path and /dev/null as the console."""
    return MigrationConfig(run_dir=tmp_path / "run", console_path="/dev/null")


@pytest.fixture
def fake_engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def failing_engine() -> FakeEngine:
    return FakeEngine(fail_with=EngineInvocationFailed("criu dump exited with status 1", returncode=1))


@pytest.fixture
def fake_mounts(monkeypatch) -> FakeMounts:
    mounts = FakeMounts()
    monkeypatch.setattr("migration.rootfs.run", mounts)
    return mounts


@pytest.fixture
def dir_fd(tmp_path):
    """An open descriptor on a fresh image directory, closed after the test."""
    path = tmp_path / "images"
    path.mkdir()
    fd = os.open(path, os.O_RDONLY | os.O_DIRECTORY)
    yield fd
    try:
        os.close(fd)
    except OSError:
        pass


@pytest.fixture
def rootfs(tmp_path) -> Path:
    path = tmp_path / "rootfs"
    (path / "bin").mkdir(parents=True)
    return path
