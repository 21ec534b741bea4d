"""Subprocess helper shared by the engine CLI transport and the root mount setup."""

from __future__ import annotations

import logging
import subprocess


logger = logging.getLogger("lxmigrate.process")


def run(cmd: list[str], **kwargs) -> subprocess.CompletedProcess:
    """Run a command and raise on failure, logging stderr to help debugging."""
    result = subprocess.run(cmd, text=True, capture_output=True, **kwargs)
    if result.returncode != 0:
        logger.error("command_failed cmd=%s rc=%s output=%s", " ".join(cmd), result.returncode, (result.stderr or result.stdout).strip())
        raise subprocess.CalledProcessError(result.returncode, cmd, result.stdout, result.stderr)
    return result
