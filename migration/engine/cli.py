"""
Engine transport that spawns the `criu` binary.

Options are rendered to command-line flags; descriptors the engine must inherit
are passed through with their numbers unchanged (`pass_fds`).
"""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path
from typing import Optional

from migration.engine.base import CriuEngine
from migration.engine.options import EngineOptions
from migration.errors import EngineInvocationFailed, EngineOptionRejected
from migration.process import run


class CriuCliEngine(CriuEngine):
    name = "criu-cli"

    def __init__(self, *, criu_bin: str = "criu", timeout_s: Optional[float] = None, **kwargs) -> None:
        super().__init__(**kwargs)
        self.criu_bin = criu_bin
        self.timeout_s = timeout_s

    def check_available(self) -> bool:
        if shutil.which(self.criu_bin) is None:
            self.logger.debug("criu_missing bin=%s", self.criu_bin)
            return False
        try:
            result = subprocess.run([self.criu_bin, "check"], capture_output=True, text=True, timeout=30)
        except (OSError, subprocess.TimeoutExpired) as exc:
            self.logger.warning("criu_check_error bin=%s err=%s", self.criu_bin, exc)
            return False
        if result.returncode != 0:
            self.logger.warning("criu_check_failed bin=%s output=%s", self.criu_bin, (result.stderr or result.stdout).strip())
            return False
        return True

    def dump(self, options: EngineOptions) -> None:
        self._invoke("dump", options)

    def restore(self, options: EngineOptions) -> None:
        self._invoke("restore", options)

    def build_argv(self, action: str, options: EngineOptions) -> list[str]:
        if action not in {"dump", "restore"}:
            raise EngineOptionRejected(f"Unknown engine action: {action}")
        if not options.images_dir_path:
            raise EngineOptionRejected("the criu binary needs the images directory as a path")

        argv = [
            self.criu_bin,
            action,
            "--images-dir",
            options.images_dir_path,
            "--log-file",
            options.log_file,
            f"-v{options.log_level}",
        ]
        if action == "dump":
            if options.pid is None:
                raise EngineOptionRejected("dump requires a target pid")
            argv.extend(["--tree", str(options.pid)])
        else:
            argv.append("--restore-detached")

        flags = (
            ("tcp_established", "--tcp-established"),
            ("file_locks", "--file-locks"),
            ("link_remap", "--link-remap"),
            ("force_irmap", "--force-irmap"),
            ("ext_unix_sk", "--ext-unix-sk"),
            ("ext_sharing", "--enable-external-sharing"),
            ("ext_masters", "--enable-external-masters"),
        )
        for attr, flag in flags:
            if getattr(options, attr):
                argv.append(flag)
        if options.auto_ext_mnt:
            argv.extend(["--ext-mount-map", "auto"])
        if action == "dump" and options.leave_running:
            argv.append("--leave-running")
        if options.manage_cgroups:
            mode = options.cgroup_mode.value if options.cgroup_mode else "soft"
            argv.append(f"--manage-cgroups={mode}")
        if options.cgroup_root:
            argv.extend(["--cgroup-root", options.cgroup_root])
        if options.enable_fs:
            argv.extend(["--enable-fs", ",".join(sorted(options.enable_fs))])
        for key in options.externals:
            argv.extend(["--external", key])
        for key, fd in options.inherit_fds:
            argv.extend(["--inherit-fd", f"fd[{fd}]:{key}"])
        for path in options.skip_mounts:
            argv.extend(["--skip-mnt", path])
        if options.root:
            argv.extend(["--root", options.root])
        return argv

    def _invoke(self, action: str, options: EngineOptions) -> None:
        argv = self.build_argv(action, options)
        log_path = Path(options.log_path) if options.log_path else None
        pass_fds = tuple(fd for _key, fd in options.inherit_fds)
        self.logger.debug("criu_exec argv=%s", " ".join(argv))
        try:
            run(argv, pass_fds=pass_fds, timeout=self.timeout_s)
        except subprocess.TimeoutExpired as exc:
            raise EngineInvocationFailed(
                f"criu {action} did not finish within {self.timeout_s}s", log_path=log_path
            ) from exc
        except subprocess.CalledProcessError as exc:
            raise EngineInvocationFailed(
                f"criu {action} exited with status {exc.returncode}", log_path=log_path, returncode=exc.returncode
            ) from exc
        except OSError as exc:
            raise EngineInvocationFailed(f"Failed to execute {self.criu_bin}: {exc}", log_path=log_path) from exc
