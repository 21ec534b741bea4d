#!/usr/bin/env python3
"""
Command-line entry point.

    lxmigrate check
    lxmigrate dump --name web --pid 4242 --images-dir /var/lib/ctr/ckpt/web --rootfs /var/lib/ctr/web/rootfs
    lxmigrate restore --name web --images-dir /var/lib/ctr/ckpt/web --rootfs /var/lib/ctr/web/rootfs --tty /dev/pts/7
    lxmigrate serve --port 8787
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from dataclasses import replace
from pathlib import Path
from typing import Optional

from migration.archive import pack_images, unpack_images
from migration.config import MigrationConfig
from migration.driver import MigrationDriver
from migration.errors import MigrationError
from migration.models import CheckpointRequest, ExternalMount, OperationResult, RestoreRequest


logger = logging.getLogger("lxmigrate.cli")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_UNSUPPORTED = 2


def _configure_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format="%(asctime)s %(levelname)s %(name)s %(message)s")


def parse_external_mount(value: str) -> ExternalMount:
    """Parse NAME=MOUNTPOINT[:HOST_PATH]."""
    name, sep, rest = value.partition("=")
    if not sep or not name or not rest:
        raise argparse.ArgumentTypeError(f"expected NAME=MOUNTPOINT[:HOST_PATH], got {value!r}")
    mountpoint, _sep, host_path = rest.partition(":")
    if not mountpoint.startswith("/"):
        raise argparse.ArgumentTypeError(f"mountpoint must be absolute: {mountpoint!r}")
    return ExternalMount(name=name, mountpoint=mountpoint, host_path=host_path or None)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="lxmigrate", description="Checkpoint and restore containers through CRIU.")
    parser.add_argument("--log-level", default=None, help="Python logging level (default: $LXMIGRATE_LOG_LEVEL or INFO).")
    parser.add_argument("--engine", choices=["auto", "cli", "lib"], help="Engine transport (default: $LXMIGRATE_ENGINE or auto).")
    parser.add_argument("--json", action="store_true", help="Print the operation result as JSON.")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("check", help="Report whether the checkpoint/restore engine is usable.")

    dump = sub.add_parser("dump", help="Checkpoint a running container.")
    dump.add_argument("--name", required=True)
    dump.add_argument("--pid", type=int, required=True, help="Init process id of the container.")
    dump.add_argument("--images-dir", type=Path, required=True, help="Target image directory (created when missing).")
    dump.add_argument("--rootfs", type=Path, required=True, help="Root filesystem source of the container.")
    dump.add_argument("--no-console", action="store_true", help="The container has no controlling tty to map.")
    dump.add_argument(
        "--external-mount",
        action="append",
        type=parse_external_mount,
        default=[],
        help="Mount not owned by the container, NAME=MOUNTPOINT (repeatable).",
    )
    dump.add_argument("--archive", type=Path, help="Also pack the image directory into this .tar.gz.")

    restore = sub.add_parser("restore", help="Restore a container from an image directory.")
    restore.add_argument("--name", required=True)
    restore.add_argument("--images-dir", type=Path, required=True, help="Image directory (extraction target with --archive).")
    restore.add_argument("--rootfs", type=Path, required=True, help="Root filesystem source of the container.")
    restore.add_argument("--tty", help="Host tty to attach as the container console.")
    restore.add_argument("--cgroup-root", type=Path, help="Pre-created cgroup, as a path inside the hierarchy (e.g. /lxc/demo).")
    restore.add_argument(
        "--external-mount",
        action="append",
        type=parse_external_mount,
        default=[],
        help="Mount mapping, NAME=MOUNTPOINT:HOST_PATH (repeatable).",
    )
    restore.add_argument("--archive", type=Path, help="Unpack this checkpoint archive into --images-dir first.")

    serve = sub.add_parser("serve", help="Run the HTTP API.")
    serve.add_argument("--host")
    serve.add_argument("--port", type=int)
    return parser


def _report(result: OperationResult, as_json: bool) -> int:
    if as_json:
        print(json.dumps(result.to_dict(), sort_keys=True))
    elif result.ok:
        print(f"{result.operation}: {result.status.value}" + (f" ({result.image_dir})" if result.image_dir else ""))
        for warning in result.warnings:
            print(f"warning: {warning}")
    else:
        sys.stderr.write(f"{result.operation} failed at {result.failed_at.value if result.failed_at else '?'}: {result.error}\n")
        if result.log_path:
            sys.stderr.write(f"See engine log at: {result.log_path}\n")

    if result.ok:
        return EXIT_OK
    if result.error_kind == "unsupported_capability":
        return EXIT_UNSUPPORTED
    return EXIT_FAILED


def _cmd_dump(driver: MigrationDriver, args: argparse.Namespace) -> int:
    request = CheckpointRequest(
        pid=args.pid,
        image_dir=args.images_dir,
        rootfs_source=args.rootfs,
        name=args.name,
        console=not args.no_console,
        external_mounts=tuple(args.external_mount),
    )
    result = driver.checkpoint(request)
    code = _report(result, args.json)
    if result.ok and args.archive:
        try:
            pack_images(args.images_dir, args.archive)
        except MigrationError as exc:
            sys.stderr.write(f"Archiving failed: {exc}\n")
            return EXIT_FAILED
        logger.info("archive_written path=%s", args.archive)
    return code


def _cmd_restore(driver: MigrationDriver, args: argparse.Namespace) -> int:
    images_dir: Path = args.images_dir
    if args.archive:
        try:
            images_dir = unpack_images(args.archive, images_dir)
        except MigrationError as exc:
            sys.stderr.write(f"Can't untar checkpoint data: {exc}\n")
            return EXIT_FAILED

    dir_fd: Optional[int] = None
    tty_fd: Optional[int] = None
    try:
        try:
            dir_fd = os.open(images_dir, os.O_RDONLY | os.O_DIRECTORY | os.O_CLOEXEC)
        except OSError as exc:
            sys.stderr.write(f"Can't open images dir {images_dir}: {exc}\n")
            return EXIT_FAILED
        if args.tty:
            try:
                tty_fd = os.open(args.tty, os.O_RDWR | os.O_NOCTTY | os.O_CLOEXEC)
            except OSError as exc:
                sys.stderr.write(f"Can't open tty {args.tty}: {exc}\n")
                return EXIT_FAILED

        request = RestoreRequest(
            image_dir_fd=dir_fd,
            tty_fd=tty_fd,
            rootfs_source=args.rootfs,
            name=args.name,
            external_mounts=tuple(args.external_mount),
            cgroup_root=args.cgroup_root,
        )
        return _report(driver.restore(request), args.json)
    finally:
        for fd in (tty_fd, dir_fd):
            if fd is not None:
                os.close(fd)


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    config = MigrationConfig.from_env()
    if args.engine:
        config = replace(config, engine=args.engine)
    if args.log_level:
        config = replace(config, log_level=args.log_level.upper())
    _configure_logging(config.log_level)

    if args.command == "serve":
        from migration.api import run_api

        run_api(host=args.host, port=args.port, config=config)
        return EXIT_OK

    driver = MigrationDriver(config=config)
    try:
        if args.command == "check":
            available = driver.check()
            print(f"{driver.engine.name}: {'available' if available else 'unavailable'}")
            return EXIT_OK if available else EXIT_UNSUPPORTED
        if args.command == "dump":
            return _cmd_dump(driver, args)
        return _cmd_restore(driver, args)
    except KeyboardInterrupt:
        sys.stderr.write("Interrupted by user.\n")
        return 130


if __name__ == "__main__":
    sys.exit(main())
