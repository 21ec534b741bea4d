"""Pack an image directory into a gzip tarball and unpack it defensively."""

from __future__ import annotations

import os
import shutil
import tarfile
from pathlib import Path

from migration.errors import ResourceAcquisitionFailure


MAX_FILES = 10_000
MAX_TOTAL_BYTES = 64 * 1024 * 1024 * 1024  # 64GB, memory images can be large
ARCHIVE_ROOT = "checkpointdir"


def pack_images(image_dir: Path, archive_path: Path) -> Path:
    """Write `image_dir` as `<archive_path>` with a single top-level directory."""
    image_dir = Path(image_dir)
    if not image_dir.is_dir():
        raise ResourceAcquisitionFailure(f"Image directory not found: {image_dir}")
    archive_path = Path(archive_path)
    tmp_path = archive_path.with_name(archive_path.name + ".partial")
    try:
        archive_path.parent.mkdir(parents=True, exist_ok=True)
        with tarfile.open(tmp_path, "w:gz") as tf:
            tf.add(str(image_dir), arcname=ARCHIVE_ROOT)
        os.replace(tmp_path, archive_path)
    except (OSError, tarfile.TarError) as exc:
        try:
            tmp_path.unlink()
        except FileNotFoundError:
            pass
        raise ResourceAcquisitionFailure(f"Can't archive {image_dir} to {archive_path}: {exc}") from exc
    return archive_path


def unpack_images(archive_path: Path, dest: Path) -> Path:
    """
    Extract a checkpoint archive under `dest` and return the image directory.

    Absolute paths, `..` components, links and device entries are refused, as
    are archives exceeding the file-count or size limits.
    """
    archive_path = Path(archive_path)
    if not archive_path.is_file():
        raise ResourceAcquisitionFailure(f"Checkpoint archive not found or not a file: {archive_path}")
    dest = Path(dest)
    dest.mkdir(parents=True, exist_ok=True)
    dest_root = dest.resolve()
    image_dir = dest / ARCHIVE_ROOT
    if image_dir.exists():
        raise ResourceAcquisitionFailure(f"Refusing to overwrite existing image directory {image_dir}")

    total_files = 0
    total_bytes = 0
    try:
        with tarfile.open(archive_path, "r:*") as tf:
            for member in tf.getmembers():
                member_path = Path(member.name)
                if member_path.is_absolute() or ".." in member_path.parts:
                    raise ValueError(f"Refusing unsafe archive entry: {member.name}")
                if not member_path.parts or member_path.parts[0] != ARCHIVE_ROOT:
                    raise ValueError(f"Unexpected archive entry outside {ARCHIVE_ROOT}/: {member.name}")
                if not (member.isfile() or member.isdir()):
                    raise ValueError(f"Refusing non-regular archive entry: {member.name}")

                target = (dest / member_path).resolve()
                if not str(target).startswith(str(dest_root)):
                    raise ValueError(f"Refusing path traversal attempt: {member.name}")

                total_files += 1
                if total_files > MAX_FILES:
                    raise ValueError(f"Refusing archive: file count exceeds limit ({MAX_FILES}).")
                total_bytes += member.size
                if total_bytes > MAX_TOTAL_BYTES:
                    raise ValueError(f"Refusing archive: extracted size exceeds limit ({MAX_TOTAL_BYTES} bytes).")

                if member.isdir():
                    target.mkdir(parents=True, exist_ok=True)
                    continue
                target.parent.mkdir(parents=True, exist_ok=True)
                source = tf.extractfile(member)
                if source is None:
                    raise ValueError(f"Unreadable archive entry: {member.name}")
                with source, open(target, "wb") as out:
                    shutil.copyfileobj(source, out)
                os.chmod(target, member.mode & 0o777)
    except (OSError, ValueError, tarfile.TarError) as exc:
        shutil.rmtree(image_dir, ignore_errors=True)
        raise ResourceAcquisitionFailure(f"Can't unpack checkpoint data from {archive_path}: {exc}") from exc

    if not image_dir.is_dir():
        raise ResourceAcquisitionFailure(f"Archive {archive_path} has no {ARCHIVE_ROOT}/ directory")
    return image_dir
