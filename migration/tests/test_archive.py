"""
Tests for packing and unpacking checkpoint archives.
"""

import io
import tarfile

import pytest

from migration import archive
from migration.archive import ARCHIVE_ROOT, pack_images, unpack_images
from migration.errors import ResourceAcquisitionFailure


def _make_images(tmp_path):
    images = tmp_path / "images"
    images.mkdir()
    (images / "core-1.img").write_bytes(b"\x00core")
    (images / "tty.info").write_text("tty[88:3]\n")
    (images / "sub").mkdir()
    (images / "sub" / "pages-1.img").write_bytes(b"pages")
    return images


def _tar_with(path, entries):
    with tarfile.open(path, "w:gz") as tf:
        for info, data in entries:
            tf.addfile(info, io.BytesIO(data) if data is not None else None)
    return path


def _file(name, data=b"x"):
    info = tarfile.TarInfo(name)
    info.size = len(data)
    return info, data


class TestPackUnpack:
    """The tarball layout and safe extraction."""

    def test_unpacked_tree_matches(self, tmp_path):
        images = _make_images(tmp_path)
        tarball = pack_images(images, tmp_path / "out" / "demo.tar.gz")
        assert tarball.is_file()
        assert not (tmp_path / "out" / "demo.tar.gz.partial").exists()

        restored = unpack_images(tarball, tmp_path / "dest")
        assert restored == tmp_path / "dest" / ARCHIVE_ROOT
        assert (restored / "core-1.img").read_bytes() == b"\x00core"
        assert (restored / "tty.info").read_text() == "tty[88:3]\n"
        assert (restored / "sub" / "pages-1.img").read_bytes() == b"pages"

    def test_archive_has_single_root(self, tmp_path):
        tarball = pack_images(_make_images(tmp_path), tmp_path / "demo.tar.gz")
        with tarfile.open(tarball) as tf:
            assert {name.split("/")[0] for name in tf.getnames()} == {ARCHIVE_ROOT}

    def test_pack_missing_directory(self, tmp_path):
        with pytest.raises(ResourceAcquisitionFailure):
            pack_images(tmp_path / "missing", tmp_path / "demo.tar.gz")

    def test_refuses_existing_target(self, tmp_path):
        tarball = pack_images(_make_images(tmp_path), tmp_path / "demo.tar.gz")
        (tmp_path / "dest" / ARCHIVE_ROOT).mkdir(parents=True)
        with pytest.raises(ResourceAcquisitionFailure):
            unpack_images(tarball, tmp_path / "dest")

    @pytest.mark.parametrize(
        "name",
        ["/etc/passwd", f"{ARCHIVE_ROOT}/../escape", "other/core.img"],
    )
    def test_refuses_unsafe_names(self, tmp_path, name):
        tarball = _tar_with(tmp_path / "bad.tar.gz", [_file(name)])
        with pytest.raises(ResourceAcquisitionFailure):
            unpack_images(tarball, tmp_path / "dest")
        assert not (tmp_path / "dest" / ARCHIVE_ROOT).exists()

    def test_refuses_symlinks(self, tmp_path):
        link = tarfile.TarInfo(f"{ARCHIVE_ROOT}/link")
        link.type = tarfile.SYMTYPE
        link.linkname = "/etc/shadow"
        tarball = _tar_with(tmp_path / "bad.tar.gz", [_file(f"{ARCHIVE_ROOT}/ok.img"), (link, None)])
        with pytest.raises(ResourceAcquisitionFailure):
            unpack_images(tarball, tmp_path / "dest")
        assert not (tmp_path / "dest" / ARCHIVE_ROOT).exists()

    def test_file_count_limit(self, tmp_path, monkeypatch):
        monkeypatch.setattr(archive, "MAX_FILES", 2)
        entries = [_file(f"{ARCHIVE_ROOT}/{i}.img") for i in range(3)]
        tarball = _tar_with(tmp_path / "many.tar.gz", entries)
        with pytest.raises(ResourceAcquisitionFailure):
            unpack_images(tarball, tmp_path / "dest")

    def test_missing_archive(self, tmp_path):
        with pytest.raises(ResourceAcquisitionFailure):
            unpack_images(tmp_path / "nope.tar.gz", tmp_path / "dest")
