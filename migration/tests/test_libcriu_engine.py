"""
Tests for the in-process libcriu transport, driven through a fake library.
"""

import os

import pytest

from migration.config import MigrationConfig
from migration.engine.libcriu import LibCriuEngine
from migration.engine.options import dump_options, restore_options
from migration.errors import EngineInvocationFailed, EngineOptionRejected


class FakeLibCriu:
    """Records every libcriu call as (name, args)."""

    def __init__(self, check=0, dump=0, restore=1234, reject=()):
        self.calls = []
        self._returns = {"criu_check": check, "criu_dump": dump, "criu_restore": restore}
        self._reject = set(reject)

    def __getattr__(self, name):
        if not name.startswith("criu_"):
            raise AttributeError(name)

        def call(*args):
            self.calls.append((name, args))
            if name in self._reject:
                return -22
            if name == "criu_set_manage_cgroups_mode":
                return None
            return self._returns.get(name, 0)

        return call

    def names(self):
        return [name for name, _args in self.calls]

    def args_of(self, name):
        return [args for call, args in self.calls if call == name]


@pytest.fixture
def pipe_fd():
    read_fd, write_fd = os.pipe()
    yield read_fd
    os.close(read_fd)
    os.close(write_fd)


class TestLibCriuEngine:
    """Option application order and error mapping."""

    def test_check_available(self):
        lib = FakeLibCriu()
        assert LibCriuEngine(lib=lib).check_available() is True
        assert lib.names() == ["criu_init_opts", "criu_check"]

    def test_check_unavailable(self):
        assert LibCriuEngine(lib=FakeLibCriu(check=-1)).check_available() is False

    def test_dump_applies_options(self):
        lib = FakeLibCriu()
        builder = dump_options(MigrationConfig(), pid=4242, images_fd=3, images_path="/ckpt")
        builder.external("tty[88:1]")
        LibCriuEngine(lib=lib).dump(builder.build())

        names = lib.names()
        assert names[0] == "criu_init_opts"
        assert names[-1] == "criu_dump"
        assert lib.args_of("criu_set_images_dir_fd") == [(1,)]
        assert lib.args_of("criu_set_log_file") == [(b"dump.log",)]
        assert lib.args_of("criu_set_log_level") == [(4,)]
        assert lib.args_of("criu_set_pid") == [(4242,)]
        assert lib.args_of("criu_set_tcp_established") == [(True,)]
        assert lib.args_of("criu_set_manage_cgroups") == [(False,)]
        assert lib.args_of("criu_add_enable_fs") == [(b"hugetlbfs",), (b"tracefs",)]
        assert lib.args_of("criu_add_external") == [(b"tty[88:1]",)]
        assert lib.args_of("criu_add_skip_mnt") == [(b"/dev/console",), (b"/dev/tty1",)]
        assert "criu_set_root" not in names

    def test_restore_applies_root_cgroups_and_inherit_fd(self, pipe_fd):
        lib = FakeLibCriu()
        builder = restore_options(MigrationConfig(), images_fd=3, images_path="/ckpt", root="/run/lxmigrate/web.root", cgroup_root="/web")
        builder.inherit_fd("tty[88:1]", pipe_fd)
        LibCriuEngine(lib=lib).restore(builder.build())

        assert lib.args_of("criu_set_manage_cgroups_mode") == [(1,)]
        assert lib.args_of("criu_add_cg_root") == [(None, b"/web")]
        assert lib.args_of("criu_add_inherit_fd") == [(pipe_fd, b"tty[88:1]")]
        assert lib.args_of("criu_set_root") == [(b"/run/lxmigrate/web.root",)]
        assert "criu_set_pid" not in lib.names()
        assert lib.names()[-1] == "criu_restore"
        assert os.get_inheritable(pipe_fd) is True

    def test_negative_dump_result(self):
        lib = FakeLibCriu(dump=-1)
        options = dump_options(MigrationConfig(), pid=1, images_fd=3, images_path="/ckpt").build()
        with pytest.raises(EngineInvocationFailed) as excinfo:
            LibCriuEngine(lib=lib).dump(options)
        assert excinfo.value.returncode == -1
        assert str(excinfo.value.log_path) == "/ckpt/dump.log"

    def test_rejected_option(self):
        lib = FakeLibCriu(reject={"criu_add_external"})
        builder = dump_options(MigrationConfig(), pid=1, images_fd=3, images_path="/ckpt")
        builder.external("tty[88:1]")
        with pytest.raises(EngineOptionRejected):
            LibCriuEngine(lib=lib).dump(builder.build())
        assert "criu_dump" not in lib.names()

    def test_each_call_reinitialises(self):
        """Options never carry over between calls on the same engine."""
        lib = FakeLibCriu()
        engine = LibCriuEngine(lib=lib)
        first = dump_options(MigrationConfig(), pid=1, images_fd=3, images_path=None)
        first.external("tty[88:1]")
        engine.dump(first.build())
        engine.dump(dump_options(MigrationConfig(), pid=2, images_fd=3, images_path=None).build())
        assert lib.names().count("criu_init_opts") == 2
