"""
Tests for the engine options builder and its dump/restore presets.
"""

import dataclasses

import pytest

from migration.config import MigrationConfig
from migration.engine.options import (
    CgroupMode,
    EngineOptionsBuilder,
    baseline_options,
    dump_options,
    restore_options,
)
from migration.errors import EngineOptionRejected


class TestEngineOptionsBuilder:
    """Validation performed on build()."""

    def test_minimal_build(self):
        options = EngineOptionsBuilder().images_dir(5, "/ckpt").build()
        assert options.images_dir_fd == 5
        assert options.log_path == "/ckpt/criu.log"
        assert options.externals == ()

    def test_options_are_immutable(self):
        options = EngineOptionsBuilder().images_dir(5).build()
        with pytest.raises(dataclasses.FrozenInstanceError):
            options.pid = 12  # type: ignore[misc]

    def test_build_is_single_use(self):
        builder = EngineOptionsBuilder().images_dir(5)
        builder.build()
        with pytest.raises(EngineOptionRejected):
            builder.build()

    def test_missing_images_dir_rejected(self):
        with pytest.raises(EngineOptionRejected):
            EngineOptionsBuilder().build()

    def test_unknown_flag_rejected(self):
        with pytest.raises(EngineOptionRejected):
            EngineOptionsBuilder().flag("shell_job")

    @pytest.mark.parametrize("level", [-1, 5])
    def test_log_level_range(self, level):
        with pytest.raises(EngineOptionRejected):
            EngineOptionsBuilder().images_dir(5).log("dump.log", level).build()

    def test_log_file_must_be_bare_name(self):
        with pytest.raises(EngineOptionRejected):
            EngineOptionsBuilder().images_dir(5).log("../dump.log", 4).build()

    def test_duplicate_inherit_key_rejected(self):
        builder = EngineOptionsBuilder().images_dir(5).inherit_fd("tty[88:1]", 7).inherit_fd("tty[88:1]", 8)
        with pytest.raises(EngineOptionRejected):
            builder.build()

    def test_relative_skip_mount_rejected(self):
        with pytest.raises(EngineOptionRejected):
            EngineOptionsBuilder().images_dir(5).skip_mount("dev/console").build()

    def test_cgroup_mode_requires_manage_cgroups(self):
        with pytest.raises(EngineOptionRejected):
            EngineOptionsBuilder().images_dir(5).cgroups(CgroupMode.SOFT).build()

    def test_externals_are_deduplicated_in_order(self):
        options = EngineOptionsBuilder().images_dir(5).external("b").external("a").external("b").build()
        assert options.externals == ("b", "a")


class TestPresets:
    """The flags every container operation runs with."""

    def test_baseline_flags(self):
        builder = baseline_options(MigrationConfig())
        options = builder.images_dir(3).build()
        for name in ("tcp_established", "file_locks", "link_remap", "force_irmap", "auto_ext_mnt", "ext_sharing", "ext_masters"):
            assert getattr(options, name) is True, name
        assert options.enable_fs == frozenset({"hugetlbfs", "tracefs"})

    def test_dump_preset(self):
        config = MigrationConfig(criu_log_level=4)
        options = dump_options(config, pid=4242, images_fd=3, images_path="/ckpt/web").build()
        assert options.pid == 4242
        assert options.log_file == "dump.log"
        assert options.log_level == 4
        assert options.manage_cgroups is False
        assert options.leave_running is False
        assert options.skip_mounts == ("/dev/console", "/dev/tty1")
        assert options.root is None
        assert options.log_path == "/ckpt/web/dump.log"

    def test_restore_preset(self):
        options = restore_options(
            MigrationConfig(), images_fd=3, images_path="/ckpt/web", root="/run/lxmigrate/web.root", cgroup_root="/lxc/web"
        ).build()
        assert options.pid is None
        assert options.log_file == "restore.log"
        assert options.root == "/run/lxmigrate/web.root"
        assert options.manage_cgroups is True
        assert options.cgroup_mode is CgroupMode.NONE
        assert options.cgroup_root == "/lxc/web"
        assert options.skip_mounts == ()

    def test_soft_policy_lets_engine_create_cgroups(self):
        config = MigrationConfig(cgroup_policy="soft")
        options = restore_options(config, images_fd=3, images_path=None, root="/run/lxmigrate/web.root").build()
        assert options.cgroup_mode is CgroupMode.SOFT

    def test_presets_start_fresh_each_call(self):
        """Externals added for one container never reach the next call."""
        config = MigrationConfig()
        first = dump_options(config, pid=1, images_fd=3, images_path=None)
        first.external("tty[88:1]")
        first.build()
        second = dump_options(config, pid=2, images_fd=3, images_path=None).build()
        assert second.externals == ()
