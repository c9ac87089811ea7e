"""
test_image — storage image assembly.

Tests verify invariant properties:
  - A raw image starts with exactly the fixture bytes.
  - Every mount is paired with an unmount, on success and on failure.
  - The assembled image is never returned while still mounted.
  - Bad fixture paths are rejected before anything is formatted.
"""
import os
import shutil
import subprocess

import pytest

from boot_harness.core.errors import AssemblyError
from boot_harness.core.fixtures import LOREM_IPSUM, default_fixtures
from boot_harness.core.image import (
    FilesystemParams,
    ImageAssembler,
    StorageImage,
    verify_raw_image,
)
from boot_harness.core.scratch import ScratchSpace, ScratchspaceManager
from boot_harness.policy.config import ImageKind
from boot_harness.policy.settings import HarnessSettings

from conftest import uses


@pytest.fixture
def scratch(settings):
    manager = ScratchspaceManager(settings)
    space = manager.acquire()
    yield space
    manager.release(space)


def test_lorem_fixture():
    assert len(LOREM_IPSUM) == 597
    assert default_fixtures() == {"lorem.txt": LOREM_IPSUM.encode("ascii")}
    assert not LOREM_IPSUM.endswith("\n")


class TestRawImage:

    def test_exact_bytes(self, settings, runner, scratch):
        image = StorageImage(kind=ImageKind.RAW, fixtures=default_fixtures())
        path = ImageAssembler(settings, runner).assemble(image, scratch)

        assert path.read_bytes() == LOREM_IPSUM.encode("ascii")
        assert path.parent == scratch.root
        assert runner.calls == []

    def test_padded_to_capacity(self, settings, runner, scratch):
        image = StorageImage(kind=ImageKind.RAW, fixtures={"blob": b"abc"}, capacity=4096)
        path = ImageAssembler(settings, runner).assemble(image, scratch)

        assert path.stat().st_size == 4096
        assert verify_raw_image(path, b"abc")
        assert path.read_bytes()[3:] == bytes(4093)

    def test_capacity_too_small(self, settings, runner, scratch):
        image = StorageImage(kind=ImageKind.RAW, fixtures={"blob": b"abcdef"}, capacity=2)
        with pytest.raises(AssemblyError, match="smaller"):
            ImageAssembler(settings, runner).assemble(image, scratch)

    def test_single_fixture_only(self, settings, runner, scratch):
        image = StorageImage(kind=ImageKind.RAW, fixtures={"a": b"1", "b": b"2"})
        with pytest.raises(AssemblyError, match="exactly one"):
            ImageAssembler(settings, runner).assemble(image, scratch)

    def test_no_image_kind(self, settings, runner, scratch):
        with pytest.raises(AssemblyError):
            ImageAssembler(settings, runner).assemble(
                StorageImage(kind=ImageKind.NONE, fixtures={}), scratch
            )


def fs_image(**kw):
    return StorageImage(
        kind=ImageKind.FILESYSTEM,
        fixtures=kw.pop("fixtures", default_fixtures()),
        capacity=kw.pop("capacity", 1024 * 1024),
        fs=FilesystemParams(fs_type="ext3", inode_size=128, uid=1000, gid=1000),
    )


class TestFilesystemImage:
    """Filesystem images with scripted mkfs/mount/umount."""

    def test_command_sequence(self, settings, runner, scratch):
        path = ImageAssembler(settings, runner).assemble(fs_image(), scratch)

        assert path.stat().st_size == 1024 * 1024
        mkfs, mount, umount = [c.command for c in runner.calls]
        assert mkfs == [
            "mkfs.ext3", "-F", "-q", "-I", "128",
            "-E", "root_owner=1000:1000", str(path),
        ]
        mnt = scratch.path("mnt")
        assert mount == ["mount", "-o", "loop,rw", str(path), str(mnt)]
        assert umount == ["umount", str(mnt)]

    def test_fixture_written_to_mount(self, settings, runner, scratch):
        ImageAssembler(settings, runner).assemble(fs_image(), scratch)
        # the fake mount is a plain directory, so the write lands there
        assert (scratch.path("mnt") / "lorem.txt").read_bytes() == LOREM_IPSUM.encode("ascii")

    def test_privilege_prefix(self, project_root, scratch_root, runner):
        settings = HarnessSettings(
            PROJECT_ROOT=str(project_root),
            SCRATCH_ROOT=str(scratch_root),
            PRIVILEGE_PREFIX="sudo -n",
        )
        manager = ScratchspaceManager(settings)
        scratch = manager.acquire()
        ImageAssembler(settings, runner).assemble(fs_image(), scratch)

        mount, umount = runner.calls[1].command, runner.calls[2].command
        assert mount[:3] == ["sudo", "-n", "mount"]
        assert umount[:3] == ["sudo", "-n", "umount"]
        # mkfs works on a plain file and needs no privilege
        assert runner.calls[0].command[0] == "mkfs.ext3"
        manager.release(scratch)

    def test_mkfs_failure(self, settings, runner, scratch):
        runner.on(uses("mkfs.ext3"), exit_code=1, stderr="mkfs.ext3: bad size")
        with pytest.raises(AssemblyError) as exc:
            ImageAssembler(settings, runner).assemble(fs_image(), scratch)
        assert exc.value.diagnostics == "mkfs.ext3: bad size"
        assert runner.matching("mount") == []

    def test_mount_point_not_creatable(self, settings, runner, scratch, monkeypatch):
        def refuse(self, name="mnt"):
            raise PermissionError(13, "Permission denied", str(self.root / name))

        monkeypatch.setattr(ScratchSpace, "mount_point", refuse)
        with pytest.raises(AssemblyError, match="mount point"):
            ImageAssembler(settings, runner).assemble(fs_image(), scratch)
        assert runner.matching("mount") == []

    def test_mount_failure_no_unmount(self, settings, runner, scratch):
        runner.on(uses("mount"), exit_code=32, stderr="mount: permission denied")
        with pytest.raises(AssemblyError, match="Mounting"):
            ImageAssembler(settings, runner).assemble(fs_image(), scratch)
        assert runner.matching("umount") == []

    def test_unmount_failure(self, settings, runner, scratch):
        runner.on(uses("umount"), exit_code=32, stderr="umount: target is busy")
        with pytest.raises(AssemblyError, match="Unmounting") as exc:
            ImageAssembler(settings, runner).assemble(fs_image(), scratch)
        assert exc.value.diagnostics == "umount: target is busy"

    def test_write_failure_still_unmounts(self, settings, runner, scratch, monkeypatch):
        def refuse(self, data):
            raise PermissionError("read-only file system")

        monkeypatch.setattr("pathlib.Path.write_bytes", refuse)
        with pytest.raises(AssemblyError, match="Failed to write fixture"):
            ImageAssembler(settings, runner).assemble(fs_image(), scratch)
        assert len(runner.matching("umount")) == 1

    def test_bad_fixture_path_rejected_early(self, settings, runner, scratch):
        image = fs_image(fixtures={"../escape.txt": b"x"})
        with pytest.raises(AssemblyError, match="relative"):
            ImageAssembler(settings, runner).assemble(image, scratch)
        assert runner.calls == []

    def test_still_mounted_after_unmount(self, settings, runner, scratch, monkeypatch):
        monkeypatch.setattr(os.path, "ismount", lambda p: True)
        with pytest.raises(AssemblyError, match="still mounted"):
            ImageAssembler(settings, runner).assemble(fs_image(), scratch)
        monkeypatch.undo()


@pytest.mark.skipif(
    not hasattr(os, "geteuid") or os.geteuid() != 0,
    reason="loop mounting needs root",
)
class TestFilesystemImagePrivileged:
    """Real mkfs + loop mount; needs root and e2fsprogs."""

    def test_round_trip(self, project_root, scratch_root):
        if shutil.which("mkfs.ext3") is None:
            pytest.skip("mkfs.ext3 not available")
        settings = HarnessSettings(
            PROJECT_ROOT=str(project_root),
            SCRATCH_ROOT=str(scratch_root),
            PRIVILEGE_PREFIX="",
        )
        manager = ScratchspaceManager(settings)
        with manager.scratch_space() as scratch:
            image = StorageImage(
                kind=ImageKind.FILESYSTEM,
                fixtures=default_fixtures(),
                capacity=1024 * 1024,
            )
            try:
                path = ImageAssembler(settings).assemble(image, scratch)
            except AssemblyError as e:
                if "Mounting" in e.message:
                    pytest.skip(f"loop devices unavailable: {e.diagnostics}")
                raise

            check = scratch.path("check")
            check.mkdir()
            subprocess.run(["mount", "-o", "loop,ro", str(path), str(check)], check=True)
            try:
                assert (check / "lorem.txt").read_bytes() == LOREM_IPSUM.encode("ascii")
            finally:
                subprocess.run(["umount", str(check)], check=True)
