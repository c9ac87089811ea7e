"""
Image assembler — build the storage image attached to the guest.

Two kinds:

  filesystem  zero-filled file → mkfs → loop mount → write fixtures → unmount
  raw         fixture bytes written from offset 0, no structure at all

The image file always lives in the run's scratch space.  A filesystem image
is only returned once it is unmounted again; the emulator must never open a
file that is still mounted.
"""
from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Dict, Iterator, Optional

from boot_harness.core.errors import AssemblyError
from boot_harness.core.process import CommandLog, CommandRunner, run_command
from boot_harness.core.scratch import ScratchSpace
from boot_harness.policy.config import ImageKind
from boot_harness.policy.settings import HarnessSettings

logger = logging.getLogger(__name__)

FS_IMAGE_NAME = "fs.bin"
RAW_IMAGE_NAME = "raw.bin"


@dataclass(frozen=True)
class FilesystemParams:
    """mkfs parameters; uid/gid default to the invoking user."""

    fs_type: str = "ext3"
    inode_size: int = 128
    uid: int = field(default_factory=os.getuid)
    gid: int = field(default_factory=os.getgid)


@dataclass
class StorageImage:
    """What to build.  ``fixtures`` maps image-relative paths to contents."""

    kind: ImageKind
    fixtures: Dict[str, bytes]
    capacity: Optional[int] = None
    fs: Optional[FilesystemParams] = None


def _fixture_target(root: Path, rel: str) -> Path:
    p = PurePosixPath(rel)
    if not rel or p.is_absolute() or ".." in p.parts:
        raise AssemblyError(f"Fixture path must be relative and stay inside the image: {rel!r}")
    return root.joinpath(*p.parts)


def verify_raw_image(path: Path, fixture: bytes) -> bool:
    """True when the first ``len(fixture)`` bytes of *path* equal *fixture*."""
    with open(path, "rb") as f:
        return f.read(len(fixture)) == fixture


class ImageAssembler:
    """Builds StorageImages inside a scratch space."""

    def __init__(
        self,
        settings: HarnessSettings,
        runner: CommandRunner = run_command,
        log: Optional[CommandLog] = None,
    ):
        self.settings = settings
        self.runner = runner
        self.log = log or CommandLog()

    def assemble(self, image: StorageImage, scratch: ScratchSpace) -> Path:
        """Build *image* in *scratch* and return the finished file's path."""
        if image.kind == ImageKind.FILESYSTEM:
            return self._assemble_filesystem(image, scratch)
        if image.kind == ImageKind.RAW:
            return self._assemble_raw(image, scratch)
        raise AssemblyError(f"Nothing to assemble for image kind {image.kind.value!r}")

    # -----------------------------------------------------------------
    # Raw
    # -----------------------------------------------------------------

    def _assemble_raw(self, image: StorageImage, scratch: ScratchSpace) -> Path:
        if len(image.fixtures) != 1:
            raise AssemblyError(
                f"A raw image holds exactly one fixture, got {len(image.fixtures)}"
            )
        content = next(iter(image.fixtures.values()))
        capacity = image.capacity if image.capacity is not None else len(content)
        if capacity < len(content):
            raise AssemblyError(
                f"Raw image capacity {capacity} is smaller than its "
                f"{len(content)}-byte fixture"
            )

        path = scratch.path(RAW_IMAGE_NAME)
        try:
            with open(path, "wb") as f:
                f.write(content)
                if capacity > len(content):
                    f.truncate(capacity)
        except OSError as e:
            raise AssemblyError(f"Failed to write raw image {path}: {e}") from e

        logger.info("Raw image %s: %d bytes", path, capacity)
        return path

    # -----------------------------------------------------------------
    # Filesystem
    # -----------------------------------------------------------------

    def _allocate(self, path: Path, capacity: int) -> None:
        try:
            with open(path, "wb") as f:
                f.truncate(capacity)
        except OSError as e:
            raise AssemblyError(f"Failed to allocate {path}: {e}") from e

    def _format(self, path: Path, fs: FilesystemParams) -> None:
        cmd = [
            f"{self.settings.MKFS}.{fs.fs_type}",
            "-F", "-q",
            "-I", str(fs.inode_size),
            "-E", f"root_owner={fs.uid}:{fs.gid}",
            str(path),
        ]
        result = self.log.record(self.runner(cmd, timeout=self.settings.COMMAND_TIMEOUT))
        if not result.ok:
            raise AssemblyError(
                f"Formatting {path} as {fs.fs_type} failed (exit {result.exit_code})",
                diagnostics=result.diagnostics,
            )

    def _unmount(self, mnt: Path) -> None:
        cmd = self.settings.privilege_prefix + [self.settings.UMOUNT, str(mnt)]
        result = self.log.record(self.runner(cmd, timeout=self.settings.COMMAND_TIMEOUT))
        if not result.ok:
            raise AssemblyError(
                f"Unmounting {mnt} failed (exit {result.exit_code})",
                diagnostics=result.diagnostics,
            )

    @contextmanager
    def _mounted(self, image_path: Path, mnt: Path) -> Iterator[Path]:
        """Loop-mount *image_path* on *mnt*; always pair with an unmount."""
        cmd = self.settings.privilege_prefix + [
            self.settings.MOUNT, "-o", "loop,rw", str(image_path), str(mnt),
        ]
        result = self.log.record(self.runner(cmd, timeout=self.settings.COMMAND_TIMEOUT))
        if not result.ok:
            raise AssemblyError(
                f"Mounting {image_path} failed (exit {result.exit_code})",
                diagnostics=result.diagnostics,
            )
        try:
            yield mnt
        except BaseException:
            try:
                self._unmount(mnt)
            except AssemblyError as e:
                logger.error("%s (after an earlier failure)", e)
            raise
        self._unmount(mnt)

    def _assemble_filesystem(self, image: StorageImage, scratch: ScratchSpace) -> Path:
        fs = image.fs or FilesystemParams(
            fs_type=self.settings.FS_TYPE,
            inode_size=self.settings.FS_INODE_SIZE,
        )
        capacity = image.capacity or self.settings.IMAGE_CAPACITY

        # Reject bad fixture paths before anything is mounted.
        for rel in image.fixtures:
            _fixture_target(Path("/"), rel)

        path = scratch.path(FS_IMAGE_NAME)
        self._allocate(path, capacity)
        self._format(path, fs)

        try:
            mnt = scratch.mount_point()
        except OSError as e:
            raise AssemblyError(f"Failed to create mount point in {scratch.root}: {e}") from e
        with self._mounted(path, mnt):
            for rel, content in image.fixtures.items():
                dest = _fixture_target(mnt, rel)
                try:
                    dest.parent.mkdir(parents=True, exist_ok=True)
                    dest.write_bytes(content)
                except OSError as e:
                    raise AssemblyError(f"Failed to write fixture {rel}: {e}") from e
                logger.debug("Wrote fixture %s (%d bytes)", rel, len(content))

        if os.path.ismount(mnt):
            raise AssemblyError(f"{mnt} is still mounted after unmount")

        logger.info(
            "%s image %s: %d bytes, %d fixture(s)",
            fs.fs_type, path, capacity, len(image.fixtures),
        )
        return path
