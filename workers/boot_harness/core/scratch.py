"""
Scratch space — one ephemeral, exclusively owned directory per run.

``acquire`` relies on ``tempfile.mkdtemp``, which creates the directory
atomically under a randomized name, so concurrent runs never share one.
``release`` removes the tree but refuses to step outside the configured
root guard or to descend into anything that is still mounted.
"""
from __future__ import annotations

import logging
import os
import shutil
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterator, List, Optional

from boot_harness.core.errors import CleanupError
from boot_harness.core.process import CommandLog, CommandRunner, run_command
from boot_harness.policy.settings import HarnessSettings

logger = logging.getLogger(__name__)


@dataclass
class ScratchSpace:
    """Root directory of one run plus the mount points created inside it."""

    root: Path
    mount_points: List[Path] = field(default_factory=list)

    def path(self, name: str) -> Path:
        return self.root / name

    def mount_point(self, name: str = "mnt") -> Path:
        """Create and register a mount point directory inside the scratch root."""
        mnt = self.root / name
        mnt.mkdir(exist_ok=True)
        if mnt not in self.mount_points:
            self.mount_points.append(mnt)
        return mnt


def _find_mounts(root: Path) -> List[Path]:
    """Directories under *root* (inclusive) that are mount points."""
    mounts: List[Path] = []
    if os.path.ismount(root):
        mounts.append(root)
    for dirpath, dirnames, _ in os.walk(root):
        for d in list(dirnames):
            full = Path(dirpath) / d
            if os.path.ismount(full):
                mounts.append(full)
                dirnames.remove(d)
    return mounts


class ScratchspaceManager:
    """Allocates and destroys scratch spaces under a root guard."""

    def __init__(
        self,
        settings: HarnessSettings,
        runner: CommandRunner = run_command,
        log: Optional[CommandLog] = None,
    ):
        self.settings = settings
        self.runner = runner
        self.log = log or CommandLog()
        self.root_guard = Path(settings.SCRATCH_ROOT).resolve()

    def acquire(self) -> ScratchSpace:
        try:
            self.root_guard.mkdir(parents=True, exist_ok=True)
            root = Path(tempfile.mkdtemp(
                prefix=self.settings.SCRATCH_PREFIX,
                dir=str(self.root_guard),
            ))
        except OSError as e:
            raise CleanupError(f"Failed to create scratch space under {self.root_guard}: {e}") from e
        logger.debug("Acquired scratch space %s", root)
        return ScratchSpace(root=root)

    def _check_guard(self, root: Path) -> None:
        resolved = root.resolve()
        if resolved == self.root_guard or self.root_guard not in resolved.parents:
            raise CleanupError(
                f"Refusing to remove {root}: not strictly inside {self.root_guard}"
            )

    def _unmount_leftovers(self, scratch: ScratchSpace) -> None:
        # An image stage that failed half way may leave its mount behind.
        for mnt in reversed(scratch.mount_points):
            if not os.path.ismount(mnt):
                continue
            logger.warning("Unmounting leftover mount %s", mnt)
            cmd = self.settings.privilege_prefix + [self.settings.UMOUNT, str(mnt)]
            self.log.record(self.runner(cmd, timeout=self.settings.COMMAND_TIMEOUT))

    def release(self, scratch: ScratchSpace) -> None:
        """
        Remove the scratch tree.

        Raises
        ------
        CleanupError
            If the root lies outside the guard or a mount is still present.
        """
        root = scratch.root
        if not root.exists():
            logger.debug("Scratch space %s already gone", root)
            return
        self._check_guard(root)
        self._unmount_leftovers(scratch)

        mounts = _find_mounts(root)
        if mounts:
            raise CleanupError(
                f"Refusing to remove {root}: still mounted: "
                + ", ".join(str(m) for m in mounts)
            )
        try:
            shutil.rmtree(root)
        except OSError as e:
            raise CleanupError(f"Failed to remove {root}: {e}") from e
        logger.debug("Released scratch space %s", root)

    @contextmanager
    def scratch_space(
        self,
        release: Optional[Callable[[ScratchSpace], None]] = None,
    ) -> Iterator[ScratchSpace]:
        """
        Acquire a scratch space that is released on every exit path.

        *release* replaces ``self.release``, e.g. to record the outcome.
        """
        release = release or self.release
        scratch = self.acquire()
        try:
            yield scratch
        except BaseException:
            # The triggering error wins; a cleanup failure is only logged.
            try:
                release(scratch)
            except CleanupError as e:
                logger.error("Scratch cleanup failed: %s", e)
            raise
        release(scratch)
