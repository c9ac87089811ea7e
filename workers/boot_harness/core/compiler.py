"""
Compiler — build one cross-compiled unit with cargo.

Output lands in cargo's own target-triple-keyed directory so later stages
(and later runs) find it at a stable path.  A failed build never yields a
path: the caller gets a CompileError instead.

Extra link inputs go to the final rustc invocation only (``cargo rustc --
-Clink-arg=...``), on top of whatever rustflags the project configures.
Their paths change with their content, so cargo relinks when they do.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

from elftools.common.exceptions import ELFError

from boot_harness.core.elf_reader import read_elf
from boot_harness.core.errors import CompileError
from boot_harness.core.process import CommandLog, CommandRunner, run_command
from boot_harness.policy.settings import HarnessSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BuildTarget:
    """One cross-compiled unit."""

    package: str
    binary: str
    target_triple: str
    profile: str = "release"

    @property
    def profile_dir(self) -> str:
        # cargo names the "dev" profile's output directory "debug"
        return "debug" if self.profile == "dev" else self.profile

    def output_path(self, target_dir: Path) -> Path:
        return target_dir / self.target_triple / self.profile_dir / self.binary

    def cargo_args(self) -> list:
        if self.profile == "release":
            profile_args = ["--release"]
        elif self.profile == "dev":
            profile_args = []
        else:
            profile_args = ["--profile", self.profile]
        return profile_args + [
            "-p", self.package,
            "--bin", self.binary,
            "--target", self.target_triple,
        ]


class ArtifactCompiler:
    """Runs cargo for a BuildTarget and validates the result."""

    def __init__(
        self,
        settings: HarnessSettings,
        runner: CommandRunner = run_command,
        log: Optional[CommandLog] = None,
    ):
        self.settings = settings
        self.runner = runner
        self.log = log or CommandLog()

    def target(self, package: str, binary: str) -> BuildTarget:
        return BuildTarget(
            package=package,
            binary=binary,
            target_triple=self.settings.TARGET_TRIPLE,
            profile=self.settings.BUILD_PROFILE,
        )

    def command(self, target: BuildTarget, link_objects: Sequence[Path] = ()) -> List[str]:
        if not link_objects:
            return [self.settings.CARGO, "build"] + target.cargo_args()
        link_args = [f"-Clink-arg={obj}" for obj in link_objects]
        return [self.settings.CARGO, "rustc"] + target.cargo_args() + ["--"] + link_args

    def compile(
        self,
        target: BuildTarget,
        link_objects: Sequence[Path] = (),
    ) -> Path:
        """
        Build *target*, linking any *link_objects* into it.

        Returns the path of the compiled binary.

        Raises
        ------
        CompileError
            If cargo exits non-zero, times out, or leaves no ELF at the
            expected output path.
        """
        cmd = self.command(target, link_objects)
        logger.info("Compiling %s (%s)", target.binary, target.target_triple)

        result = self.log.record(self.runner(
            cmd,
            cwd=self.settings.project_root,
            timeout=self.settings.COMMAND_TIMEOUT,
        ))
        if not result.ok:
            raise CompileError(
                f"cargo {cmd[1]} of {target.package}/{target.binary} failed "
                f"(exit {result.exit_code})",
                diagnostics=result.diagnostics,
            )

        output = target.output_path(self.settings.target_dir)
        if not output.is_file():
            raise CompileError(
                f"cargo reported success but {output} does not exist",
                diagnostics=result.diagnostics,
            )
        try:
            read_elf(str(output))
        except ELFError as e:
            raise CompileError(f"{output} is not an ELF binary: {e}") from e

        logger.info("Built %s", output)
        return output
