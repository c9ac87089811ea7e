"""
Process — run one blocking external command and capture its outcome.

Timeouts and a missing executable are folded into the result with
``exit_code == -1`` instead of raising, so callers decide what a failure
means for their stage.
"""
from __future__ import annotations

import logging
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Outcome of a single external command."""

    command: List[str]
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def command_str(self) -> str:
        return " ".join(self.command)

    @property
    def diagnostics(self) -> str:
        """Collaborator output, stderr first, exactly as captured."""
        parts = [p for p in (self.stderr, self.stdout) if p]
        return "\n".join(parts)


CommandRunner = Callable[..., CommandResult]


def run_command(
    cmd: List[str],
    cwd: Optional[Path] = None,
    timeout: Optional[int] = None,
) -> CommandResult:
    """Execute *cmd* and return a CommandResult (never raises for tool failures)."""
    cmd = [str(c) for c in cmd]
    logger.debug("exec: %s", " ".join(cmd))

    t0 = time.monotonic()
    try:
        result = subprocess.run(
            cmd,
            cwd=str(cwd) if cwd else None,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
        duration = int((time.monotonic() - t0) * 1000)
        return CommandResult(
            command=cmd,
            exit_code=result.returncode,
            stdout=result.stdout,
            stderr=result.stderr,
            duration_ms=duration,
        )
    except subprocess.TimeoutExpired:
        duration = int((time.monotonic() - t0) * 1000)
        return CommandResult(
            command=cmd,
            exit_code=-1,
            stderr=f"TIMEOUT after {timeout}s",
            duration_ms=duration,
            timed_out=True,
        )
    except OSError as e:
        duration = int((time.monotonic() - t0) * 1000)
        return CommandResult(
            command=cmd,
            exit_code=-1,
            stderr=str(e),
            duration_ms=duration,
        )


@dataclass
class CommandLog:
    """Ordered record of every command a stage ran."""

    results: List[CommandResult] = field(default_factory=list)

    def record(self, result: CommandResult) -> CommandResult:
        self.results.append(result)
        if result.ok:
            if result.diagnostics:
                logger.debug("%s\n%s", result.command_str, result.diagnostics)
        else:
            logger.error(
                "command failed (exit %d): %s", result.exit_code, result.command_str
            )
            if result.diagnostics:
                logger.error("%s", result.diagnostics)
        return result

    def clear(self) -> None:
        self.results.clear()
