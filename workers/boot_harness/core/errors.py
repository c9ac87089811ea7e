"""
Errors — the harness failure taxonomy.

Every stage failure is a HarnessError subclass.  The collaborator's own
output travels unchanged in ``diagnostics`` so it can be surfaced verbatim.
"""
from __future__ import annotations

import signal
from typing import Optional


class HarnessError(Exception):
    """Base class for all stage failures."""

    kind = "HARNESS_ERROR"

    def __init__(self, message: str, diagnostics: str = ""):
        super().__init__(message)
        self.message = message
        self.diagnostics = diagnostics


class CompileError(HarnessError):
    """The toolchain exited non-zero or produced no usable artifact."""

    kind = "COMPILE_ERROR"


class EmbedError(HarnessError):
    """Missing, empty or ambiguous input to the flatten/repack stage."""

    kind = "EMBED_ERROR"


class AssemblyError(HarnessError):
    """Format, mount, write or unmount failure while building an image."""

    kind = "ASSEMBLY_ERROR"


class LaunchError(HarnessError):
    """Missing kernel artifact or invalid device attachment."""

    kind = "LAUNCH_ERROR"


class CleanupError(HarnessError):
    """Scratch space could not be created or removed safely."""

    kind = "CLEANUP_ERROR"


class InterruptedRunError(HarnessError):
    """An external signal arrived while a stage was running."""

    kind = "INTERRUPTED"

    def __init__(self, signum: int, message: Optional[str] = None):
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        super().__init__(message or f"Interrupted by {name}")
        self.signum = signum

    @property
    def exit_code(self) -> int:
        return 128 + self.signum
