"""
Runner — the harness driver: compile → embed? → link → image? → boot.

Every stage returns a tagged StageOutcome; the first failure short-circuits
straight to cleanup.  The scratch space is released on every exit path
(success, stage failure, signal), and cleanup is the only way to DONE.

Exit status: the emulator's own status when it was launched, otherwise
HARNESS_FAILURE_EXIT, or 128+N when signal N interrupted the run.
"""
from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
import time
import uuid
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from pydantic import ValidationError

from boot_harness.core.compiler import ArtifactCompiler
from boot_harness.core.embedder import BinaryEmbedder
from boot_harness.core.emulator import (
    BlockDevice,
    DeviceAttachment,
    EmulatorLauncher,
    EmulatorSession,
    EntropyDevice,
    SessionResult,
    mmio_bus,
)
from boot_harness.core.errors import HarnessError, InterruptedRunError, LaunchError
from boot_harness.core.fixtures import default_fixtures
from boot_harness.core.image import FilesystemParams, ImageAssembler, StorageImage
from boot_harness.core.process import CommandLog, CommandRunner, run_command
from boot_harness.core.scratch import ScratchSpace, ScratchspaceManager
from boot_harness.io.schema import (
    CommandRecord,
    RunReceipt,
    RunState,
    StageName,
    StageRecord,
    StageStatus,
    now_iso,
)
from boot_harness.io.writer import write_receipt
from boot_harness.policy.config import ConsoleMode, ImageKind, PipelineConfig, Variant
from boot_harness.policy.settings import HarnessSettings
from boot_harness.policy.settings import settings as default_settings

logger = logging.getLogger(__name__)

HARNESS_FAILURE_EXIT = 1
CONSOLE_LOG_NAME = "console.log"


# ── Signal handling ──────────────────────────────────────────────────────────

_INTERRUPT_SIGNALS = tuple(
    getattr(signal, name)
    for name in ("SIGINT", "SIGTERM", "SIGHUP")
    if hasattr(signal, name)
)


@contextmanager
def signals_as_exceptions() -> Iterator[None]:
    """Turn SIGINT/SIGTERM/SIGHUP into InterruptedRunError while active."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _raise(signum, frame):
        raise InterruptedRunError(signum)

    previous = {sig: signal.signal(sig, _raise) for sig in _INTERRUPT_SIGNALS}
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


@contextmanager
def signals_deferred() -> Iterator[None]:
    """Hold SIGINT/SIGTERM/SIGHUP until the block is done; they fire on exit."""
    if (
        not hasattr(signal, "pthread_sigmask")
        or threading.current_thread() is not threading.main_thread()
    ):
        yield
        return

    previous = signal.pthread_sigmask(signal.SIG_BLOCK, _INTERRUPT_SIGNALS)
    try:
        yield
    finally:
        signal.pthread_sigmask(signal.SIG_SETMASK, previous)


# ── Stage outcome ────────────────────────────────────────────────────────────

@dataclass
class StageOutcome:
    """Tagged result of one stage."""

    status: StageStatus
    value: Any = None
    error: Optional[HarnessError] = None

    @property
    def ok(self) -> bool:
        return self.status == StageStatus.SUCCESS


# ── Driver ───────────────────────────────────────────────────────────────────

class HarnessDriver:
    """Sequences one harness run according to a PipelineConfig."""

    def __init__(
        self,
        settings: HarnessSettings,
        config: PipelineConfig,
        runner: CommandRunner = run_command,
        launcher: Optional[EmulatorLauncher] = None,
        fixtures: Optional[Dict[str, bytes]] = None,
    ):
        self.settings = settings
        self.config = config
        self.fixtures = fixtures if fixtures is not None else default_fixtures(settings.FIXTURE_PATH)

        self.log = CommandLog()
        self.scratch = ScratchspaceManager(settings, runner, self.log)
        self.compiler = ArtifactCompiler(settings, runner, self.log)
        self.embedder = BinaryEmbedder(settings, runner, self.log)
        self.assembler = ImageAssembler(settings, runner, self.log)
        self.launcher = launcher or EmulatorLauncher(settings)

        self.receipt = RunReceipt(
            run_id=uuid.uuid4().hex,
            config=config.model_dump(mode="json"),
        )

    # -----------------------------------------------------------------
    # Bookkeeping
    # -----------------------------------------------------------------

    @property
    def state(self) -> RunState:
        return self.receipt.final_state

    def _enter(self, state: RunState) -> None:
        logger.debug("state %s -> %s", self.state.value, state.value)
        self.receipt.states.append(state)

    def _commands(self) -> List[CommandRecord]:
        return [
            CommandRecord(
                command=r.command_str,
                exit_code=r.exit_code,
                duration_ms=r.duration_ms,
                timed_out=r.timed_out,
            )
            for r in self.log.results
        ]

    def _execute(
        self, name: StageName, fn: Callable[..., Any], *args: Any
    ) -> Tuple[StageRecord, StageOutcome]:
        self.log.clear()
        t0 = time.monotonic()
        try:
            value = fn(*args)
            record = StageRecord(stage=name, status=StageStatus.SUCCESS)
            outcome = StageOutcome(StageStatus.SUCCESS, value=value)
            if isinstance(value, Path):
                record.outputs["path"] = str(value)
        except HarnessError as e:
            record = StageRecord(
                stage=name,
                status=StageStatus.FAILED,
                error_kind=e.kind,
                error_message=e.message,
                diagnostics=e.diagnostics or None,
            )
            outcome = StageOutcome(StageStatus.FAILED, error=e)
        record.duration_ms = int((time.monotonic() - t0) * 1000)
        record.commands = self._commands()
        return record, outcome

    def _stage(self, name: StageName, fn: Callable[..., Any], *args: Any) -> StageOutcome:
        """Run one stage; a failure comes back as a FAILED outcome."""
        record, outcome = self._execute(name, fn, *args)
        self.receipt.stages.append(record)
        error = outcome.error
        if isinstance(error, InterruptedRunError):
            raise error
        if error is not None:
            logger.error("Stage %s failed: %s", name.value, error.message)
            if error.diagnostics:
                logger.error("%s", error.diagnostics)
        return outcome

    def _skip(self, name: StageName) -> None:
        self.receipt.stages.append(StageRecord(stage=name, status=StageStatus.SKIPPED))

    # -----------------------------------------------------------------
    # Stage inputs
    # -----------------------------------------------------------------

    def storage_image(self) -> StorageImage:
        fs = None
        if self.config.image_kind == ImageKind.FILESYSTEM:
            fs = FilesystemParams(
                fs_type=self.settings.FS_TYPE,
                inode_size=self.settings.FS_INODE_SIZE,
            )
        return StorageImage(
            kind=self.config.image_kind,
            fixtures=self.fixtures,
            capacity=self.config.image_capacity,
            fs=fs,
        )

    def devices(self, image_path: Optional[Path]) -> List[DeviceAttachment]:
        devices: List[DeviceAttachment] = []
        if image_path is not None:
            devices.append(BlockDevice(
                drive_id="drive0",
                backing_file=image_path,
                bus=mmio_bus(len(devices)),
            ))
        if self.config.attach_entropy:
            devices.append(EntropyDevice(bus=mmio_bus(len(devices))))
        return devices

    def session(self, kernel: Path, devices: List[DeviceAttachment]) -> EmulatorSession:
        console_log = None
        if self.config.console_mode == ConsoleMode.CAPTURE:
            console_log = self.settings.receipt_dir / CONSOLE_LOG_NAME
            try:
                self.settings.receipt_dir.mkdir(parents=True, exist_ok=True)
                console_log.unlink(missing_ok=True)
            except OSError as e:
                raise LaunchError(f"Cannot prepare console log {console_log}: {e}") from e
        return EmulatorSession(
            kernel=kernel,
            devices=devices,
            console=self.config.console_mode,
            machine=self.settings.MACHINE,
            firmware=self.settings.FIRMWARE,
            timeout=self.config.boot_timeout,
            console_log=console_log,
        )

    def boot(self, kernel: Path, image_path: Optional[Path]) -> SessionResult:
        return self.launcher.launch(self.session(kernel, self.devices(image_path)))

    # -----------------------------------------------------------------
    # Pipeline
    # -----------------------------------------------------------------

    def _pipeline(self, scratch: ScratchSpace) -> int:
        link_objects: List[Path] = []

        if self.config.with_embedded_program:
            self._enter(RunState.COMPILING)
            program = self.compiler.target(self.settings.USER_PACKAGE, self.settings.USER_BINARY)
            outcome = self._stage(StageName.COMPILE_PROGRAM, self.compiler.compile, program)
            if not outcome.ok:
                return HARNESS_FAILURE_EXIT

            self._enter(RunState.EMBEDDING)
            outcome = self._stage(StageName.EMBED, self.embedder.embed, outcome.value)
            if not outcome.ok:
                return HARNESS_FAILURE_EXIT
            link_objects.append(outcome.value.object_path)
            self.receipt.stage(StageName.EMBED).outputs["object"] = str(outcome.value.object_path)
            self.receipt.embedded_symbols = outcome.value.symbols
        else:
            self._skip(StageName.COMPILE_PROGRAM)
            self._skip(StageName.EMBED)

        self._enter(RunState.LINKING_KERNEL)
        kernel_target = self.compiler.target(self.settings.KERNEL_PACKAGE, self.settings.KERNEL_BINARY)
        outcome = self._stage(StageName.LINK_KERNEL, self.compiler.compile, kernel_target, link_objects)
        if not outcome.ok:
            return HARNESS_FAILURE_EXIT
        kernel: Path = outcome.value

        image_path: Optional[Path] = None
        if self.config.has_image:
            self._enter(RunState.ASSEMBLING_IMAGE)
            outcome = self._stage(StageName.ASSEMBLE_IMAGE, self.assembler.assemble, self.storage_image(), scratch)
            if not outcome.ok:
                return HARNESS_FAILURE_EXIT
            image_path = outcome.value
        else:
            self._skip(StageName.ASSEMBLE_IMAGE)

        self._enter(RunState.BOOTING)
        outcome = self._stage(StageName.BOOT, self.boot, kernel, image_path)
        if not outcome.ok:
            return HARNESS_FAILURE_EXIT

        result: SessionResult = outcome.value
        boot = self.receipt.stage(StageName.BOOT)
        boot.commands.append(CommandRecord(
            command=" ".join(result.command),
            exit_code=result.exit_code,
            duration_ms=result.duration_ms,
            timed_out=result.timed_out,
        ))
        self._enter(RunState.HALTED if result.halted else RunState.CRASHED)
        return result.exit_code

    def _cleanup(self, scratch: Optional[ScratchSpace]) -> None:
        self._enter(RunState.CLEANUP)
        if scratch is None:
            self.receipt.cleanup = StageRecord(stage=StageName.CLEANUP, status=StageStatus.SKIPPED)
            return
        # Reported on its own; never replaces the run's outcome.
        record, outcome = self._execute(StageName.CLEANUP, self.scratch.release, scratch)
        self.receipt.cleanup = record
        if not outcome.ok:
            logger.error("Cleanup failed: %s", outcome.error.message)

    def _finish(self, exit_code: int) -> None:
        self.receipt.exit_code = exit_code
        self.receipt.finished_at = now_iso()
        self._enter(RunState.DONE)
        try:
            path = write_receipt(self.receipt, self.settings.receipt_dir)
            logger.info("Receipt saved: %s", path)
        except OSError as e:
            logger.error("Could not write run receipt: %s", e)

    def run(self) -> int:
        """Execute the configured pipeline and return the harness exit status."""
        exit_code = HARNESS_FAILURE_EXIT
        try:
            # Handlers are restored before the scratch space is released.
            with ExitStack() as stack, signals_as_exceptions():
                # A signal during acquisition fires once the space is on the stack.
                with signals_deferred():
                    scratch = stack.enter_context(self.scratch.scratch_space(release=self._cleanup))
                    self.receipt.scratch_root = str(scratch.root)
                exit_code = self._pipeline(scratch)
        except InterruptedRunError as e:
            logger.error("%s; cleaning up", e.message)
            exit_code = e.exit_code
        except HarnessError as e:
            logger.error("Could not start the run: %s", e.message)
        finally:
            if self.receipt.cleanup is None:
                self._cleanup(None)
            self._finish(exit_code)
        return exit_code


# ── CLI ──────────────────────────────────────────────────────────────────────

def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="boot_harness: build rust-os and boot it under QEMU",
    )
    parser.add_argument(
        "--variant",
        choices=[v.value for v in Variant],
        default=Variant.KERNEL.value,
        help="Preset to start from (default: kernel)",
    )
    parser.add_argument(
        "--embed",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Compile the user program and link it into the kernel",
    )
    parser.add_argument(
        "--image-kind",
        choices=[k.value for k in ImageKind],
        default=None,
        help="Storage image to attach",
    )
    parser.add_argument(
        "--image-capacity",
        type=int,
        default=None,
        help="Storage image size in bytes",
    )
    parser.add_argument(
        "--entropy",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Attach a virtio entropy device",
    )
    parser.add_argument(
        "--console",
        choices=[m.value for m in ConsoleMode],
        default=None,
        help="Console mode (default: interactive)",
    )
    parser.add_argument(
        "--timeout",
        type=int,
        default=None,
        help="Boot timeout in seconds (capture console only)",
    )
    parser.add_argument(
        "--project-root",
        type=Path,
        default=None,
        help="Cargo workspace to build (default: BOOT_HARNESS_PROJECT_ROOT or .)",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    return parser


def config_from_args(args: argparse.Namespace) -> PipelineConfig:
    """Apply explicit flags on top of the chosen preset."""
    values = PipelineConfig.for_variant(Variant(args.variant)).model_dump()
    overrides = {
        "with_embedded_program": args.embed,
        "image_kind": args.image_kind,
        "image_capacity": args.image_capacity,
        "attach_entropy": args.entropy,
        "console_mode": args.console,
        "boot_timeout": args.timeout,
    }
    values.update({k: v for k, v in overrides.items() if v is not None})
    # A preset capacity belongs to the preset image kind.
    if args.image_kind is not None and args.image_capacity is None:
        values["image_capacity"] = None
    return PipelineConfig(**values)


def run_pipeline(config: PipelineConfig, settings: Optional[HarnessSettings] = None) -> int:
    driver = HarnessDriver(settings or default_settings, config)
    return driver.run()


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    try:
        config = config_from_args(args)
    except ValidationError as e:
        parser.error(str(e))

    settings = default_settings
    if args.project_root is not None:
        settings = HarnessSettings(PROJECT_ROOT=str(args.project_root))
    return run_pipeline(config, settings)


def _run_variant(variant: Variant) -> None:
    _configure_logging(verbose=False)
    sys.exit(run_pipeline(PipelineConfig.for_variant(variant)))


def main_kernel() -> None:
    _run_variant(Variant.KERNEL)


def main_kernel_program() -> None:
    _run_variant(Variant.KERNEL_PROGRAM)


def main_kernel_fs() -> None:
    _run_variant(Variant.KERNEL_FS)


def main_kernel_raw() -> None:
    _run_variant(Variant.KERNEL_RAW)


if __name__ == "__main__":
    sys.exit(main())
