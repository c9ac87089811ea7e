"""
Emulator launcher — boot the kernel under QEMU with the configured devices.

Exactly one foreground process per session, started with ``--no-reboot``:
a guest halt, crash or host interrupt ends the session for good.

Console modes:
  interactive  QEMU inherits this process's stdin/stdout/stderr.
  capture      the console is piped, logged line by line and saved to a
               file; an optional timeout bounds the session.
"""
from __future__ import annotations

import logging
import os
import selectors
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Union

from boot_harness.core.errors import LaunchError
from boot_harness.policy.config import ConsoleMode
from boot_harness.policy.settings import HarnessSettings

logger = logging.getLogger(__name__)
console_logger = logging.getLogger("boot_harness.console")


def mmio_bus(index: int) -> str:
    """Name of the n-th virtio-mmio bus on the ``virt`` machine."""
    return f"virtio-mmio-bus.{index}"


@dataclass(frozen=True)
class BlockDevice:
    drive_id: str
    backing_file: Path
    bus: str
    format: str = "raw"

    def qemu_args(self) -> List[str]:
        return [
            "-drive", f"id={self.drive_id},file={self.backing_file},format={self.format},if=none",
            "-device", f"virtio-blk-device,drive={self.drive_id},bus={self.bus}",
        ]


@dataclass(frozen=True)
class EntropyDevice:
    bus: str

    def qemu_args(self) -> List[str]:
        return ["-device", f"virtio-rng-device,bus={self.bus}"]


DeviceAttachment = Union[BlockDevice, EntropyDevice]


@dataclass
class EmulatorSession:
    """Everything needed to start one guest."""

    kernel: Path
    devices: List[DeviceAttachment] = field(default_factory=list)
    console: ConsoleMode = ConsoleMode.INTERACTIVE
    machine: str = "virt"
    firmware: str = "default"
    timeout: Optional[int] = None        # capture mode only
    console_log: Optional[Path] = None   # capture mode only


@dataclass
class SessionResult:
    command: List[str]
    exit_code: int
    duration_ms: int
    timed_out: bool = False

    @property
    def halted(self) -> bool:
        return self.exit_code == 0


def normalize_exit(returncode: int) -> int:
    """Map a signal death (negative return code) to the shell's 128+N form."""
    if returncode < 0:
        return 128 - returncode
    return returncode


class EmulatorLauncher:
    """Builds the QEMU command line and supervises the process."""

    def __init__(self, settings: HarnessSettings):
        self.settings = settings

    # -----------------------------------------------------------------
    # Command line
    # -----------------------------------------------------------------

    def validate(self, session: EmulatorSession) -> None:
        if not session.kernel.is_file():
            raise LaunchError(f"Kernel artifact not found: {session.kernel}")

        drive_ids: set = set()
        buses: set = set()
        for dev in session.devices:
            if not dev.bus:
                raise LaunchError(f"Device {dev} has no bus")
            if dev.bus in buses:
                raise LaunchError(f"Bus {dev.bus} is attached twice")
            buses.add(dev.bus)
            if isinstance(dev, BlockDevice):
                if dev.drive_id in drive_ids:
                    raise LaunchError(f"Drive id {dev.drive_id} is used twice")
                drive_ids.add(dev.drive_id)
                if not dev.backing_file.is_file():
                    raise LaunchError(f"Block device backing file not found: {dev.backing_file}")

    def build_command(self, session: EmulatorSession) -> List[str]:
        cmd = [
            self.settings.QEMU,
            "-machine", session.machine,
            "-bios", session.firmware,
            "-nographic",
            "-serial", "mon:stdio",
            "--no-reboot",
        ]
        for dev in session.devices:
            cmd += dev.qemu_args()
        cmd += ["-kernel", str(session.kernel)]
        return cmd

    # -----------------------------------------------------------------
    # Process supervision
    # -----------------------------------------------------------------

    def _stop(self, proc: subprocess.Popen) -> None:
        """Terminate, then kill after the grace period.  Already-exited is fine."""
        if proc.poll() is not None:
            return
        logger.warning("Stopping emulator (pid %d)", proc.pid)
        try:
            proc.terminate()
            proc.wait(timeout=self.settings.SHUTDOWN_GRACE)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait()
        except ProcessLookupError:
            pass

    def _pump_console(self, proc: subprocess.Popen, session: EmulatorSession) -> bool:
        """Stream piped console output until EOF or timeout.  Returns timed_out."""
        deadline = time.monotonic() + session.timeout if session.timeout else None
        fd = proc.stdout.fileno()
        pending = b""
        sink = open(session.console_log, "ab") if session.console_log else None
        try:
            with selectors.DefaultSelector() as sel:
                sel.register(fd, selectors.EVENT_READ)
                while True:
                    remaining = None
                    if deadline is not None:
                        remaining = deadline - time.monotonic()
                        if remaining <= 0:
                            logger.warning("Boot timed out after %ss", session.timeout)
                            return True
                    if not sel.select(timeout=remaining):
                        continue
                    chunk = os.read(fd, 4096)
                    if not chunk:
                        break
                    if sink:
                        sink.write(chunk)
                    pending += chunk
                    *lines, pending = pending.split(b"\n")
                    for line in lines:
                        console_logger.info("%s", line.decode("utf-8", "replace").rstrip("\r"))
            if pending:
                console_logger.info("%s", pending.decode("utf-8", "replace").rstrip("\r"))
        finally:
            if sink:
                sink.close()
        return False

    def launch(self, session: EmulatorSession) -> SessionResult:
        """
        Run the guest to completion and return its exit status.

        Raises
        ------
        LaunchError
            If validation fails or QEMU cannot be started.
        """
        self.validate(session)
        cmd = self.build_command(session)
        logger.info("Booting: %s", " ".join(cmd))

        capture = session.console == ConsoleMode.CAPTURE
        t0 = time.monotonic()
        try:
            if capture:
                proc = subprocess.Popen(
                    cmd,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                )
            else:
                proc = subprocess.Popen(cmd)
        except OSError as e:
            raise LaunchError(f"Failed to start {cmd[0]}: {e}") from e

        timed_out = False
        try:
            if capture:
                timed_out = self._pump_console(proc, session)
                if timed_out:
                    self._stop(proc)
            returncode = proc.wait()
        except BaseException:
            self._stop(proc)
            raise
        finally:
            if proc.stdout:
                proc.stdout.close()

        exit_code = normalize_exit(returncode)
        duration = int((time.monotonic() - t0) * 1000)
        logger.info("Emulator exited with status %d", exit_code)
        return SessionResult(
            command=cmd,
            exit_code=exit_code,
            duration_ms=duration,
            timed_out=timed_out,
        )
