"""
Harness settings — tool locations, build target names and host policy.

Values come from the environment (prefix ``BOOT_HARNESS_``) or a ``.env``
file in the working directory.
"""
import shlex
import tempfile
from pathlib import Path
from typing import List, Optional

from pydantic_settings import BaseSettings


class HarnessSettings(BaseSettings):
    """Harness settings"""

    # Project layout
    PROJECT_ROOT: str = "."
    TARGET_DIR: Optional[str] = None  # defaults to <PROJECT_ROOT>/target

    # Build targets
    TARGET_TRIPLE: str = "riscv32imac-unknown-none-elf"
    BUILD_PROFILE: str = "release"
    KERNEL_PACKAGE: str = "rust-os"
    KERNEL_BINARY: str = "rust-os"
    USER_PACKAGE: str = "shell"
    USER_BINARY: str = "shell"

    # External tools
    CARGO: str = "cargo"
    OBJCOPY: str = "llvm-objcopy"
    MKFS: str = "mkfs"
    MOUNT: str = "mount"
    UMOUNT: str = "umount"
    PRIVILEGE_PREFIX: str = "sudo"  # prepended to mount/umount; empty to disable
    QEMU: str = "qemu-system-riscv32"

    # Emulated machine
    MACHINE: str = "virt"
    FIRMWARE: str = "default"

    # Storage image defaults
    FS_TYPE: str = "ext3"
    FS_INODE_SIZE: int = 128
    IMAGE_CAPACITY: int = 1024 * 1024
    FIXTURE_PATH: str = "lorem.txt"

    # Scratch space
    SCRATCH_ROOT: str = tempfile.gettempdir()
    SCRATCH_PREFIX: str = "rust-os."

    # Timeouts
    COMMAND_TIMEOUT: int = 600  # seconds, per external command
    SHUTDOWN_GRACE: float = 5.0  # seconds between terminate and kill

    @property
    def project_root(self) -> Path:
        return Path(self.PROJECT_ROOT).resolve()

    @property
    def target_dir(self) -> Path:
        if self.TARGET_DIR:
            return Path(self.TARGET_DIR).resolve()
        return self.project_root / "target"

    @property
    def privilege_prefix(self) -> List[str]:
        """Privilege command split into argv words (``[]`` when disabled)."""
        return shlex.split(self.PRIVILEGE_PREFIX)

    @property
    def receipt_dir(self) -> Path:
        return self.target_dir / "boot_harness"

    class Config:
        env_prefix = "BOOT_HARNESS_"
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


settings = HarnessSettings()
