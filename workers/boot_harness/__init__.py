"""
boot_harness — build-and-boot integration harness for rust-os.

Compile the kernel (and optionally a user program to embed), optionally
assemble a test storage image, then boot the result under QEMU.
Scratch state is confined to one directory per run and always removed.
"""

__version__ = "0.1.0"
HARNESS_VERSION = "v0"
PACKAGE_NAME = "boot_harness"
SCHEMA_VERSION = "0.1"
