"""
Embedder — turn a compiled user program into a linkable blob.

Two steps, both delegated to objcopy:

  1. Flatten: ``objcopy -O binary`` with every zero-initialized section
     forced to ``alloc,load,contents`` so the flat image covers the full runtime
     footprint and the kernel never has to zero-fill after copying it.
  2. Repack: ``objcopy -I binary`` wraps the flat bytes in a relocatable
     object for the input's instruction set and byte order.  objcopy names
     the boundary symbols after the input path, so it is always invoked from
     the project root with a project-relative path.  The object file name
carries a digest of the flat bytes, so a changed program is a changed link
input and the kernel is relinked.

Both outputs are checked with pyelftools before they are handed on.
"""
from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from elftools.common.exceptions import ELFError

from boot_harness.core.elf_reader import ElfMeta, read_elf, read_symbols
from boot_harness.core.errors import EmbedError
from boot_harness.core.process import CommandLog, CommandRunner, run_command
from boot_harness.policy.settings import HarnessSettings

logger = logging.getLogger(__name__)

# (machine, class, byte order) -> (objcopy output target, binary architecture)
REPACK_TARGETS: Dict[Tuple[str, int, str], Tuple[str, str]] = {
    ("EM_RISCV", 32, "little"): ("elf32-littleriscv", "riscv"),
    ("EM_RISCV", 64, "little"): ("elf64-littleriscv", "riscv"),
    ("EM_X86_64", 64, "little"): ("elf64-x86-64", "i386:x86-64"),
    ("EM_386", 32, "little"): ("elf32-i386", "i386"),
    ("EM_AARCH64", 64, "little"): ("elf64-littleaarch64", "aarch64"),
    ("EM_ARM", 32, "little"): ("elf32-littlearm", "arm"),
}


def symbol_prefix(rel_path: str) -> str:
    """objcopy's naming rule: ``_binary_`` + path with non-alphanumerics as ``_``."""
    mangled = "".join(c if c.isascii() and c.isalnum() else "_" for c in rel_path)
    return f"_binary_{mangled}"


def object_path_for(binary: Path, data: bytes) -> Path:
    """``<binary>.<digest>.embed.o``, keyed by the flat image contents."""
    digest = hashlib.sha256(data).hexdigest()[:16]
    return binary.with_name(f"{binary.name}.{digest}.embed.o")


def _remove_stale_objects(binary: Path, keep: Path) -> None:
    pattern = re.compile(re.escape(binary.name) + r"\.[0-9a-f]{16}\.embed\.o")
    for p in binary.parent.iterdir():
        if p == keep or not pattern.fullmatch(p.name):
            continue
        logger.debug("Removing stale embedded object %s", p)
        try:
            p.unlink()
        except OSError as e:
            raise EmbedError(f"Failed to remove stale object {p}: {e}") from e


@dataclass(frozen=True)
class EmbeddedObject:
    """A flattened binary repacked as a relocatable object."""

    source_path: Path
    flat_path: Path
    object_path: Path
    start_symbol: str
    end_symbol: str
    size_symbol: str
    size: int
    data: bytes = field(repr=False, default=b"")

    @property
    def symbols(self) -> List[str]:
        return [self.start_symbol, self.end_symbol, self.size_symbol]


class BinaryEmbedder:
    """Flatten + repack, with symbol-prefix bookkeeping for one run."""

    def __init__(
        self,
        settings: HarnessSettings,
        runner: CommandRunner = run_command,
        log: Optional[CommandLog] = None,
    ):
        self.settings = settings
        self.runner = runner
        self.log = log or CommandLog()
        self._claimed: Dict[str, Path] = {}

    # -----------------------------------------------------------------
    # Input checks
    # -----------------------------------------------------------------

    def _inspect(self, binary: Path) -> ElfMeta:
        if not binary.exists():
            raise EmbedError(f"Binary to embed not found: {binary}")
        if binary.stat().st_size == 0:
            raise EmbedError(f"Binary to embed is empty: {binary}")
        try:
            return read_elf(str(binary))
        except ELFError as e:
            raise EmbedError(f"Binary to embed is not ELF: {binary}: {e}") from e

    def _repack_target(self, meta: ElfMeta) -> Tuple[str, str]:
        key = (meta.machine, meta.elf_class, meta.endianness)
        if key not in REPACK_TARGETS:
            raise EmbedError(
                f"No repack target for {meta.machine} "
                f"ELF{meta.elf_class} {meta.endianness}-endian"
            )
        return REPACK_TARGETS[key]

    def _relative(self, path: Path) -> str:
        root = self.settings.project_root
        try:
            return path.resolve().relative_to(root).as_posix()
        except ValueError:
            raise EmbedError(
                f"{path} is outside the project root {root}; "
                "its embedded symbol names would not be deterministic"
            )

    def _claim(self, prefix: str, flat_path: Path) -> None:
        owner = self._claimed.get(prefix)
        if owner is not None and owner != flat_path:
            raise EmbedError(
                f"Symbol prefix {prefix} is ambiguous: "
                f"both {owner} and {flat_path} map to it"
            )
        self._claimed[prefix] = flat_path

    # -----------------------------------------------------------------
    # Steps
    # -----------------------------------------------------------------

    def flatten(self, binary: Path, meta: ElfMeta, flat_path: Path) -> bytes:
        """Write the loadable memory image of *binary* to *flat_path*."""
        flat_path.unlink(missing_ok=True)

        cmd = [self.settings.OBJCOPY]
        for name in meta.nobits_sections:
            cmd += ["--set-section-flags", f"{name}=alloc,load,contents"]
        cmd += ["-O", "binary", str(binary), str(flat_path)]

        result = self.log.record(self.runner(
            cmd,
            cwd=self.settings.project_root,
            timeout=self.settings.COMMAND_TIMEOUT,
        ))
        if not result.ok or not flat_path.is_file():
            raise EmbedError(
                f"Flattening {binary} failed (exit {result.exit_code})",
                diagnostics=result.diagnostics,
            )

        data = flat_path.read_bytes()
        if not data:
            raise EmbedError(f"Flattening {binary} produced no bytes")
        if len(data) != meta.footprint:
            raise EmbedError(
                f"Flat image of {binary} is {len(data)} bytes but its "
                f"allocated footprint is {meta.footprint} bytes"
            )
        return data

    def repack(
        self,
        flat_path: Path,
        size: int,
        meta: ElfMeta,
        object_path: Path,
    ) -> Tuple[str, str, str]:
        """Wrap *flat_path* in a relocatable object; return its three symbols."""
        rel = self._relative(flat_path)
        prefix = symbol_prefix(rel)
        out_target, arch = self._repack_target(meta)

        object_path.unlink(missing_ok=True)
        cmd = [
            self.settings.OBJCOPY,
            "-I", "binary",
            "-O", out_target,
            "-B", arch,
            rel,
            str(object_path),
        ]
        result = self.log.record(self.runner(
            cmd,
            cwd=self.settings.project_root,
            timeout=self.settings.COMMAND_TIMEOUT,
        ))
        if not result.ok or not object_path.is_file():
            raise EmbedError(
                f"Repacking {flat_path} failed (exit {result.exit_code})",
                diagnostics=result.diagnostics,
            )

        start, end, size_sym = (f"{prefix}_start", f"{prefix}_end", f"{prefix}_size")
        try:
            symbols = read_symbols(str(object_path), prefix=prefix)
        except ELFError as e:
            raise EmbedError(f"Repacked object {object_path} is not ELF: {e}") from e

        if set(symbols) != {start, end, size_sym}:
            raise EmbedError(
                f"Repacked object {object_path} exposes {sorted(symbols)}, "
                f"expected {[start, end, size_sym]}"
            )
        if symbols[size_sym].value != size:
            raise EmbedError(
                f"{size_sym} = {symbols[size_sym].value} but the flat image "
                f"is {size} bytes"
            )
        if symbols[end].value - symbols[start].value != size:
            raise EmbedError(f"{start}..{end} does not span {size} bytes")
        return start, end, size_sym

    def embed(self, binary: Path) -> EmbeddedObject:
        """Flatten and repack *binary*, returning the linkable EmbeddedObject."""
        logger.info("Embedding %s", binary)
        meta = self._inspect(binary)

        flat_path = binary.with_name(binary.name + ".bin")
        self._claim(symbol_prefix(self._relative(flat_path)), flat_path)
        self._repack_target(meta)

        data = self.flatten(binary, meta, flat_path)
        object_path = object_path_for(binary, data)
        _remove_stale_objects(binary, keep=object_path)
        start, end, size_sym = self.repack(flat_path, len(data), meta, object_path)

        logger.info("Embedded %s: %d bytes as %s", binary.name, len(data), start)
        return EmbeddedObject(
            source_path=binary,
            flat_path=flat_path,
            object_path=object_path,
            start_symbol=start,
            end_symbol=end,
            size_symbol=size_sym,
            size=len(data),
            data=data,
        )
