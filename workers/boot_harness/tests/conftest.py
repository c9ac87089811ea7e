"""
Shared pytest fixtures for boot_harness tests.

Provides:
  - ``build_elf``: writes small, deterministic ELF64 files (executables with
    allocated sections, or relocatable objects with symbols) so the ELF
    checks can be exercised without a cross toolchain.
  - ``FakeRunner``: a stand-in for ``run_command`` that records every
    command and lets tests script outcomes and side effects.
  - ``fake_toolchain``: cargo/objcopy/mkfs/mount behaviour built on both.
  - Session-scoped real binaries compiled with gcc (skipped when gcc or
    objcopy are missing).
"""
from __future__ import annotations

import shutil
import struct
import subprocess
import textwrap
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import pytest

from boot_harness.core.elf_reader import read_elf
from boot_harness.core.embedder import symbol_prefix
from boot_harness.core.process import CommandResult
from boot_harness.policy.settings import HarnessSettings

# ── Minimal ELF64 writer ─────────────────────────────────────────────────────

EM_RISCV = 243
EM_X86_64 = 62
EM_MIPS = 8
ET_REL = 1
ET_EXEC = 2

SHT_PROGBITS = 1
SHT_SYMTAB = 2
SHT_STRTAB = 3
SHT_NOBITS = 8

SHF_WRITE = 0x1
SHF_ALLOC = 0x2
SHF_EXECINSTR = 0x4

SHN_ABS = 0xFFF1

_EHDR = "<16sHHIQQQIHHHHHH"
_SHDR = "<IIQQQQIIQQ"
_SYM = "<IBBHQQ"

# (name, sh_type, sh_flags, addr, payload); payload is bytes, or a size for NOBITS
Section = Tuple[str, int, int, int, object]
# (name, value, shndx)
Symbol = Tuple[str, int, int]

# A tiny program: 16 bytes of text, 8 bytes of data, 32 bytes of bss
PROGRAM_SECTIONS: List[Section] = [
    (".text", SHT_PROGBITS, SHF_ALLOC | SHF_EXECINSTR, 0x1000, b"\x13\x00\x00\x00" * 4),
    (".data", SHT_PROGBITS, SHF_ALLOC | SHF_WRITE, 0x1010, b"\x07" * 8),
    (".bss", SHT_NOBITS, SHF_ALLOC | SHF_WRITE, 0x1018, 32),
    (".comment", SHT_PROGBITS, 0, 0, b"fake\x00"),
]
PROGRAM_FOOTPRINT = 0x1018 + 32 - 0x1000


def build_elf(
    path: Path,
    *,
    machine: int = EM_RISCV,
    elf_type: int = ET_EXEC,
    sections: Sequence[Section] = (),
    symbols: Optional[Sequence[Symbol]] = None,
) -> Path:
    """Write a little-endian ELF64 file with the given sections and symbols."""
    names = [s[0] for s in sections]
    if symbols is not None:
        names += [".symtab", ".strtab"]
    names.append(".shstrtab")

    shstrtab = b"\x00"
    name_off: Dict[str, int] = {}
    for n in names:
        name_off[n] = len(shstrtab)
        shstrtab += n.encode() + b"\x00"

    payload = bytearray()

    def place(data: bytes) -> int:
        start = 64 + len(payload)
        payload.extend(data)
        while len(payload) % 8:
            payload.append(0)
        return start

    shdrs = [struct.pack(_SHDR, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0)]
    for name, sh_type, flags, addr, data in sections:
        if sh_type == SHT_NOBITS:
            off, size = 64 + len(payload), int(data)
        else:
            off, size = place(bytes(data)), len(data)
        shdrs.append(struct.pack(_SHDR, name_off[name], sh_type, flags, addr, off, size, 0, 0, 1, 0))

    if symbols is not None:
        strtab = b"\x00"
        entries = [bytes(24)]
        for sym_name, value, shndx in symbols:
            entries.append(struct.pack(_SYM, len(strtab), 0x10, 0, shndx, value, 0))
            strtab += sym_name.encode() + b"\x00"
        strtab_index = len(shdrs) + 1
        off = place(b"".join(entries))
        shdrs.append(struct.pack(
            _SHDR, name_off[".symtab"], SHT_SYMTAB, 0, 0, off,
            24 * len(entries), strtab_index, 1, 8, 24,
        ))
        off = place(strtab)
        shdrs.append(struct.pack(_SHDR, name_off[".strtab"], SHT_STRTAB, 0, 0, off, len(strtab), 0, 0, 1, 0))

    off = place(shstrtab)
    shstrndx = len(shdrs)
    shdrs.append(struct.pack(_SHDR, name_off[".shstrtab"], SHT_STRTAB, 0, 0, off, len(shstrtab), 0, 0, 1, 0))

    shoff = 64 + len(payload)
    ident = b"\x7fELF\x02\x01\x01" + bytes(9)
    header = struct.pack(
        _EHDR, ident, elf_type, machine, 1, 0, 0, shoff, 0,
        64, 56, 0, 64, len(shdrs), shstrndx,
    )
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(header + bytes(payload) + b"".join(shdrs))
    return path


# ── Fake command runner ──────────────────────────────────────────────────────

@dataclass
class Call:
    command: List[str]
    cwd: Optional[Path]


Handler = Callable[[List[str], Optional[Path]], None]


class FakeRunner:
    """Records commands; the most recently registered matching rule wins."""

    def __init__(self):
        self.calls: List[Call] = []
        self._rules: List[Tuple[Callable[[List[str]], bool], Optional[Handler], int, str]] = []

    def on(
        self,
        predicate: Callable[[List[str]], bool],
        handler: Optional[Handler] = None,
        exit_code: int = 0,
        stderr: str = "",
    ) -> "FakeRunner":
        self._rules.append((predicate, handler, exit_code, stderr))
        return self

    def __call__(self, cmd, cwd=None, timeout=None) -> CommandResult:
        cmd = [str(c) for c in cmd]
        self.calls.append(Call(cmd, Path(cwd) if cwd else None))
        for predicate, handler, exit_code, stderr in reversed(self._rules):
            if predicate(cmd):
                if handler and exit_code == 0:
                    handler(cmd, Path(cwd) if cwd else None)
                return CommandResult(command=cmd, exit_code=exit_code, stderr=stderr)
        return CommandResult(command=cmd, exit_code=0)

    def matching(self, word: str) -> List[Call]:
        return [c for c in self.calls if word in c.command or Path(c.command[0]).name == word]


def uses(word: str) -> Callable[[List[str]], bool]:
    """Predicate: *word* is the program name or one of the argv words."""
    return lambda cmd: Path(cmd[0]).name == word or word in cmd


def is_flatten(cmd: List[str]) -> bool:
    return "-O" in cmd and cmd[cmd.index("-O") + 1] == "binary"


def is_repack(cmd: List[str]) -> bool:
    return "-I" in cmd and cmd[cmd.index("-I") + 1] == "binary"


def cargo_handler(settings: HarnessSettings) -> Handler:
    """Create the ELF cargo would have produced for the requested --bin."""
    def handler(cmd: List[str], cwd: Optional[Path]) -> None:
        binary = cmd[cmd.index("--bin") + 1]
        triple = cmd[cmd.index("--target") + 1]
        profile = "release" if "--release" in cmd else "debug"
        build_elf(settings.target_dir / triple / profile / binary, sections=PROGRAM_SECTIONS)
    return handler


def flatten_handler(cmd: List[str], cwd: Optional[Path]) -> None:
    src, dest = Path(cmd[-2]), Path(cmd[-1])
    dest.write_bytes(b"\xaa" * read_elf(str(src)).footprint)


def repack_handler(size_override: Optional[int] = None) -> Handler:
    """Write a relocatable object exposing objcopy's three boundary symbols."""
    def handler(cmd: List[str], cwd: Optional[Path]) -> None:
        rel, dest = cmd[-2], Path(cmd[-1])
        data = (cwd / rel).read_bytes()
        prefix = symbol_prefix(rel)
        size = len(data) if size_override is None else size_override
        build_elf(
            dest,
            elf_type=ET_REL,
            sections=[(".data", SHT_PROGBITS, SHF_ALLOC | SHF_WRITE, 0, data)],
            symbols=[
                (f"{prefix}_start", 0, 1),
                (f"{prefix}_end", len(data), 1),
                (f"{prefix}_size", size, SHN_ABS),
            ],
        )
    return handler


# ── Fixtures ─────────────────────────────────────────────────────────────────

@pytest.fixture
def project_root(tmp_path) -> Path:
    root = tmp_path / "rust-os"
    root.mkdir()
    return root


@pytest.fixture
def scratch_root(tmp_path) -> Path:
    return tmp_path / "scratch"


@pytest.fixture
def settings(project_root, scratch_root) -> HarnessSettings:
    return HarnessSettings(
        PROJECT_ROOT=str(project_root),
        SCRATCH_ROOT=str(scratch_root),
        PRIVILEGE_PREFIX="",
        COMMAND_TIMEOUT=30,
        SHUTDOWN_GRACE=1.0,
    )


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def fake_toolchain(runner, settings) -> FakeRunner:
    """cargo, objcopy, mkfs, mount and umount that all succeed."""
    runner.on(uses("build"), cargo_handler(settings))
    runner.on(uses("rustc"), cargo_handler(settings))
    runner.on(is_flatten, flatten_handler)
    runner.on(is_repack, repack_handler())
    return runner


@pytest.fixture
def program_elf(settings) -> Path:
    """A fake user program at cargo's release output path."""
    return build_elf(
        settings.target_dir / settings.TARGET_TRIPLE / "release" / "shell",
        sections=PROGRAM_SECTIONS,
    )


@pytest.fixture
def not_elf(tmp_path) -> Path:
    """A file that is not an ELF binary."""
    p = tmp_path / "not_an_elf"
    p.write_bytes(b"This is not an ELF file.\x00\x00\x00")
    return p


# ── Real toolchain fixtures ──────────────────────────────────────────────────

FREESTANDING_C = textwrap.dedent("""\
    static char scratch[4096];
    int counter = 7;

    void _start(void) {
        scratch[counter] = 1;
        for (;;) {
        }
    }
""")


@pytest.fixture(scope="session")
def host_tools_ok():
    """Skip unless gcc and GNU objcopy are on PATH."""
    if shutil.which("gcc") is None:
        pytest.skip("gcc not available - install gcc to run these tests")
    if shutil.which("objcopy") is None:
        pytest.skip("objcopy not available - install binutils to run these tests")


@pytest.fixture(scope="session")
def freestanding_source(tmp_path_factory, host_tools_ok) -> Path:
    d = tmp_path_factory.mktemp("embed_src")
    src = d / "prog.c"
    src.write_text(FREESTANDING_C)
    return src


def compile_freestanding(source: Path, output: Path) -> Path:
    """Compile *source* with no libc so the image is only our sections."""
    output.parent.mkdir(parents=True, exist_ok=True)
    cmd = [
        "gcc", "-O0",
        "-ffreestanding", "-fno-pic", "-no-pie", "-static", "-nostdlib",
        "-fno-asynchronous-unwind-tables",
        "-Wl,--build-id=none",
        str(source), "-o", str(output),
    ]
    try:
        subprocess.run(cmd, check=True, capture_output=True, timeout=60)
    except subprocess.CalledProcessError as e:
        pytest.skip(f"gcc could not build a freestanding binary: {e.stderr!r}")
    return output
