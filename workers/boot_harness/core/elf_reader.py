"""
ELF reader — open an ELF file and extract the facts the embedder needs.

Responsibilities:
  - Validate that the file is a valid ELF binary.
  - Report class, machine and byte order (to pick the repack target).
  - List allocated sections, flagging zero-initialized (NOBITS) ones.
  - Read the symbol table of a relocatable object.

This module never modifies files.
"""
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from elftools.elf.constants import SH_FLAGS
from elftools.elf.elffile import ELFFile
from elftools.elf.sections import SymbolTableSection


@dataclass(frozen=True)
class AllocSection:
    """A section occupying memory at run time."""

    name: str
    addr: int
    size: int
    nobits: bool  # zero-initialized, no file contents

    @property
    def end(self) -> int:
        return self.addr + self.size


@dataclass(frozen=True)
class ElfMeta:
    """Structural metadata extracted from an ELF file."""

    path: str

    # ELF header fields
    elf_class: int           # 32 or 64
    machine: str             # e.g. "EM_RISCV", "EM_X86_64"
    endianness: str          # "little" or "big"

    alloc_sections: List[AllocSection] = field(default_factory=list)

    @property
    def nobits_sections(self) -> List[str]:
        return [s.name for s in self.alloc_sections if s.nobits]

    @property
    def footprint(self) -> int:
        """Bytes from the lowest allocated address to the highest allocated end."""
        populated = [s for s in self.alloc_sections if s.size > 0]
        if not populated:
            return 0
        return max(s.end for s in populated) - min(s.addr for s in populated)


@dataclass(frozen=True)
class SymbolInfo:
    name: str
    value: int
    size: int
    section_index: str  # section number as string, or "SHN_ABS" / "SHN_UNDEF"


def read_elf(path: str) -> ElfMeta:
    """
    Open *path* as an ELF file and return structural metadata.

    Raises
    ------
    FileNotFoundError
        If *path* does not exist.
    ELFError
        If the file is not a valid ELF binary.
    """
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Binary not found: {path}")

    with open(p, "rb") as f:
        elffile = ELFFile(f)

        sections: List[AllocSection] = []
        for section in elffile.iter_sections():
            if not section["sh_flags"] & SH_FLAGS.SHF_ALLOC:
                continue
            sections.append(AllocSection(
                name=section.name,
                addr=section["sh_addr"],
                size=section["sh_size"],
                nobits=section["sh_type"] == "SHT_NOBITS",
            ))

        meta = ElfMeta(
            path=str(p),
            elf_class=elffile.elfclass,
            machine=elffile.header["e_machine"],
            endianness="little" if elffile.little_endian else "big",
            alloc_sections=sections,
        )
    return meta


def read_symbols(path: str, prefix: Optional[str] = None) -> Dict[str, SymbolInfo]:
    """
    Return the named symbols of *path*, optionally only those starting with
    *prefix*.  Section and file symbols are skipped.
    """
    symbols: Dict[str, SymbolInfo] = {}
    with open(path, "rb") as f:
        elffile = ELFFile(f)
        for section in elffile.iter_sections():
            if not isinstance(section, SymbolTableSection):
                continue
            for sym in section.iter_symbols():
                if not sym.name:
                    continue
                if sym["st_info"]["type"] in ("STT_SECTION", "STT_FILE"):
                    continue
                if prefix and not sym.name.startswith(prefix):
                    continue
                symbols[sym.name] = SymbolInfo(
                    name=sym.name,
                    value=sym["st_value"],
                    size=sym["st_size"],
                    section_index=str(sym["st_shndx"]),
                )
    return symbols
