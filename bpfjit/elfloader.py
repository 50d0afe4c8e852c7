"""Link the functions of a relocatable eBPF ELF object into one program."""

from __future__ import annotations

import struct
import warnings
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from .instructions import INSTRUCTION_SIZE, Op

MAX_SECTIONS = 32

EM_NONE = 0
EM_BPF = 247

R_BPF_64_64 = 1
R_BPF_64_32 = 2

_ELFMAG = b"\x7fELF"
_EI_CLASS = 4
_EI_DATA = 5
_EI_VERSION = 6
_EI_OSABI = 7
_ELFCLASS64 = 2
_ELFDATA2LSB = 1
_ELFOSABI_NONE = 0
_ET_REL = 1

_SHT_PROGBITS = 1
_SHT_SYMTAB = 2
_SHT_STRTAB = 3
_SHT_REL = 9

_SHF_WRITE = 0x1
_SHF_ALLOC = 0x2
_SHF_EXECINSTR = 0x4
_SHF_STRINGS = 0x20
_EXECUTABLE_FLAGS = _SHF_ALLOC | _SHF_EXECINSTR

_STT_FUNC = 2

_EHDR = struct.Struct("<16sHHIQQQIHHHHHH")
_SHDR = struct.Struct("<IIQQQQIIQQ")
_SYM = struct.Struct("<IBBHQQ")
_REL = struct.Struct("<QQ")
_IMM = struct.Struct("<I")
_IMM_OFFSET = 4

DataRelocator = Callable[[bytes, str, int, int, int], int]
HelperLookup = Callable[[str], Optional[int]]


class ElfLoadError(Exception):
    """Raised when an ELF object cannot be loaded."""


@dataclass(frozen=True)
class _Section:
    name: int
    type: int
    flags: int
    link: int
    info: int
    data: bytes

    @property
    def executable(self) -> bool:
        return self.type == _SHT_PROGBITS and self.flags == _EXECUTABLE_FLAGS


@dataclass(frozen=True)
class _Symbol:
    name: int
    info: int
    shndx: int
    value: int
    size: int


@dataclass
class _Function:
    name: str
    section_index: int
    start: int
    size: int
    code: bytes
    landed: int = 0
    linked_offset: int = 0


def section_index_from_name(section_names: Sequence[str], needle: str) -> int:
    """Index of the section called needle, or -1 if there is none."""
    for index, name in enumerate(section_names):
        if name == needle:
            return index
    return -1


def _slice(data: bytes, offset: int, size: int) -> Optional[bytes]:
    if offset + size > len(data):
        return None
    return data[offset:offset + size]


def _c_string(table: bytes, start: int) -> str:
    end = table.find(b"\0", start)
    raw = table[start:] if end < 0 else table[start:end]
    return raw.decode("utf-8", errors="replace")


def _check_header(data: bytes) -> tuple[int, int, int]:
    if len(data) < _EHDR.size:
        raise ElfLoadError("not enough data for ELF header")
    fields = _EHDR.unpack_from(data)
    ident, e_type, machine = fields[0], fields[1], fields[2]
    shoff, shentsize, shnum = fields[6], fields[11], fields[12]

    if ident[:4] != _ELFMAG:
        raise ElfLoadError("wrong magic")
    if ident[_EI_CLASS] != _ELFCLASS64:
        raise ElfLoadError("wrong class")
    if ident[_EI_DATA] != _ELFDATA2LSB:
        raise ElfLoadError("wrong byte order")
    if ident[_EI_VERSION] != 1:
        raise ElfLoadError("wrong version")
    if ident[_EI_OSABI] != _ELFOSABI_NONE:
        raise ElfLoadError("wrong OS ABI")
    if e_type != _ET_REL:
        raise ElfLoadError("wrong type, expected relocatable")
    if machine not in (EM_NONE, EM_BPF):
        raise ElfLoadError(f"wrong machine, expected none or BPF, got {machine}")
    if shnum > MAX_SECTIONS:
        raise ElfLoadError("too many sections")
    return shoff, shentsize, shnum


def _read_sections(data: bytes, shoff: int, shentsize: int, shnum: int) -> list[_Section]:
    sections = []
    header_offset = shoff
    for _ in range(shnum):
        raw = _slice(data, header_offset, _SHDR.size)
        if raw is None:
            raise ElfLoadError("bad section header offset or size")
        header_offset += shentsize
        name, sh_type, flags, _addr, offset, size, link, info, _align, _entsize = _SHDR.unpack(raw)
        contents = _slice(data, offset, size)
        if contents is None:
            raise ElfLoadError("bad section offset or size")
        sections.append(_Section(name, sh_type, flags, link, info, contents))
    return sections


def _read_symbols(table: bytes) -> list[_Symbol]:
    usable = len(table) - len(table) % _SYM.size
    return [
        _Symbol(name, info, shndx, value, size)
        for name, info, _other, shndx, value, size in _SYM.iter_unpack(table[:usable])
    ]


def _collect_functions(
    sections: list[_Section],
    strtab: bytes,
    symbols: list[_Symbol],
    main_function_name: Optional[str],
) -> list[_Function]:
    main: Optional[_Function] = None
    others: list[_Function] = []
    for sym in symbols:
        if sym.info & 0x0F != _STT_FUNC:
            continue
        if sym.name >= len(strtab):
            raise ElfLoadError("a function symbol contained a bad name")
        name = _c_string(strtab, sym.name)
        if sym.shndx >= len(sections):
            raise ElfLoadError("a function symbol contained a bad section index")
        section = sections[sym.shndx]
        if not section.executable:
            raise ElfLoadError(f"function symbol {name} points to a non-executable section")
        code = _slice(section.data, sym.value, sym.size)
        if code is None:
            raise ElfLoadError(f"function symbol {name} extends past its section")

        function = _Function(name, sym.shndx, sym.value, sym.size, code)
        if main_function_name is not None:
            is_main = name == main_function_name
        else:
            # Without a name, the function at the start of .text is the entry point.
            is_main = _c_string(strtab, section.name) == ".text" and sym.value == 0
        if is_main:
            main = function
        else:
            others.append(function)

    if main is None:
        raise ElfLoadError(f"{main_function_name or 'main'} function not found.")
    return [main, *others]


def _get_imm(program: bytearray, position: int) -> int:
    (value,) = _IMM.unpack_from(program, position + _IMM_OFFSET)
    return value - (1 << 32) if value >> 31 else value


def _set_imm(program: bytearray, position: int, value: int) -> None:
    _IMM.pack_into(program, position + _IMM_OFFSET, value & 0xFFFFFFFF)


def _apply_relocations(
    program: bytearray,
    sections: list[_Section],
    strtab: bytes,
    functions: list[_Function],
    relocate_data: Optional[DataRelocator],
    lookup_helper: Optional[HelperLookup],
) -> None:
    for relo_section in sections:
        if relo_section.type != _SHT_REL:
            continue
        target_index = relo_section.info
        if target_index >= len(sections):
            raise ElfLoadError("bad relocation target section index")
        target = sections[target_index]
        if not target.executable:
            continue
        if relo_section.link >= len(sections):
            raise ElfLoadError("bad symbol table section index")
        relo_syms = _read_symbols(sections[relo_section.link].data)

        usable = len(relo_section.data) - len(relo_section.data) % _REL.size
        for r_offset, r_info in _REL.iter_unpack(relo_section.data[:usable]):
            sym_index = r_info >> 32
            if sym_index >= len(relo_syms):
                raise ElfLoadError("a relocation contained a bad symbol index")
            sym = relo_syms[sym_index]
            if sym.name >= len(strtab):
                raise ElfLoadError("a relocation's symbol contained a bad name")
            sym_name = _c_string(strtab, sym.name)

            source = next(
                (
                    fn
                    for fn in functions
                    if fn.section_index == target_index and fn.start < r_offset < fn.start + fn.size
                ),
                None,
            )
            if source is None:
                raise ElfLoadError("a relocation's symbol contained a bad name")

            position = source.linked_offset + (r_offset - source.start)
            inst_index = source.landed + (r_offset - source.start) // INSTRUCTION_SIZE
            relo_type = r_info & 0xFFFFFFFF

            if relo_type == R_BPF_64_64:
                _relocate_data(program, position, r_offset, target, sections, sym, sym_name, relocate_data)
            elif relo_type == R_BPF_64_32:
                if program[position + 1] >> 4 == 1:
                    offset_in_section = ((_get_imm(program, position) + 1) * INSTRUCTION_SIZE) & 0xFFFFFFFF
                    callee = next(
                        (
                            fn
                            for fn in functions
                            if fn.section_index == sym.shndx and fn.start == offset_in_section
                        ),
                        None,
                    )
                    if callee is None:
                        raise ElfLoadError(
                            "relocated target of a function call does not point to a known function"
                        )
                    _set_imm(program, position, callee.landed - (inst_index + 1))
                else:
                    helper = lookup_helper(sym_name) if lookup_helper is not None else None
                    if helper is None or helper == -1:
                        raise ElfLoadError(f"function '{sym_name}' not found")
                    _set_imm(program, position, helper)
            else:
                warnings.warn(f"bad relocation type {relo_type}; skipping", RuntimeWarning, stacklevel=3)


def _relocate_data(
    program: bytearray,
    position: int,
    r_offset: int,
    target: _Section,
    sections: list[_Section],
    sym: _Symbol,
    sym_name: str,
    relocate_data: Optional[DataRelocator],
) -> None:
    if r_offset + INSTRUCTION_SIZE > len(target.data):
        raise ElfLoadError("bad R_BPF_64_64 relocation offset")
    if sym.shndx >= len(sections):
        raise ElfLoadError("bad R_BPF_64_64 relocation section index")
    data_section = sections[sym.shndx]
    if (
        data_section.type != _SHT_PROGBITS
        and data_section.flags != (_SHF_ALLOC | _SHF_WRITE)
        and data_section.flags != _SHF_ALLOC
        and data_section.flags != (_SHF_ALLOC | _SHF_STRINGS)
    ):
        raise ElfLoadError(
            f"bad R_BPF_64_64 relocation section, sh_type={data_section.type}, "
            f"sh_flags={data_section.flags}"
        )
    if sym.size + sym.value > len(data_section.data):
        raise ElfLoadError("bad R_BPF_64_64 size")
    if program[position] != Op.LDDW:
        raise ElfLoadError("bad R_BPF_64_64 relocation instruction")
    if r_offset + 2 * INSTRUCTION_SIZE > len(target.data):
        raise ElfLoadError("bad R_BPF_64_64 relocation offset")
    if relocate_data is None:
        raise ElfLoadError("R_BPF_64_64 data relocation function not set")

    imm = relocate_data(data_section.data, sym_name, sym.value, sym.size, _get_imm(program, position))
    _set_imm(program, position, imm)
    _set_imm(program, position + INSTRUCTION_SIZE, imm >> 32)


def load_elf(
    data: bytes,
    main_function_name: Optional[str] = None,
    relocate_data: Optional[DataRelocator] = None,
    lookup_helper: Optional[HelperLookup] = None,
) -> bytes:
    """Link the functions of a relocatable eBPF object and return the program bytes.

    The main function comes first; when no name is given it is the function at
    the start of the .text section. relocate_data(section_data, symbol_name,
    symbol_value, symbol_size, imm) supplies the 64-bit value of each data
    relocation; lookup_helper(name) gives the index of a named helper, or None.
    """
    data = bytes(data)
    shoff, shentsize, shnum = _check_header(data)
    sections = _read_sections(data, shoff, shentsize, shnum)

    strtab = next((s.data for s in sections if s.type == _SHT_STRTAB), None)
    if strtab is None:
        raise ElfLoadError("could not find the string table in the elf file")
    symtab = next((s.data for s in sections if s.type == _SHT_SYMTAB), None)
    if symtab is None:
        raise ElfLoadError("could not find the symbol table in the elf file")

    functions = _collect_functions(sections, strtab, _read_symbols(symtab), main_function_name)

    program = bytearray()
    for function in functions:
        function.landed = len(program) // INSTRUCTION_SIZE
        function.linked_offset = len(program)
        program += function.code

    _apply_relocations(program, sections, strtab, functions, relocate_data, lookup_helper)
    return bytes(program)