import re
import struct

import pytest

from bpfjit.elfloader import ElfLoadError, load_elf, section_index_from_name
from bpfjit.instructions import Instruction, Op, decode_instructions, encode_instructions

SHT_PROGBITS = 1
SHT_SYMTAB = 2
SHT_STRTAB = 3
SHT_REL = 9
SHF_WRITE = 1
SHF_ALLOC = 2
SHF_EXECINSTR = 4
STT_NOTYPE = 0
STT_OBJECT = 1
STT_FUNC = 2
STT_SECTION = 3


class ElfBuilder:
    def __init__(self):
        self.strtab = bytearray(b"\0")
        self.sections = [dict(name=0, type=0, flags=0, data=b"", link=0, info=0)]
        self.symbols = [bytes(24)]
        self.strtab_index = self.add_section(".strtab", SHT_STRTAB, 0, b"")
        self.symtab_index = self.add_section(".symtab", SHT_SYMTAB, 0, b"", link=1)

    def intern(self, text):
        offset = len(self.strtab)
        self.strtab += text.encode() + b"\0"
        return offset

    def add_section(self, name, sh_type, flags, data, link=0, info=0):
        self.sections.append(
            dict(name=self.intern(name), type=sh_type, flags=flags, data=data, link=link, info=info)
        )
        return len(self.sections) - 1

    def add_text(self, code):
        return self.add_section(".text", SHT_PROGBITS, SHF_ALLOC | SHF_EXECINSTR, code)

    def add_symbol(self, name, shndx, value=0, size=0, sym_type=STT_FUNC):
        name_offset = self.intern(name) if name else 0
        self.symbols.append(struct.pack("<IBBHQQ", name_offset, sym_type, 0, shndx, value, size))
        return len(self.symbols) - 1

    def add_relocations(self, target, relocs):
        data = b"".join(struct.pack("<QQ", off, (sym << 32) | typ) for off, sym, typ in relocs)
        return self.add_section(".rel.text", SHT_REL, 0, data, link=self.symtab_index, info=target)

    def build(self):
        self.sections[self.strtab_index]["data"] = bytes(self.strtab)
        self.sections[self.symtab_index]["data"] = b"".join(self.symbols)
        body = bytearray(64)
        offsets = []
        for section in self.sections:
            offsets.append(len(body))
            body += section["data"]
            body += bytes(-len(body) % 8)
        shoff = len(body)
        for section, offset in zip(self.sections, offsets):
            body += struct.pack(
                "<IIQQQQIIQQ",
                section["name"],
                section["type"],
                section["flags"],
                0,
                offset,
                len(section["data"]),
                section["link"],
                section["info"],
                0,
                0,
            )
        ident = b"\x7fELF" + bytes([2, 1, 1, 0]) + bytes(8)
        header = struct.pack(
            "<16sHHIQQQIHHHHHH", ident, 1, 247, 1, 0, 0, shoff, 0, 64, 0, 0, 64, len(self.sections), 1
        )
        body[:64] = header
        return bytes(body)


def program(*insts):
    return encode_instructions(insts)


RETURN_ONE = program(Instruction(Op.MOV64_IMM, 0, 0, 0, 1), Instruction(Op.EXIT))


def simple_elf():
    builder = ElfBuilder()
    text = builder.add_text(RETURN_ONE)
    builder.add_symbol("entry", text, 0, len(RETURN_ONE))
    return builder.build()


def patched(data, offset, payload):
    out = bytearray(data)
    out[offset:offset + len(payload)] = payload
    return bytes(out)


def test_default_main_is_start_of_text():
    assert load_elf(simple_elf()) == RETURN_ONE


def test_named_main_is_placed_first():
    other = program(Instruction(Op.MOV64_IMM, 0, 0, 0, 7), Instruction(Op.EXIT))
    builder = ElfBuilder()
    text = builder.add_text(other + RETURN_ONE)
    builder.add_symbol("other", text, 0, len(other))
    builder.add_symbol("main", text, len(other), len(RETURN_ONE))
    assert load_elf(builder.build(), "main") == RETURN_ONE + other


def test_missing_named_main():
    with pytest.raises(ElfLoadError, match="missing function not found."):
        load_elf(simple_elf(), "missing")


def test_local_call_relocation():
    sub = program(Instruction(Op.MOV64_IMM, 0, 0, 0, 7), Instruction(Op.EXIT))
    main = program(
        Instruction(Op.MOV64_IMM, 1, 0, 0, 0),
        Instruction(Op.CALL, 0, 1, 0, -1),
        Instruction(Op.EXIT),
    )
    builder = ElfBuilder()
    text = builder.add_text(sub + main)
    builder.add_symbol("sub", text, 0, len(sub))
    builder.add_symbol("main", text, len(sub), len(main))
    section_sym = builder.add_symbol("", text, 0, 0, STT_SECTION)
    builder.add_relocations(text, [(len(sub) + 8, section_sym, 2)])

    insts = decode_instructions(load_elf(builder.build(), "main"))
    assert len(insts) == 5
    assert insts[1].opcode == Op.CALL and insts[1].src == 1
    # The callee lands right after main; the call's target is pc + imm + 1.
    assert 1 + insts[1].imm + 1 == 3
    assert encode_instructions(insts[3:]) == sub


def test_local_call_to_unknown_function():
    main = program(
        Instruction(Op.MOV64_IMM, 1, 0, 0, 0),
        Instruction(Op.CALL, 0, 1, 0, 5),
        Instruction(Op.EXIT),
    )
    builder = ElfBuilder()
    text = builder.add_text(main)
    builder.add_symbol("main", text, 0, len(main))
    section_sym = builder.add_symbol("", text, 0, 0, STT_SECTION)
    builder.add_relocations(text, [(8, section_sym, 2)])
    with pytest.raises(ElfLoadError, match="does not point to a known function"):
        load_elf(builder.build())


def helper_call_elf():
    main = program(
        Instruction(Op.MOV64_IMM, 1, 0, 0, 0),
        Instruction(Op.CALL, 0, 0, 0, -1),
        Instruction(Op.EXIT),
    )
    builder = ElfBuilder()
    text = builder.add_text(main)
    builder.add_symbol("entry", text, 0, len(main))
    helper_sym = builder.add_symbol("print_value", 0, 0, 0, STT_NOTYPE)
    builder.add_relocations(text, [(8, helper_sym, 2)])
    return main, builder.build()


def test_helper_relocation_uses_lookup():
    main, data = helper_call_elf()
    insts = decode_instructions(load_elf(data, lookup_helper={"print_value": 5}.get))
    original = decode_instructions(main)
    assert insts[1].imm == 5
    assert insts[0] == original[0] and insts[2] == original[2]


@pytest.mark.parametrize("lookup", [None, {}.get, lambda name: -1])
def test_helper_not_found(lookup):
    _, data = helper_call_elf()
    with pytest.raises(ElfLoadError, match=re.escape("function 'print_value' not found")):
        load_elf(data, lookup_helper=lookup)


def data_relocation_elf(second_opcode=Op.LDDW):
    main = program(
        Instruction(Op.MOV64_IMM, 0, 0, 0, 0),
        Instruction(second_opcode, 1, 0, 0, 0),
        Instruction(0),
        Instruction(Op.EXIT),
    )
    contents = bytes(4) + b"\x2a\x00\x00\x00"
    builder = ElfBuilder()
    text = builder.add_text(main)
    data_index = builder.add_section(".data", SHT_PROGBITS, SHF_ALLOC | SHF_WRITE, contents)
    builder.add_symbol("entry", text, 0, len(main))
    counter = builder.add_symbol("counter", data_index, 4, 4, STT_OBJECT)
    builder.add_relocations(text, [(8, counter, 1)])
    return contents, builder.build()


def test_data_relocation_writes_both_halves():
    contents, data = data_relocation_elf()
    calls = []
    value = 0x1122334455667788

    def relocate(section_data, name, sym_value, sym_size, imm):
        calls.append((section_data, name, sym_value, sym_size, imm))
        return value

    insts = decode_instructions(load_elf(data, relocate_data=relocate))
    assert calls == [(contents, "counter", 4, 4, 0)]
    low = insts[1].imm & 0xFFFFFFFF
    high = insts[2].imm & 0xFFFFFFFF
    assert low | (high << 32) == value


def test_data_relocation_without_function():
    _, data = data_relocation_elf()
    with pytest.raises(ElfLoadError, match="R_BPF_64_64 data relocation function not set"):
        load_elf(data)


def test_data_relocation_on_wrong_instruction():
    _, data = data_relocation_elf(second_opcode=Op.MOV64_IMM)
    with pytest.raises(ElfLoadError, match="bad R_BPF_64_64 relocation instruction"):
        load_elf(data, relocate_data=lambda *args: 0)


def test_relocation_at_function_start_is_rejected():
    main = program(Instruction(Op.CALL, 0, 0, 0, -1), Instruction(Op.EXIT))
    builder = ElfBuilder()
    text = builder.add_text(main)
    builder.add_symbol("entry", text, 0, len(main))
    helper_sym = builder.add_symbol("print_value", 0, 0, 0, STT_NOTYPE)
    builder.add_relocations(text, [(0, helper_sym, 2)])
    with pytest.raises(ElfLoadError, match="a relocation's symbol contained a bad name"):
        load_elf(builder.build(), lookup_helper={"print_value": 1}.get)


def test_relocation_with_bad_symbol_index():
    builder = ElfBuilder()
    text = builder.add_text(RETURN_ONE)
    builder.add_symbol("entry", text, 0, len(RETURN_ONE))
    builder.add_relocations(text, [(8, 99, 2)])
    with pytest.raises(ElfLoadError, match="a relocation contained a bad symbol index"):
        load_elf(builder.build())


def test_unknown_relocation_type_is_skipped():
    builder = ElfBuilder()
    text = builder.add_text(RETURN_ONE)
    entry = builder.add_symbol("entry", text, 0, len(RETURN_ONE))
    builder.add_relocations(text, [(8, entry, 7)])
    with pytest.warns(RuntimeWarning, match="bad relocation type 7"):
        assert load_elf(builder.build()) == RETURN_ONE


def test_function_in_non_executable_section():
    builder = ElfBuilder()
    builder.add_text(RETURN_ONE)
    data_index = builder.add_section(".data", SHT_PROGBITS, SHF_ALLOC | SHF_WRITE, RETURN_ONE)
    builder.add_symbol("bogus", data_index, 0, len(RETURN_ONE))
    with pytest.raises(ElfLoadError, match="function symbol bogus points to a non-executable section"):
        load_elf(builder.build())


def test_missing_symbol_table():
    builder = ElfBuilder()
    text = builder.add_text(RETURN_ONE)
    builder.add_symbol("entry", text, 0, len(RETURN_ONE))
    builder.sections[builder.symtab_index]["type"] = SHT_PROGBITS
    with pytest.raises(ElfLoadError, match="could not find the symbol table in the elf file"):
        load_elf(builder.build())


def test_missing_string_table():
    builder = ElfBuilder()
    text = builder.add_text(RETURN_ONE)
    builder.add_symbol("entry", text, 0, len(RETURN_ONE))
    builder.sections[builder.strtab_index]["type"] = SHT_PROGBITS
    with pytest.raises(ElfLoadError, match="could not find the string table in the elf file"):
        load_elf(builder.build())


def test_truncated_header():
    with pytest.raises(ElfLoadError, match="not enough data for ELF header"):
        load_elf(simple_elf()[:40])


@pytest.mark.parametrize(
    "offset, payload, message",
    [
        (0, b"\x00", "wrong magic"),
        (4, b"\x01", "wrong class"),
        (5, b"\x02", "wrong byte order"),
        (6, b"\x02", "wrong version"),
        (7, b"\x03", "wrong OS ABI"),
        (16, struct.pack("<H", 2), "wrong type, expected relocatable"),
        (18, struct.pack("<H", 62), "wrong machine, expected none or BPF, got 62"),
        (60, struct.pack("<H", 33), "too many sections"),
    ],
)
def test_bad_header(offset, payload, message):
    with pytest.raises(ElfLoadError, match=re.escape(message)):
        load_elf(patched(simple_elf(), offset, payload))


def test_machine_none_is_accepted():
    assert load_elf(patched(simple_elf(), 18, struct.pack("<H", 0))) == RETURN_ONE


def test_section_headers_out_of_bounds():
    data = simple_elf()
    with pytest.raises(ElfLoadError, match="bad section header offset or size"):
        load_elf(patched(data, 40, struct.pack("<Q", len(data))))


def test_section_index_from_name():
    names = ["", ".text", ".data"]
    assert section_index_from_name(names, ".data") == 2
    assert section_index_from_name(names, ".bss") == -1