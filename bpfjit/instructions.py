"""eBPF opcodes and the fixed 8-byte instruction encoding."""

from __future__ import annotations

import enum
import struct
from dataclasses import dataclass
from typing import Iterable

INSTRUCTION_SIZE = 8
_LAYOUT = struct.Struct("<BBhi")

# Instruction classes (low three bits of the opcode).
CLS_MASK = 0x07
CLS_LD = 0x00
CLS_LDX = 0x01
CLS_ST = 0x02
CLS_STX = 0x03
CLS_ALU = 0x04
CLS_JMP = 0x05
CLS_JMP32 = 0x06
CLS_ALU64 = 0x07

# Operand source bit.
SRC_IMM = 0x00
SRC_REG = 0x08

# Operation field (high four bits) for arithmetic and jump classes.
ALU_OP_MASK = 0xF0
JMP_OP_MASK = 0xF0

ALU_ADD = 0x00
ALU_SUB = 0x10
ALU_MUL = 0x20
ALU_DIV = 0x30
ALU_OR = 0x40
ALU_AND = 0x50
ALU_LSH = 0x60
ALU_RSH = 0x70
ALU_NEG = 0x80
ALU_MOD = 0x90
ALU_XOR = 0xA0
ALU_MOV = 0xB0
ALU_ARSH = 0xC0
ALU_END = 0xD0

JMP_JA = 0x00
JMP_JEQ = 0x10
JMP_JGT = 0x20
JMP_JGE = 0x30
JMP_JSET = 0x40
JMP_JNE = 0x50
JMP_JSGT = 0x60
JMP_JSGE = 0x70
JMP_CALL = 0x80
JMP_EXIT = 0x90
JMP_JLT = 0xA0
JMP_JLE = 0xB0
JMP_JSLT = 0xC0
JMP_JSLE = 0xD0

NUM_REGISTERS = 11


class Op(enum.IntEnum):
    """Every eBPF opcode the compiler understands."""

    ADD_IMM = 0x04
    ADD_REG = 0x0C
    SUB_IMM = 0x14
    SUB_REG = 0x1C
    MUL_IMM = 0x24
    MUL_REG = 0x2C
    DIV_IMM = 0x34
    DIV_REG = 0x3C
    OR_IMM = 0x44
    OR_REG = 0x4C
    AND_IMM = 0x54
    AND_REG = 0x5C
    LSH_IMM = 0x64
    LSH_REG = 0x6C
    RSH_IMM = 0x74
    RSH_REG = 0x7C
    NEG = 0x84
    MOD_IMM = 0x94
    MOD_REG = 0x9C
    XOR_IMM = 0xA4
    XOR_REG = 0xAC
    MOV_IMM = 0xB4
    MOV_REG = 0xBC
    ARSH_IMM = 0xC4
    ARSH_REG = 0xCC
    LE = 0xD4
    BE = 0xDC

    ADD64_IMM = 0x07
    ADD64_REG = 0x0F
    SUB64_IMM = 0x17
    SUB64_REG = 0x1F
    MUL64_IMM = 0x27
    MUL64_REG = 0x2F
    DIV64_IMM = 0x37
    DIV64_REG = 0x3F
    OR64_IMM = 0x47
    OR64_REG = 0x4F
    AND64_IMM = 0x57
    AND64_REG = 0x5F
    LSH64_IMM = 0x67
    LSH64_REG = 0x6F
    RSH64_IMM = 0x77
    RSH64_REG = 0x7F
    NEG64 = 0x87
    MOD64_IMM = 0x97
    MOD64_REG = 0x9F
    XOR64_IMM = 0xA7
    XOR64_REG = 0xAF
    MOV64_IMM = 0xB7
    MOV64_REG = 0xBF
    ARSH64_IMM = 0xC7
    ARSH64_REG = 0xCF

    JA = 0x05
    JEQ_IMM = 0x15
    JEQ_REG = 0x1D
    JGT_IMM = 0x25
    JGT_REG = 0x2D
    JGE_IMM = 0x35
    JGE_REG = 0x3D
    JSET_IMM = 0x45
    JSET_REG = 0x4D
    JNE_IMM = 0x55
    JNE_REG = 0x5D
    JSGT_IMM = 0x65
    JSGT_REG = 0x6D
    JSGE_IMM = 0x75
    JSGE_REG = 0x7D
    CALL = 0x85
    EXIT = 0x95
    JLT_IMM = 0xA5
    JLT_REG = 0xAD
    JLE_IMM = 0xB5
    JLE_REG = 0xBD
    JSLT_IMM = 0xC5
    JSLT_REG = 0xCD
    JSLE_IMM = 0xD5
    JSLE_REG = 0xDD

    JEQ32_IMM = 0x16
    JEQ32_REG = 0x1E
    JGT32_IMM = 0x26
    JGT32_REG = 0x2E
    JGE32_IMM = 0x36
    JGE32_REG = 0x3E
    JSET32_IMM = 0x46
    JSET32_REG = 0x4E
    JNE32_IMM = 0x56
    JNE32_REG = 0x5E
    JSGT32_IMM = 0x66
    JSGT32_REG = 0x6E
    JSGE32_IMM = 0x76
    JSGE32_REG = 0x7E
    JLT32_IMM = 0xA6
    JLT32_REG = 0xAE
    JLE32_IMM = 0xB6
    JLE32_REG = 0xBE
    JSLT32_IMM = 0xC6
    JSLT32_REG = 0xCE
    JSLE32_IMM = 0xD6
    JSLE32_REG = 0xDE

    LDDW = 0x18
    LDXW = 0x61
    LDXH = 0x69
    LDXB = 0x71
    LDXDW = 0x79
    STW = 0x62
    STH = 0x6A
    STB = 0x72
    STDW = 0x7A
    STXW = 0x63
    STXH = 0x6B
    STXB = 0x73
    STXDW = 0x7B


@dataclass(frozen=True)
class Instruction:
    """One 8-byte eBPF instruction."""

    opcode: int
    dst: int = 0
    src: int = 0
    offset: int = 0
    imm: int = 0

    def __post_init__(self) -> None:
        if not 0 <= self.opcode <= 0xFF:
            raise ValueError(f"opcode out of range: {self.opcode}")
        if not 0 <= self.dst <= 0xF:
            raise ValueError(f"destination register out of range: {self.dst}")
        if not 0 <= self.src <= 0xF:
            raise ValueError(f"source register out of range: {self.src}")
        if not -0x8000 <= self.offset <= 0x7FFF:
            raise ValueError(f"offset does not fit in 16 bits: {self.offset}")
        if not -0x80000000 <= self.imm <= 0x7FFFFFFF:
            raise ValueError(f"immediate does not fit in 32 bits: {self.imm}")

    def pack(self) -> bytes:
        """Encode the instruction in its little-endian wire form."""
        regs = (self.src << 4) | self.dst
        return _LAYOUT.pack(self.opcode, regs, self.offset, self.imm)

    def has_fallthrough(self) -> bool:
        """Whether execution can continue with the next instruction."""
        return self.opcode not in (Op.JA, Op.EXIT)


def decode_instruction(data: bytes) -> Instruction:
    """Decode exactly one instruction."""
    if len(data) != INSTRUCTION_SIZE:
        raise ValueError(f"an instruction is {INSTRUCTION_SIZE} bytes, got {len(data)}")
    opcode, regs, offset, imm = _LAYOUT.unpack(data)
    return Instruction(opcode, regs & 0x0F, regs >> 4, offset, imm)


def decode_instructions(data: bytes) -> list[Instruction]:
    """Decode a whole program."""
    if len(data) % INSTRUCTION_SIZE:
        raise ValueError(f"program length {len(data)} is not a multiple of {INSTRUCTION_SIZE}")
    return [
        Instruction(opcode, regs & 0x0F, regs >> 4, offset, imm)
        for opcode, regs, offset, imm in _LAYOUT.iter_unpack(data)
    ]


def encode_instructions(instructions: Iterable[Instruction]) -> bytes:
    """Encode a sequence of instructions back into a program."""
    return b"".join(inst.pack() for inst in instructions)