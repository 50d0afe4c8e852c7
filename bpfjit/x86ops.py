"""Larger x86-64 code sequences used by the eBPF compiler."""

from __future__ import annotations

import random
from typing import Sequence

from .instructions import ALU_OP_MASK, CLS_ALU64, CLS_MASK, SRC_REG, Op
from .jitstate import MAX_EXT_FUNCS
from .x86asm import (
    R8,
    R10,
    R12,
    R13,
    R14,
    R15,
    RAX,
    RBX,
    RCX,
    RDI,
    RDX,
    RSI,
    X86Emitter,
)

REGISTER_MAP_SIZE = 11

_DEFAULT_REGISTER_MAP = (
    # Scratch registers
    RAX,
    RDI,
    RSI,
    RDX,
    R10,
    R8,
    # Non-volatile registers
    RBX,
    R12,
    R13,
    R14,
    R15,  # eBPF r10 must stay on r15
)


def default_register_map() -> list[int]:
    """The native register assigned to each eBPF register, indexed by eBPF register."""
    return list(_DEFAULT_REGISTER_MAP)


def shifted_register_map(x: int) -> list[int]:
    """A permuted register map, for exercising other register assignments.

    Values below the map size rotate the map by x; larger values shuffle it
    with x as the seed.
    """
    base = default_register_map()
    if x < REGISTER_MAP_SIZE:
        return [base[(i + x) % REGISTER_MAP_SIZE] for i in range(REGISTER_MAP_SIZE)]
    rng = random.Random(x)
    for i in range(REGISTER_MAP_SIZE - 1):
        j = i + rng.randrange(REGISTER_MAP_SIZE - i)
        base[i], base[j] = base[j], base[i]
    return base


def emit_local_call(emitter: X86Emitter, register_map: Sequence[int], target_pc: int) -> None:
    """Call the local eBPF function at target_pc, preserving eBPF r6-r9.

    The top of the host stack holds the stack usage of the running function,
    so the eBPF frame pointer is moved down by it before the call and back up after.
    """
    # sub r15, [rsp]
    for byte in (0x4C, 0x2B, 0x3C, 0x24):
        emitter.emit1(byte)

    saved = [register_map[reg] for reg in (6, 7, 8, 9)]
    for reg in saved:
        emitter.push(reg)

    emitter.emit1(0xE8)
    emitter.local_call_address_reloc(target_pc)

    for reg in reversed(saved):
        emitter.pop(reg)

    # add r15, [rsp]
    for byte in (0x4C, 0x03, 0x3C, 0x24):
        emitter.emit1(byte)


def emit_muldivmod(emitter: X86Emitter, opcode: int, src: int, dst: int, imm: int) -> None:
    """Multiply, divide or take the remainder with eBPF semantics.

    Dividing by zero gives zero; the remainder by zero is the dividend.
    """
    op = opcode & ALU_OP_MASK
    mul = op == (Op.MUL_IMM & ALU_OP_MASK)
    div = op == (Op.DIV_IMM & ALU_OP_MASK)
    mod = op == (Op.MOD_IMM & ALU_OP_MASK)
    is64 = (opcode & CLS_MASK) == CLS_ALU64
    reg = (opcode & SRC_REG) == SRC_REG

    if not reg and imm == 0:
        if div or mul:
            emitter.alu32(0x31, dst, dst)
        else:
            emitter.mov(dst, dst)
        return

    if dst != RAX:
        emitter.push(RAX)
    if dst != RDX:
        emitter.push(RDX)

    if reg:
        emitter.mov(src, RCX)
    else:
        emitter.load_imm(RCX, imm)

    emitter.mov(dst, RAX)

    if div or mod:
        if is64:
            emitter.alu64(0x85, RCX, RCX)
        else:
            emitter.alu32(0x85, RCX, RCX)
        if mod:
            emitter.push(RAX)
        emitter.emit1(0x9C)  # pushfq
        emitter.load_imm(RDX, 1)
        for byte in (0x48, 0x0F, 0x44, 0xCA):  # cmove rcx, rdx
            emitter.emit1(byte)
        emitter.alu32(0x31, RDX, RDX)

    if is64:
        emitter.rex(1, 0, 0, 0)

    emitter.alu32(0xF7, 4 if mul else 6, RCX)

    if div or mod:
        emitter.emit1(0x9D)  # popfq
        if div:
            emitter.load_imm(RCX, 0)
            for byte in (0x48, 0x0F, 0x44, 0xC1):  # cmove rax, rcx
                emitter.emit1(byte)
        else:
            emitter.pop(RCX)
            for byte in (0x48, 0x0F, 0x44, 0xD1):  # cmove rdx, rcx
                emitter.emit1(byte)

    if dst != RDX:
        if mod:
            emitter.mov(RDX, dst)
        emitter.pop(RDX)
    if dst != RAX:
        if div or mul:
            emitter.mov(RAX, dst)
        emitter.pop(RAX)


def emit_retpoline(emitter: X86Emitter) -> int:
    """Emit a retpoline that jumps to the address in rax; return its offset."""
    state = emitter.state
    retpoline_target = state.offset
    label1_call_offset = emitter.call(0)

    capture_ret_spec = state.offset
    emitter.pause()
    emitter.jmp(capture_ret_spec)

    label1 = state.offset
    # mov [rsp], rax
    for byte in (0x48, 0x89, 0x04, 0x24):
        emitter.emit1(byte)
    emitter.ret()

    state.fixup_jump_target(label1_call_offset, label1)
    return retpoline_target


def emit_dispatcher_address(emitter: X86Emitter, dispatcher: int) -> int:
    """Emit the 8-byte external dispatcher pointer; return its offset."""
    location = emitter.state.offset
    emitter.emit8(dispatcher)
    return location


def emit_helper_table(emitter: X86Emitter, helpers: Sequence[int]) -> int:
    """Emit the table of helper pointers, padded with nulls; return its offset."""
    helpers = list(helpers)
    if len(helpers) > MAX_EXT_FUNCS:
        raise ValueError(f"at most {MAX_EXT_FUNCS} helpers may be registered")
    location = emitter.state.offset
    for helper in helpers + [0] * (MAX_EXT_FUNCS - len(helpers)):
        emitter.emit8(helper)
    return location