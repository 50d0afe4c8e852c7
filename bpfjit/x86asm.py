"""x86-64 instruction encoders that write into a JitState."""

from __future__ import annotations

import enum

from .jitstate import (
    TARGET_LOAD_HELPER_TABLE,
    TARGET_PC_EXTERNAL_DISPATCHER,
    TARGET_PC_RETPOLINE,
    JitProgress,
    JitState,
)

RAX = 0
RCX = 1
RDX = 2
RBX = 3
RSP = 4
RBP = 5
RIP = 5
RSI = 6
RDI = 7
R8 = 8
R9 = 9
R10 = 10
R11 = 11
R12 = 12
R13 = 13
R14 = 14
R15 = 15

VOLATILE_CTXT = 11

_INT32_MIN = -(1 << 31)
_INT32_MAX = (1 << 31) - 1


class OperandSize(enum.Enum):
    """Width of a memory operand."""

    S8 = 1
    S16 = 2
    S32 = 4
    S64 = 8


def _to_int64(value: int) -> int:
    value &= (1 << 64) - 1
    return value - (1 << 64) if value >> 63 else value


class X86Emitter:
    """Encodes x86-64 instructions into the buffer of a JitState."""

    def __init__(self, state: JitState) -> None:
        self.state = state

    @property
    def offset(self) -> int:
        return self.state.offset

    def emit1(self, x: int) -> None:
        self.state.emit_bytes((x & 0xFF).to_bytes(1, "little"))

    def emit2(self, x: int) -> None:
        self.state.emit_bytes((x & 0xFFFF).to_bytes(2, "little"))

    def emit4(self, x: int) -> None:
        self.state.emit_bytes((x & 0xFFFFFFFF).to_bytes(4, "little"))

    def emit8(self, x: int) -> None:
        self.state.emit_bytes((x & 0xFFFFFFFFFFFFFFFF).to_bytes(8, "little"))

    def offset_placeholder(self) -> None:
        """Reserve four zero bytes for a displacement patched later."""
        self.emit4(0)

    def jump_address_reloc(self, target_pc: int) -> int:
        """Record a 32-bit jump displacement here and reserve space for it."""
        if len(self.state.jumps) >= self.state.max_insts:
            self.state.jit_status = JitProgress.TOO_MANY_JUMPS
            return 0
        target_address_offset = self.state.offset
        self.state.add_jump(target_address_offset, target_pc)
        self.offset_placeholder()
        return target_address_offset

    def near_jump_address_reloc(self, target_pc: int) -> int:
        """Record an 8-bit jump displacement here and reserve space for it."""
        if len(self.state.jumps) >= self.state.max_insts:
            self.state.jit_status = JitProgress.TOO_MANY_JUMPS
            return 0
        target_address_offset = self.state.offset
        self.state.add_jump(target_address_offset, target_pc, near=True)
        self.emit1(0)
        return target_address_offset

    def local_call_address_reloc(self, target_pc: int) -> int:
        """Record a local call displacement here and reserve space for it."""
        if len(self.state.local_calls) >= self.state.max_insts:
            self.state.jit_status = JitProgress.TOO_MANY_LOCAL_CALLS
            return 0
        target_address_offset = self.state.offset
        self.state.add_local_call(target_address_offset, target_pc)
        self.offset_placeholder()
        return target_address_offset

    def modrm(self, mod: int, r: int, m: int) -> None:
        if mod & ~0xC0:
            raise ValueError(f"only the top two bits of mod may be set: {mod:#x}")
        self.emit1((mod & 0xC0) | ((r & 7) << 3) | (m & 7))

    def modrm_reg2reg(self, r: int, m: int) -> None:
        self.modrm(0xC0, r, m)

    def modrm_and_displacement(self, r: int, m: int, d: int) -> None:
        if d == 0 and (m & 7) != RBP:
            self.modrm(0x00, r, m)
        elif -128 <= d <= 127:
            self.modrm(0x40, r, m)
            self.emit1(d)
        else:
            self.modrm(0x80, r, m)
            self.emit4(d)

    def rex(self, w: int, r: int, x: int, b: int) -> None:
        for name, bit in (("w", w), ("r", r), ("x", x), ("b", b)):
            if int(bit) & ~1:
                raise ValueError(f"REX field {name} must be 0 or 1, got {bit}")
        self.emit1(0x40 | (int(w) << 3) | (int(r) << 2) | (int(x) << 1) | int(b))

    def basic_rex(self, w: int, src: int, dst: int) -> None:
        """Emit a REX prefix carrying the top bits of src and dst, if any bit is set."""
        if w or (src & 8) or (dst & 8):
            self.rex(int(bool(w)), int(bool(src & 8)), 0, int(bool(dst & 8)))

    def push(self, r: int) -> None:
        self.basic_rex(0, 0, r)
        self.emit1(0x50 | (r & 7))

    def pop(self, r: int) -> None:
        self.basic_rex(0, 0, r)
        self.emit1(0x58 | (r & 7))

    def alu32(self, op: int, src: int, dst: int) -> None:
        self.basic_rex(0, src, dst)
        self.emit1(op)
        self.modrm_reg2reg(src, dst)

    def alu32_imm32(self, op: int, src: int, dst: int, imm: int) -> None:
        self.alu32(op, src, dst)
        self.emit4(imm)

    def alu32_imm8(self, op: int, src: int, dst: int, imm: int) -> None:
        self.alu32(op, src, dst)
        self.emit1(imm)

    def truncate_u32(self, dst: int) -> None:
        self.alu32_imm32(0x81, 4, dst, 0xFFFFFFFF)

    def alu64(self, op: int, src: int, dst: int) -> None:
        self.basic_rex(1, src, dst)
        self.emit1(op)
        self.modrm_reg2reg(src, dst)

    def alu64_imm32(self, op: int, src: int, dst: int, imm: int) -> None:
        self.alu64(op, src, dst)
        self.emit4(imm)

    def alu64_imm8(self, op: int, src: int, dst: int, imm: int) -> None:
        self.alu64(op, src, dst)
        self.emit1(imm)

    def mov(self, src: int, dst: int) -> None:
        self.alu64(0x89, src, dst)

    def cmp_imm32(self, dst: int, imm: int) -> None:
        self.alu64_imm32(0x81, 7, dst, imm)

    def cmp32_imm32(self, dst: int, imm: int) -> None:
        self.alu32_imm32(0x81, 7, dst, imm)

    def cmp(self, src: int, dst: int) -> None:
        self.alu64(0x39, src, dst)

    def cmp32(self, src: int, dst: int) -> None:
        self.alu32(0x39, src, dst)

    def jcc(self, code: int, target_pc: int) -> int:
        self.emit1(0x0F)
        self.emit1(code)
        return self.jump_address_reloc(target_pc)

    def load(self, size: OperandSize, src: int, dst: int, offset: int) -> None:
        """Load [src + offset] into dst, zero-extending narrow sizes."""
        self.basic_rex(size is OperandSize.S64, dst, src)
        if size in (OperandSize.S8, OperandSize.S16):
            self.emit1(0x0F)
            self.emit1(0xB6 if size is OperandSize.S8 else 0xB7)
        else:
            self.emit1(0x8B)
        self.modrm_and_displacement(dst, src, offset)

    def load_imm(self, dst: int, imm: int) -> None:
        """Load a sign-extended immediate into dst."""
        imm = _to_int64(imm)
        if _INT32_MIN <= imm <= _INT32_MAX:
            self.alu64_imm32(0xC7, 0, dst, imm)
        else:
            self.basic_rex(1, 0, dst)
            self.emit1(0xB8 | (dst & 7))
            self.emit8(imm)

    def rip_relative_load(self, dst: int, target: int) -> int:
        if len(self.state.loads) >= self.state.max_insts:
            self.state.jit_status = JitProgress.TOO_MANY_LOADS
            return 0
        self.rex(1, 0, 0, 0)
        self.emit1(0x8B)
        self.modrm(0, dst, 0x05)
        load_target_offset = self.state.offset
        self.state.note_load(target)
        self.offset_placeholder()
        return load_target_offset

    def rip_relative_lea(self, dst: int, target: int) -> None:
        if len(self.state.leas) >= self.state.max_insts:
            self.state.jit_status = JitProgress.TOO_MANY_LEAS
            return
        self.rex(1, 1, 0, 0)
        self.emit1(0x8D)
        self.modrm(0, dst, 0x05)
        self.state.note_lea(target)
        self.offset_placeholder()

    def store(self, size: OperandSize, src: int, dst: int, offset: int) -> None:
        """Store register src to [dst + offset]."""
        if size is OperandSize.S16:
            self.emit1(0x66)
        rexw = int(size is OperandSize.S64)
        if rexw or src & 8 or dst & 8 or size is OperandSize.S8:
            self.rex(rexw, int(bool(src & 8)), 0, int(bool(dst & 8)))
        self.emit1(0x88 if size is OperandSize.S8 else 0x89)
        self.modrm_and_displacement(src, dst, offset)

    def store_imm32(self, size: OperandSize, dst: int, offset: int, imm: int) -> None:
        """Store an immediate to [dst + offset]."""
        if size is OperandSize.S16:
            self.emit1(0x66)
        self.basic_rex(size is OperandSize.S64, 0, dst)
        self.emit1(0xC6 if size is OperandSize.S8 else 0xC7)
        self.modrm_and_displacement(0, dst, offset)
        if size in (OperandSize.S32, OperandSize.S64):
            self.emit4(imm)
        elif size is OperandSize.S16:
            self.emit2(imm)
        else:
            self.emit1(imm)

    def ret(self) -> None:
        self.emit1(0xC3)

    def jmp(self, target_pc: int) -> int:
        """Emit a 32-bit jump; return where its displacement starts."""
        self.emit1(0xE9)
        return self.jump_address_reloc(target_pc)

    def near_jmp(self, target_pc: int) -> int:
        """Emit an 8-bit jump; return where its displacement starts."""
        self.emit1(0xEB)
        return self.near_jump_address_reloc(target_pc)

    def call(self, target_pc: int) -> int:
        self.emit1(0xE8)
        call_src = self.state.offset
        self.jump_address_reloc(target_pc)
        return call_src

    def pause(self) -> None:
        self.emit1(0xF3)
        self.emit1(0x90)

    def dispatched_external_helper_call(self, idx: int) -> None:
        """Call helper idx through the external dispatcher or the helper table."""
        self.push(VOLATILE_CTXT)
        self.push(VOLATILE_CTXT)

        self.rip_relative_load(RAX, TARGET_PC_EXTERNAL_DISPATCHER)
        self.cmp_imm32(RAX, 0)
        skip_default_dispatcher_source = self.jcc(0x85, 0)

        # Default dispatcher: fetch the helper's address from the table.
        self.alu32(0xC7, 0, RAX)
        self.emit4(idx)
        self.alu64_imm8(0xC1, 4, RAX, 3)
        self.rip_relative_lea(R10, TARGET_LOAD_HELPER_TABLE)
        self.alu64(0x01, R10, RAX)
        self.load(OperandSize.S64, RAX, RAX, 0)
        self.mov(VOLATILE_CTXT, R9)

        self.emit1(0xE9)
        skip_external_dispatcher_source = self.state.offset
        self.offset_placeholder()

        # External dispatcher: the helper index is the sixth argument.
        self.state.emit_jump_target(skip_default_dispatcher_source)
        self.load_imm(R9, idx)

        self.state.emit_jump_target(skip_external_dispatcher_source)
        self.call(TARGET_PC_RETPOLINE)

        self.pop(VOLATILE_CTXT)
        self.pop(VOLATILE_CTXT)