"""Compile eBPF programs to x86-64 machine code."""

from __future__ import annotations

from typing import Sequence

from .instructions import (
    ALU_ADD,
    ALU_AND,
    ALU_ARSH,
    ALU_DIV,
    ALU_END,
    ALU_LSH,
    ALU_MOD,
    ALU_MOV,
    ALU_MUL,
    ALU_NEG,
    ALU_OP_MASK,
    ALU_OR,
    ALU_RSH,
    ALU_SUB,
    ALU_XOR,
    CLS_ALU,
    CLS_ALU64,
    CLS_JMP,
    CLS_JMP32,
    CLS_LD,
    CLS_LDX,
    CLS_MASK,
    CLS_ST,
    CLS_STX,
    JMP_CALL,
    JMP_EXIT,
    JMP_JA,
    JMP_JEQ,
    JMP_JGE,
    JMP_JGT,
    JMP_JLE,
    JMP_JLT,
    JMP_JNE,
    JMP_JSET,
    JMP_JSGE,
    JMP_JSGT,
    JMP_JSLE,
    JMP_JSLT,
    JMP_OP_MASK,
    SRC_REG,
    Instruction,
    Op,
)
from .jitstate import (
    EBPF_STACK_SIZE,
    TARGET_LOAD_HELPER_TABLE,
    TARGET_PC_EXIT,
    TARGET_PC_EXTERNAL_DISPATCHER,
    TARGET_PC_RETPOLINE,
    JitError,
    JitMode,
    JitProgress,
    JitResult,
    JitState,
    Program,
)
from .x86asm import (
    R8,
    R9,
    R10,
    R12,
    R13,
    R14,
    R15,
    RAX,
    RBP,
    RBX,
    RCX,
    RDI,
    RDX,
    RSI,
    RSP,
    VOLATILE_CTXT,
    OperandSize,
    X86Emitter,
)
from .x86ops import (
    default_register_map,
    emit_dispatcher_address,
    emit_helper_table,
    emit_local_call,
    emit_muldivmod,
    emit_retpoline,
)

DEFAULT_CODE_SIZE = 65536

# Native r10 is trashed across helper calls anyway, so it can stand in for rcx.
RCX_ALT = R10

_NONVOLATILE_REGISTERS = (RBP, RBX, R12, R13, R14, R15)
_PARAMETER_REGISTERS = (RDI, RSI, RDX, RCX, R8, R9)

_KNOWN_OPCODES = frozenset(int(op) for op in Op)

# ALU operations that map onto the 0x81 group (immediate) or a two-register form.
_ALU_IMM_EXTENSION = {ALU_ADD: 0, ALU_SUB: 5, ALU_OR: 1, ALU_AND: 4, ALU_XOR: 6}
_ALU_REG_OPCODE = {ALU_ADD: 0x01, ALU_SUB: 0x29, ALU_OR: 0x09, ALU_AND: 0x21, ALU_XOR: 0x31}
_SHIFT_EXTENSION = {ALU_LSH: 4, ALU_RSH: 5, ALU_ARSH: 7}

_CONDITION_CODES = {
    JMP_JEQ: 0x84,
    JMP_JGT: 0x87,
    JMP_JGE: 0x83,
    JMP_JLT: 0x82,
    JMP_JLE: 0x86,
    JMP_JSET: 0x85,
    JMP_JNE: 0x85,
    JMP_JSGT: 0x8F,
    JMP_JSGE: 0x8D,
    JMP_JSLT: 0x8C,
    JMP_JSLE: 0x8E,
}

_MEMORY_SIZES = {
    0x00: OperandSize.S32,
    0x08: OperandSize.S16,
    0x10: OperandSize.S8,
    0x18: OperandSize.S64,
}

_STATUS_MESSAGES = {
    JitProgress.TOO_MANY_JUMPS: "Too many jump instructions",
    JitProgress.TOO_MANY_LOADS: "Too many load instructions",
    JitProgress.TOO_MANY_LEAS: "Too many LEA calculations",
    JitProgress.TOO_MANY_LOCAL_CALLS: "Too many local calls",
    JitProgress.NOT_ENOUGH_SPACE: "Target buffer too small",
}

_PATCH_FAILURE = "Could not patch the relative addresses in the JIT'd code"


def _emit_prologue(emitter: X86Emitter, regs: Sequence[int], mode: JitMode) -> None:
    for reg in _NONVOLATILE_REGISTERS:
        emitter.push(reg)

    if regs[1] != _PARAMETER_REGISTERS[0]:
        emitter.mov(_PARAMETER_REGISTERS[0], regs[1])
    emitter.mov(_PARAMETER_REGISTERS[0], VOLATILE_CTXT)

    # An even number of pushes leaves the stack 8 bytes off 16-byte alignment.
    if len(_NONVOLATILE_REGISTERS) % 2 == 0:
        emitter.alu64_imm32(0x81, 5, RSP, 8)

    emitter.mov(RSP, RBP)

    if mode is JitMode.BASIC:
        emitter.mov(RSP, regs[10])
        emitter.alu64_imm32(0x81, 5, RSP, EBPF_STACK_SIZE)
    else:
        emitter.mov(_PARAMETER_REGISTERS[2], regs[10])
        emitter.alu64(0x01, _PARAMETER_REGISTERS[3], regs[10])

    # Call over the following jump so the program's final EXIT returns onto it.
    emitter.emit1(0xE8)
    emitter.emit4(5)
    emitter.jmp(TARGET_PC_EXIT)


def _emit_epilogue(emitter: X86Emitter, regs: Sequence[int]) -> None:
    state = emitter.state
    state.exit_loc = state.offset

    if regs[0] != RAX:
        emitter.mov(regs[0], RAX)

    emitter.mov(RBP, RSP)
    if len(_NONVOLATILE_REGISTERS) % 2 == 0:
        emitter.alu64_imm32(0x81, 0, RSP, 8)

    for reg in reversed(_NONVOLATILE_REGISTERS):
        emitter.pop(reg)
    emitter.ret()


def _emit_function_prolog(emitter: X86Emitter, stack_usage: int) -> None:
    """Push the stack usage of the function starting here onto the host stack."""
    state = emitter.state
    prolog_start = state.offset
    emitter.alu64_imm32(0x81, 5, RSP, 8)
    # mov qword [rsp], imm32
    for byte in (0x48, 0xC7, 0x04, 0x24):
        emitter.emit1(byte)
    emitter.emit4(stack_usage & 0xFFFF)
    if state.bpf_function_prolog_size == 0:
        state.bpf_function_prolog_size = state.offset - prolog_start


def _emit_alu(emitter: X86Emitter, inst: Instruction, dst: int, src: int) -> None:
    opcode = inst.opcode
    wide = (opcode & CLS_MASK) == CLS_ALU64
    is_reg = bool(opcode & SRC_REG)
    op = opcode & ALU_OP_MASK
    alu = emitter.alu64 if wide else emitter.alu32
    alu_imm32 = emitter.alu64_imm32 if wide else emitter.alu32_imm32
    alu_imm8 = emitter.alu64_imm8 if wide else emitter.alu32_imm8

    if op in (ALU_MUL, ALU_DIV, ALU_MOD):
        emit_muldivmod(emitter, opcode, src, dst, inst.imm)
    elif op in _ALU_IMM_EXTENSION:
        if is_reg:
            alu(_ALU_REG_OPCODE[op], src, dst)
        else:
            alu_imm32(0x81, _ALU_IMM_EXTENSION[op], dst, inst.imm)
    elif op in _SHIFT_EXTENSION:
        if is_reg:
            emitter.mov(src, RCX)
            alu(0xD3, _SHIFT_EXTENSION[op], dst)
        else:
            alu_imm8(0xC1, _SHIFT_EXTENSION[op], dst, inst.imm)
    elif op == ALU_NEG:
        alu(0xF7, 3, dst)
    elif op == ALU_MOV:
        if is_reg:
            emitter.mov(src, dst)
        elif wide:
            emitter.load_imm(dst, inst.imm)
        else:
            emitter.alu32_imm32(0xC7, 0, dst, inst.imm)
    elif opcode == Op.LE:
        # Already little-endian: only truncation is needed.
        if inst.imm == 16:
            emitter.alu32_imm32(0x81, 4, dst, 0xFFFF)
        elif inst.imm == 32:
            emitter.alu32_imm32(0x81, 4, dst, 0xFFFFFFFF)
    elif opcode == Op.BE:
        if inst.imm == 16:
            emitter.emit1(0x66)  # 16-bit operand override
            emitter.alu32_imm8(0xC1, 0, dst, 8)  # rol
            emitter.alu32_imm32(0x81, 4, dst, 0xFFFF)
        elif inst.imm in (32, 64):
            emitter.basic_rex(inst.imm == 64, 0, dst)
            emitter.emit1(0x0F)
            emitter.emit1(0xC8 | (dst & 7))  # bswap


def _emit_jump(
    emitter: X86Emitter,
    program: Program,
    regs: Sequence[int],
    pc: int,
    inst: Instruction,
    dst: int,
    src: int,
) -> None:
    opcode = inst.opcode
    op = opcode & JMP_OP_MASK
    target_pc = (pc + inst.offset + 1) & 0xFFFFFFFF

    if op == JMP_JA:
        emitter.jmp(target_pc)
        return
    if op == JMP_CALL:
        if inst.src == 0:
            emitter.mov(RCX_ALT, RCX)
            emitter.dispatched_external_helper_call(inst.imm & 0xFFFFFFFF)
            if inst.imm == program.unwind_stack_extension_index:
                emitter.cmp_imm32(regs[0], 0)
                emitter.jcc(0x84, TARGET_PC_EXIT)
        elif inst.src == 1:
            emit_local_call(emitter, regs, pc + inst.imm + 1)
        return
    if op == JMP_EXIT:
        # Pop the running function's stack usage before returning.
        emitter.alu64_imm32(0x81, 0, RSP, 8)
        emitter.ret()
        return

    wide = (opcode & CLS_MASK) == CLS_JMP
    is_reg = bool(opcode & SRC_REG)
    if op == JMP_JSET:
        if wide:
            if is_reg:
                emitter.alu64(0x85, src, dst)
            else:
                emitter.alu64_imm32(0xF7, 0, dst, inst.imm)
        elif is_reg:
            emitter.alu32(0x85, src, dst)
        else:
            emitter.alu32_imm32(0xF7, 0, dst, inst.imm)
    elif wide:
        if is_reg:
            emitter.cmp(src, dst)
        else:
            emitter.cmp_imm32(dst, inst.imm)
    elif is_reg:
        emitter.cmp32(src, dst)
    else:
        emitter.cmp32_imm32(dst, inst.imm)
    emitter.jcc(_CONDITION_CODES[op], target_pc)


def _translate(program: Program, state: JitState, regs: Sequence[int]) -> None:
    emitter = X86Emitter(state)
    instructions = program.instructions
    if len(instructions) > state.max_insts:
        raise JitError(f"program has more than {state.max_insts} instructions")

    _emit_prologue(emitter, regs, state.jit_mode)

    error_message = None
    pc = 0
    while pc < len(instructions):
        if not state.ok:
            break
        inst = instructions[pc]
        dst = regs[inst.dst % len(regs)]
        src = regs[inst.src % len(regs)]

        # Jump around the stack bookkeeping when falling into a local function.
        fallthrough_source = None
        starts_function = program.starts_function(pc)
        if pc != 0 and starts_function and instructions[pc - 1].has_fallthrough():
            fallthrough_source = emitter.near_jmp(0)

        if pc == 0 or starts_function:
            _emit_function_prolog(emitter, program.stack_usage_for(pc))

        if fallthrough_source is not None:
            state.fixup_jump_target(fallthrough_source, state.offset)
        state.pc_locs[pc] = state.offset

        opcode = inst.opcode
        cls = opcode & CLS_MASK
        if opcode not in _KNOWN_OPCODES:
            state.jit_status = JitProgress.UNKNOWN_INSTRUCTION
            error_message = f"Unknown instruction at PC {pc}: opcode {opcode:02x}"
        elif cls in (CLS_ALU, CLS_ALU64):
            _emit_alu(emitter, inst, dst, src)
        elif cls in (CLS_JMP, CLS_JMP32):
            _emit_jump(emitter, program, regs, pc, inst, dst, src)
        elif cls == CLS_LDX:
            emitter.load(_MEMORY_SIZES[opcode & 0x18], src, dst, inst.offset)
        elif cls == CLS_ST:
            emitter.store_imm32(_MEMORY_SIZES[opcode & 0x18], dst, inst.offset, inst.imm)
        elif cls == CLS_STX:
            emitter.store(_MEMORY_SIZES[opcode & 0x18], src, dst, inst.offset)
        elif cls == CLS_LD:
            pc += 1
            if pc >= len(instructions):
                raise JitError(
                    f"Incomplete lddw at PC {pc - 1}", JitProgress.UNEXPECTED_INSTRUCTION
                )
            high = instructions[pc].imm
            emitter.load_imm(dst, (inst.imm & 0xFFFFFFFF) | ((high & 0xFFFFFFFF) << 32))

        # 32-bit ALU results are zero-extended.
        if cls == CLS_ALU and (opcode & ALU_OP_MASK) != ALU_END:
            emitter.truncate_u32(dst)
        pc += 1

    if not state.ok:
        message = _STATUS_MESSAGES.get(state.jit_status, error_message)
        raise JitError(message, state.jit_status)

    _emit_epilogue(emitter, regs)
    state.retpoline_loc = emit_retpoline(emitter)
    state.dispatcher_loc = emit_dispatcher_address(emitter, program.dispatcher)
    state.helper_table_loc = emit_helper_table(emitter, program.helpers)

    if not state.ok:
        raise JitError(_STATUS_MESSAGES[state.jit_status], state.jit_status)


def _write_u32(state: JitState, location: int, value: int) -> None:
    state.buf[location:location + 4] = (value & 0xFFFFFFFF).to_bytes(4, "little")


def resolve_patchable_relatives(state: JitState) -> bool:
    """Patch every recorded relative address; False if one cannot be resolved."""
    for jump in state.jumps:
        if jump.target_offset != 0:
            target_loc = jump.target_offset
        elif jump.target_pc == TARGET_PC_EXIT:
            target_loc = state.exit_loc
        elif jump.target_pc == TARGET_PC_RETPOLINE:
            target_loc = state.retpoline_loc
        elif jump.target_pc < len(state.pc_locs):
            target_loc = state.pc_locs[jump.target_pc]
        else:
            return False

        if jump.near:
            rel = target_loc - (jump.offset_loc + 1)
            if not -128 <= rel < 128:
                return False
            state.buf[jump.offset_loc] = rel & 0xFF
        else:
            _write_u32(state, jump.offset_loc, target_loc - (jump.offset_loc + 4))

    for call in state.local_calls:
        if call.target_pc >= len(state.pc_locs):
            return False
        target_loc = state.pc_locs[call.target_pc]
        rel = target_loc - (call.offset_loc + 4) - state.bpf_function_prolog_size
        _write_u32(state, call.offset_loc, rel)

    for load in state.loads:
        if load.target_pc != TARGET_PC_EXTERNAL_DISPATCHER:
            return False
        _write_u32(state, load.offset_loc, state.dispatcher_loc - (load.offset_loc + 4))

    for lea in state.leas:
        if lea.target_pc != TARGET_LOAD_HELPER_TABLE:
            return False
        _write_u32(state, lea.offset_loc, state.helper_table_loc - (lea.offset_loc + 4))

    return True


def translate_x86_64(
    program: Program, size: int = DEFAULT_CODE_SIZE, mode: JitMode = JitMode.BASIC
) -> JitResult:
    """Compile program into at most size bytes of x86-64 code."""
    state = JitState(size, mode)
    _translate(program, state, default_register_map())
    if not resolve_patchable_relatives(state):
        raise JitError(_PATCH_FAILURE)
    return JitResult(
        code=bytes(state.buf[:state.offset]),
        external_dispatcher_offset=state.dispatcher_loc,
        external_helper_offset=state.helper_table_loc,
        jit_mode=mode,
    )


def _write_pointer(buffer: bytearray, location: int, value: int) -> bool:
    if location + 8 < len(buffer):
        buffer[location:location + 8] = (value & 0xFFFFFFFFFFFFFFFF).to_bytes(8, "little")
        return True
    return False


def update_dispatcher_x86_64(buffer: bytearray, offset: int, dispatcher: int) -> bool:
    """Replace the external dispatcher pointer stored at offset in compiled code."""
    return _write_pointer(buffer, offset, dispatcher)


def update_helper_x86_64(buffer: bytearray, offset: int, idx: int, helper: int) -> bool:
    """Replace helper idx in the helper table stored at offset in compiled code."""
    return _write_pointer(buffer, offset + 8 * idx, helper)