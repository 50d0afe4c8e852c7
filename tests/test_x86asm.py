import pytest

from bpfjit.jitstate import (
    TARGET_LOAD_HELPER_TABLE,
    TARGET_PC_EXTERNAL_DISPATCHER,
    TARGET_PC_RETPOLINE,
    JitProgress,
    JitState,
)
from bpfjit.x86asm import (
    R9,
    R10,
    R12,
    R15,
    RAX,
    RBP,
    RBX,
    RCX,
    VOLATILE_CTXT,
    OperandSize,
    X86Emitter,
)


def make(size=256, max_insts=16):
    state = JitState(size, max_insts=max_insts)
    return state, X86Emitter(state)


def code_of(state):
    return bytes(state.buf[: state.offset])


def encode(action, size=256):
    state, em = make(size)
    action(em)
    return code_of(state)


def test_ret_and_pause_bytes():
    assert encode(lambda e: e.ret()) == bytes([0xC3])
    assert encode(lambda e: e.pause()) == bytes([0xF3, 0x90])


def test_push_pop_low_register_has_no_rex():
    pushed = encode(lambda e: e.push(RBX))
    popped = encode(lambda e: e.pop(RBX))
    assert len(pushed) == 1 and pushed[0] & 0xF8 == 0x50
    assert len(popped) == 1 and popped[0] & 0xF8 == 0x58


def test_push_high_register_has_rex_prefix():
    pushed = encode(lambda e: e.push(R12))
    assert len(pushed) == 2
    assert pushed[0] & 0xF0 == 0x40
    assert pushed[0] & 1 == 1


def test_mov_and_cmp_are_alu64_forms():
    assert encode(lambda e: e.mov(R10, RAX)) == encode(lambda e: e.alu64(0x89, R10, RAX))
    assert encode(lambda e: e.cmp(RBX, R15)) == encode(lambda e: e.alu64(0x39, RBX, R15))
    assert encode(lambda e: e.cmp32(RBX, RCX)) == encode(lambda e: e.alu32(0x39, RBX, RCX))
    assert encode(lambda e: e.cmp_imm32(R9, 7)) == encode(lambda e: e.alu64_imm32(0x81, 7, R9, 7))
    assert encode(lambda e: e.cmp32_imm32(R9, 7)) == encode(lambda e: e.alu32_imm32(0x81, 7, R9, 7))


def test_truncate_u32_is_and_with_all_ones():
    assert encode(lambda e: e.truncate_u32(R12)) == encode(
        lambda e: e.alu32_imm32(0x81, 4, R12, 0xFFFFFFFF)
    )


def test_alu64_always_has_rex_alu32_only_for_high_registers():
    assert len(encode(lambda e: e.alu64(0x01, RAX, RBX))) == 3
    assert len(encode(lambda e: e.alu32(0x01, RAX, RBX))) == 2
    assert len(encode(lambda e: e.alu32(0x01, RAX, R12))) == 3


def test_modrm_rejects_low_mod_bits():
    _, em = make()
    with pytest.raises(ValueError):
        em.modrm(0x01, 0, 0)


def test_rex_rejects_non_bit_fields():
    _, em = make()
    with pytest.raises(ValueError):
        em.rex(2, 0, 0, 0)


@pytest.mark.parametrize(
    "m,d,length",
    [(RAX, 0, 1), (RBP, 0, 2), (RAX, 100, 2), (RAX, -128, 2), (RAX, 127, 2), (RAX, -129, 5), (RAX, 1000, 5)],
)
def test_modrm_and_displacement_lengths(m, d, length):
    code = encode(lambda e: e.modrm_and_displacement(RCX, m, d))
    assert len(code) == length
    if length > 1:
        assert int.from_bytes(code[1:], "little", signed=True) == d


def test_emit_widths_round_trip():
    assert int.from_bytes(encode(lambda e: e.emit2(-2)), "little", signed=True) == -2
    assert int.from_bytes(encode(lambda e: e.emit4(-5)), "little", signed=True) == -5
    assert int.from_bytes(encode(lambda e: e.emit8(1 << 40)), "little") == 1 << 40
    assert encode(lambda e: e.emit1(0x1FF)) == encode(lambda e: e.emit1(0xFF))


def test_alu32_imm8_encodes_signed_byte():
    code = encode(lambda e: e.alu32_imm8(0xC1, 4, RBX, -1))
    assert int.from_bytes(code[-1:], "little", signed=True) == -1


def test_load_imm_small_uses_sign_extended_move():
    code = encode(lambda e: e.load_imm(RBX, -3))
    assert code == encode(lambda e: e.alu64_imm32(0xC7, 0, RBX, -3))


def test_load_imm_large_uses_movabs():
    value = 0x123456789A
    code = encode(lambda e: e.load_imm(RBX, value))
    assert len(code) == 10
    assert int.from_bytes(code[2:], "little") == value


def test_load_imm_treats_unsigned_as_signed():
    assert encode(lambda e: e.load_imm(RAX, (1 << 64) - 1)) == encode(lambda e: e.load_imm(RAX, -1))


def test_load_narrow_uses_zero_extension():
    code = encode(lambda e: e.load(OperandSize.S8, RBX, RAX, 0))
    assert code[:2] == bytes([0x0F, 0xB6])
    code16 = encode(lambda e: e.load(OperandSize.S16, RBX, RAX, 0))
    assert code16[:2] == bytes([0x0F, 0xB7])


def test_store_prefixes():
    assert encode(lambda e: e.store(OperandSize.S16, RAX, RBX, 0))[0] == 0x66
    byte_store = encode(lambda e: e.store(OperandSize.S8, RAX, RBX, 0))
    assert byte_store[0] & 0xF0 == 0x40
    assert byte_store[1] == 0x88


@pytest.mark.parametrize(
    "size,width", [(OperandSize.S8, 1), (OperandSize.S16, 2), (OperandSize.S32, 4), (OperandSize.S64, 4)]
)
def test_store_imm32_immediate_width(size, width):
    code = encode(lambda e: e.store_imm32(size, RBX, 8, -7))
    assert int.from_bytes(code[-width:], "little", signed=True) == -7
    assert int.from_bytes(code[-width - 1 : -width], "little", signed=True) == 8


def test_jmp_records_jump_with_placeholder():
    state, em = make()
    loc = em.jmp(42)
    assert loc == 1
    assert state.jumps[0].offset_loc == loc
    assert state.jumps[0].target_pc == 42
    assert not state.jumps[0].near
    assert code_of(state)[1:] == bytes(4)


def test_near_jmp_records_near_jump():
    state, em = make()
    loc = em.near_jmp(3)
    assert state.offset == 2
    assert state.jumps[0].near
    assert state.jumps[0].offset_loc == loc


def test_call_returns_displacement_offset():
    state, em = make()
    em.ret()
    src = em.call(9)
    assert src == 2
    assert state.jumps[-1].offset_loc == src
    assert state.jumps[-1].target_pc == 9


def test_jcc_prefix_and_record():
    state, em = make()
    loc = em.jcc(0x84, 5)
    assert code_of(state)[:2] == bytes([0x0F, 0x84])
    assert state.jumps[0].offset_loc == loc == 2


def test_too_many_jumps():
    state, em = make(max_insts=1)
    em.jmp(1)
    assert em.jmp(2) == 0
    assert state.jit_status is JitProgress.TOO_MANY_JUMPS


def test_too_many_local_calls():
    state, em = make(max_insts=1)
    em.local_call_address_reloc(1)
    assert em.local_call_address_reloc(2) == 0
    assert state.jit_status is JitProgress.TOO_MANY_LOCAL_CALLS


def test_rip_relative_load_records_load():
    state, em = make()
    loc = em.rip_relative_load(RAX, TARGET_PC_EXTERNAL_DISPATCHER)
    assert state.loads[0].offset_loc == loc == state.offset - 4
    assert state.loads[0].target_pc == TARGET_PC_EXTERNAL_DISPATCHER


def test_rip_relative_load_overflow():
    state, em = make(max_insts=1)
    em.rip_relative_load(RAX, TARGET_PC_EXTERNAL_DISPATCHER)
    before = state.offset
    assert em.rip_relative_load(RAX, TARGET_PC_EXTERNAL_DISPATCHER) == 0
    assert state.jit_status is JitProgress.TOO_MANY_LOADS
    assert state.offset == before


def test_rip_relative_lea_records_lea_and_overflow():
    state, em = make(max_insts=1)
    em.rip_relative_lea(R10, TARGET_LOAD_HELPER_TABLE)
    assert state.leas[0].offset_loc == state.offset - 4
    assert state.leas[0].target_pc == TARGET_LOAD_HELPER_TABLE
    em.rip_relative_lea(R10, TARGET_LOAD_HELPER_TABLE)
    assert state.jit_status is JitProgress.TOO_MANY_LEAS


def test_not_enough_space_stops_output():
    state, em = make(size=2)
    em.emit4(1)
    assert state.jit_status is JitProgress.NOT_ENOUGH_SPACE
    assert state.offset == 0
    em.emit1(1)
    assert state.offset == 0


def test_dispatched_external_helper_call_structure():
    state, em = make(size=512)
    em.dispatched_external_helper_call(5)
    code = code_of(state)

    push_ctxt = encode(lambda e: e.push(VOLATILE_CTXT))
    pop_ctxt = encode(lambda e: e.pop(VOLATILE_CTXT))
    assert code.startswith(push_ctxt * 2)
    assert code.endswith(pop_ctxt * 2)

    assert [load.target_pc for load in state.loads] == [TARGET_PC_EXTERNAL_DISPATCHER]
    assert [lea.target_pc for lea in state.leas] == [TARGET_LOAD_HELPER_TABLE]

    conditional, retpoline_call = state.jumps
    assert conditional.target_offset > conditional.offset_loc
    assert retpoline_call.target_pc == TARGET_PC_RETPOLINE
    assert conditional.target_offset < retpoline_call.offset_loc

    idx_move = encode(lambda e: e.load_imm(R9, 5))
    assert code[conditional.target_offset : conditional.target_offset + len(idx_move)] == idx_move