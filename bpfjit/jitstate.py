"""Bookkeeping shared by the code generators: output buffer and relocation tables."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Mapping, Optional, Sequence

from .instructions import Instruction, Op

MAX_INSTS = 65536
MAX_EXT_FUNCS = 64
EBPF_STACK_SIZE = 512

# Special values for PatchableRelative.target_pc.
TARGET_PC_EXIT = 0xFFFFFFFF
TARGET_PC_ENTER = 0xFFFFFFFF & 0x01
TARGET_PC_RETPOLINE = 0xFFFFFFFF & 0x0101
TARGET_PC_EXTERNAL_DISPATCHER = 0xFFFFFFFF & 0x010101
TARGET_LOAD_HELPER_TABLE = 0xFFFFFFFF & 0x01010101


class JitProgress(enum.Enum):
    """Status of a compilation in progress."""

    NO_ERROR = enum.auto()
    TOO_MANY_JUMPS = enum.auto()
    TOO_MANY_LOADS = enum.auto()
    TOO_MANY_LEAS = enum.auto()
    TOO_MANY_LOCAL_CALLS = enum.auto()
    NOT_ENOUGH_SPACE = enum.auto()
    UNEXPECTED_INSTRUCTION = enum.auto()
    UNKNOWN_INSTRUCTION = enum.auto()


class JitMode(enum.Enum):
    """Whether the generated code allocates its own eBPF stack."""

    BASIC = "basic"
    EXTENDED = "extended"


class JitError(Exception):
    """Raised when a program cannot be compiled."""

    def __init__(self, message: str, progress: Optional[JitProgress] = None) -> None:
        super().__init__(message)
        self.progress = progress


@dataclass
class PatchableRelative:
    """A relative address in the output that is resolved after code generation."""

    offset_loc: int
    target_pc: int
    target_offset: int = 0
    near: bool = False


@dataclass
class Program:
    """A loaded eBPF program together with what the compiler needs to know about it."""

    instructions: Sequence[Instruction]
    local_functions: Optional[frozenset] = None
    stack_usage: Mapping[int, int] = field(default_factory=dict)
    default_stack_usage: int = EBPF_STACK_SIZE
    helpers: Sequence[int] = ()
    dispatcher: int = 0
    unwind_stack_extension_index: int = -1

    def __post_init__(self) -> None:
        self.instructions = list(self.instructions)
        if len(self.helpers) > MAX_EXT_FUNCS:
            raise ValueError(f"at most {MAX_EXT_FUNCS} helpers may be registered")
        self.helpers = list(self.helpers) + [0] * (MAX_EXT_FUNCS - len(self.helpers))
        if self.local_functions is None:
            self.local_functions = frozenset(
                pc + inst.imm + 1
                for pc, inst in enumerate(self.instructions)
                if inst.opcode == Op.CALL and inst.src == 1
            )
        else:
            self.local_functions = frozenset(self.local_functions)

    def starts_function(self, pc: int) -> bool:
        """Whether the instruction at pc is the entry of a local function."""
        return pc in self.local_functions

    def stack_usage_for(self, pc: int) -> int:
        """Bytes of eBPF stack used by the function starting at pc."""
        return self.stack_usage.get(pc, self.default_stack_usage)


class JitState:
    """The output buffer and the tables of addresses still to be patched."""

    def __init__(self, size: int, mode: JitMode = JitMode.BASIC, max_insts: int = MAX_INSTS) -> None:
        self.buf = bytearray(size)
        self.size = size
        self.offset = 0
        self.max_insts = max_insts
        self.pc_locs = [0] * (max_insts + 1)
        self.exit_loc = 0
        self.entry_loc = 0
        self.unwind_loc = 0
        self.retpoline_loc = 0
        self.dispatcher_loc = 0
        self.helper_table_loc = 0
        self.jit_status = JitProgress.NO_ERROR
        self.jit_mode = mode
        self.jumps: list[PatchableRelative] = []
        self.loads: list[PatchableRelative] = []
        self.leas: list[PatchableRelative] = []
        self.local_calls: list[PatchableRelative] = []
        self.stack_size = 0
        self.bpf_function_prolog_size = 0

    @property
    def ok(self) -> bool:
        return self.jit_status is JitProgress.NO_ERROR

    def emit_bytes(self, data: bytes) -> None:
        """Append bytes; nothing is written once an error has been recorded."""
        if not self.ok:
            return
        end = self.offset + len(data)
        if end > self.size:
            self.jit_status = JitProgress.NOT_ENOUGH_SPACE
            return
        self.buf[self.offset:end] = data
        self.offset = end

    def _record(self, table: list, entry: PatchableRelative, overflow: JitProgress) -> bool:
        if len(table) >= self.max_insts:
            self.jit_status = overflow
            return False
        table.append(entry)
        return True

    def add_jump(self, offset: int, target_pc: int, near: bool = False) -> bool:
        """Record a jump whose displacement lives at offset."""
        return self._record(
            self.jumps, PatchableRelative(offset, target_pc, 0, near), JitProgress.TOO_MANY_JUMPS
        )

    def add_local_call(self, offset: int, target_pc: int) -> bool:
        """Record a call to a local function whose displacement lives at offset."""
        return self._record(
            self.local_calls, PatchableRelative(offset, target_pc), JitProgress.TOO_MANY_LOCAL_CALLS
        )

    def note_load(self, target_pc: int) -> bool:
        """Record a PC-relative load at the current offset."""
        return self._record(
            self.loads, PatchableRelative(self.offset, target_pc), JitProgress.TOO_MANY_LOADS
        )

    def note_lea(self, target: int) -> bool:
        """Record a PC-relative address calculation at the current offset."""
        return self._record(
            self.leas, PatchableRelative(self.offset, target), JitProgress.TOO_MANY_LEAS
        )

    def fixup_jump_target(self, src_offset: int, dest_offset: int) -> None:
        """Point every jump recorded at src_offset to the output offset dest_offset."""
        for jump in self.jumps:
            if jump.offset_loc == src_offset:
                jump.target_offset = dest_offset

    def emit_jump_target(self, jump_src: int) -> None:
        """Make the jump recorded at jump_src land at the current offset."""
        self.fixup_jump_target(jump_src, self.offset)


@dataclass(frozen=True)
class JitResult:
    """Compiled machine code and where its patchable pointers live."""

    code: bytes
    external_dispatcher_offset: int
    external_helper_offset: int
    jit_mode: JitMode