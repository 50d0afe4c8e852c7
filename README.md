# bpfjit

`bpfjit` links eBPF programs out of relocatable ELF objects and translates
them into x86-64 machine code. It is pure Python with no runtime
dependencies: it produces the bytes of the compiled code and the offsets
needed to patch them later.

## Modules

- **`bpfjit.instructions`**: the `Op` enumeration of opcodes and the frozen
  `Instruction` dataclass (`opcode`, `dst`, `src`, `offset`, `imm`), with
  `Instruction.pack()` and `Instruction.has_fallthrough()`.
  `decode_instruction`, `decode_instructions` and `encode_instructions`
  convert between instructions and their 8-byte little-endian form; malformed
  lengths or out-of-range fields raise `ValueError`.
- **`bpfjit.elfloader`**: `load_elf(data, main_function_name=None,
  relocate_data=None, lookup_helper=None)` checks the ELF header, collects the
  function symbols of executable sections, places the main function first
  (by name, or the function at the start of `.text` when no name is given),
  applies relocations and returns the linked program bytes.
  - `R_BPF_64_64` data relocations call
    `relocate_data(section_data, symbol_name, symbol_value, symbol_size, imm)`,
    whose 64-bit result is split across the two halves of an `lddw`.
  - `R_BPF_64_32` relocations rewrite local calls to point at the linked
    callee, or resolve helper calls through `lookup_helper(name)`, which
    returns a helper index or `None`.
  - Other relocation types are skipped with a `RuntimeWarning`.
  - Any malformed object raises `ElfLoadError`.
  `section_index_from_name` finds a section by name.
- **`bpfjit.jitstate`**: `Program` (instructions, local function entries,
  per-function stack usage, helper and dispatcher addresses), `JitState` (the
  output buffer and the tables of relative addresses still to be patched),
  `JitMode` (`BASIC` allocates a 512-byte eBPF stack; `EXTENDED` takes the
  stack from the third and fourth arguments), `JitProgress`, `JitResult` and
  `JitError`.
- **`bpfjit.x86asm`**: `X86Emitter` writes single x86-64 instructions (REX and
  ModRM encoding, ALU operations, loads, stores, jumps, calls, the helper-call
  sequence) into a `JitState`; `OperandSize` gives memory operand widths.
- **`bpfjit.x86ops`**: longer sequences used by the compiler: local calls,
  multiply/divide/modulo with eBPF semantics (division by zero gives zero, and
  the remainder by zero is the dividend), the retpoline, the dispatcher
  pointer and the helper table. It also has `default_register_map` and
  `shifted_register_map`.
- **`bpfjit.x86jit`**: `translate_x86_64(program, size=65536,
  mode=JitMode.BASIC)` compiles a `Program` and returns a `JitResult`.
  `resolve_patchable_relatives` patches the recorded relative addresses.
  `update_dispatcher_x86_64` and `update_helper_x86_64` rewrite the embedded
  dispatcher and helper pointers in a `bytearray` of compiled code; each
  returns `False` if the write would not fit.

## Installation

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Example

```python
from bpfjit.instructions import Instruction, Op, encode_instructions, decode_instructions
from bpfjit.jitstate import JitMode, JitError, Program
from bpfjit.x86jit import translate_x86_64

code = encode_instructions([
    Instruction(Op.MOV64_IMM, dst=0, imm=42),
    Instruction(Op.EXIT),
])

program = Program(decode_instructions(code))
try:
    result = translate_x86_64(program, 65536, JitMode.BASIC)
except JitError as exc:
    print("compilation failed:", exc)
else:
    print(len(result.code), "bytes of machine code")
```

The compiled code ends with the retpoline, then the 8-byte external
dispatcher address, then a table of 64 helper addresses.
`JitResult.external_dispatcher_offset` and `JitResult.external_helper_offset`
give the positions of the last two, so they can be changed without compiling
again.

## What it does not do

- It does not run the generated code or interpret eBPF programs.
- It does not verify programs beyond rejecting unknown opcodes and a
  truncated `lddw`.
- It generates x86-64 code only.
- It has no command-line tool.