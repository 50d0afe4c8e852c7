"""Link eBPF programs from ELF objects and compile them to x86-64 machine code."""

__version__ = "0.1.0"
__all__ = ["elfloader", "instructions", "jitstate", "x86asm", "x86jit", "x86ops"]