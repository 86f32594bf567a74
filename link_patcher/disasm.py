"""
Thin decoding layer over capstone.

The patch selector only needs a handful of facts per instruction, so capstone
instructions are converted to DecodedInstruction values right away. That keeps
classification independent of capstone's rendered operand text.
"""

from dataclasses import dataclass
from enum import Enum, auto
from typing import List, Optional

import capstone
from capstone import x86

from .exe_tools import Architecture

CAPSTONE_MODES = {
    Architecture.X86: capstone.CS_MODE_32,
    Architecture.X64: capstone.CS_MODE_64,
}


class OperandKind(Enum):
    REGISTER = auto()
    MEMORY = auto()
    IMMEDIATE = auto()
    OTHER = auto()


@dataclass(frozen=True)
class Operand:
    kind: OperandKind
    register: Optional[str] = None  # Lowercase register name for REGISTER operands


@dataclass(frozen=True)
class DecodedInstruction:
    """Structured view of one decoded instruction"""
    address: int                    # Relative to the decode base address
    size: int
    raw_bytes: bytes
    mnemonic: str
    op_str: str
    destination: Optional[Operand]  # First operand of a "dst, src" form
    immediate: Optional[int]        # Last immediate operand, as an unsigned dword

    def __str__(self):
        return f"0x{self.address:X}: {self.mnemonic} {self.op_str}".rstrip()


def create_disassembler(arch: Architecture) -> capstone.Cs:
    """Capstone instance in Intel syntax with operand details enabled."""
    cs = capstone.Cs(capstone.CS_ARCH_X86, CAPSTONE_MODES[arch])
    cs.syntax = capstone.CS_OPT_SYNTAX_INTEL
    cs.detail = True
    return cs


def _convert_operand(cs: capstone.Cs, op) -> Operand:
    if op.type == x86.X86_OP_REG:
        return Operand(OperandKind.REGISTER, cs.reg_name(op.reg))
    if op.type == x86.X86_OP_MEM:
        return Operand(OperandKind.MEMORY)
    if op.type == x86.X86_OP_IMM:
        return Operand(OperandKind.IMMEDIATE)
    return Operand(OperandKind.OTHER)


def convert_instruction(cs: capstone.Cs, insn) -> DecodedInstruction:
    operands = list(insn.operands)

    # Only the first of two or more operands is a destination, so pop/inc eax
    # never count as eax writes while cmp/test eax do.
    destination = None
    if len(operands) >= 2:
        destination = _convert_operand(cs, operands[0])

    immediate = None
    for op in operands:
        if op.type == x86.X86_OP_IMM:
            immediate = op.imm & 0xFFFFFFFF

    return DecodedInstruction(
        address=insn.address,
        size=insn.size,
        raw_bytes=bytes(insn.bytes),
        mnemonic=insn.mnemonic.lower(),
        op_str=insn.op_str,
        destination=destination,
        immediate=immediate,
    )


def decode(code: bytes, arch: Architecture, base_address: int = 0,
           cs: Optional[capstone.Cs] = None) -> List[DecodedInstruction]:
    """
    Linearly decode ``code`` until the end or the first undecodable byte.

    Raises capstone.CsError if capstone itself fails.
    """
    if cs is None:
        cs = create_disassembler(arch)
    return [convert_instruction(cs, insn) for insn in cs.disasm(code, base_address)]
