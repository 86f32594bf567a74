"""
Patch generation for the Rich header routine in link.exe.

The linker builds the Rich header in a single function that writes the
"DanS" and "Rich" signatures as immediates and returns a checksum in EAX.
We find that function by its magic constants, decode it from every plausible
instruction boundary, and replace the last write to EAX with ``xor eax, eax``.
"""

import logging
import re
import struct
from dataclasses import dataclass
from enum import Enum, auto
from typing import Iterator, List, Optional

import capstone

from .disasm import DecodedInstruction, OperandKind, create_disassembler, decode
from .errors import AlreadyPatchedError, PatchNotFoundError, UnpatchableInstructionError
from .exe_tools import Architecture
from .patch import Patch, format_bytes

log = logging.getLogger(__name__)


# ============================================================================
# Constants
# ============================================================================

LOOK_BACK_BUFFER = 15       # Longest possible x86 instruction
LOOK_AHEAD_BUFFER = 100     # Enough to reach the routine's ret
MAX_MAGIC_DISTANCE = 1024

DANS_MAGIC_BYTES = b"DanS"
RICH_MAGIC_BYTES = b"Rich"
DANS_MAGIC = struct.unpack('<I', DANS_MAGIC_BYTES)[0]
RICH_MAGIC = struct.unpack('<I', RICH_MAGIC_BYTES)[0]
MAGIC_SIZE = 4
MAGIC_PATTERN = re.compile(b"(?=" + re.escape(DANS_MAGIC_BYTES) + b"|" + re.escape(RICH_MAGIC_BYTES) + b")")

XOR_EAX_EAX = b"\x33\xC0"
NOP = 0x90


# ============================================================================
# Data Structures
# ============================================================================

@dataclass(frozen=True)
class CodeRange:
    """Half-open byte range [start, end) within the code buffer"""
    start: int
    end: int

    def __len__(self):
        return self.end - self.start

    def __repr__(self):
        return f"CodeRange(0x{self.start:X}, 0x{self.end:X})"


class InstructionType(Enum):
    USES_DANS_MAGIC = auto()
    USES_RICH_MAGIC = auto()
    MODIFIES_EAX = auto()
    RET = auto()
    OTHER = auto()


@dataclass(frozen=True)
class ClassifiedInstruction:
    instruction: DecodedInstruction
    category: InstructionType

    @property
    def relative_address(self) -> int:
        return self.instruction.address

    @property
    def raw_bytes(self) -> bytes:
        return self.instruction.raw_bytes


# ============================================================================
# Candidate Locator
# ============================================================================

def find_magic_positions(code: bytes) -> Iterator[int]:
    """Yield every offset where either magic starts, in ascending order."""
    for match in MAGIC_PATTERN.finditer(code):
        yield match.start()


def find_candidate_ranges(code: bytes) -> Iterator[CodeRange]:
    """
    Pair up neighbouring magic occurrences.

    Each pair of consecutive hits with different magics no more than
    MAX_MAGIC_DISTANCE apart becomes a candidate range covering both. A hit
    may take part in two pairs (with its predecessor and its successor).
    """
    previous = None
    for pos in find_magic_positions(code):
        if previous is not None:
            first_magic = code[previous:previous + MAGIC_SIZE]
            second_magic = code[pos:pos + MAGIC_SIZE]
            if first_magic != second_magic and pos - previous <= MAX_MAGIC_DISTANCE:
                yield CodeRange(previous, pos + MAGIC_SIZE)
        previous = pos


# ============================================================================
# Window Generator
# ============================================================================

def gen_disassemble_ranges(code: bytes, candidate: CodeRange) -> Iterator[CodeRange]:
    """
    Yield one decode window per possible start before the candidate.

    Decoding is not self-synchronizing, so every offset in the LOOK_BACK_BUFFER
    bytes before ``candidate.start`` is tried. All windows share the same end.
    A candidate starting at offset 0 produces no windows.
    """
    end = min(candidate.end + LOOK_AHEAD_BUFFER, len(code))
    for start in range(max(0, candidate.start - LOOK_BACK_BUFFER), candidate.start):
        yield CodeRange(start, end)


# ============================================================================
# Classifier & Patch Selector
# ============================================================================

def classify_instruction(insn: DecodedInstruction) -> InstructionType:
    if insn.mnemonic == 'ret':
        return InstructionType.RET
    if insn.immediate == DANS_MAGIC:
        return InstructionType.USES_DANS_MAGIC
    if insn.immediate == RICH_MAGIC:
        return InstructionType.USES_RICH_MAGIC
    dest = insn.destination
    if dest is not None and dest.kind == OperandKind.REGISTER and dest.register == 'eax':
        return InstructionType.MODIFIES_EAX
    return InstructionType.OTHER


def classify_instructions(instructions: List[DecodedInstruction]) -> List[ClassifiedInstruction]:
    """Classify and drop everything that is OTHER."""
    classified = []
    for insn in instructions:
        category = classify_instruction(insn)
        if category != InstructionType.OTHER:
            classified.append(ClassifiedInstruction(insn, category))
    return classified


def select_instruction(classified: List[ClassifiedInstruction]) -> Optional[ClassifiedInstruction]:
    """
    Pick the instruction to patch from one window, or None to reject it.

    The instructions up to the first ret must use both magics; the last EAX
    write among them is the one producing the checksum.
    """
    body = []
    terminator = None
    for item in classified:
        if item.category == InstructionType.RET:
            terminator = item
            break
        body.append(item)

    if terminator is None:
        log.debug("    rejected: no ret")
        return None

    categories = {item.category for item in body}
    if InstructionType.USES_DANS_MAGIC not in categories or InstructionType.USES_RICH_MAGIC not in categories:
        log.debug("    rejected: magics not both used before ret")
        return None

    eax_writes = [item for item in body if item.category == InstructionType.MODIFIES_EAX]
    if not eax_writes:
        log.debug("    rejected: no eax modification before ret")
        return None

    return eax_writes[-1]


def make_patch(code_section_offset: int, code: bytes, window: CodeRange,
               selected: ClassifiedInstruction) -> Patch:
    """Build the replacement for the selected instruction."""
    if len(selected.raw_bytes) < len(XOR_EAX_EAX):
        raise UnpatchableInstructionError(
            f"Cannot create patch. Instruction '{selected.instruction}' is too short."
        )

    start = window.start + selected.relative_address
    original_code = code[start:start + len(selected.raw_bytes)]

    if original_code == XOR_EAX_EAX:
        raise AlreadyPatchedError("Cannot create patch. It seems like the code is already patched.")

    patched_code = XOR_EAX_EAX + bytes([NOP]) * (len(original_code) - len(XOR_EAX_EAX))

    return Patch(
        offset=code_section_offset + start,
        original_code=original_code,
        patched_code=patched_code,
    )


def find_patch(arch: Architecture, code_section_offset: int, code: bytes) -> Patch:
    """
    Search ``code`` (the code section contents) for the Rich header routine.

    Candidates are tried first to last and windows in generation order; the
    first window that validates produces the patch.

    Raises:
        PatchNotFoundError: no window validated
        AlreadyPatchedError: the selected instruction is already xor eax, eax
        UnpatchableInstructionError: the selected instruction is a single byte
    """
    cs = create_disassembler(arch)

    candidates = list(find_candidate_ranges(code))
    log.debug("Found %d candidate range(s) in %d bytes of %s code", len(candidates), len(code), arch)

    for candidate in candidates:
        log.debug("Candidate %r", candidate)
        for window in gen_disassemble_ranges(code, candidate):
            log.debug("  window %r", window)
            try:
                instructions = decode(code[window.start:window.end], arch, 0, cs=cs)
            except capstone.CsError as e:
                log.debug("    rejected: decoding failed (%s)", e)
                continue

            selected = select_instruction(classify_instructions(instructions))
            if selected is None:
                continue

            patch = make_patch(code_section_offset, code, window, selected)
            log.info("Patching '%s' at file offset 0x%X [%s]",
                     selected.instruction, patch.offset, format_bytes(patch.original_code))
            return patch

    raise PatchNotFoundError()
