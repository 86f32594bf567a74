import pytest

from link_patcher.disasm import DecodedInstruction, Operand, OperandKind
from link_patcher.errors import AlreadyPatchedError, PatchNotFoundError, UnpatchableInstructionError
from link_patcher.exe_tools import Architecture
from link_patcher.patch import Patch
from link_patcher.patch_gen import (
    DANS_MAGIC,
    DANS_MAGIC_BYTES,
    LOOK_AHEAD_BUFFER,
    LOOK_BACK_BUFFER,
    RICH_MAGIC,
    RICH_MAGIC_BYTES,
    ClassifiedInstruction,
    CodeRange,
    InstructionType,
    classify_instruction,
    find_candidate_ranges,
    find_patch,
    gen_disassemble_ranges,
    select_instruction,
)

from pe_image import EAX_WRITE_OFFSET, IN_EAX_DX, MOV_EAX_EDI, XOR_EAX_EAX, dummy_instructions, rich_routine

BOTH_ARCHITECTURES = pytest.mark.parametrize("arch", [Architecture.X86, Architecture.X64])


def dummy_bytes(n):
    return bytes(i % 32 for i in range(n))


# ============================================================================
# Candidate ranges
# ============================================================================

class TestFindCandidateRanges:

    def test_dans_first(self):
        data = dummy_bytes(100) + DANS_MAGIC_BYTES + dummy_bytes(80) + RICH_MAGIC_BYTES + dummy_bytes(800)
        assert list(find_candidate_ranges(data)) == [CodeRange(100, 188)]

    def test_rich_first(self):
        data = dummy_bytes(100) + RICH_MAGIC_BYTES + dummy_bytes(80) + DANS_MAGIC_BYTES + dummy_bytes(800)
        assert list(find_candidate_ranges(data)) == [CodeRange(100, 188)]

    def test_same_magic_twice_is_skipped(self):
        data = (dummy_bytes(100) + RICH_MAGIC_BYTES + dummy_bytes(80) + DANS_MAGIC_BYTES + dummy_bytes(800)
                + RICH_MAGIC_BYTES + dummy_bytes(50) + RICH_MAGIC_BYTES + dummy_bytes(80))
        assert list(find_candidate_ranges(data)) == [CodeRange(100, 188), CodeRange(184, 992)]

    def test_alternating_magics_overlap(self):
        data = (dummy_bytes(100) + DANS_MAGIC_BYTES + dummy_bytes(80) + RICH_MAGIC_BYTES
                + dummy_bytes(46) + DANS_MAGIC_BYTES + dummy_bytes(100))
        assert list(find_candidate_ranges(data)) == [CodeRange(100, 188), CodeRange(184, 238)]

    def test_only_one_magic(self):
        data = dummy_bytes(100) + RICH_MAGIC_BYTES + dummy_bytes(80)
        assert list(find_candidate_ranges(data)) == []

    def test_magic_at_beginning(self):
        data = RICH_MAGIC_BYTES + dummy_bytes(80) + DANS_MAGIC_BYTES + dummy_bytes(800)
        assert list(find_candidate_ranges(data)) == [CodeRange(0, 88)]

    def test_magic_at_end(self):
        data = dummy_bytes(100) + RICH_MAGIC_BYTES + dummy_bytes(80) + DANS_MAGIC_BYTES
        assert list(find_candidate_ranges(data)) == [CodeRange(100, 188)]

    def test_magic_near_end(self):
        data = dummy_bytes(100) + RICH_MAGIC_BYTES + dummy_bytes(80) + DANS_MAGIC_BYTES + dummy_bytes(10)
        assert list(find_candidate_ranges(data)) == [CodeRange(100, 188)]

    def test_too_far_apart(self):
        data = dummy_bytes(100) + DANS_MAGIC_BYTES + dummy_bytes(2000) + RICH_MAGIC_BYTES + dummy_bytes(800)
        assert list(find_candidate_ranges(data)) == []

    def test_distance_limit_is_inclusive(self):
        data = dummy_bytes(10) + DANS_MAGIC_BYTES + dummy_bytes(1020) + RICH_MAGIC_BYTES
        assert list(find_candidate_ranges(data)) == [CodeRange(10, 1038)]

        data = dummy_bytes(10) + DANS_MAGIC_BYTES + dummy_bytes(1021) + RICH_MAGIC_BYTES
        assert list(find_candidate_ranges(data)) == []


# ============================================================================
# Disassembly windows
# ============================================================================

class TestGenDisassembleRanges:

    def test_generates_all_ranges(self):
        code = bytes(1000)
        result = list(gen_disassemble_ranges(code, CodeRange(500, 600)))
        assert len(result) == LOOK_BACK_BUFFER
        assert [r.start for r in result] == list(range(485, 500))
        assert all(r.end == 600 + LOOK_AHEAD_BUFFER for r in result)

    def test_clamp_start(self):
        code = bytes(1000)
        result = list(gen_disassemble_ranges(code, CodeRange(5, 100)))
        assert result == [CodeRange(start, 200) for start in range(5)]

    def test_candidate_at_zero_has_no_windows(self):
        code = bytes(1000)
        assert list(gen_disassemble_ranges(code, CodeRange(0, 100))) == []

    def test_clamp_end(self):
        code = bytes(1000)
        result = list(gen_disassemble_ranges(code, CodeRange(900, 998)))
        assert len(result) == LOOK_BACK_BUFFER
        assert all(r.end == 1000 for r in result)

    def test_restartable(self):
        code = bytes(1000)
        candidate = CodeRange(500, 600)
        assert list(gen_disassemble_ranges(code, candidate)) == list(gen_disassemble_ranges(code, candidate))


# ============================================================================
# Classification
# ============================================================================

def insn(mnemonic, destination=None, immediate=None, raw_bytes=b"\x90\x90", address=0):
    return DecodedInstruction(
        address=address,
        size=len(raw_bytes),
        raw_bytes=raw_bytes,
        mnemonic=mnemonic,
        op_str="",
        destination=destination,
        immediate=immediate,
    )


EAX = Operand(OperandKind.REGISTER, "eax")


class TestClassifyInstruction:

    def test_ret(self):
        assert classify_instruction(insn("ret")) == InstructionType.RET

    def test_magic_immediates(self):
        mem = Operand(OperandKind.MEMORY)
        assert classify_instruction(insn("mov", mem, DANS_MAGIC)) == InstructionType.USES_DANS_MAGIC
        assert classify_instruction(insn("mov", mem, RICH_MAGIC)) == InstructionType.USES_RICH_MAGIC

    def test_magic_wins_over_eax_destination(self):
        assert classify_instruction(insn("mov", EAX, DANS_MAGIC)) == InstructionType.USES_DANS_MAGIC

    def test_eax_register_destination(self):
        assert classify_instruction(insn("mov", EAX)) == InstructionType.MODIFIES_EAX
        assert classify_instruction(insn("xor", EAX, 0x1234)) == InstructionType.MODIFIES_EAX

    def test_memory_destination_is_not_eax(self):
        # e.g. mov dword ptr [eax + ecx*4], edx
        mem = Operand(OperandKind.MEMORY)
        assert classify_instruction(insn("mov", mem)) == InstructionType.OTHER

    def test_other_registers(self):
        for reg in ("ax", "rax", "al", "ecx"):
            assert classify_instruction(insn("mov", Operand(OperandKind.REGISTER, reg))) == InstructionType.OTHER

    def test_no_operands(self):
        assert classify_instruction(insn("nop")) == InstructionType.OTHER


def classified(category, address=0, raw_bytes=b"\x8B\xC7"):
    return ClassifiedInstruction(insn("x", raw_bytes=raw_bytes, address=address), category)


class TestSelectInstruction:

    def test_selects_last_eax_write_before_ret(self):
        first = classified(InstructionType.MODIFIES_EAX, address=1)
        last = classified(InstructionType.MODIFIES_EAX, address=30)
        after_ret = classified(InstructionType.MODIFIES_EAX, address=50)
        sequence = [
            classified(InstructionType.USES_RICH_MAGIC, address=0),
            first,
            classified(InstructionType.USES_DANS_MAGIC, address=10),
            last,
            classified(InstructionType.RET, address=40),
            after_ret,
        ]
        assert select_instruction(sequence) is last

    def test_requires_ret(self):
        sequence = [
            classified(InstructionType.USES_DANS_MAGIC),
            classified(InstructionType.USES_RICH_MAGIC),
            classified(InstructionType.MODIFIES_EAX),
        ]
        assert select_instruction(sequence) is None

    def test_requires_both_magics_before_ret(self):
        sequence = [
            classified(InstructionType.USES_DANS_MAGIC),
            classified(InstructionType.MODIFIES_EAX),
            classified(InstructionType.RET),
            classified(InstructionType.USES_RICH_MAGIC),
        ]
        assert select_instruction(sequence) is None

    def test_requires_eax_write(self):
        sequence = [
            classified(InstructionType.USES_DANS_MAGIC),
            classified(InstructionType.USES_RICH_MAGIC),
            classified(InstructionType.RET),
        ]
        assert select_instruction(sequence) is None


# ============================================================================
# find_patch
# ============================================================================

class TestFindPatch:

    def test_dummy_instructions_length(self):
        assert len(dummy_instructions(1234)) == 1234
        assert len(bytes(50) + dummy_instructions(100)) == 150

    @BOTH_ARCHITECTURES
    def test_valid_patch(self, arch):
        expected = Patch(
            offset=1000 + EAX_WRITE_OFFSET,
            original_code=MOV_EAX_EDI,
            patched_code=XOR_EAX_EAX,
        )
        assert find_patch(arch, 1000, rich_routine()) == expected

    @BOTH_ARCHITECTURES
    def test_already_patched(self, arch):
        with pytest.raises(AlreadyPatchedError):
            find_patch(arch, 1000, rich_routine(eax_instruction=XOR_EAX_EAX))

    @BOTH_ARCHITECTURES
    def test_instruction_too_short(self, arch):
        with pytest.raises(UnpatchableInstructionError):
            find_patch(arch, 1000, rich_routine(eax_instruction=IN_EAX_DX))

    @BOTH_ARCHITECTURES
    @pytest.mark.parametrize("missing", ["dans", "rich"])
    def test_missing_magic(self, arch, missing):
        code = rich_routine(**{missing: False})
        with pytest.raises(PatchNotFoundError):
            find_patch(arch, 1000, code)

    @BOTH_ARCHITECTURES
    def test_missing_eax_modification(self, arch):
        with pytest.raises(PatchNotFoundError):
            find_patch(arch, 1000, rich_routine(eax_instruction=b""))

    @BOTH_ARCHITECTURES
    def test_missing_ret(self, arch):
        with pytest.raises(PatchNotFoundError):
            find_patch(arch, 1000, rich_routine(ret=False))

    @BOTH_ARCHITECTURES
    def test_empty_code(self, arch):
        with pytest.raises(PatchNotFoundError, match="Unable to find code to patch."):
            find_patch(arch, 0, b"")

    def test_longer_instruction_is_padded_with_nops(self):
        mov_eax_mem = bytes([0x8B, 0x44, 0x24, 0x08])   # mov eax, dword ptr [esp + 8]
        patch = find_patch(Architecture.X86, 0, rich_routine(eax_instruction=mov_eax_mem))
        assert patch.offset == EAX_WRITE_OFFSET
        assert patch.original_code == mov_eax_mem
        assert patch.patched_code == bytes([0x33, 0xC0, 0x90, 0x90])
