"""
Library entry points: find a patch in an image, and the find/confirm/apply run.
"""

import logging
from pathlib import Path
from typing import BinaryIO, Callable, Optional, Union

from . import exe_tools, patch_gen
from .backup import create_backup_file
from .errors import PatcherError, PatcherIOError
from .patch import Patch

log = logging.getLogger(__name__)

WARNING_MESSAGES = (
    "WARNING:",
    "You apply this patch at your own risk!",
    "The patched executable may exhibit unintended behavior!",
    "The author of this program accepts no responsibility for any damages!",
)


def read_code(stream: BinaryIO, code_section: exe_tools.CodeSection) -> bytes:
    try:
        stream.seek(code_section.offset)
        code = stream.read(code_section.length)
    except OSError as e:
        raise PatcherIOError("Failed to read exe code section.") from e
    if len(code) != code_section.length:
        raise PatcherIOError(
            f"Failed to read exe code section: expected {code_section.length} bytes, got {len(code)}"
        )
    return code


def find_patch(stream: BinaryIO) -> Patch:
    """
    Analyze a linker image and return the patch that disables its Rich header.

    Read-only. ``stream`` must be readable and seekable.
    """
    try:
        arch = exe_tools.determine_architecture(stream)
    except PatcherError as e:
        raise PatcherError("Failed to determine exe architecture.") from e

    try:
        code_section = exe_tools.find_code_section(stream)
    except PatcherError as e:
        raise PatcherError("Failed to find exe code section.") from e

    code = read_code(stream, code_section)

    try:
        return patch_gen.find_patch(arch, code_section.offset, code)
    except PatcherError as e:
        raise PatcherError("Failed to generate patch.") from e


def run(input_file: Union[str, Path], apply_patch: bool,
        confirm_apply_patch: Callable[[], bool]) -> Optional[Path]:
    """
    Find the patch for ``input_file``, show it, and optionally apply it.

    The patch is only applied if ``apply_patch`` is set and
    ``confirm_apply_patch()`` returns True. A backup copy is created first.

    Returns:
        Path of the backup copy if the patch was applied, otherwise None
    """
    try:
        with open(input_file, 'rb') as f:
            patch = find_patch(f)
    except OSError as e:
        raise PatcherIOError(f'Failed to open "{input_file}".') from e
    except PatcherError as e:
        raise PatcherError(f'Failed to find patch for "{input_file}".') from e

    print("Patch found:")
    print(patch)

    for msg in WARNING_MESSAGES:
        print(msg)

    if not (apply_patch and confirm_apply_patch()):
        return None

    backup = create_backup_file(input_file)
    print(f'Created backup copy of input file: "{backup}"')
    log.info("Backup of %s written to %s", input_file, backup)

    try:
        f = open(input_file, 'r+b')
    except OSError as e:
        raise PatcherIOError(f'Failed to open "{input_file}" for writing.') from e

    with f:
        try:
            patch.apply(f)
        except (OSError, PatcherError) as e:
            raise PatcherError(f'Failed to apply patch to "{input_file}".') from e

    print(f'Patch applied to "{input_file}".')
    log.info("Patched %s at offset 0x%X", input_file, patch.offset)
    return backup
