"""
link_patcher - find and disable the Rich header routine in link.exe
"""

__version__ = "0.3.0"

from .errors import (
    AlreadyPatchedError,
    FormatError,
    IntegrityError,
    PatcherError,
    PatcherIOError,
    PatchNotFoundError,
    UnpatchableInstructionError,
)
from .exe_tools import Architecture, CodeSection, RichEntry, RichHeader
from .patch import Patch
from .patcher import find_patch, run
