"""
Error types raised by link_patcher.

Every layer adds context by raising a new PatcherError *from* the error it
caught, so the original kind stays reachable through ``__cause__``.
"""

from typing import List, Optional, Type, TypeVar


class PatcherError(Exception):
    """Base class for all link_patcher errors"""


class PatcherIOError(PatcherError):
    """Open/read/write/seek failure, or a file that ended too early"""


class FormatError(PatcherError):
    """The image is not a PE file we can analyze"""


class PatchNotFoundError(PatcherError):
    """Every candidate and window was tried and none validated"""

    def __init__(self, message: str = "Unable to find code to patch."):
        super().__init__(message)


class AlreadyPatchedError(PatcherError):
    """The selected instruction already is the replacement"""


class UnpatchableInstructionError(PatcherError):
    """The selected instruction is too short to hold the replacement"""


class IntegrityError(PatcherError):
    """Bytes at the patch position differ from the ones found during analysis"""


E = TypeVar("E", bound=BaseException)


def error_chain(exc: BaseException) -> List[BaseException]:
    """Return ``exc`` followed by its causes, outermost first."""
    chain = []
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        chain.append(current)
        if current.__cause__ is not None:
            current = current.__cause__
        elif not current.__suppress_context__:
            current = current.__context__
        else:
            current = None
    return chain


def find_cause(exc: BaseException, kind: Type[E]) -> Optional[E]:
    """Return the first error of type ``kind`` in the cause chain of ``exc``."""
    for link in error_chain(exc):
        if isinstance(link, kind):
            return link
    return None


def format_error_chain(exc: BaseException) -> List[str]:
    lines = [f"Error: {exc}"]
    for cause in error_chain(exc)[1:]:
        lines.append(f"Caused by: {cause}")
    return lines
