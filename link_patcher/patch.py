"""
The Patch value and its applicator.
"""

import logging
from dataclasses import dataclass
from typing import BinaryIO

from .errors import IntegrityError, PatcherIOError

log = logging.getLogger(__name__)


def format_bytes(data: bytes) -> str:
    """Two-digit uppercase hex, comma separated: ``8B, C7``"""
    return ", ".join(f"{byte:02X}" for byte in data)


@dataclass(frozen=True)
class Patch:
    """
    Byte-exact replacement at an absolute file offset.

    ``original_code`` and ``patched_code`` always have the same length, so
    applying a patch never changes the file size.
    """
    offset: int
    original_code: bytes
    patched_code: bytes

    def __post_init__(self):
        object.__setattr__(self, 'original_code', bytes(self.original_code))
        object.__setattr__(self, 'patched_code', bytes(self.patched_code))
        if len(self.original_code) != len(self.patched_code):
            raise ValueError(
                f"Patch size mismatch: {len(self.original_code)} original bytes, "
                f"{len(self.patched_code)} patched bytes"
            )

    def apply(self, stream: BinaryIO) -> None:
        """
        Verify the original bytes at ``offset`` and overwrite them.

        ``stream`` must be readable, writable and seekable. Nothing is written
        unless every original byte matches.
        """
        stream.seek(self.offset)
        found = stream.read(len(self.original_code))
        if len(found) != len(self.original_code):
            raise PatcherIOError(
                f"Unexpected end of file at offset {self.offset}: expected "
                f"{len(self.original_code)} bytes, got {len(found)}"
            )
        if found != self.original_code:
            raise IntegrityError(
                f"Wrong data found at patch position: expected [{format_bytes(self.original_code)}], "
                f"found [{format_bytes(found)}]"
            )

        stream.seek(self.offset)
        stream.write(self.patched_code)
        log.debug("Wrote %d bytes at offset 0x%X", len(self.patched_code), self.offset)

    def __str__(self):
        return (
            f"At offset {self.offset}\n"
            f"replace [{format_bytes(self.original_code)}]\n"
            f"with    [{format_bytes(self.patched_code)}]\n"
        )
