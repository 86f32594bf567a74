#!/usr/bin/env python3
"""
link-patch-table - generate the table of known link.exe patches

Walks a directory of collected linker executables, finds the patch for each
one and writes a Markdown table, either to stdout or in place of the patch
table at the end of a README.
"""

import argparse
import io
import logging
import sys
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import List, TextIO, Union

from . import exe_tools
from .errors import PatcherError, PatcherIOError, format_error_chain
from .exe_tools import Architecture
from .logconf import configure_debug_logging, configure_logging, package_logger
from .patch import Patch, format_bytes
from .patcher import find_patch

log = logging.getLogger(__name__)

CAPTIONS = (
    "Product Name",
    "Version",
    "Arch",
    "CRC32",
    "Offset",
    "Original Bytes",
    "Patch Bytes",
)

LINKER_FILE_NAME = "link.exe"
CRC_CHUNK_SIZE = 16 * 1024
VENDOR_PREFIX = "Microsoft® "


@dataclass
class PatchInfo:
    """One row of the patch table"""
    product_name: str
    product_version: str
    architecture: Architecture
    crc32: int
    patch: Patch

    def to_strings(self) -> List[str]:
        product_name = self.product_name
        if product_name.startswith(VENDOR_PREFIX):
            product_name = product_name[len(VENDOR_PREFIX):]

        return [
            product_name,
            self.product_version,
            str(self.architecture),
            f"{self.crc32:08X}",
            str(self.patch.offset),
            format_bytes(self.patch.original_code),
            format_bytes(self.patch.patched_code),
        ]


def calculate_crc32(path: Union[str, Path]) -> int:
    crc = 0
    try:
        with open(path, 'rb') as f:
            for chunk in iter(lambda: f.read(CRC_CHUNK_SIZE), b''):
                crc = zlib.crc32(chunk, crc)
    except OSError as e:
        raise PatcherIOError(f'Failed to read "{path}".') from e
    return crc & 0xFFFFFFFF


def generate_patch_info(path: Union[str, Path]) -> PatchInfo:
    try:
        f = open(path, 'rb')
    except OSError as e:
        raise PatcherIOError(f'Failed to open "{path}" for reading.') from e

    with f:
        try:
            version_info = exe_tools.read_version_info(f)
        except PatcherError as e:
            raise PatcherError("Failed to retrieve version info.") from e
        try:
            architecture = exe_tools.determine_architecture(f)
        except PatcherError as e:
            raise PatcherError("Failed to determine linker architecture.") from e
        try:
            patch = find_patch(f)
        except PatcherError as e:
            raise PatcherError("Failed to find patch for linker.") from e

    return PatchInfo(
        product_name=version_info.product_name or "",
        product_version=version_info.product_version or "",
        architecture=architecture,
        crc32=calculate_crc32(path),
        patch=patch,
    )


def write_patch_table(writer: TextIO, patch_infos: List[PatchInfo]) -> None:
    """Write a Markdown table with every column padded to its widest cell."""
    rows = [info.to_strings() for info in patch_infos]

    widths = [len(caption) for caption in CAPTIONS]
    for row in rows:
        widths = [max(width, len(cell)) for width, cell in zip(widths, row)]

    def write_row(cells):
        writer.write("| " + " | ".join(f"{cell:<{width}}" for cell, width in zip(cells, widths)) + " |\n")

    write_row(CAPTIONS)
    write_row("-" * width for width in widths)
    for row in rows:
        write_row(row)


def find_linkers(base_dir: Union[str, Path]) -> List[Path]:
    return sorted(
        path for path in Path(base_dir).rglob("*")
        if path.is_file() and path.name.lower() == LINKER_FILE_NAME
    )


def replace_patch_table(readme: Union[str, Path], patch_infos: List[PatchInfo]) -> None:
    """Keep the README up to its "| Product Name" line and write a fresh table after it."""
    try:
        lines = Path(readme).read_text(encoding='utf-8').splitlines()
    except OSError as e:
        raise PatcherIOError(f'Failed to read "{readme}".') from e

    out = io.StringIO()
    for line in lines:
        if line.startswith("| Product Name"):
            break
        out.write(line + "\n")
    write_patch_table(out, patch_infos)

    try:
        Path(readme).write_text(out.getvalue(), encoding='utf-8')
    except OSError as e:
        raise PatcherIOError(f'Failed to write "{readme}".') from e


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="link-patch-table",
        description="Generate the patch table for a directory of linker executables",
    )
    parser.add_argument("base_dir", help="Directory searched recursively for link.exe files")
    parser.add_argument("--readme", help="Replace the patch table at the end of this file instead of printing it")
    parser.add_argument("--debug", action="store_true", help="Show debug information for troubleshooting")
    args = parser.parse_args(argv)

    if args.debug:
        configure_debug_logging(package_logger())
    else:
        configure_logging(package_logger(), level=logging.WARNING)

    try:
        patch_infos = []
        linkers = find_linkers(args.base_dir)
        log.debug("Found %d linker executable(s) under %s", len(linkers), args.base_dir)
        for path in linkers:
            print(f'Generating patch info for "{path}" ...', file=sys.stderr)
            try:
                patch_infos.append(generate_patch_info(path))
            except PatcherError as e:
                raise PatcherError(f'Failed to generate patch info for "{path}".') from e

        if args.readme:
            print(f'Replacing patch table in "{args.readme}" ...', file=sys.stderr)
            replace_patch_table(args.readme, patch_infos)
        else:
            write_patch_table(sys.stdout, patch_infos)
    except PatcherError as e:
        for line in format_error_chain(e):
            print(line, file=sys.stderr)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
