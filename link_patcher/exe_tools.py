"""
PE image reader.

Works on binary streams (anything with read/seek). Each function reads the
whole image once and hands it to pefile; nothing is cached between calls.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import BinaryIO, Dict, List, Optional

import pefile

from .errors import FormatError, PatcherIOError

log = logging.getLogger(__name__)


# ============================================================================
# Data Structures
# ============================================================================

class Architecture(Enum):
    """Instruction set of the image; only selects the decode width"""
    X86 = auto()
    X64 = auto()

    def __str__(self):
        return self.name.lower()


@dataclass(frozen=True)
class CodeSection:
    """Location of the code section in the file"""
    offset: int     # Absolute file offset (PointerToRawData)
    length: int     # Bytes of raw data, clamped to the end of the file


@dataclass(frozen=True)
class RichEntry:
    """One decoded record of the Rich header"""
    product_id: int     # Tool identifier (high 16 bits of @comp.id)
    build_number: int   # Tool build (low 16 bits of @comp.id)
    count: int          # Number of objects built with this tool

    @property
    def comp_id(self) -> int:
        return (self.product_id << 16) | self.build_number


@dataclass
class RichHeader:
    """Decoded Rich header: the XOR checksum and its record list"""
    checksum: int
    entries: List[RichEntry] = field(default_factory=list)


@dataclass
class VersionInfo:
    """Strings from the image's version resource"""
    file_description: Optional[str] = None
    product_version: Optional[str] = None
    product_name: Optional[str] = None


MACHINE_ARCHITECTURES: Dict[int, Architecture] = {
    pefile.MACHINE_TYPE['IMAGE_FILE_MACHINE_I386']: Architecture.X86,
    pefile.MACHINE_TYPE['IMAGE_FILE_MACHINE_AMD64']: Architecture.X64,
}

IMAGE_SCN_CNT_CODE = pefile.SECTION_CHARACTERISTICS['IMAGE_SCN_CNT_CODE']


# ============================================================================
# Loading
# ============================================================================

def read_image(stream: BinaryIO) -> bytes:
    """Read the complete image from the start of ``stream``."""
    try:
        stream.seek(0)
        return stream.read()
    except OSError as e:
        raise PatcherIOError("Failed to read executable image.") from e


def load_pe(data: bytes, fast_load: bool = True) -> pefile.PE:
    try:
        return pefile.PE(data=data, fast_load=fast_load)
    except pefile.PEFormatError as e:
        raise FormatError(f"Not a valid PE image: {e.value}") from e


def section_name(section) -> str:
    return section.Name.decode('utf-8', errors='ignore').rstrip('\x00')


# ============================================================================
# Image Reader
# ============================================================================

def determine_architecture(stream: BinaryIO) -> Architecture:
    """Map the FILE_HEADER machine type to an Architecture."""
    pe = load_pe(read_image(stream))
    machine = pe.FILE_HEADER.Machine
    try:
        arch = MACHINE_ARCHITECTURES[machine]
    except KeyError:
        name = pefile.MACHINE_TYPE.get(machine, 'unknown')
        raise FormatError(
            f"Unsupported machine type 0x{machine:04X} ({name}), expected x86 or x64"
        ) from None
    log.debug("Machine type 0x%04X -> %s", machine, arch)
    return arch


def find_code_section(stream: BinaryIO) -> CodeSection:
    """
    Locate the section holding executable code.

    The first section flagged IMAGE_SCN_CNT_CODE wins. Images that do not
    flag any section fall back to the section containing the entry point.
    """
    data = read_image(stream)
    pe = load_pe(data)

    if not pe.sections:
        raise FormatError("Image has no sections")

    section = next((s for s in pe.sections if s.Characteristics & IMAGE_SCN_CNT_CODE), None)
    if section is None:
        entry_point = pe.OPTIONAL_HEADER.AddressOfEntryPoint
        section = next((s for s in pe.sections if s.contains_rva(entry_point)), None)
    if section is None:
        raise FormatError("No section contains executable code")

    offset = section.PointerToRawData
    if section.SizeOfRawData == 0 or offset >= len(data):
        raise FormatError(
            f"Code section '{section_name(section)}' has no raw data in the file "
            f"(offset 0x{offset:X}, size 0x{section.SizeOfRawData:X})"
        )

    length = min(section.SizeOfRawData, len(data) - offset)
    log.debug("Code section '%s' at file offset 0x%X, 0x%X bytes",
              section_name(section), offset, length)
    return CodeSection(offset=offset, length=length)


def read_rich_header(stream: BinaryIO) -> Optional[RichHeader]:
    """
    Decode the Rich header between the DOS stub and the NT headers.

    Returns None when the image does not carry one (or its DanS/checksum
    framing is broken, which pefile treats the same way).
    """
    pe = load_pe(read_image(stream))
    rich = pe.parse_rich_header()
    if not rich:
        return None

    values = rich['values']
    entries = []
    for i in range(0, len(values) - 1, 2):
        comp_id, count = values[i], values[i + 1]
        entries.append(RichEntry(product_id=comp_id >> 16,
                                 build_number=comp_id & 0xFFFF,
                                 count=count))
    return RichHeader(checksum=rich['checksum'], entries=entries)


def has_rich_header(stream: BinaryIO) -> bool:
    return read_rich_header(stream) is not None


# Name used by callers that only care whether the header marker is present
read_header_marker = read_rich_header


def read_version_info(stream: BinaryIO) -> VersionInfo:
    """Read FileDescription/ProductVersion/ProductName from the version resource."""
    pe = load_pe(read_image(stream))
    pe.parse_data_directories(
        directories=[pefile.DIRECTORY_ENTRY['IMAGE_DIRECTORY_ENTRY_RESOURCE']]
    )

    strings: Dict[str, str] = {}
    for file_info in getattr(pe, 'FileInfo', None) or []:
        for entry in file_info:
            if getattr(entry, 'Key', None) != b'StringFileInfo':
                continue
            for table in entry.StringTable:
                for key, value in table.entries.items():
                    name = key.decode('utf-8', errors='ignore')
                    strings.setdefault(name, value.decode('utf-8', errors='ignore').rstrip('\x00'))

    return VersionInfo(
        file_description=strings.get('FileDescription'),
        product_version=strings.get('ProductVersion'),
        product_name=strings.get('ProductName'),
    )
