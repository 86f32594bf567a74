#!/usr/bin/env python3
"""
link-patcher - stop link.exe from emitting the Rich header

Finds the instruction in link.exe that produces the Rich header checksum and
optionally replaces it with ``xor eax, eax`` after a manual confirmation.
"""

import argparse
import sys

from . import __version__
from .errors import AlreadyPatchedError, PatcherError, find_cause, format_error_chain
from .logconf import configure_debug_logging, configure_logging, package_logger
from .patcher import run

PROMPT = "Do you want to apply the patch now? (YES/NO): "


def confirm_apply_patch() -> bool:
    """Ask until the user answers yes or no. End of input means no."""
    while True:
        try:
            reply = input(PROMPT).strip()
        except EOFError:
            print()
            return False
        if reply.lower() == "yes":
            print()
            return True
        if reply.lower() == "no":
            return False


def main(argv=None):
    parser = argparse.ArgumentParser(
        prog="link-patcher",
        description="Patch link.exe so the executables it links carry no Rich header",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Show the patch for a linker without touching it
  link-patcher "C:\\...\\bin\\Hostx64\\x64\\link.exe"

  # Apply it (asks for confirmation, writes link.backup.exe first)
  link-patcher link.exe -a
        """
    )
    parser.add_argument("input_file", help="link.exe to analyze")
    parser.add_argument("-a", "--apply_patch", "--apply-patch", dest="apply_patch",
                        action="store_true",
                        help="Applies the patch to the executable after a manual confirmation. "
                             "A back-up of the original file is created.")
    parser.add_argument("--debug", action="store_true",
                        help="Show debug information for troubleshooting")

    args = parser.parse_args(argv)

    if args.debug:
        configure_debug_logging(package_logger())
    else:
        configure_logging(package_logger())

    print(f"link-patcher {__version__}")
    print()

    try:
        run(args.input_file, args.apply_patch, confirm_apply_patch)
    except PatcherError as e:
        for line in format_error_chain(e):
            print(line, file=sys.stderr)
        if find_cause(e, AlreadyPatchedError) is not None:
            print("The executable appears to be patched already; nothing to do.", file=sys.stderr)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
