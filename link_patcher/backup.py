"""
Backup copies of files about to be patched.
"""

import shutil
from pathlib import Path
from typing import Union

from .errors import PatcherIOError


def backup_file_name(file_name: Union[str, Path]) -> Path:
    """``link.exe`` -> ``link.backup.exe``, ``link`` -> ``link.backup``"""
    path = Path(file_name)
    return path.with_name(f"{path.stem}.backup{path.suffix}")


def copy_file(source: Union[str, Path], target: Union[str, Path]) -> None:
    """Like shutil.copy2, but refuses to overwrite an existing target."""
    if Path(target).exists():
        raise PatcherIOError(f'A file with the name "{target}" already exists.')
    shutil.copy2(source, target)


def create_backup_file(file_name: Union[str, Path]) -> Path:
    backup = backup_file_name(file_name)
    try:
        copy_file(file_name, backup)
    except (OSError, PatcherIOError) as e:
        raise PatcherIOError(
            f'Failed to create backup copy "{backup}" of file "{file_name}".'
        ) from e
    return backup
