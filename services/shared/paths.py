"""Resolution of stored source locators to on-disk paths.

Locators are stored slash-normalized, exactly as the operator provided them,
and resolved against the configured root at read time. Only drive-letter
(``C:\\docs``) and UNC (``\\\\server\\share``) prefixes are honored as
absolute; a leading ``/`` or ``\\`` is treated as root-relative so that a
locator such as ``/uploads/a.txt`` can never resolve to the drive root.
"""
import asyncio
import os
import re
from pathlib import Path
from typing import Union

from .exceptions import SourceReadError

_DRIVE_ABSOLUTE = re.compile(r'^[A-Za-z]:[\\/]')
_LEADING_SEPARATORS = re.compile(r'^[/\\]+')


def is_drive_absolute(raw: str) -> bool:
    """Return True for drive-letter or UNC style paths."""
    return bool(_DRIVE_ABSOLUTE.match(raw)) or raw.startswith('\\\\')


def normalize_locator(raw: str) -> str:
    """Normalize a locator for storage and comparison."""
    return raw.strip().replace('\\', '/')


def resolve_source_path(raw: str, root: Union[str, Path]) -> Path:
    """Resolve ``raw`` against ``root``, treating backslashes as separators."""
    raw = raw.strip()
    if is_drive_absolute(raw):
        return Path(raw)
    relative = _LEADING_SEPARATORS.sub('', normalize_locator(raw))
    return Path(os.path.normpath(os.path.join(os.path.abspath(str(root)), relative)))


def display_path(path: Union[str, Path]) -> str:
    """Render a resolved path with forward slashes for API responses."""
    return str(path).replace(os.sep, '/')


def _read_text(path: Path) -> str:
    with open(path, 'r', encoding='utf-8', errors='replace') as f:
        return f.read()


async def read_source_text(path: Union[str, Path]) -> str:
    """Read a source file as UTF-8 in the default executor.

    Undecodable bytes are replaced rather than rejected. Any ``OSError``
    (missing file included) surfaces as ``SourceReadError``.
    """
    loop = asyncio.get_running_loop()
    try:
        return await loop.run_in_executor(None, _read_text, Path(path))
    except OSError as e:
        raise SourceReadError(f"Cannot read source {display_path(path)}: {e}", path=display_path(path)) from e
