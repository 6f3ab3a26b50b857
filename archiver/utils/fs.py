"""Filesystem helpers shared by download handlers."""

from __future__ import annotations

import logging
import re
import shutil
from pathlib import Path

logger = logging.getLogger(__name__)

# Union of the characters Windows and POSIX refuse in file names.
_INVALID_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')
_BRACKETED = re.compile(r"\[[^\]]*\]")


def sanitize_filename(name: str) -> str:
    """Make `name` safe to use as a single path component.

    Removes characters that are invalid in file names and any `[...]` groups,
    then trims surrounding whitespace and trailing dots.
    """
    cleaned = _INVALID_CHARS.sub("", name)
    cleaned = _BRACKETED.sub("", cleaned)
    return cleaned.strip().rstrip(".").strip()


def safe_relative_path(relative: str) -> Path:
    """Sanitize every component of a `/`-separated relative path.

    Empty components (including ones reduced to nothing, such as `..`) are dropped,
    so the result never escapes the directory it is joined to.

    Raises:
        ValueError: if nothing usable remains.
    """
    parts = [sanitize_filename(p) for p in relative.replace("\\", "/").split("/")]
    parts = [p for p in parts if p]
    if not parts:
        raise ValueError(f"Unusable relative path: {relative!r}")
    return Path(*parts)


def zip_directory(source: str | Path) -> Path | None:
    """Zip `source` into `<source>.zip` next to it, replacing an existing archive.

    Returns the archive path, or None when `source` is not a directory.
    """
    src = Path(source)
    if not src.is_dir():
        logger.warning("Cannot zip %s: not a directory", src)
        return None
    target = src.with_name(src.name + ".zip")
    if target.exists():
        target.unlink()
    archive = shutil.make_archive(str(src), "zip", root_dir=src)
    logger.debug("Zipped %s to %s", src, archive)
    return Path(archive)


def file_exists_with_any_extension(directory: str | Path, stem: str) -> bool:
    """True if `directory` holds a file named `stem` with any extension."""
    if not str(directory).strip() or not stem.strip():
        raise ValueError("Directory path and file name cannot be empty")
    d = Path(directory)
    if not d.is_dir():
        raise FileNotFoundError(f"Directory does not exist: {d}")
    return any(p.is_file() and p.stem == stem for p in d.iterdir())
