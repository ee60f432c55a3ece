"""
Atomic file writing with fsync so a crash never leaves a truncated PEM.

Pattern:
  1. Write to a temporary file in the same directory
  2. fsync it
  3. Rename over the destination (atomic on POSIX filesystems)

A reader therefore sees either the previous file or the complete new one.
"""
from __future__ import annotations

import os
import tempfile
from pathlib import Path

# Owner read/write only: everything written here is key or certificate material.
DEFAULT_FILE_MODE = 0o600
DEFAULT_DIR_MODE = 0o700


def ensure_dir(path: Path, mode: int = DEFAULT_DIR_MODE) -> None:
    """Create *path* (and parents) and restrict *path* itself to the owner."""
    path.mkdir(mode=mode, parents=True, exist_ok=True)
    os.chmod(path, mode)


def atomic_write_bytes(path: Path, content: bytes, mode: int = DEFAULT_FILE_MODE) -> None:
    """
    Atomically write bytes to *path* with fsync and the given permission bits.

    The temp file is created by mkstemp (already 0o600) and chmod-ed before
    the rename, so the destination never exists with wider permissions.
    """
    ensure_dir(path.parent)

    fd, temp_path = tempfile.mkstemp(
        prefix=f".{path.name}.",
        suffix=".tmp",
        dir=str(path.parent),
    )

    try:
        with os.fdopen(fd, "wb") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())

        os.chmod(temp_path, mode)
        os.replace(temp_path, path)
    except BaseException:
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise


def atomic_write_text(path: Path, content: str, mode: int = DEFAULT_FILE_MODE,
                      encoding: str = "utf-8") -> None:
    """Text variant of :func:`atomic_write_bytes`."""
    atomic_write_bytes(path, content.encode(encoding), mode=mode)
