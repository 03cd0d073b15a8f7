"""Filesystem helpers shared by the knowledge and retention layers."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path


def ensure_dir(path: Path) -> Path:
    """Create *path* (and parents) if missing and return it."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def atomic_write_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
    """Write *content* to a temp file next to *path*, then rename it over *path*.

    A reader never observes a half-written file: either the old content or the
    new content is visible.
    """
    ensure_dir(path.parent)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding=encoding, newline="") as fp:
            fp.write(content)
            fp.flush()
            os.fsync(fp.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def atomic_append_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
    """Append *content* to *path* by rewriting the whole file atomically."""
    existing = path.read_text(encoding=encoding) if path.exists() else ""
    atomic_write_text(path, existing + content, encoding=encoding)
