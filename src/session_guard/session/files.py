"""Tree copy and removal helpers shared by backup, migration and recovery."""

from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Iterator


def iter_dirs(source: Path) -> Iterator[Path]:
    """Yield every directory under ``source`` as a relative path, parents first."""
    for root, dirs, _files in os.walk(source):
        base = Path(root)
        for name in sorted(dirs):
            yield (base / name).relative_to(source)


def iter_files(source: Path) -> Iterator[Path]:
    """Yield every non-directory entry under ``source`` as a relative path."""
    for root, _dirs, files in os.walk(source):
        base = Path(root)
        for name in sorted(files):
            yield (base / name).relative_to(source)


def copy_entry(source: Path, target: Path) -> int:
    """Copy one file (or symlink, as a link) and return its size in bytes."""
    target.parent.mkdir(parents=True, exist_ok=True)
    if source.is_symlink():
        target.unlink(missing_ok=True)
        os.symlink(os.readlink(source), target)
        return 0
    shutil.copy2(source, target)
    return target.stat().st_size


def copy_tree(source: Path, target: Path, *, skip: set[str] | None = None) -> tuple[int, int, list[str]]:
    """Copy ``source`` into ``target`` file by file.

    Returns ``(files_copied, total_bytes, skipped)``; files that cannot be
    read are listed in ``skipped`` instead of aborting the copy.
    """
    skip = skip or set()
    target.mkdir(parents=True, exist_ok=True)
    for rel in iter_dirs(source):
        (target / rel).mkdir(parents=True, exist_ok=True)

    copied = 0
    total = 0
    skipped: list[str] = []
    for rel in iter_files(source):
        if rel.as_posix() in skip:
            continue
        try:
            total += copy_entry(source / rel, target / rel)
            copied += 1
        except OSError:
            skipped.append(rel.as_posix())
    return copied, total, skipped


def remove_path(path: Path) -> None:
    if path.is_symlink() or path.is_file():
        path.unlink(missing_ok=True)
    elif path.is_dir():
        shutil.rmtree(path)
