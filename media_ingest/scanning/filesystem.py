import os
import logging
from pathlib import Path
from typing import Iterable, Iterator, List, Optional, Set


def _is_skipped(path: Path, skip_dirs: Set[Path]) -> bool:
    return any(sd == path or sd in path.parents for sd in skip_dirs)


def _list_dir(directory: Path) -> Optional[List[os.DirEntry]]:
    try:
        with os.scandir(directory) as it:
            return sorted(it, key=lambda e: e.name.lower())
    except OSError as e:
        logging.warning(f"Cannot read directory {directory}: {e}")
        return None


def iter_files(root: Path, skip_dirs: Optional[Set[Path]] = None) -> Iterator[Path]:
    """
    Yields every regular file under root, depth-first, in case-insensitive
    name order. Symlinks are not followed. A root that is itself a file is
    yielded as-is.
    """
    skip_dirs = skip_dirs or set()
    if root.is_file():
        yield root
        return

    pending = [root]
    while pending:
        directory = pending.pop()
        if skip_dirs and _is_skipped(directory, skip_dirs):
            logging.debug(f"Skipping {directory}")
            continue

        entries = _list_dir(directory)
        if entries is None:
            continue

        subdirs = [Path(e.path) for e in entries if e.is_dir(follow_symlinks=False)]
        # Reversed so the alphabetically first subdirectory is visited next
        pending.extend(reversed(subdirs))

        for e in entries:
            if e.is_file(follow_symlinks=False):
                yield Path(e.path)


def iter_candidates(roots: Iterable[Path], skip_dirs: Optional[Set[Path]] = None) -> Iterator[Path]:
    """Yields every file under each root, in root order."""
    for root in roots:
        if not root.exists():
            logging.warning(f"Source path does not exist: {root}")
            continue
        yield from iter_files(root, skip_dirs)
