"""Per-path content snapshots used to tell real content changes from noise."""
from __future__ import annotations

import logging
import time
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterator, Optional

from .exceptions import FileCheckError

logger = logging.getLogger(__name__)

BLOCK_SIZE = 1024 * 1024

# "File appears closed" heuristic: the size must stay the same for
# STABLE_POLLS consecutive polls taken POLL_INTERVAL seconds apart.
POLL_INTERVAL = 0.02
STABLE_POLLS = 2
MAX_POLLS = 250


@dataclass
class FileEntry:
    """Last size and checksum read for a file."""

    path: Path
    size: int
    checksum: int


def adler32_checksum(path: Path, block_size: int = BLOCK_SIZE) -> int:
    """Stream ``path`` in fixed-size blocks and return its Adler-32 checksum."""

    checksum = 1
    try:
        with path.open("rb") as handle:
            while True:
                block = handle.read(block_size)
                if not block:
                    break
                checksum = zlib.adler32(block, checksum)
    except OSError as exc:
        raise FileCheckError(path, exc) from exc
    return checksum


def file_size(path: Path) -> int:
    try:
        return path.stat().st_size
    except OSError as exc:
        raise FileCheckError(path, exc) from exc


def wait_for_stable_size(
    path: Path,
    *,
    interval: float = POLL_INTERVAL,
    threshold: int = STABLE_POLLS,
    max_polls: int = MAX_POLLS,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """Poll the size of ``path`` until it stops changing and return it.

    This is a heuristic, not a guarantee: a writer that pauses longer
    than ``interval * threshold`` between writes is still read mid-write.
    After ``max_polls`` polls the last observed size is returned as-is.
    """

    last_size: Optional[int] = None
    stable = 0
    size = 0
    for _ in range(max_polls):
        size = file_size(path)
        if size == last_size:
            stable += 1
            if stable >= threshold:
                return size
        else:
            stable = 0
        last_size = size
        sleep(interval)

    logger.debug("Size of %s still changing after %s polls; reading anyway", path, max_polls)
    return size


class ContentCache:
    """Snapshots of watched files keyed by path.

    Entries reflect the last *read* size and checksum, which can lag the
    file on disk between reads; they are only used for comparison.
    """

    def __init__(self, *, settle: Optional[Callable[[Path], int]] = None):
        self._entries: Dict[Path, FileEntry] = {}
        self._settle = settle or wait_for_stable_size

    def __contains__(self, path: object) -> bool:
        return path in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[Path]:
        return iter(self._entries)

    def get(self, path: Path) -> Optional[FileEntry]:
        return self._entries.get(path)

    def snapshot(self, path: Path) -> FileEntry:
        """Read ``path`` and store a fresh entry for it, replacing any old one."""

        size = self._settle(path)
        entry = FileEntry(path=path, size=size, checksum=adler32_checksum(path))
        self._entries[path] = entry
        logger.debug("Cached %s (size=%s, checksum=%08x)", path, entry.size, entry.checksum)
        return entry

    def refresh(self, path: Path) -> bool:
        """Re-read ``path`` and report whether its content differs from the cache.

        A path without an entry counts as changed (first observation).
        """

        entry = self._entries.get(path)
        if entry is None:
            self.snapshot(path)
            return True

        size = self._settle(path)
        checksum = adler32_checksum(path)
        logger.debug("File %s size=%s checksum=%08x", path, size, checksum)

        # Size decides first; the checksum is still stored so the entry stays current.
        changed = size != entry.size or checksum != entry.checksum
        if changed:
            entry.size = size
            entry.checksum = checksum
        return changed

    def drop(self, path: Path) -> None:
        self._entries.pop(path, None)

    def purge_tree(self, root: Path) -> int:
        """Drop ``root`` and every entry below it; return how many were removed."""

        doomed = [path for path in self._entries if _is_within(path, root)]
        for path in doomed:
            del self._entries[path]
        return len(doomed)


def _is_within(path: Path, root: Path) -> bool:
    return path == root or root in path.parents
