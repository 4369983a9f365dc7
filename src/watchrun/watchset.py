"""Tracks which directories are registered with the notification source."""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional

from .cache import ContentCache
from .events import Op, WatchEvent
from .exceptions import WatchRegistrationError
from .source import NotificationSource

logger = logging.getLogger(__name__)


class WatchSet:
    """Keeps the watched-directory set in step with the tree on disk.

    In recursive mode every non-excluded directory below the root is
    watched; otherwise only the root is. Only the pipeline's consumer
    thread calls into this class.
    """

    def __init__(
        self,
        source: NotificationSource,
        root: Path,
        *,
        recursive: bool,
        cache: ContentCache,
        excluded: Optional[Callable[[str], bool]] = None,
    ):
        self._source = source
        self._root = root
        self._recursive = recursive
        self._cache = cache
        self._excluded = excluded or (lambda name: False)
        self._paths: Dict[Path, bool] = {}

    def __contains__(self, path: object) -> bool:
        return path in self._paths

    def __iter__(self) -> Iterator[Path]:
        return iter(self._paths)

    def __len__(self) -> int:
        return len(self._paths)

    @property
    def root(self) -> Path:
        return self._root

    def start(self) -> None:
        """Register the root (and, when recursive, its subdirectories).

        Failing to register the root raises WatchRegistrationError; problems
        below the root only skip the affected subtree.
        """

        if not self._root.is_dir():
            raise WatchRegistrationError(self._root, "not a directory")
        self._source.add(self._root)
        self._paths[self._root] = True
        if self._recursive:
            self._walk(self._root)
        logger.info("Watching %s directories under %s", len(self._paths), self._root)

    def sync(self, event: WatchEvent) -> List[WatchEvent]:
        """Update registrations for a just-observed event.

        Rename is handled like remove: the destination shows up later as
        its own create event.

        When a create registers new directories, the files and directories
        already inside them are returned as CREATE events. Their own
        notifications may have fired before the watch existed.
        """

        if event.has(Op.REMOVE | Op.RENAME):
            if event.path in self._paths:
                self._purge(event.path)
            else:
                self._cache.drop(event.path)

        if event.has(Op.CREATE) and self._recursive:
            path = event.path
            if path in self._paths or not self._wants(path):
                return []
            found: List[WatchEvent] = []
            self._walk(path, found=found)
            return found
        return []

    def _wants(self, path: Path) -> bool:
        if self._excluded(path.name):
            logger.debug("skipped dir %s", path)
            return False
        return path.parent in self._paths and path.is_dir()

    def _walk(self, top: Path, *, found: Optional[List[WatchEvent]] = None) -> None:
        for dirpath, dirnames, filenames in os.walk(top, onerror=_log_walk_error):
            current = Path(dirpath)
            if current not in self._paths and not self._try_add(current):
                dirnames[:] = []
                continue
            if found is not None:
                if current != top:
                    found.append(WatchEvent(path=current, op=Op.CREATE))
                found.extend(WatchEvent(path=current / name, op=Op.CREATE) for name in sorted(filenames))
            kept = []
            for name in sorted(dirnames):
                if self._excluded(name):
                    logger.debug("skipped dir %s", current / name)
                else:
                    kept.append(name)
            dirnames[:] = kept

    def _try_add(self, path: Path) -> bool:
        try:
            self._source.add(path)
        except WatchRegistrationError as exc:
            logger.warning("%s; dropping it from the watch set", exc)
            self._paths.pop(path, None)
            return False
        self._paths[path] = True
        return True

    def _purge(self, target: Path) -> None:
        doomed: List[Path] = [path for path in self._paths if path == target or target in path.parents]
        for path in doomed:
            try:
                self._source.remove(path)
            except WatchRegistrationError as exc:
                logger.warning("%s", exc)
            del self._paths[path]
        dropped = self._cache.purge_tree(target)
        logger.debug("Stopped watching %s directories under %s (%s cached files dropped)", len(doomed), target, dropped)
        if target == self._root:
            logger.warning("Watch root %s was removed; nothing left to watch", target)


def _log_walk_error(error: OSError) -> None:
    logger.debug("skipped dir %s: %s", error.filename, error)
