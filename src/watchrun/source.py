"""Directory notification source built on watchdog."""
from __future__ import annotations

import logging
import os
import queue
import threading
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Protocol, runtime_checkable

from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer
from watchdog.observers.api import BaseObserver, ObservedWatch

from .events import Op, WatchEvent
from .exceptions import NotificationError, WatchRegistrationError

logger = logging.getLogger(__name__)

_CLOSED = object()
DEFAULT_MAX_PENDING = 1024


@runtime_checkable
class NotificationSource(Protocol):
    """What the pipeline needs from a directory notification source."""

    def open(self) -> None: ...

    def add(self, path: Path) -> None: ...

    def remove(self, path: Path) -> None: ...

    def events(self) -> Iterator[WatchEvent]: ...

    def close(self) -> None: ...


class _ForwardingHandler(FileSystemEventHandler):
    """Translates watchdog events into WatchEvents and hands them on."""

    def __init__(self, emit: Callable[[WatchEvent], None]):
        super().__init__()
        self._emit = emit

    def dispatch(self, event: FileSystemEvent) -> None:
        for translated in translate(event):
            self._emit(translated)


def translate(event: FileSystemEvent) -> List[WatchEvent]:
    """Map one watchdog event onto zero or more WatchEvents.

    A move becomes RENAME on the old path followed by CREATE on the new
    one. Directory "modified" notifications only mean an entry changed
    inside the directory and are dropped.
    """

    src = Path(os.fsdecode(event.src_path))
    if event.event_type == EVENT_TYPE_CREATED:
        return [WatchEvent(path=src, op=Op.CREATE)]
    if event.event_type == EVENT_TYPE_MODIFIED:
        if event.is_directory:
            return []
        return [WatchEvent(path=src, op=Op.WRITE)]
    if event.event_type == EVENT_TYPE_DELETED:
        return [WatchEvent(path=src, op=Op.REMOVE)]
    if event.event_type == EVENT_TYPE_MOVED:
        dest = Path(os.fsdecode(event.dest_path))
        return [WatchEvent(path=src, op=Op.RENAME), WatchEvent(path=dest, op=Op.CREATE)]
    return []


class WatchdogSource:
    """Watches individual directories (non-recursively) with a watchdog observer.

    ``events()`` yields notifications until ``close()`` is called. If the
    observer thread dies while the source is open, ``events()`` raises
    NotificationError.

    At most ``max_pending`` translated events are buffered. When the buffer
    is full the observer's dispatch thread waits for the reader, and further
    notifications back up in the kernel queue instead of in memory.
    """

    def __init__(
        self,
        *,
        observer_factory: Callable[[], BaseObserver] = Observer,
        poll_timeout: float = 0.1,
        join_timeout: float = 5.0,
        max_pending: int = DEFAULT_MAX_PENDING,
    ):
        if max_pending <= 0:
            raise ValueError("max_pending must be positive")
        self._observer_factory = observer_factory
        self._poll_timeout = poll_timeout
        self._join_timeout = join_timeout
        self._observer: Optional[BaseObserver] = None
        self._watches: Dict[Path, ObservedWatch] = {}
        self._raw: "queue.Queue[object]" = queue.Queue(maxsize=max_pending)
        self._handler = _ForwardingHandler(self._enqueue)
        self._closed = threading.Event()

    @property
    def watched(self) -> List[Path]:
        return list(self._watches)

    def open(self) -> None:
        if self._observer is not None:
            return
        observer = self._observer_factory()
        observer.daemon = True
        observer.start()
        self._observer = observer
        logger.debug("Notification source opened (%s)", type(observer).__name__)

    def add(self, path: Path) -> None:
        if self._observer is None:
            raise WatchRegistrationError(path, "source is not open")
        if path in self._watches:
            return
        try:
            watch = self._observer.schedule(self._handler, str(path), recursive=False)
        except OSError as exc:
            raise WatchRegistrationError(path, str(exc)) from exc
        self._watches[path] = watch
        logger.debug("watching: %s", path)

    def remove(self, path: Path) -> None:
        watch = self._watches.pop(path, None)
        if watch is None or self._observer is None:
            return
        try:
            self._observer.unschedule(watch)
        except KeyError:
            # The emitter already went away with its directory.
            logger.debug("watch for %s already gone", path)
        except OSError as exc:
            raise WatchRegistrationError(path, str(exc)) from exc
        logger.debug("remove watching: %s", path)

    def _enqueue(self, event: WatchEvent) -> None:
        while True:
            try:
                self._raw.put(event, timeout=self._poll_timeout)
                return
            except queue.Full:
                if self._closed.is_set():
                    logger.debug("source closed with a full buffer; dropped %s", event)
                    return

    def events(self) -> Iterator[WatchEvent]:
        while True:
            try:
                item = self._raw.get(timeout=self._poll_timeout)
            except queue.Empty:
                if self._closed.is_set():
                    return
                if self._observer is not None and not self._observer.is_alive():
                    raise NotificationError("watchdog observer stopped unexpectedly")
                continue
            if item is _CLOSED:
                return
            yield item  # type: ignore[misc]

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        observer = self._observer
        if observer is not None:
            observer.stop()
            observer.join(timeout=self._join_timeout)
        self._watches.clear()
        # Everything the observer emitted is queued ahead of this marker. With a
        # full buffer events() ends on the closed flag once drained instead.
        try:
            self._raw.put_nowait(_CLOSED)
        except queue.Full:
            pass
        logger.debug("Notification source closed")
