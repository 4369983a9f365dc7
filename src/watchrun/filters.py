"""The decision chain that turns a notification into a command batch (or not)."""
from __future__ import annotations

import fnmatch
import logging
import re
import time
from enum import Enum
from typing import Callable, Optional, Pattern

from .cache import ContentCache
from .events import Op, WatchEvent
from .exceptions import FileCheckError

logger = logging.getLogger(__name__)


class PatternSyntax(str, Enum):
    """How include/exclude patterns are written in the configuration."""

    REGEX = "regex"
    GLOB = "glob"


class PatternMatcher:
    """Include/exclude test applied to base file names (case-sensitive).

    Regular expressions match anywhere in the name, like ``re.search``;
    glob patterns must match the whole name.
    """

    def __init__(
        self,
        include: Optional[str] = ".*",
        exclude: Optional[str] = None,
        *,
        syntax: PatternSyntax = PatternSyntax.REGEX,
    ):
        self.syntax = PatternSyntax(syntax)
        self._include = self._compile(include)
        self._exclude = self._compile(exclude)

    def _compile(self, pattern: Optional[str]) -> Optional[Pattern[str]]:
        if not pattern:
            return None
        if self.syntax is PatternSyntax.GLOB:
            return re.compile(fnmatch.translate(pattern))
        return re.compile(pattern)

    def includes(self, name: str) -> bool:
        if self._include is None:
            return True
        return self._test(self._include, name)

    def excludes(self, name: str) -> bool:
        if self._exclude is None:
            return False
        return self._test(self._exclude, name)

    def matches(self, name: str) -> bool:
        return self.includes(name) and not self.excludes(name)

    def _test(self, pattern: Pattern[str], name: str) -> bool:
        if self.syntax is PatternSyntax.GLOB:
            return pattern.match(name) is not None
        return pattern.search(name) is not None


class ExecutionGate:
    """Minimum spacing between two command batches.

    An interval of zero disables the gate.
    """

    def __init__(self, interval: float = 0.0, *, clock: Callable[[], float] = time.monotonic):
        if interval < 0:
            raise ValueError("interval must not be negative")
        self.interval = interval
        self.last_execution: Optional[float] = None
        self._clock = clock

    def now(self) -> float:
        return self._clock()

    def is_open(self, now: float) -> bool:
        if self.interval == 0 or self.last_execution is None:
            return True
        return now >= self.last_execution + self.interval

    def record(self, now: float) -> None:
        self.last_execution = now


class FilterChain:
    """Pattern check, then interval gate, then content dedup.

    Evaluation stops at the first check that rejects the event. When an
    event is accepted the gate records the acceptance time.
    """

    def __init__(self, matcher: PatternMatcher, gate: ExecutionGate, cache: ContentCache):
        self._matcher = matcher
        self._gate = gate
        self._cache = cache

    def accept(self, event: WatchEvent) -> bool:
        name = event.path.name
        if not self._matcher.includes(name):
            logger.debug("%s: no include match for %s", event, name)
            return False
        if self._matcher.excludes(name):
            logger.debug("%s: %s is excluded", event, name)
            return False

        now = self._gate.now()
        if not self._gate.is_open(now):
            since = now - (self._gate.last_execution or now)
            logger.debug("%s: limited, last batch %.3fs ago", event, since)
            return False

        if not self._content_changed(event):
            return False

        self._gate.record(now)
        return True

    def _content_changed(self, event: WatchEvent) -> bool:
        path = event.path
        if event.has(Op.REMOVE | Op.RENAME):
            self._cache.drop(path)
            return True

        if path.is_dir():
            # Directories have no content to compare; only their creation counts.
            return event.has(Op.CREATE)

        try:
            if event.has(Op.CREATE):
                self._cache.snapshot(path)
                return True
            if event.has(Op.WRITE | Op.CHMOD):
                if self._cache.refresh(path):
                    return True
                logger.debug("%s: content unchanged", event)
                return False
        except FileCheckError as exc:
            logger.warning("%s; ignoring %s", exc, event)
            return False
        return True
