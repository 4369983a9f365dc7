import queue
from pathlib import Path
from typing import List, Optional, Sequence

import pytest

from watchrun.cache import ContentCache, file_size
from watchrun.config import AppConfig, CommandConfig, WatchConfig
from watchrun.events import Op, WatchEvent
from watchrun.exceptions import NotificationError, WatchRegistrationError
from watchrun.runner import BatchOutcome, CommandResult, CommandRunner


class FakeSource:
    """In-memory notification source with the same surface as WatchdogSource."""

    def __init__(self, log: Optional[list] = None):
        self.watched = set()
        self.fail_on = set()
        self.opened = False
        self.closed = False
        self.log = log if log is not None else []
        self._queue: "queue.Queue[object]" = queue.Queue()

    def open(self):
        self.opened = True

    def add(self, path: Path):
        if path in self.fail_on:
            raise WatchRegistrationError(path, "vanished")
        self.watched.add(path)
        self.log.append(("add", path))

    def remove(self, path: Path):
        self.watched.discard(path)
        self.log.append(("remove", path))

    def emit(self, path: Path, op: Op):
        self._queue.put(WatchEvent(path=path, op=op))

    def fail(self, message: str):
        self._queue.put(NotificationError(message))

    def events(self):
        while True:
            item = self._queue.get()
            if item is None:
                return
            if isinstance(item, NotificationError):
                raise item
            yield item

    def close(self):
        if not self.closed:
            self.closed = True
            self._queue.put(None)


class RecordingRunner(CommandRunner):
    """Runner that records batches instead of spawning processes."""

    def __init__(self, log: Optional[list] = None, **kwargs):
        super().__init__(**kwargs)
        self.batches: List[BatchOutcome] = []
        self.log = log if log is not None else []

    def run(self, commands: Sequence[str], event: WatchEvent, *, cancel=None) -> BatchOutcome:
        outcome = BatchOutcome(event=event)
        outcome.results.extend(CommandResult(command=c, returncode=0) for c in commands)
        self.batches.append(outcome)
        self.log.append(("run", event))
        return outcome

    @property
    def events(self) -> List[WatchEvent]:
        return [batch.event for batch in self.batches]


@pytest.fixture
def fake_source():
    return FakeSource()


@pytest.fixture
def fast_cache():
    """Content cache that skips the size-settling poll."""
    return ContentCache(settle=file_size)


@pytest.fixture
def make_config(tmp_path):
    def _make(**overrides) -> AppConfig:
        commands = overrides.pop("commands", ["echo %f"])
        continue_on_error = overrides.pop("continue_on_error", False)
        watch_kwargs = dict(root_path=tmp_path, interval=0.0, exclude_pattern=None)
        watch_kwargs.update(overrides)
        return AppConfig(
            watch=WatchConfig(**watch_kwargs),
            commands=CommandConfig(run=commands, continue_on_error=continue_on_error),
        )

    return _make


@pytest.fixture
def tree(tmp_path):
    """A small directory tree with a hidden directory."""
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "pkg").mkdir()
    (tmp_path / "src" / "pkg" / "mod.py").write_text("x = 1\n")
    (tmp_path / "docs").mkdir()
    (tmp_path / ".git").mkdir()
    (tmp_path / ".git" / "objects").mkdir()
    (tmp_path / "README").write_text("readme\n")
    return tmp_path
