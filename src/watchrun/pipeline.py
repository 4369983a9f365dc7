"""Producer/consumer loop linking the notification source to the command runner."""
from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional, Union

from .cache import ContentCache
from .config import AppConfig
from .events import WatchEvent
from .exceptions import InitError, NotificationError, WatchRegistrationError
from .filters import ExecutionGate, FilterChain, PatternMatcher
from .runner import CommandRunner
from .source import NotificationSource, WatchdogSource
from .watchset import WatchSet

logger = logging.getLogger(__name__)

_CLOSED = object()
_QueueItem = Union[WatchEvent, NotificationError, object]


@dataclass
class PipelineStats:
    """Counters emitted by the pipeline for observability."""

    events_received: int = 0
    events_discovered: int = 0
    events_skipped: int = 0
    events_rejected: int = 0
    batches_run: int = 0
    batches_failed: int = 0


class Pipeline:
    """Feeds notifications through watch-set sync, the filter chain and the runner.

    A producer thread copies notifications from the source into a bounded
    queue; a single consumer thread handles them strictly in arrival order,
    so watch-set, cache and gate state are only ever touched by that thread
    and command batches never overlap.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        source: Optional[NotificationSource] = None,
        runner: Optional[CommandRunner] = None,
        cache: Optional[ContentCache] = None,
        clock: Callable[[], float] = time.monotonic,
        poll_timeout: float = 0.1,
    ):
        watch = config.watch
        self._config = config
        self._source = source if source is not None else WatchdogSource(max_pending=watch.queue_size)
        self._runner = runner or CommandRunner(
            continue_on_error=config.commands.continue_on_error,
            timeout=config.commands.timeout,
        )
        self._commands = list(config.commands.run)
        self._mask = watch.events
        self._poll_timeout = poll_timeout

        self.cache = cache or ContentCache()
        matcher = PatternMatcher(
            watch.include_pattern,
            watch.exclude_pattern,
            syntax=watch.pattern_syntax,
        )
        self.gate = ExecutionGate(watch.interval, clock=clock)
        self.filters = FilterChain(matcher, self.gate, self.cache)
        self.watchset = WatchSet(
            self._source,
            watch.root_path.resolve(),
            recursive=watch.recursive,
            cache=self.cache,
            excluded=matcher.excludes,
        )

        self.stats = PipelineStats()
        self.error: Optional[NotificationError] = None

        self._queue: "queue.Queue[_QueueItem]" = queue.Queue(maxsize=watch.queue_size)
        self._cancel = threading.Event()
        self._halted = threading.Event()
        self._producer: Optional[threading.Thread] = None
        self._consumer: Optional[threading.Thread] = None
        self._stopped = False

    @property
    def running(self) -> bool:
        return self._consumer is not None and self._consumer.is_alive()

    def start(self) -> None:
        """Open the source, register the root and launch both threads.

        Raises InitError when the source cannot be opened or the root cannot
        be watched; in that case no thread is started.
        """

        if self._consumer is not None:
            raise InitError("pipeline already started")

        logger.info("Starting pipeline for %s", self.watchset.root)
        try:
            self._source.open()
        except OSError as exc:
            raise InitError(f"cannot open notification source: {exc}") from exc

        try:
            self.watchset.start()
        except (WatchRegistrationError, OSError) as exc:
            self._source.close()
            raise InitError(f"initial watch failed: {exc}") from exc

        self._producer = threading.Thread(target=self._produce, name="watchrun-producer", daemon=True)
        self._consumer = threading.Thread(target=self._consume, name="watchrun-consumer", daemon=True)
        self._consumer.start()
        self._producer.start()

    def stop(self, grace: float = 5.0) -> bool:
        """Close the source and wait for both threads to finish.

        Buffered events are still handled. If the threads are not done after
        ``grace`` seconds the pipeline is cancelled: queued events are
        abandoned and no further command of the current batch is started.
        Returns True when both threads have terminated.
        """

        if self._consumer is None or self._stopped:
            return not self.running
        self._stopped = True
        logger.debug("Stopping pipeline")
        self._source.close()

        deadline = time.monotonic() + grace
        for thread in (self._producer, self._consumer):
            if thread is not None:
                thread.join(max(deadline - time.monotonic(), 0.0))

        if self._alive():
            logger.warning("Pipeline still busy after %.1fs; cancelling", grace)
            self._cancel.set()
            for thread in (self._producer, self._consumer):
                if thread is not None:
                    thread.join(max(self._poll_timeout * 10, 1.0))

        stopped = not self._alive()
        if not stopped:
            logger.warning("Pipeline threads did not terminate; a command is probably still running")
        return stopped

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the consumer exits; return True if it did."""

        if self._consumer is None:
            return True
        self._consumer.join(timeout)
        return not self._consumer.is_alive()

    def _alive(self) -> bool:
        return any(thread is not None and thread.is_alive() for thread in (self._producer, self._consumer))

    def _produce(self) -> None:
        try:
            for event in self._source.events():
                if not self._offer(event):
                    return
        except NotificationError as exc:
            logger.error("watcher err: %s", exc)
            self._offer(exc)
            return
        self._offer(_CLOSED)

    def _offer(self, item: _QueueItem) -> bool:
        # A full queue blocks the producer instead of dropping the event.
        while not (self._cancel.is_set() or self._halted.is_set()):
            try:
                self._queue.put(item, timeout=self._poll_timeout)
                return True
            except queue.Full:
                continue
        return False

    def _consume(self) -> None:
        try:
            while not self._cancel.is_set():
                try:
                    item = self._queue.get(timeout=self._poll_timeout)
                except queue.Empty:
                    continue
                if item is _CLOSED:
                    break
                if isinstance(item, NotificationError):
                    self.error = item
                    logger.error("Notification source failed; watch session ends: %s", item)
                    break
                self._handle(item)  # type: ignore[arg-type]
        finally:
            self._halted.set()
            logger.info(
                "Pipeline stopped after %s events, %s batches (%s failed)",
                self.stats.events_received,
                self.stats.batches_run,
                self.stats.batches_failed,
            )

    def _handle(self, event: WatchEvent) -> None:
        self.stats.events_received += 1
        try:
            found = self.watchset.sync(event)
        except Exception:  # pragma: no cover - protective logging
            logger.exception("Failed to update watches for %s", event)
            found = []

        self._dispatch(event)
        if found:
            logger.debug("%s entries already present under new directory %s", len(found), event.path)
            self.stats.events_discovered += len(found)
        for entry in found:
            if self._cancel.is_set():
                return
            self._dispatch(entry)

    def _dispatch(self, event: WatchEvent) -> None:
        if not event.has(self._mask):
            self.stats.events_skipped += 1
            logger.debug("skipped event: %s", event)
            return

        try:
            if not self.filters.accept(event):
                self.stats.events_rejected += 1
                logger.debug("%s dropped", event)
                return

            logger.info("New event: %s", event)
            outcome = self._runner.run(self._commands, event, cancel=self._cancel)
        except Exception:  # pragma: no cover - protective logging
            logger.exception("Failed to handle %s", event)
            return

        self.stats.batches_run += 1
        if not outcome.succeeded:
            self.stats.batches_failed += 1
