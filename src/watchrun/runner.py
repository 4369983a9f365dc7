"""Runs the configured command list for an accepted event."""
from __future__ import annotations

import logging
import shlex
import subprocess
import sys
import threading
import time
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, TextIO

from .events import WatchEvent, op_name

logger = logging.getLogger(__name__)

VAR_PATH = "%f"
VAR_EVENT_TYPE = "%t"


def expand_command(template: str, event: WatchEvent) -> str:
    """Substitute the changed path and the event-type name into ``template``."""

    command = template.replace(VAR_PATH, str(event.path))
    return command.replace(VAR_EVENT_TYPE, op_name(event.op))


@dataclass
class CommandResult:
    """What happened when one command of a batch ran."""

    command: str
    returncode: Optional[int]
    output: str = ""
    elapsed: float = 0.0
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None and self.returncode == 0


@dataclass
class BatchOutcome:
    """Results of one command batch, in execution order."""

    event: WatchEvent
    results: List[CommandResult] = field(default_factory=list)
    cancelled: bool = False

    @property
    def succeeded(self) -> bool:
        return all(result.succeeded for result in self.results)

    @property
    def commands_run(self) -> List[str]:
        return [result.command for result in self.results]


class CommandRunner:
    """Executes command templates one after another.

    By default the batch halts at the first failing command. There is no
    timeout unless one is configured, so a hanging command blocks the
    pipeline until it exits.
    """

    def __init__(
        self,
        *,
        continue_on_error: bool = False,
        timeout: Optional[float] = None,
        output: Optional[TextIO] = None,
    ):
        self.continue_on_error = continue_on_error
        self.timeout = timeout
        self._output = output

    def run(
        self,
        commands: Sequence[str],
        event: WatchEvent,
        *,
        cancel: Optional[threading.Event] = None,
    ) -> BatchOutcome:
        outcome = BatchOutcome(event=event)
        logger.debug("actions: %s", " > ".join(commands))
        for template in commands:
            if cancel is not None and cancel.is_set():
                logger.info("Batch for %s cancelled before: %s", event, template)
                outcome.cancelled = True
                break
            result = self._execute(expand_command(template, event))
            outcome.results.append(result)
            if not result.succeeded and not self.continue_on_error:
                break
        return outcome

    def _execute(self, command: str) -> CommandResult:
        try:
            args = shlex.split(command)
        except ValueError as exc:
            logger.error("Cannot parse command %r: %s", command, exc)
            return CommandResult(command=command, returncode=None, error=str(exc))
        if not args:
            logger.error("Empty command after substitution: %r", command)
            return CommandResult(command=command, returncode=None, error="empty command")

        started = time.monotonic()
        try:
            completed = subprocess.run(
                args,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            elapsed = time.monotonic() - started
            output = _decode(exc.output)
            logger.error("Run: %s timed out after %.3fs", command, elapsed)
            self._emit(output)
            return CommandResult(
                command=command,
                returncode=None,
                output=output,
                elapsed=elapsed,
                error=f"timed out after {self.timeout}s",
            )
        except OSError as exc:
            elapsed = time.monotonic() - started
            logger.error("Run: %s failed to start: %s", command, exc)
            return CommandResult(command=command, returncode=None, elapsed=elapsed, error=str(exc))

        elapsed = time.monotonic() - started
        output = _decode(completed.stdout)
        if completed.returncode != 0:
            logger.error("Run: %s (exit %s, %.3fs)", command, completed.returncode, elapsed)
        else:
            logger.info("Run: %s (%.3fs)", command, elapsed)
        self._emit(output)
        return CommandResult(
            command=command,
            returncode=completed.returncode,
            output=output,
            elapsed=elapsed,
        )

    def _emit(self, output: str) -> None:
        if not output:
            return
        stream = self._output or sys.stdout
        stream.write(output)
        if not output.endswith("\n"):
            stream.write("\n")
        stream.flush()


def _decode(raw: Optional[bytes]) -> str:
    if not raw:
        return ""
    if isinstance(raw, str):
        return raw
    return raw.decode(errors="replace")
