"""Exception hierarchy for the watch pipeline."""
from __future__ import annotations

from pathlib import Path
from typing import Optional


class WatchrunError(Exception):
    """Base class for all errors raised by watchrun."""


class InitError(WatchrunError):
    """Raised when the pipeline cannot start watching its root."""


class NotificationError(WatchrunError):
    """Raised when the notification source fails while the pipeline runs."""


class WatchRegistrationError(WatchrunError):
    """Raised when a directory cannot be added to or removed from the source."""

    def __init__(self, path: Path, reason: str):
        super().__init__(f"cannot watch {path}: {reason}")
        self.path = path


class FileCheckError(WatchrunError):
    """Raised when a file cannot be inspected while checking for content changes."""

    def __init__(self, path: Path, cause: Optional[BaseException] = None):
        message = f"cannot inspect {path}"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)
        self.path = path
