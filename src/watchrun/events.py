"""Event models shared across pipeline components."""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Flag
from pathlib import Path
from typing import Iterable


class Op(Flag):
    """Kinds of filesystem changes carried by a watch event."""

    CREATE = 1
    WRITE = 2
    REMOVE = 4
    RENAME = 8
    CHMOD = 16
    ALL = CREATE | WRITE | REMOVE | RENAME | CHMOD

    @classmethod
    def from_names(cls, names: Iterable[str]) -> "Op":
        """Build a mask from configuration names such as ``create`` or ``all``."""

        mask = cls(0)
        for name in names:
            normalized = name.strip().lower()
            if not normalized:
                continue
            try:
                mask |= cls[normalized.upper()]
            except KeyError as exc:
                raise ValueError(f"invalid event: {name}") from exc
        return mask


# Order used when rendering an op as text, e.g. "CREATE|WRITE".
_NAME_ORDER = (Op.CREATE, Op.REMOVE, Op.WRITE, Op.RENAME, Op.CHMOD)


def op_name(op: Op) -> str:
    """Render the flags of ``op`` as upper-case names joined by ``|``."""

    return "|".join(member.name for member in _NAME_ORDER if member & op)


@dataclass(frozen=True)
class WatchEvent:
    """A single notification observed in the watched directory tree."""

    path: Path
    op: Op
    timestamp: float = field(default_factory=time.time)

    def has(self, op: Op) -> bool:
        return bool(self.op & op)

    def __str__(self) -> str:
        return f"{op_name(self.op)} {self.path}"
