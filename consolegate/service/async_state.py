"""Tagged state for one asynchronous operation.

Replaces independent ``is_loading``/``error`` flags so that combinations
such as "loading and failed" cannot be expressed.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Union


@dataclass(frozen=True)
class Idle:
    pass


@dataclass(frozen=True)
class Pending:
    pass


@dataclass(frozen=True)
class Succeeded:
    value: Any = None


@dataclass(frozen=True)
class Failed:
    error: BaseException

    @property
    def message(self) -> str:
        return getattr(self.error, "message", None) or str(self.error) or "Action failed"


AsyncState = Union[Idle, Pending, Succeeded, Failed]

IDLE = Idle()
PENDING = Pending()


def is_pending(state: AsyncState) -> bool:
    return isinstance(state, Pending)


def error_message(state: AsyncState) -> Optional[str]:
    if isinstance(state, Failed):
        return state.message
    return None


__all__ = [
    "AsyncState",
    "Idle",
    "Pending",
    "Succeeded",
    "Failed",
    "IDLE",
    "PENDING",
    "is_pending",
    "error_message",
]
