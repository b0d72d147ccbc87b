from __future__ import annotations

import contextlib
import threading
from typing import Iterator, Optional

from consolegate.logging import get_logger

logger = get_logger(__name__)


class ActionTokenChannel:
    """Single slot carrying a one-time step-up token to the next request.

    Only the step-up coordinator writes here. It sets the token immediately
    before the guarded call and clears it immediately after, so the slot is
    never populated outside that call even though it is shared.
    """

    def __init__(self) -> None:
        self._token: Optional[str] = None
        self._lock = threading.Lock()

    @property
    def current(self) -> Optional[str]:
        with self._lock:
            return self._token

    def set(self, token: str) -> None:
        with self._lock:
            if self._token is not None:
                logger.warning("action_token_overwritten")
            self._token = token

    def clear(self) -> None:
        with self._lock:
            self._token = None

    @contextlib.contextmanager
    def issued(self, token: str) -> Iterator[str]:
        """Expose ``token`` for the duration of the block, then clear it."""
        self.set(token)
        try:
            yield token
        finally:
            self.clear()


__all__ = ["ActionTokenChannel"]
