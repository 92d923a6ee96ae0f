"""Scoped subscription handles."""

from __future__ import annotations

import threading
from collections.abc import Callable


class Subscription:
    """A listener registration that is released exactly once.

    Acquire by registering, release with `close()` or by leaving a `with`
    block. Releasing twice is a no-op.
    """

    def __init__(self, release: Callable[[], None]) -> None:
        self._release: Callable[[], None] | None = release
        self._lock = threading.Lock()

    @property
    def active(self) -> bool:
        return self._release is not None

    def close(self) -> None:
        with self._lock:
            release, self._release = self._release, None
        if release is not None:
            release()

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
