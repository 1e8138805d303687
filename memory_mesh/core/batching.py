"""
Write batching for the memory store.

Mutations are applied in memory immediately; the disk write is deferred
behind a short debounce window so a burst of mutations collapses into
one write. The pending timer is cancellable, ``flush()`` forces the
write, and an atexit hook flushes whatever is still buffered.
"""

import atexit
import logging
import threading
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class WriteBatcher:
    """
    Debounced writer with an explicit cancellable handle.

    Example:
        batcher = WriteBatcher(store._write_all, window_ms=100)
        batcher.schedule()   # starts the window
        batcher.schedule()   # no-op, already scheduled
        batcher.flush()      # writes now, cancels the timer

    A window of 0 makes ``schedule()`` write synchronously.

    The write callback must not call back into the batcher, and callers
    must not hold a lock the callback needs while calling ``schedule()``.
    """

    def __init__(self, write: Callable[[], None], window_ms: int = 100, name: str = "memory-mesh-writer"):
        self._write = write
        self._window_ms = max(0, int(window_ms))
        self._name = name
        self._lock = threading.RLock()
        self._timer: Optional[threading.Timer] = None
        self._pending = False
        self._closed = False
        atexit.register(self._flush_at_exit)

    @property
    def window_ms(self) -> int:
        return self._window_ms

    @window_ms.setter
    def window_ms(self, value: int) -> None:
        self._window_ms = max(0, int(value))

    @property
    def pending(self) -> bool:
        return self._pending

    def schedule(self) -> None:
        """Request a write; coalesces with any write already scheduled."""
        with self._lock:
            if self._window_ms == 0 or self._closed:
                self._cancel_timer()
                self._pending = False
                self._write()
                return

            self._pending = True
            if self._timer is not None:
                return
            self._timer = threading.Timer(self._window_ms / 1000.0, self._fire)
            self._timer.name = self._name
            self._timer.daemon = True
            self._timer.start()

    def flush(self) -> None:
        """Cancel the timer and write immediately if anything is buffered."""
        with self._lock:
            self._cancel_timer()
            if self._pending:
                self._pending = False
                self._write()

    def cancel(self) -> None:
        """Drop the scheduled write without performing it."""
        with self._lock:
            self._cancel_timer()
            self._pending = False

    def close(self) -> None:
        """Flush and detach from interpreter shutdown."""
        self.flush()
        with self._lock:
            self._closed = True
        atexit.unregister(self._flush_at_exit)

    def _fire(self) -> None:
        with self._lock:
            self._timer = None
            if not self._pending:
                return
            self._pending = False
            try:
                self._write()
            except OSError as e:
                logger.error(f"Batched write failed: {e}")

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _flush_at_exit(self) -> None:
        try:
            self.flush()
        except OSError as e:
            logger.error(f"Flush on shutdown failed: {e}")
