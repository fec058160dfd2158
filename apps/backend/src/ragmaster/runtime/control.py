"""
Run control: the engine-wide run lock and cancel flag.

Both flags live behind one mutex so check-and-set is atomic whether callers
are coroutines on the event loop or sync handlers on a worker thread.

Each successful acquire hands out a generation token.  Only the holder of the
current token can release the lock, so a run that outlives a force-reset
cannot free the lock of the run that replaced it.
"""

import logging
import threading

log = logging.getLogger(__name__)


class RunControl:
    def __init__(self) -> None:
        self._mutex = threading.Lock()
        self._running = False
        self._cancel_requested = False
        self._generation = 0

    @property
    def running(self) -> bool:
        return self._running

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    def try_acquire(self) -> int | None:
        """Take the run lock if free and clear any stale cancel request. Returns the owner token."""
        with self._mutex:
            if self._running:
                return None
            self._running = True
            self._cancel_requested = False
            self._generation += 1
            return self._generation

    def release(self, token: int) -> bool:
        """Release the lock if `token` still owns it. Returns whether it was released."""
        with self._mutex:
            if not self._running or token != self._generation:
                return False
            self._running = False
            return True

    def owns(self, token: int) -> bool:
        with self._mutex:
            return self._running and token == self._generation

    def request_cancel(self) -> bool:
        """Flag the active run to stop at the next batch boundary. Returns whether one was active."""
        with self._mutex:
            self._cancel_requested = True
            return self._running

    def force_reset(self) -> bool:
        """Clear both flags and invalidate the current owner. Returns the previous lock state."""
        with self._mutex:
            was_running = self._running
            self._running = False
            self._cancel_requested = False
            self._generation += 1
        if was_running:
            log.debug("Run lock generation %d invalidated.", self._generation - 1)
        return was_running
