"""Periodic multiplier broadcast for the ACTIVE phase."""
import threading
from typing import Callable, List

from .events import MULTIPLIER_UPDATE, GameEvent


class CancelToken:
    """Bound to one ACTIVE phase. Cancelled on crash or shutdown, never reused."""

    def __init__(self):
        self._event = threading.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def wait(self, timeout: float) -> bool:
        return self._event.wait(timeout)


class MultiplierBroadcaster:
    """Tick every ``interval`` seconds until the token is cancelled.

    Each tick takes the round lock for at most ``lock_timeout`` seconds. A tick
    that cannot get the lock in time is skipped; the next one recomputes the
    multiplier from elapsed time, so nothing drifts.

    Tick events are published under ``emit_lock``, the same lock the crash
    events go out under. Once the token is cancelled a pending
    ``multiplierUpdate`` is dropped, so it never follows ``roundCrash``.
    """

    def __init__(
        self,
        lock,
        tick: Callable[[], List[GameEvent]],
        dispatch: Callable[[List[GameEvent]], None],
        interval: float = 0.1,
        lock_timeout: float = 0.02,
        logger=None,
        emit_lock=None,
    ):
        self.lock = lock
        self.tick = tick
        self.dispatch = dispatch
        self.interval = interval
        self.lock_timeout = lock_timeout
        self.logger = logger
        self.emit_lock = emit_lock or threading.RLock()
        self.skipped = 0

    def tick_once(self, token: CancelToken) -> List[GameEvent]:
        if not self.lock.acquire(timeout=self.lock_timeout):
            self.skipped += 1
            if self.logger:
                self.logger.warning(f"[tick-skip] round lock busy for {self.lock_timeout * 1000:.0f}ms")
            return []
        try:
            # The token may have been cancelled while we waited for the lock
            if token.cancelled:
                return []
            return self.tick()
        finally:
            self.lock.release()

    def publish(self, emitted: List[GameEvent], token: CancelToken) -> None:
        with self.emit_lock:
            if token.cancelled:
                emitted = [e for e in emitted if e.name != MULTIPLIER_UPDATE]
            self.dispatch(emitted)

    def run(self, token: CancelToken) -> None:
        while not token.cancelled:
            self.publish(self.tick_once(token), token)
            if token.wait(self.interval):
                break
