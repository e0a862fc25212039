"""
scrcpy_relay/core/channel.py

Small thread-to-thread channels used between the session manager, the
device message receiver, stream relays and bridge callers.

- Mailbox: single-slot broadcast point, publishing never blocks and
  replaces a value nobody has taken yet.
- Rendezvous: unbuffered hand-off, the sender blocks until a receiver has
  taken the value.
- IntentChannel: single-slot queue whose offer never blocks and reports
  whether the slot was free.
"""

import queue
import threading
import logging
import time
from typing import Any, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Granularity used when a wait must also observe a cancel event
_POLL_INTERVAL = 0.05


def _remaining(deadline: Optional[float], now: float) -> Optional[float]:
    if deadline is None:
        return None
    return max(0.0, deadline - now)


class Mailbox(Generic[T]):
    """
    Single-slot broadcast point.

    publish() never blocks: when a value is still pending it is dropped in
    favour of the new one. Request/response callers clear() the mailbox
    before sending their request so they cannot pick up a stale value.

    Example:
        >>> box = Mailbox()
        >>> box.publish('"hello"')
        >>> box.receive(timeout=1.0)
        '"hello"'
    """

    def __init__(self, name: str = "mailbox"):
        self.name = name
        self._queue: "queue.Queue[T]" = queue.Queue(maxsize=1)
        self._dropped = 0

    @property
    def dropped_count(self) -> int:
        """Number of values replaced before anyone received them"""
        return self._dropped

    def publish(self, value: T) -> None:
        while True:
            try:
                self._queue.put_nowait(value)
                return
            except queue.Full:
                try:
                    self._queue.get_nowait()
                    self._dropped += 1
                    logger.debug(f"{self.name}: dropped pending value")
                except queue.Empty:
                    pass

    def receive(
        self,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> Optional[T]:
        """
        Wait for the next value.

        Args:
            timeout: Maximum wait in seconds (None waits forever)
            cancel: Event that aborts the wait when set

        Returns:
            The value, or None on timeout or cancellation
        """
        if cancel is None:
            try:
                return self._queue.get(timeout=timeout)
            except queue.Empty:
                return None

        deadline = None if timeout is None else time.monotonic() + timeout
        while not cancel.is_set():
            remaining = _remaining(deadline, time.monotonic())
            if remaining is not None and remaining <= 0:
                return None
            slice_ = _POLL_INTERVAL if remaining is None else min(_POLL_INTERVAL, remaining)
            try:
                return self._queue.get(timeout=slice_)
            except queue.Empty:
                continue
        return None

    def clear(self) -> None:
        """Discard a pending value, if any"""
        try:
            self._queue.get_nowait()
        except queue.Empty:
            pass


class Rendezvous(Generic[T]):
    """
    Unbuffered synchronous hand-off.

    send() returns only after exactly one receive() has taken the value,
    so the sender knows a consumer observed it.
    """

    def __init__(self, name: str = "rendezvous"):
        self.name = name
        self._cond = threading.Condition()
        self._send_lock = threading.Lock()
        self._value: Any = None
        self._offered = False
        self._taken = False

    def _wait_for(self, predicate, timeout, cancel) -> bool:
        # Caller holds self._cond
        deadline = None if timeout is None else time.monotonic() + timeout
        while not predicate():
            if cancel is not None and cancel.is_set():
                return False
            remaining = _remaining(deadline, time.monotonic())
            if remaining is not None and remaining <= 0:
                return False
            if cancel is not None:
                remaining = _POLL_INTERVAL if remaining is None else min(_POLL_INTERVAL, remaining)
            self._cond.wait(remaining)
        return True

    def send(
        self,
        value: T,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> bool:
        """
        Hand a value to one receiver.

        Returns:
            True once a receiver took the value, False on timeout or
            cancellation (the value is withdrawn)
        """
        with self._send_lock:
            with self._cond:
                self._value = value
                self._offered = True
                self._taken = False
                self._cond.notify_all()

                delivered = self._wait_for(lambda: self._taken, timeout, cancel)
                if not delivered:
                    self._offered = False
                    self._value = None
                return delivered

    def receive(
        self,
        timeout: Optional[float] = None,
        cancel: Optional[threading.Event] = None,
    ) -> Optional[T]:
        """
        Take the value of a blocked sender.

        Returns:
            The value, or None on timeout or cancellation
        """
        with self._cond:
            if not self._wait_for(lambda: self._offered, timeout, cancel):
                return None

            value = self._value
            self._value = None
            self._offered = False
            self._taken = True
            self._cond.notify_all()
            return value


class IntentChannel(Generic[T]):
    """Single-slot queue with at-most-one-pending semantics"""

    def __init__(self):
        self._queue: "queue.Queue[T]" = queue.Queue(maxsize=1)

    def offer(self, intent: T) -> bool:
        """Queue an intent without blocking; False if one is already pending"""
        try:
            self._queue.put_nowait(intent)
            return True
        except queue.Full:
            return False

    def pending(self) -> bool:
        """True while an intent is queued and not yet taken"""
        return not self._queue.empty()

    def take(self, timeout: Optional[float] = None) -> Optional[T]:
        """Wait for the next intent; None on timeout"""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def clear(self) -> None:
        try:
            self._queue.get_nowait()
        except queue.Empty:
            pass
