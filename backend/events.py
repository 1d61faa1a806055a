"""
Live observer for real-time push to the dashboard (Server-Sent Events).

There is one observer slot. A new dashboard connection replaces the previous
one (the old stream is told to close); notify() pushes to whoever holds the
slot and does nothing when nobody does.
"""

import logging
import queue
import threading

logger = logging.getLogger(__name__)

# Pushed to a replaced observer so its SSE generator can stop.
CLOSED = None


class Broadcaster:
    """Single-slot registry for the current observer (anything with put_nowait)."""

    def __init__(self, max_pending: int = 256):
        self._observer = None
        self._lock = threading.Lock()
        self._max_pending = max_pending

    @property
    def observer(self):
        with self._lock:
            return self._observer

    def attach(self, observer):
        """Install observer, returning the one it replaced (or None)."""
        with self._lock:
            previous, self._observer = self._observer, observer
        if previous is not None and previous is not observer:
            logger.info("[Events] Observer replaced by a new connection")
            _offer(previous, CLOSED)
        return previous

    def detach(self, observer) -> bool:
        """Clear the slot, but only if observer still holds it."""
        with self._lock:
            if self._observer is observer:
                self._observer = None
                return True
        return False

    def subscribe(self) -> queue.Queue:
        """Register a new SSE client. Returns a queue that will receive event dicts."""
        q = queue.Queue(maxsize=self._max_pending)
        self.attach(q)
        return q

    def unsubscribe(self, q):
        self.detach(q)

    def notify(self, event: dict):
        """Fire-and-forget push of a JSON-serializable event."""
        observer = self.observer
        if observer is None:
            logger.debug("[Events] No observer connected; dropping %s", event.get("type"))
            return
        _offer(observer, event)


def _offer(observer, event):
    try:
        observer.put_nowait(event)
    except queue.Full:
        logger.warning("[Events] Observer queue full; dropping event")
