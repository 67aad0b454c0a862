"""Change notifications between execution contexts sharing one storage medium."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChangeEvent:
    """A durable write to a storage key.

    Values are the serialized documents; None means the key was absent
    (before the first write) or removed.
    """

    key: str
    new_value: str | None
    old_value: str | None


Listener = Callable[[ChangeEvent], None]


class ChangeChannel:
    """Publish/subscribe bus for ChangeEvents.

    Each subscriber may name the context it belongs to. A publish tagged with
    an origin is not delivered back to subscribers of that same origin, the
    way a browser's storage event never fires in the tab that made the write.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: list[tuple[str | None, Listener]] = []

    def subscribe(self, listener: Listener, *, origin: str | None = None) -> Callable[[], None]:
        """Register a listener. Returns a function that unsubscribes it."""
        entry = (origin, listener)
        with self._lock:
            self._subscribers.append(entry)

        def unsubscribe() -> None:
            with self._lock:
                if entry in self._subscribers:
                    self._subscribers.remove(entry)

        return unsubscribe

    def publish(self, event: ChangeEvent, *, origin: str | None = None) -> int:
        """Deliver event to every subscriber outside the origin context.

        A failing listener is logged and does not stop delivery to the rest.

        Returns:
            Number of listeners the event was delivered to.
        """
        with self._lock:
            targets = [
                listener
                for sub_origin, listener in self._subscribers
                if origin is None or sub_origin != origin
            ]
        delivered = 0
        for listener in targets:
            try:
                listener(event)
            except Exception:
                logger.exception("Change listener failed for key %r", event.key)
                continue
            delivered += 1
        return delivered

    def __len__(self) -> int:
        with self._lock:
            return len(self._subscribers)
