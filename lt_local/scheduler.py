"""Deferred and recurring timers used by the store and the tracker."""

from __future__ import annotations

import functools
import logging
import threading
from collections.abc import Callable
from typing import Any, Protocol

logger = logging.getLogger(__name__)

# Anything shaped like threading.Timer: factory(interval, function) -> obj
# with start() and cancel()
TimerFactory = Callable[[float, Callable[[], None]], Any]


class PlaybackSurface(Protocol):
    """The player the tracker samples."""

    def current_time(self) -> float: ...

    def is_playing(self) -> bool: ...


class CoalescingWriter:
    """Collapse bursts of write requests into one trailing call.

    Each request() re-arms a single cancellable timer; when it fires after
    `delay` seconds of quiet the action runs once. The action is expected to
    write whatever is current at fire time, so nothing is captured at
    request time.

    A failure inside a timer-driven run is logged and not retried.
    flush_now() runs the action in the caller's thread and lets errors
    propagate.
    """

    def __init__(
        self,
        action: Callable[[], None],
        delay: float = 0.5,
        *,
        timer_factory: TimerFactory = threading.Timer,
    ) -> None:
        self._action = action
        self._delay = delay
        self._timer_factory = timer_factory
        self._lock = threading.Lock()
        self._timer: Any = None
        self._generation = 0

    @property
    def delay(self) -> float:
        return self._delay

    @property
    def pending(self) -> bool:
        """True while a deferred run is scheduled."""
        with self._lock:
            return self._timer is not None

    def request(self) -> None:
        """Schedule the action, replacing any run already scheduled."""
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._generation += 1
            timer = self._timer_factory(
                self._delay, functools.partial(self._fire, self._generation)
            )
            timer.daemon = True
            self._timer = timer
            timer.start()

    def _fire(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation or self._timer is None:
                return  # Superseded or cancelled
            self._timer = None
        try:
            self._action()
        except Exception:
            logger.exception("Deferred write failed; durable copy left stale")

    def flush_now(self) -> bool:
        """Run a pending action immediately.

        Returns:
            True if an action was pending and ran, False if nothing was pending.
        """
        if not self.cancel():
            return False
        self._action()
        return True

    def cancel(self) -> bool:
        """Drop the pending run, if any. Returns True if one was pending."""
        with self._lock:
            if self._timer is None:
                return False
            self._timer.cancel()
            self._timer = None
            self._generation += 1
            return True


class PlaybackTicker:
    """Sample a playback surface once per tick and report each sample.

    The callback receives (current_second, is_playing). Errors raised by the
    callback are logged; the ticker keeps running until stop().
    """

    def __init__(
        self,
        surface: PlaybackSurface,
        on_sample: Callable[[float, bool], None],
        *,
        interval: float = 1.0,
        timer_factory: TimerFactory = threading.Timer,
    ) -> None:
        self._surface = surface
        self._on_sample = on_sample
        self._interval = interval
        self._timer_factory = timer_factory
        self._lock = threading.Lock()
        self._timer: Any = None
        self._generation = 0

    @property
    def running(self) -> bool:
        with self._lock:
            return self._timer is not None

    def start(self) -> None:
        """Start ticking. Calling start() on a running ticker is a no-op."""
        with self._lock:
            if self._timer is not None:
                return
            self._generation += 1
            self._arm(self._generation)

    def _arm(self, generation: int) -> None:
        timer = self._timer_factory(self._interval, functools.partial(self._run, generation))
        timer.daemon = True
        self._timer = timer
        timer.start()

    def _run(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation or self._timer is None:
                return
        try:
            self.tick()
        except Exception:
            logger.exception("Playback sample failed")
        with self._lock:
            if generation == self._generation and self._timer is not None:
                self._arm(generation)

    def tick(self) -> None:
        """Take one sample now."""
        self._on_sample(float(self._surface.current_time()), bool(self._surface.is_playing()))

    def stop(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._generation += 1
