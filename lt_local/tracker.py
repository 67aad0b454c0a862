"""Segment-based watch progress for a single video."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable

from lt_local.config import (
    AUTOSAVE_SECONDS,
    COMPLETION_THRESHOLD,
    RESUME_FLOOR_SECONDS,
    RESUME_MAX_COMPLETION,
    TICK_SECONDS,
)
from lt_local.intervals import (
    Interval,
    covered_seconds,
    merge_intervals,
    normalize_interval,
    seconds_to_intervals,
)
from lt_local.operations import upsert_progress
from lt_local.scheduler import PlaybackSurface, PlaybackTicker, TimerFactory
from lt_local.schema import Progress, utc_now_iso
from lt_local.store import Store

__all__ = [
    "SegmentTracker",
    "covered_seconds",
    "get_resume_time",
    "merge_intervals",
]

logger = logging.getLogger(__name__)


def get_resume_time(progress: Progress | None) -> float:
    """Where playback should resume for a video.

    Returns the stored position when it is past the first 30 seconds and the
    video is not nearly finished (completion < 0.95); otherwise 0.
    """
    if progress is None:
        return 0
    if progress.last_position_seconds > RESUME_FLOOR_SECONDS and progress.completion < RESUME_MAX_COMPLETION:
        return progress.last_position_seconds
    return 0


class SegmentTracker:
    """Track which parts of one video were watched during a session.

    Two inputs feed the interval set:
      - sample(): the playback surface reports the playhead once per tick;
        each new whole second seen while playing counts as visited.
      - checkpoint(): an explicit mark that everything between the previous
        position and the given one was watched.

    Saves go through the store. Periodic saves while playing are deferred
    (debounced by the store); pausing, close() and reset() write durably.
    Videos with zero duration are never tracked.
    """

    def __init__(
        self,
        store: Store,
        video_id: str,
        duration: float,
        *,
        autosave_seconds: float = AUTOSAVE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], str] = utc_now_iso,
        on_complete: Callable[[Progress], None] | None = None,
    ) -> None:
        self._store = store
        self.video_id = video_id
        self.duration = duration
        self._autosave_seconds = autosave_seconds
        self._clock = clock
        self._now = now
        self._on_complete = on_complete
        self._lock = threading.RLock()
        self._ticker: PlaybackTicker | None = None

        stored = store.get_state().progress.get(video_id)
        self._intervals: list[Interval] = merge_intervals(stored.segments) if stored else []
        position = stored.last_position_seconds if stored else 0.0
        # Start of the next checkpoint interval
        self._anchor = position
        self._playhead = position
        self._visited: set[int] = set()
        self._last_second: int | None = None
        self._playing = False
        self._dirty = False
        self._last_save_at = clock()

        if not self.tracking:
            logger.debug("Video %s has no duration; progress will not be tracked", video_id)

    @property
    def tracking(self) -> bool:
        return self.duration > 0

    @property
    def intervals(self) -> list[Interval]:
        """Merged intervals including seconds visited since the last save."""
        with self._lock:
            return merge_intervals(self._intervals + seconds_to_intervals(self._visited))

    @property
    def watched_seconds(self) -> int:
        return covered_seconds(self.intervals)

    @property
    def last_position(self) -> float:
        """Anchor the next checkpoint interval starts from."""
        return self._anchor

    @property
    def playhead(self) -> float:
        return self._playhead

    def sample(self, current_second: float, is_playing: bool) -> None:
        """Record one playback sample.

        Args:
            current_second: Playhead position in seconds.
            is_playing: Whether the surface is currently playing.
        """
        if not self.tracking:
            return
        with self._lock:
            self._playhead = max(current_second, 0.0)
            self._dirty = True
            was_playing = self._playing
            self._playing = is_playing

            if is_playing:
                second = int(current_second)
                if second != self._last_second and second >= 0:
                    self._visited.add(second)
                self._last_second = second
                if not was_playing:
                    self._last_save_at = self._clock()
                elif self._clock() - self._last_save_at >= self._autosave_seconds:
                    self.save()
            elif was_playing:
                self.save(durable=True)

    def checkpoint(self, end: float, *, start: float | None = None) -> Progress | None:
        """Mark [last position, end] (or [start, end]) as watched and save.

        A checkpoint behind the anchor (after a rewind) is still recorded,
        covering the revisited range.
        """
        if not self.tracking:
            return None
        with self._lock:
            interval = normalize_interval(self._anchor if start is None else start, end)
            self._intervals = merge_intervals([*self._intervals, interval])
            self._anchor = max(end, 0.0)
            self._playhead = self._anchor
            self._dirty = True
            return self.save()

    def seek(self, seconds: float) -> None:
        """Move the playhead without marking the skipped range as watched."""
        with self._lock:
            self._anchor = max(seconds, 0.0)
            self._playhead = self._anchor
            self._last_second = None

    def save(self, durable: bool = False) -> Progress | None:
        """Fold session coverage into the stored progress record.

        Watched seconds never drop below what is already stored. The first
        save that takes completion from below 0.9 to at least 0.9 stamps
        completedAt and calls on_complete.

        Args:
            durable: Write immediately instead of through the debounced path.

        Returns:
            The saved Progress, or None for untracked videos.

        Raises:
            StorageError: If a durable write fails.
        """
        if not self.tracking:
            return None
        with self._lock:
            stored = self._store.get_state().progress.get(self.video_id)
            prior_segments = stored.segments if stored else []
            self._intervals = merge_intervals(
                [*self._intervals, *prior_segments, *seconds_to_intervals(self._visited)]
            )
            self._visited.clear()

            prior_watched = stored.watched_seconds if stored else 0.0
            prior_completion = stored.completion if stored else 0.0
            coverage = min(covered_seconds(self._intervals), self.duration)
            watched = max(coverage, prior_watched)
            completion = min(watched / self.duration, 1.0)

            timestamp = self._now()
            completed_at = stored.completed_at if stored else None
            crossed = prior_completion < COMPLETION_THRESHOLD <= completion
            if crossed:
                completed_at = timestamp

            progress = Progress(
                video_id=self.video_id,
                watched_seconds=watched,
                last_position_seconds=self._playhead,
                completion=completion,
                last_watched_at=timestamp,
                completed_at=completed_at,
                segments=self._intervals,
            )
            upsert_progress(self._store, progress, deferred=not durable)
            self._dirty = False
            self._last_save_at = self._clock()

        logger.debug(
            "Saved progress for %s: %.0fs watched (%.0f%%)",
            self.video_id,
            watched,
            completion * 100,
        )
        if crossed:
            logger.info("Video %s completed", self.video_id)
            if self._on_complete is not None:
                self._on_complete(progress)
        return progress

    def reset(self) -> Progress | None:
        """Forget all watched ranges and durably store a zeroed record."""
        if not self.tracking:
            return None
        with self._lock:
            self._intervals = []
            self._visited.clear()
            self._anchor = 0.0
            self._playhead = 0.0
            self._last_second = None
            self._dirty = False
            progress = Progress(
                video_id=self.video_id,
                watched_seconds=0,
                last_position_seconds=0,
                completion=0,
                last_watched_at=self._now(),
            )
            upsert_progress(self._store, progress)
        logger.info("Reset progress for %s", self.video_id)
        return progress

    def attach(
        self,
        surface: PlaybackSurface,
        *,
        interval: float = TICK_SECONDS,
        timer_factory: TimerFactory = threading.Timer,
    ) -> PlaybackTicker:
        """Start sampling a playback surface once per tick."""
        if self._ticker is not None:
            self._ticker.stop()
        self._ticker = PlaybackTicker(
            surface, self.sample, interval=interval, timer_factory=timer_factory
        )
        self._ticker.start()
        return self._ticker

    def close(self) -> None:
        """Stop sampling and make everything recorded so far durable."""
        if self._ticker is not None:
            self._ticker.stop()
            self._ticker = None
        with self._lock:
            dirty = self._dirty or bool(self._visited)
        if self.tracking and dirty:
            self.save(durable=True)
        else:
            self._store.flush()

    def __enter__(self) -> SegmentTracker:
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        self.close()
