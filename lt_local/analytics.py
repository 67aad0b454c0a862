"""Read-only learning metrics computed from a state snapshot."""

from __future__ import annotations

from collections import Counter
from datetime import date, datetime, timedelta, timezone

from pydantic import BaseModel

from lt_local.config import COMPLETION_THRESHOLD, IN_PROGRESS_MIN_SECONDS
from lt_local.operations import videos_for_playlist
from lt_local.schema import Envelope

# Remaining time is estimated at this playback rate
ESTIMATE_PLAYBACK_RATE = 1.25

TOP_TAGS_LIMIT = 10


class TagCount(BaseModel):
    tag: str
    count: int


class LearningMetrics(BaseModel):
    total_watched_seconds: float
    completed_videos: int
    in_progress_videos: int
    not_started_videos: int
    overall_completion_rate: float
    total_playlists: int
    active_playlists: int
    completed_playlists: int
    days_active: int
    current_streak: int
    longest_streak: int
    total_notes: int
    notes_per_video: float
    top_tags: list[TagCount]


class PlaylistAnalytics(BaseModel):
    id: str
    title: str
    total_videos: int
    completed_videos: int
    completion_rate: float
    total_duration: int
    watched_duration: float
    estimated_time_to_complete: float
    notes_count: int
    last_watched_at: str | None = None


class DailyActivity(BaseModel):
    date: str
    watch_seconds: float = 0
    videos_watched: int = 0
    completions: int = 0


def _parse_day(iso_timestamp: str) -> date | None:
    try:
        dt = datetime.fromisoformat(iso_timestamp.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).date()


def _streaks(days: set[date], today: date) -> tuple[int, int]:
    """Current and longest runs of consecutive active days.

    The current streak counts back from today, or from yesterday when
    nothing was watched yet today.
    """
    longest = 0
    run = 0
    previous: date | None = None
    for day in sorted(days):
        run = run + 1 if previous is not None and day - previous == timedelta(days=1) else 1
        longest = max(longest, run)
        previous = day

    current = 0
    cursor = today if today in days else today - timedelta(days=1)
    while cursor in days:
        current += 1
        cursor -= timedelta(days=1)
    return current, longest


def playlist_analytics(state: Envelope) -> list[PlaylistAnalytics]:
    """Per-playlist completion and remaining-time estimates."""
    note_counts = Counter(note.video_id for note in state.notes.values())
    results = []
    for playlist in state.playlists.values():
        videos = videos_for_playlist(state, playlist.id)
        progress = [state.progress[v.id] for v in videos if v.id in state.progress]
        completed = sum(1 for p in progress if p.completion >= COMPLETION_THRESHOLD)
        total_duration = sum(v.duration_sec for v in videos)
        watched = sum(p.watched_seconds for p in progress)
        remaining = max(total_duration - watched, 0)
        last_watched = max((p.last_watched_at for p in progress), default=None)
        results.append(
            PlaylistAnalytics(
                id=playlist.id,
                title=playlist.title,
                total_videos=len(videos),
                completed_videos=completed,
                completion_rate=completed / len(videos) if videos else 0,
                total_duration=total_duration,
                watched_duration=watched,
                estimated_time_to_complete=remaining / ESTIMATE_PLAYBACK_RATE,
                notes_count=sum(note_counts[v.id] for v in videos),
                last_watched_at=last_watched,
            )
        )
    return results


def compute_metrics(state: Envelope, *, today: date | None = None) -> LearningMetrics:
    """Aggregate watch time, completion, streak and note metrics.

    Only videos that still exist are counted; orphaned progress and notes
    are ignored.

    Args:
        state: State snapshot.
        today: Reference day for the current streak (default: UTC today).
    """
    if today is None:
        today = datetime.now(timezone.utc).date()

    watched = 0.0
    completed = in_progress = not_started = 0
    total_notes = 0
    tags: Counter[str] = Counter()
    active_days: set[date] = set()

    for video in state.videos.values():
        progress = state.progress.get(video.id)
        if progress is None:
            not_started += 1
        else:
            watched += progress.watched_seconds
            if progress.completion >= COMPLETION_THRESHOLD:
                completed += 1
            elif progress.watched_seconds > IN_PROGRESS_MIN_SECONDS:
                in_progress += 1
            else:
                not_started += 1
            day = _parse_day(progress.last_watched_at)
            if day is not None:
                active_days.add(day)

    for note in state.notes.values():
        if note.video_id in state.videos:
            total_notes += 1
            tags.update(note.tags)

    current_streak, longest_streak = _streaks(active_days, today)
    playlists = playlist_analytics(state)
    video_count = len(state.videos)

    return LearningMetrics(
        total_watched_seconds=watched,
        completed_videos=completed,
        in_progress_videos=in_progress,
        not_started_videos=not_started,
        overall_completion_rate=completed / video_count if video_count else 0,
        total_playlists=len(playlists),
        active_playlists=sum(1 for p in playlists if 0 < p.completion_rate < 1),
        completed_playlists=sum(1 for p in playlists if p.total_videos and p.completion_rate >= 1),
        days_active=len(active_days),
        current_streak=current_streak,
        longest_streak=longest_streak,
        total_notes=total_notes,
        notes_per_video=total_notes / video_count if video_count else 0,
        top_tags=[TagCount(tag=t, count=c) for t, c in tags.most_common(TOP_TAGS_LIMIT)],
    )


def daily_activity(
    state: Envelope, *, days: int = 30, today: date | None = None
) -> list[DailyActivity]:
    """Watch activity per UTC day for the last `days` days, oldest first.

    Each video is attributed to the day it was last watched.
    """
    if today is None:
        today = datetime.now(timezone.utc).date()
    start = today - timedelta(days=days - 1)
    by_day = {
        (start + timedelta(days=i)).isoformat(): DailyActivity(date=(start + timedelta(days=i)).isoformat())
        for i in range(days)
    }
    for video in state.videos.values():
        progress = state.progress.get(video.id)
        if progress is None:
            continue
        day = _parse_day(progress.last_watched_at)
        if day is None or day.isoformat() not in by_day:
            continue
        activity = by_day[day.isoformat()]
        activity.watch_seconds += progress.watched_seconds
        activity.videos_watched += 1
        if progress.completion >= COMPLETION_THRESHOLD:
            activity.completions += 1
    return list(by_day.values())
