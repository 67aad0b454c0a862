"""Entity-level helpers built on Store.get_state/set_state/update.

Write helpers take a Store; read helpers take an Envelope snapshot (from
store.get_state()) so several reads can share one consistent copy.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from typing import Any

from pydantic import BaseModel

from lt_local.config import COMPLETION_THRESHOLD
from lt_local.schema import (
    Envelope,
    Note,
    Playlist,
    Progress,
    Video,
    extract_tags,
    parse_timestamps,
    utc_now_iso,
)
from lt_local.store import Store

logger = logging.getLogger(__name__)


class PlaylistStats(BaseModel):
    total_videos: int
    completed_videos: int
    total_duration: int
    watched_time: float


def add_playlist(store: Store, playlist: Playlist) -> None:
    """Add a playlist, replacing one with the same id."""
    store.update("playlists", lambda playlists: {**playlists, playlist.id: playlist})


def remove_playlist(store: Store, playlist_id: str) -> list[str]:
    """Remove a playlist together with its videos and their progress.

    Notes are kept (see prune_orphans). All three slices change in a single
    write.

    Returns:
        IDs of the removed videos, sorted.
    """
    state = store.get_state()
    removed = {vid for vid, video in state.videos.items() if video.playlist_id == playlist_id}
    store.set_state(
        {
            "playlists": {k: v for k, v in state.playlists.items() if k != playlist_id},
            "videos": {k: v for k, v in state.videos.items() if k not in removed},
            "progress": {k: v for k, v in state.progress.items() if k not in removed},
        }
    )
    logger.info("Removed playlist %s and %d videos", playlist_id, len(removed))
    return sorted(removed)


def add_videos(store: Store, videos: Iterable[Video]) -> None:
    """Insert or replace videos by id."""
    incoming = {video.id: video for video in videos}
    store.update("videos", lambda current: {**current, **incoming})


def videos_for_playlist(state: Envelope, playlist_id: str) -> list[Video]:
    """Videos of a playlist, in playlist order."""
    return sorted(
        (v for v in state.videos.values() if v.playlist_id == playlist_id),
        key=lambda v: v.position,
    )


def get_progress(state: Envelope, video_id: str) -> Progress:
    """Stored progress for a video, or a zeroed record if it has none."""
    stored = state.progress.get(video_id)
    if stored is not None:
        return stored
    return Progress(
        video_id=video_id,
        watched_seconds=0,
        last_position_seconds=0,
        completion=0,
        last_watched_at=utc_now_iso(),
    )


def upsert_progress(store: Store, progress: Progress, *, deferred: bool = False) -> None:
    """Insert or replace the progress record of progress.video_id.

    With deferred=True the durable write is debounced (see Store).
    """

    def apply(current: dict[str, Progress]) -> dict[str, Progress]:
        return {**current, progress.video_id: progress}

    if deferred:
        store.update_deferred("progress", apply)
    else:
        store.update("progress", apply)


def upsert_note(store: Store, note: Note) -> None:
    store.update("notes", lambda notes: {**notes, note.id: note})


def remove_note(store: Store, note_id: str) -> bool:
    """Delete a note. Returns False if it did not exist."""
    if note_id not in store.get_state().notes:
        return False
    store.update("notes", lambda notes: {k: v for k, v in notes.items() if k != note_id})
    return True


def notes_for_video(state: Envelope, video_id: str) -> list[Note]:
    """Notes attached to a video, most recently updated first."""
    return sorted(
        (n for n in state.notes.values() if n.video_id == video_id),
        key=lambda n: n.updated_at,
        reverse=True,
    )


def save_note_content(
    store: Store,
    video_id: str,
    content: str,
    *,
    now: str | None = None,
) -> Note:
    """Create or update the note of a video from its text.

    Tags come from #hashtags and timestamp markers from [mm:ss] references in
    the content. The most recently updated note of the video is the one
    edited; a new note is created when the video has none.
    """
    timestamp = now or utc_now_iso()
    existing = notes_for_video(store.get_state(), video_id)
    text = content.strip()
    note = Note(
        id=existing[0].id if existing else str(uuid.uuid4()),
        video_id=video_id,
        content=text,
        timestamps=parse_timestamps(text),
        tags=extract_tags(text),
        created_at=existing[0].created_at if existing else timestamp,
        updated_at=timestamp,
    )
    upsert_note(store, note)
    return note


def playlist_stats(state: Envelope, playlist_id: str) -> PlaylistStats:
    """Aggregate a playlist's progress. Computed fresh on every call."""
    videos = videos_for_playlist(state, playlist_id)
    completed = 0
    watched = 0.0
    for video in videos:
        progress = state.progress.get(video.id)
        if progress is None:
            continue
        watched += progress.watched_seconds
        if progress.completion >= COMPLETION_THRESHOLD:
            completed += 1
    return PlaylistStats(
        total_videos=len(videos),
        completed_videos=completed,
        total_duration=sum(v.duration_sec for v in videos),
        watched_time=watched,
    )


def update_settings(store: Store, **changes: Any) -> None:
    """Change individual settings, e.g. update_settings(store, theme="dark").

    Raises:
        ValueError: For unknown setting names.
        pydantic.ValidationError: If a value is out of bounds.
    """
    state = store.get_state()
    unknown = sorted(set(changes) - set(type(state.settings).model_fields))
    if unknown:
        raise ValueError(f"Unknown setting(s): {', '.join(unknown)}")
    store.update("settings", lambda settings: {**settings.model_dump(), **changes})


def prune_orphans(store: Store) -> dict[str, int]:
    """Delete progress records and notes whose video no longer exists.

    Never run implicitly: playlist removal leaves notes in place, and
    progress written for a video that was not imported is tolerated.

    Returns:
        Counts of removed records, keyed "progress" and "notes".
    """
    state = store.get_state()
    progress = {k: v for k, v in state.progress.items() if k in state.videos}
    notes = {k: v for k, v in state.notes.items() if v.video_id in state.videos}
    removed = {
        "progress": len(state.progress) - len(progress),
        "notes": len(state.notes) - len(notes),
    }
    if removed["progress"] or removed["notes"]:
        store.set_state({"progress": progress, "notes": notes})
        logger.info(
            "Pruned %d orphaned progress records and %d orphaned notes",
            removed["progress"],
            removed["notes"],
        )
    return removed
