"""Upgrade stored state documents to the current schema version."""

from __future__ import annotations

import copy
import logging
import uuid
from collections.abc import Callable, Mapping
from typing import Any

from pydantic import ValidationError

from lt_local.intervals import covered_seconds, merge_intervals, normalize_interval
from lt_local.schema import (
    CURRENT_VERSION,
    Envelope,
    default_envelope,
    extract_tags,
    parse_timestamps,
    validate_envelope,
)

logger = logging.getLogger(__name__)

Document = dict[str, Any]

# Namespace for note IDs derived from legacy per-video note text
LEGACY_NOTE_NAMESPACE = uuid.UUID("6f1c2a4e-8d3b-4f57-9a61-2b7e0c5d9f13")

LEGACY_TIMESTAMP = "1970-01-01T00:00:00.000Z"

_LEGACY_PLAYER_MODES = {
    "default": "default",
    "normal": "default",
    "theater": "theater",
    "fullscreen": "theater",
    "minimal": "minimal",
    "focus": "minimal",
}


class MigrationError(Exception):
    """Base exception for migration errors."""

    pass


class MigrationExhaustedError(MigrationError):
    """Raised when a document is still invalid after all migrations ran."""

    def __init__(self, from_version: int, cause: Exception) -> None:
        super().__init__(
            f"State document from version {from_version} is invalid after migrating "
            f"to version {CURRENT_VERSION}: {cause}"
        )
        self.from_version = from_version


class UnsupportedVersionError(MigrationError):
    """Raised for documents written by a newer version of the tracker."""

    def __init__(self, version: int) -> None:
        super().__init__(
            f"State document version {version} is newer than supported version "
            f"{CURRENT_VERSION}"
        )
        self.version = version


def document_version(raw: Mapping[str, Any]) -> int:
    """Return the version stamped on a raw document (absent or bogus -> 0)."""
    version = raw.get("version")
    if isinstance(version, bool) or not isinstance(version, int) or version < 0:
        return 0
    return version


def needs_migration(raw: Mapping[str, Any]) -> bool:
    return document_version(raw) < CURRENT_VERSION


def _legacy_segments(raw_segments: Any) -> list[tuple[int, int]]:
    segments: list[tuple[int, int]] = []
    if not isinstance(raw_segments, list):
        return segments
    for pair in raw_segments:
        try:
            start, end = float(pair[0]), float(pair[1])
        except (TypeError, ValueError, IndexError):
            continue
        segments.append(normalize_interval(start, end))
    return merge_intervals(segments)


def _legacy_settings(raw: Any) -> Document:
    if not isinstance(raw, dict):
        return {}

    settings: Document = {}
    theme = raw.get("theme")
    if raw.get("darkMode") is True:
        theme = "dark"
    if theme in ("light", "dark", "system"):
        settings["theme"] = theme

    if "playerRate" in raw:
        settings["playerRate"] = raw["playerRate"]

    mode = _LEGACY_PLAYER_MODES.get(raw.get("playerMode", raw.get("videoPlayerMode")))
    if mode:
        settings["playerMode"] = mode

    shortcuts = raw.get("keyboardShortcuts", raw.get("showKeyboardShortcuts"))
    if isinstance(shortcuts, bool):
        settings["keyboardShortcuts"] = shortcuts

    return settings


def _split_legacy_playlists(entries: list[Any]) -> Document:
    """Split the legacy list of playlists-with-embedded-videos into slices."""
    playlists: Document = {}
    videos: Document = {}
    progress: Document = {}
    notes: Document = {}

    for entry in entries:
        if not isinstance(entry, dict) or not entry.get("id"):
            continue
        playlist_id = str(entry["id"])
        imported_at = entry.get("createdAt") or entry.get("startDate") or LEGACY_TIMESTAMP
        last_watched_at = entry.get("lastAccessed") or imported_at

        legacy_videos = [
            v for v in entry.get("videos") or [] if isinstance(v, dict) and v.get("id")
        ]
        playlists[playlist_id] = {
            "id": playlist_id,
            "title": entry.get("title") or playlist_id,
            "channelTitle": "",
            "itemCount": len(legacy_videos),
            "importedAt": imported_at,
        }

        for position, legacy in enumerate(legacy_videos):
            video_id = str(legacy["id"])
            if video_id in videos:
                # Same video listed in two playlists: the first one owns it
                continue
            duration = legacy.get("duration") or 0
            duration = max(int(duration), 0) if isinstance(duration, (int, float)) else 0
            videos[video_id] = {
                "id": video_id,
                "playlistId": playlist_id,
                "title": legacy.get("title") or video_id,
                "channelTitle": "",
                "durationSec": duration,
                "position": position,
            }

            segments = _legacy_segments(legacy.get("watchedSegments"))
            last_position = legacy.get("lastPosition") or 0
            completed = legacy.get("completed") is True
            if segments or last_position or completed:
                watched = covered_seconds(segments)
                if completed:
                    completion = 1.0
                elif duration > 0:
                    completion = min(watched / duration, 1.0)
                else:
                    completion = 0.0
                record: Document = {
                    "videoId": video_id,
                    "watchedSeconds": watched,
                    "lastPositionSeconds": max(float(last_position), 0.0),
                    "completion": completion,
                    "lastWatchedAt": last_watched_at,
                    "segments": [list(s) for s in segments],
                }
                if completion >= 0.9:
                    record["completedAt"] = last_watched_at
                progress[video_id] = record

            text = legacy.get("notes")
            if isinstance(text, str) and text.strip():
                note_id = str(uuid.uuid5(LEGACY_NOTE_NAMESPACE, video_id))
                notes[note_id] = {
                    "id": note_id,
                    "videoId": video_id,
                    "content": text.strip(),
                    "timestamps": [
                        m.model_dump(by_alias=True, exclude_none=True)
                        for m in parse_timestamps(text)
                    ],
                    "tags": extract_tags(text),
                    "createdAt": imported_at,
                    "updatedAt": last_watched_at,
                }

    return {"playlists": playlists, "videos": videos, "progress": progress, "notes": notes}


def _migrate_to_v1(doc: Document) -> Document:
    """Version 0 -> 1: keyed collections and the new settings vocabulary.

    Handles both the legacy list-of-playlists document and unversioned
    documents that already use keyed collections.
    """
    result: Document = {
        "playlists": doc.get("playlists", {}),
        "videos": doc.get("videos", {}),
        "progress": doc.get("progress", {}),
        "notes": doc.get("notes", {}),
    }
    if isinstance(doc.get("playlists"), list):
        result.update(_split_legacy_playlists(doc["playlists"]))
    result["settings"] = _legacy_settings(doc.get("settings"))
    return result


# Target version -> pure function from the previous version's document.
# Version 2 (Progress.segments) has no entry: its default fills it in.
MIGRATIONS: dict[int, Callable[[Document], Document]] = {
    1: _migrate_to_v1,
}


def migrate(
    raw: Mapping[str, Any],
    *,
    strict: bool = False,
    migrations: Mapping[int, Callable[[Document], Document]] | None = None,
) -> Envelope:
    """Upgrade a raw document to the current version and validate it.

    Migrations run in increasing version order, one per version, starting
    after the document's own version. A version without a migration is
    carried forward unchanged. The input is never mutated.

    Args:
        raw: Untyped document as parsed from JSON.
        strict: Raise MigrationExhaustedError instead of falling back to a
            fresh default envelope when the result is invalid.
        migrations: Override the migration table (for testing).

    Returns:
        A validated Envelope at CURRENT_VERSION.

    Raises:
        UnsupportedVersionError: If the document is newer than this code.
        MigrationExhaustedError: If strict and the result is invalid.
    """
    steps = MIGRATIONS if migrations is None else migrations
    from_version = document_version(raw)
    if from_version > CURRENT_VERSION:
        raise UnsupportedVersionError(from_version)

    doc: Document = copy.deepcopy(dict(raw))
    try:
        for target in range(from_version + 1, CURRENT_VERSION + 1):
            step = steps.get(target)
            if step is None:
                logger.debug("No migration for version %d; carrying document forward", target)
            else:
                logger.info("Migrating state document to version %d", target)
                doc = step(doc)
            doc["version"] = target
        return validate_envelope(doc)
    except (ValidationError, ValueError, TypeError, KeyError, AttributeError) as e:
        error = MigrationExhaustedError(from_version, e)
        if strict:
            raise error from e
        logger.warning("%s; discarding it and starting from a fresh state", error)
        return default_envelope()
