"""Pydantic models for the persisted learning tracker state."""

from __future__ import annotations

import json
import re
import uuid
from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import (
    AnyUrl,
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

# Bump when the persisted shape changes. Add an entry to
# migrations.MIGRATIONS unless field defaults are enough to upgrade.
CURRENT_VERSION = 2

STORAGE_KEY = "tubetrack:state"

_URL_ADAPTER = TypeAdapter(AnyUrl)


class _Model(BaseModel):
    """Base model: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Thumbnail(_Model):
    url: str = Field(min_length=1)
    width: int | None = Field(default=None, gt=0)
    height: int | None = Field(default=None, gt=0)

    @field_validator("url")
    @classmethod
    def _check_url(cls, value: str) -> str:
        # Keep the text as given; AnyUrl would normalize it
        try:
            _URL_ADAPTER.validate_python(value)
        except ValidationError:
            raise ValueError(f"thumbnail url is not a valid URL: {value!r}") from None
        return value


class Playlist(_Model):
    id: str = Field(min_length=1)
    title: str = Field(min_length=1)
    channel_title: str = ""
    item_count: int = Field(default=0, ge=0)
    imported_at: str


class Video(_Model):
    """A video imported as part of a playlist.

    Duration is fixed at import time; position orders videos within their
    playlist and must be unique there.
    """

    id: str = Field(min_length=1)
    playlist_id: str = Field(min_length=1)
    title: str = Field(min_length=1)
    channel_title: str = ""
    duration_sec: int = Field(ge=0)
    thumbnails: dict[str, Thumbnail] = Field(default_factory=dict)
    position: int = Field(ge=0)


class Progress(_Model):
    """Watch progress for one video, created lazily on first playback."""

    video_id: str = Field(min_length=1)
    watched_seconds: float = Field(ge=0)
    last_position_seconds: float = Field(ge=0)
    completion: float = Field(default=0, ge=0, le=1)
    last_watched_at: str
    completed_at: str | None = None
    # Merged [start, end] watch intervals in whole seconds (added in v2)
    segments: list[tuple[int, int]] = Field(default_factory=list)

    @field_validator("segments")
    @classmethod
    def _check_segments(cls, value: list[tuple[int, int]]) -> list[tuple[int, int]]:
        for start, end in value:
            if start < 0 or end < start:
                raise ValueError(f"invalid segment [{start}, {end}]")
        return value


class TimestampMarker(_Model):
    seconds: float = Field(ge=0)
    label: str | None = None


class Note(_Model):
    id: str
    video_id: str = Field(min_length=1)
    content: str
    timestamps: list[TimestampMarker] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    created_at: str
    updated_at: str

    @field_validator("id")
    @classmethod
    def _check_uuid(cls, value: str) -> str:
        try:
            uuid.UUID(value)
        except ValueError:
            raise ValueError(f"note id must be a UUID, got {value!r}") from None
        return value


class Settings(_Model):
    theme: Literal["light", "dark", "system"] = "system"
    player_rate: float = Field(default=1, ge=0.25, le=2)
    player_mode: Literal["default", "theater", "minimal"] = "default"
    keyboard_shortcuts: bool = True


class Envelope(_Model):
    """The single persisted document holding all collections and settings."""

    version: int = Field(ge=0, le=CURRENT_VERSION)
    playlists: dict[str, Playlist] = Field(default_factory=dict)
    videos: dict[str, Video] = Field(default_factory=dict)
    progress: dict[str, Progress] = Field(default_factory=dict)
    notes: dict[str, Note] = Field(default_factory=dict)
    settings: Settings = Field(default_factory=Settings)

    @model_validator(mode="after")
    def _check_keys(self) -> Envelope:
        for key, playlist in self.playlists.items():
            if key != playlist.id:
                raise ValueError(f"playlist key {key!r} does not match id {playlist.id!r}")
        for key, video in self.videos.items():
            if key != video.id:
                raise ValueError(f"video key {key!r} does not match id {video.id!r}")
        for key, progress in self.progress.items():
            if key != progress.video_id:
                raise ValueError(
                    f"progress key {key!r} does not match videoId {progress.video_id!r}"
                )
        for key, note in self.notes.items():
            if key != note.id:
                raise ValueError(f"note key {key!r} does not match id {note.id!r}")

        seen: dict[tuple[str, int], str] = {}
        for video in self.videos.values():
            slot = (video.playlist_id, video.position)
            if slot in seen:
                raise ValueError(
                    f"videos {seen[slot]!r} and {video.id!r} share position "
                    f"{video.position} in playlist {video.playlist_id!r}"
                )
            seen[slot] = video.id
        return self


# Top-level slices that callers may replace through the store
SLICE_KEYS = ("playlists", "videos", "progress", "notes", "settings")


def default_envelope() -> Envelope:
    """Return a fresh empty envelope at the current version."""
    return Envelope(version=CURRENT_VERSION)


def validate_envelope(raw: Any) -> Envelope:
    """Validate untyped JSON data into an Envelope, filling defaults.

    Raises:
        pydantic.ValidationError: If the document does not match the schema.
    """
    return Envelope.model_validate(raw)


def dump_envelope(envelope: Envelope) -> dict[str, Any]:
    """Convert an envelope to plain JSON-compatible data (camelCase keys)."""
    return envelope.model_dump(mode="json", by_alias=True, exclude_none=True)


def serialize_envelope(envelope: Envelope, *, indent: int | None = None) -> str:
    """Serialize an envelope to the canonical JSON text that gets persisted."""
    data = dump_envelope(envelope)
    if indent is None:
        return json.dumps(data, ensure_ascii=False, separators=(",", ":"))
    return json.dumps(data, ensure_ascii=False, indent=indent)


_TAG_RE = re.compile(r"#([a-zA-Z0-9_-]+)")
_TIMESTAMP_RE = re.compile(r"\[(\d{1,2}):(\d{2})(?::(\d{2}))?\]")
_PLAYLIST_ID_PATTERNS = (
    re.compile(r"[?&]list=([a-zA-Z0-9_-]+)"),
    re.compile(r"^([a-zA-Z0-9_-]{18,})$"),
)


def utc_now_iso() -> str:
    """Current UTC time as an ISO 8601 string with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def extract_tags(content: str) -> list[str]:
    """Return the unique #hashtags in content, in order of first appearance."""
    tags: list[str] = []
    for match in _TAG_RE.finditer(content):
        tag = match.group(1)
        if tag not in tags:
            tags.append(tag)
    return tags


def parse_timestamps(content: str) -> list[TimestampMarker]:
    """Parse [mm:ss] and [h:mm:ss] markers out of note content.

    The text following a marker on the same line becomes its label. Markers
    are returned sorted by time, one per distinct second.

    Args:
        content: Note text.

    Returns:
        List of TimestampMarker sorted by seconds.
    """
    markers: dict[int, TimestampMarker] = {}
    for line in content.splitlines():
        for match in _TIMESTAMP_RE.finditer(line):
            first, second, third = match.groups()
            if third is not None:
                seconds = int(first) * 3600 + int(second) * 60 + int(third)
            else:
                seconds = int(first) * 60 + int(second)
            label = _TIMESTAMP_RE.sub("", line[match.end():]).strip() or None
            markers.setdefault(seconds, TimestampMarker(seconds=seconds, label=label))
    return [markers[s] for s in sorted(markers)]


def format_timestamp(seconds: float) -> str:
    """Format seconds as a note marker, '[mm:ss]' or '[h:mm:ss]'."""
    total = int(seconds)
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours > 0:
        return f"[{hours}:{minutes:02d}:{secs:02d}]"
    return f"[{minutes:02d}:{secs:02d}]"


def format_duration(seconds: float) -> str:
    """Format seconds as 'h:mm:ss' or 'm:ss'."""
    total = int(seconds)
    hours, rest = divmod(total, 3600)
    minutes, secs = divmod(rest, 60)
    if hours > 0:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def extract_playlist_id(url: str) -> str | None:
    """Pull a playlist ID out of a playlist URL or a bare ID."""
    for pattern in _PLAYLIST_ID_PATTERNS:
        match = pattern.search(url.strip())
        if match:
            return match.group(1)
    return None
