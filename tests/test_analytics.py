"""Tests for learning metrics."""

from datetime import date

import pytest

from lt_local.analytics import compute_metrics, daily_activity, playlist_analytics
from lt_local.schema import CURRENT_VERSION, validate_envelope


def make_state(progress: dict | None = None, notes: dict | None = None):
    """Playlist P1 with videos v1-v3 and P2 with v4, 100s/200s/300s/400s long."""
    videos = {
        f"v{i}": {
            "id": f"v{i}",
            "playlistId": "P1" if i < 4 else "P2",
            "title": f"Video {i}",
            "durationSec": i * 100,
            "position": i - 1 if i < 4 else 0,
        }
        for i in range(1, 5)
    }
    return validate_envelope(
        {
            "version": CURRENT_VERSION,
            "playlists": {
                "P1": {"id": "P1", "title": "Python", "importedAt": "2025-01-01T00:00:00.000Z"},
                "P2": {"id": "P2", "title": "Rust", "importedAt": "2025-01-01T00:00:00.000Z"},
            },
            "videos": videos,
            "progress": progress or {},
            "notes": notes or {},
        }
    )


def progress_entry(video_id: str, watched: float, completion: float, day: str) -> dict:
    return {
        "videoId": video_id,
        "watchedSeconds": watched,
        "lastPositionSeconds": watched,
        "completion": completion,
        "lastWatchedAt": f"{day}T09:00:00.000Z",
    }


def note_entry(note_id: str, video_id: str, tags: list[str]) -> dict:
    return {
        "id": note_id,
        "videoId": video_id,
        "content": " ".join(f"#{t}" for t in tags),
        "tags": tags,
        "createdAt": "2025-01-01T00:00:00.000Z",
        "updatedAt": "2025-01-01T00:00:00.000Z",
    }


class TestComputeMetrics:
    def test_empty_state(self):
        metrics = compute_metrics(make_state(), today=date(2025, 1, 10))
        assert metrics.total_watched_seconds == 0
        assert metrics.not_started_videos == 4
        assert metrics.current_streak == 0
        assert metrics.longest_streak == 0
        assert metrics.top_tags == []

    def test_video_buckets(self):
        state = make_state(
            {
                "v1": progress_entry("v1", 95, 0.95, "2025-01-10"),
                "v2": progress_entry("v2", 100, 0.5, "2025-01-09"),
                "v3": progress_entry("v3", 10, 0.03, "2025-01-05"),
            }
        )
        metrics = compute_metrics(state, today=date(2025, 1, 10))
        assert metrics.completed_videos == 1
        assert metrics.in_progress_videos == 1
        assert metrics.not_started_videos == 2
        assert metrics.total_watched_seconds == 205
        assert metrics.overall_completion_rate == pytest.approx(0.25)
        assert metrics.days_active == 3

    def test_current_streak_counts_from_today(self):
        state = make_state(
            {
                "v1": progress_entry("v1", 50, 0.5, "2025-01-10"),
                "v2": progress_entry("v2", 50, 0.25, "2025-01-09"),
                "v3": progress_entry("v3", 50, 0.1, "2025-01-05"),
            }
        )
        metrics = compute_metrics(state, today=date(2025, 1, 10))
        assert metrics.current_streak == 2
        assert metrics.longest_streak == 2

    def test_current_streak_from_yesterday(self):
        state = make_state({"v1": progress_entry("v1", 50, 0.5, "2025-01-09")})
        assert compute_metrics(state, today=date(2025, 1, 10)).current_streak == 1

    def test_streak_broken(self):
        state = make_state({"v1": progress_entry("v1", 50, 0.5, "2025-01-07")})
        metrics = compute_metrics(state, today=date(2025, 1, 10))
        assert metrics.current_streak == 0
        assert metrics.longest_streak == 1

    def test_longest_streak(self):
        state = make_state(
            {
                "v1": progress_entry("v1", 50, 0.5, "2025-01-01"),
                "v2": progress_entry("v2", 50, 0.25, "2025-01-02"),
                "v3": progress_entry("v3", 50, 0.1, "2025-01-03"),
                "v4": progress_entry("v4", 50, 0.1, "2025-01-07"),
            }
        )
        metrics = compute_metrics(state, today=date(2025, 1, 20))
        assert metrics.longest_streak == 3
        assert metrics.current_streak == 0

    def test_top_tags(self):
        notes = {
            "00000000-0000-4000-8000-000000000001": note_entry(
                "00000000-0000-4000-8000-000000000001", "v1", ["python", "loops"]
            ),
            "00000000-0000-4000-8000-000000000002": note_entry(
                "00000000-0000-4000-8000-000000000002", "v2", ["python"]
            ),
            "00000000-0000-4000-8000-000000000003": note_entry(
                "00000000-0000-4000-8000-000000000003", "gone", ["orphan"]
            ),
        }
        metrics = compute_metrics(make_state(notes=notes), today=date(2025, 1, 10))
        assert metrics.total_notes == 2
        assert metrics.notes_per_video == pytest.approx(0.5)
        assert [(t.tag, t.count) for t in metrics.top_tags] == [("python", 2), ("loops", 1)]

    def test_playlist_counts(self):
        state = make_state({"v4": progress_entry("v4", 400, 1.0, "2025-01-10")})
        metrics = compute_metrics(state, today=date(2025, 1, 10))
        assert metrics.total_playlists == 2
        assert metrics.completed_playlists == 1
        assert metrics.active_playlists == 0


class TestPlaylistAnalytics:
    def test_estimates_remaining_time(self):
        state = make_state(
            {
                "v1": progress_entry("v1", 100, 1.0, "2025-01-08"),
                "v2": progress_entry("v2", 50, 0.25, "2025-01-09"),
            }
        )
        by_id = {p.id: p for p in playlist_analytics(state)}
        python = by_id["P1"]
        assert python.total_videos == 3
        assert python.completed_videos == 1
        assert python.completion_rate == pytest.approx(1 / 3)
        assert python.total_duration == 600
        assert python.watched_duration == 150
        assert python.estimated_time_to_complete == pytest.approx(450 / 1.25)
        assert python.last_watched_at == "2025-01-09T09:00:00.000Z"

        assert by_id["P2"].completion_rate == 0
        assert by_id["P2"].last_watched_at is None

    def test_counts_notes_per_playlist(self):
        notes = {
            f"00000000-0000-4000-8000-00000000000{i}": note_entry(f"00000000-0000-4000-8000-00000000000{i}", video_id, [])
            for i, video_id in enumerate(["v1", "v1", "v3", "v4", "gone"], start=1)
        }
        by_id = {p.id: p for p in playlist_analytics(make_state(notes=notes))}
        assert by_id["P1"].notes_count == 3
        assert by_id["P2"].notes_count == 1


class TestDailyActivity:
    def test_window(self):
        state = make_state(
            {
                "v1": progress_entry("v1", 95, 0.95, "2025-01-10"),
                "v2": progress_entry("v2", 60, 0.3, "2025-01-10"),
                "v3": progress_entry("v3", 30, 0.1, "2024-12-01"),
            }
        )
        activity = daily_activity(state, days=7, today=date(2025, 1, 10))
        assert [a.date for a in activity][0] == "2025-01-04"
        assert activity[-1].date == "2025-01-10"
        assert activity[-1].watch_seconds == 155
        assert activity[-1].videos_watched == 2
        assert activity[-1].completions == 1
        assert sum(a.videos_watched for a in activity) == 2
