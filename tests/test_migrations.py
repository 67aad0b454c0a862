"""Tests for the migration chain."""

import copy
import logging
import uuid

import pytest

from lt_local.migrations import (
    LEGACY_NOTE_NAMESPACE,
    MigrationExhaustedError,
    UnsupportedVersionError,
    document_version,
    migrate,
    needs_migration,
)
from lt_local.schema import CURRENT_VERSION


def make_legacy_document() -> dict:
    """A pre-versioning document: playlists embed their videos."""
    return {
        "playlists": [
            {
                "id": "PL1",
                "title": "Python Course",
                "createdAt": "2024-12-01T10:00:00.000Z",
                "lastAccessed": "2025-01-05T18:30:00.000Z",
                "videos": [
                    {
                        "id": "vid-a",
                        "title": "Loops",
                        "duration": 100,
                        "watchedSegments": [[0, 60], [30, 90]],
                        "lastPosition": 90,
                        "notes": "Great intro #python\n[01:30] while loops",
                    },
                    {"id": "vid-b", "title": "Functions", "duration": 200},
                    {"id": "vid-c", "title": "Classes", "duration": 300, "completed": True},
                ],
            }
        ],
        "settings": {"darkMode": True, "playerRate": 1.5, "videoPlayerMode": "fullscreen"},
    }


class TestDocumentVersion:
    def test_absent_version_is_zero(self):
        assert document_version({}) == 0

    @pytest.mark.parametrize("bogus", ["3", None, -1, True, 1.5])
    def test_bogus_version_is_zero(self, bogus):
        assert document_version({"version": bogus}) == 0

    def test_needs_migration(self):
        assert needs_migration({"version": 0})
        assert not needs_migration({"version": CURRENT_VERSION})


class TestUnversionedDocuments:
    """Tests for version 0 documents that already use keyed collections."""

    def test_settings_preserved_and_defaults_filled(self):
        raw = {
            "playlists": {},
            "videos": {},
            "progress": {},
            "notes": {},
            "settings": {"theme": "light", "playerRate": 2},
        }
        env = migrate(raw)
        assert env.version == CURRENT_VERSION
        assert env.settings.theme == "light"
        assert env.settings.player_rate == 2
        assert env.settings.keyboard_shortcuts is True

    def test_input_not_mutated(self):
        raw = {"settings": {"theme": "light"}}
        before = copy.deepcopy(raw)
        migrate(raw)
        assert raw == before

    def test_current_document_validated_unchanged(self):
        env = migrate({"version": CURRENT_VERSION, "settings": {"theme": "dark"}})
        assert env.settings.theme == "dark"


class TestLegacyDocuments:
    """Tests for the list-of-playlists layout."""

    def test_playlists_and_videos_split_out(self):
        env = migrate(make_legacy_document())
        assert list(env.playlists) == ["PL1"]
        assert env.playlists["PL1"].item_count == 3
        assert env.playlists["PL1"].imported_at == "2024-12-01T10:00:00.000Z"
        assert [env.videos[v].position for v in ("vid-a", "vid-b", "vid-c")] == [0, 1, 2]
        assert env.videos["vid-b"].playlist_id == "PL1"
        assert env.videos["vid-c"].duration_sec == 300

    def test_segments_become_progress(self):
        env = migrate(make_legacy_document())
        progress = env.progress["vid-a"]
        assert progress.segments == [(0, 90)]
        assert progress.watched_seconds == 90
        assert progress.completion == pytest.approx(0.9)
        assert progress.completed_at == "2025-01-05T18:30:00.000Z"
        assert progress.last_position_seconds == 90

    def test_unwatched_video_has_no_progress(self):
        env = migrate(make_legacy_document())
        assert "vid-b" not in env.progress

    def test_completed_flag(self):
        env = migrate(make_legacy_document())
        assert env.progress["vid-c"].completion == 1.0

    def test_notes_text_becomes_note(self):
        env = migrate(make_legacy_document())
        note_id = str(uuid.uuid5(LEGACY_NOTE_NAMESPACE, "vid-a"))
        note = env.notes[note_id]
        assert note.video_id == "vid-a"
        assert note.tags == ["python"]
        assert [m.seconds for m in note.timestamps] == [90]
        assert note.timestamps[0].label == "while loops"

    def test_legacy_settings_vocabulary(self):
        env = migrate(make_legacy_document())
        assert env.settings.theme == "dark"
        assert env.settings.player_rate == 1.5
        assert env.settings.player_mode == "theater"

    def test_migration_is_deterministic(self):
        assert migrate(make_legacy_document()) == migrate(make_legacy_document())


class TestMigrationChain:
    """Tests for ordering, skipping and failure handling."""

    def test_steps_run_once_in_order(self):
        calls = []

        def to_v1(doc):
            calls.append((1, doc.get("version")))
            return {**doc, "settings": {"theme": "dark"}}

        def to_v2(doc):
            calls.append((2, doc.get("version")))
            return doc

        env = migrate({}, migrations={1: to_v1, 2: to_v2})
        assert calls == [(1, None), (2, 1)]
        assert env.version == CURRENT_VERSION
        assert env.settings.theme == "dark"

    def test_missing_step_carries_document_forward(self):
        def to_v1(doc):
            return {**doc, "settings": {"playerMode": "minimal"}}

        env = migrate({}, migrations={1: to_v1})
        assert env.version == CURRENT_VERSION
        assert env.settings.player_mode == "minimal"

    def test_steps_below_document_version_skipped(self):
        def to_v1(doc):
            raise AssertionError("already at version 1")

        env = migrate({"version": 1}, migrations={1: to_v1})
        assert env.version == CURRENT_VERSION

    def test_newer_version_rejected(self):
        with pytest.raises(UnsupportedVersionError) as exc_info:
            migrate({"version": CURRENT_VERSION + 1})
        assert exc_info.value.version == CURRENT_VERSION + 1

    def test_invalid_result_falls_back_to_default(self, caplog):
        raw = {"version": 1, "settings": {"playerRate": 5}}
        with caplog.at_level(logging.WARNING, logger="lt_local.migrations"):
            env = migrate(raw)
        assert env.settings.player_rate == 1
        assert env.playlists == {}
        assert "fresh state" in caplog.text

    def test_invalid_result_strict(self):
        with pytest.raises(MigrationExhaustedError) as exc_info:
            migrate({"version": 1, "settings": {"playerRate": 5}}, strict=True)
        assert exc_info.value.from_version == 1

    def test_failing_step_falls_back_to_default(self):
        def broken(doc):
            raise KeyError("missing")

        env = migrate({"settings": {"theme": "dark"}}, migrations={1: broken})
        assert env.settings.theme == "system"
