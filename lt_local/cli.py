"""CLI entry point for Learning Tracker."""

from __future__ import annotations

import json
import logging
import sqlite3
import sys
from datetime import datetime, timezone
from pathlib import Path

import click
from pydantic import ValidationError

from lt_local.analytics import compute_metrics, playlist_analytics
from lt_local.config import load_config
from lt_local.migrations import UnsupportedVersionError
from lt_local.operations import (
    get_progress,
    notes_for_video,
    playlist_stats,
    prune_orphans,
    update_settings,
    videos_for_playlist,
)
from lt_local.schema import format_duration
from lt_local.storage import StorageError
from lt_local.store import MalformedImportError, Store
from lt_local.tracker import SegmentTracker, get_resume_time


def format_relative_time(iso_timestamp: str, *, now: datetime | None = None) -> str:
    """Format ISO timestamp as relative time (e.g., '5 minutes ago').

    Args:
        iso_timestamp: ISO 8601 timestamp string
        now: Optional current time for testing (defaults to UTC now)

    Returns:
        Relative time string, or the raw timestamp if parsing fails.
    """
    try:
        dt = datetime.fromisoformat(iso_timestamp.replace("Z", "+00:00"))
    except ValueError:
        return iso_timestamp

    if now is None:
        now = datetime.now(timezone.utc)
    seconds = (now - dt).total_seconds()
    if seconds < 60:
        return "just now"
    elif seconds < 3600:
        minutes = int(seconds / 60)
        return f"{minutes} minute{'s' if minutes != 1 else ''} ago"
    elif seconds < 86400:
        hours = int(seconds / 3600)
        return f"{hours} hour{'s' if hours != 1 else ''} ago"
    else:
        days = int(seconds / 86400)
        return f"{days} day{'s' if days != 1 else ''} ago"


def make_progress_bar(value: float, max_value: float, width: int = 16) -> str:
    """Create ASCII progress bar.

    Args:
        value: Current value.
        max_value: Maximum value (100%).
        width: Total width of bar (default: 16).

    Returns:
        Progress bar string like '████████░░░░░░░░'.
    """
    if max_value <= 0 or value <= 0:
        return "░" * width
    filled = max(1, min(width, round((value / max_value) * width)))
    return "█" * filled + "░" * (width - filled)


def _fail(message: str) -> None:
    click.echo(message, err=True)
    sys.exit(1)


def _resolve_db(db: Path | None) -> Path:
    return db if db is not None else load_config().db_path


def _open_store(db: Path | None, *, must_exist: bool = True) -> Store:
    """Open the store behind --db, exiting with an error message on failure."""
    try:
        config = load_config()
    except ValueError as e:
        _fail(f"Invalid configuration: {e}")
    path = db if db is not None else config.db_path
    if must_exist and not path.exists():
        _fail("No database found")
    try:
        store = Store.open(path, key=config.storage_key, debounce_seconds=config.debounce_seconds)
    except (StorageError, sqlite3.Error) as e:
        _fail(f"Could not open database: {e}")
    try:
        store.get_state()
    except UnsupportedVersionError as e:
        store.teardown()
        _fail(f"{e}. Upgrade lt to read this database.")
    return store


db_option = click.option(
    "--db",
    type=click.Path(path_type=Path),
    default=None,
    help="Path to SQLite database (default: $LT_DB_PATH or ~/.local/share/lt/state.db)",
)


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Log debug output to stderr")
def main(verbose: bool):
    """Learning Tracker local CLI."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(name)s %(levelname)s: %(message)s",
        )


@main.command("show")
@db_option
@click.option("--json", "output_json", is_flag=True, help="Output the raw state document")
def show_command(db: Path | None, output_json: bool) -> None:
    """Show imported playlists and their progress."""
    store = _open_store(db)
    with store:
        if output_json:
            click.echo(store.export_json())
            return
        state = store.get_state()

    if not state.playlists:
        click.echo("No playlists imported")
        return

    for playlist in sorted(state.playlists.values(), key=lambda p: p.imported_at):
        stats = playlist_stats(state, playlist.id)
        bar = make_progress_bar(stats.completed_videos, stats.total_videos)
        click.echo(
            f"{playlist.title} [{playlist.id}]  {bar} "
            f"{stats.completed_videos}/{stats.total_videos} completed"
        )
        for video in videos_for_playlist(state, playlist.id):
            progress = state.progress.get(video.id)
            completion = progress.completion if progress else 0
            click.echo(
                f"  {video.position + 1:>3}. {video.title:<40.40} "
                f"{format_duration(video.duration_sec):>8}  {completion:>4.0%}"
            )


@main.command("export")
@db_option
@click.option(
    "-o",
    "--output",
    type=click.Path(path_type=Path),
    default=None,
    help="Write to this file instead of stdout",
)
def export_command(db: Path | None, output: Path | None) -> None:
    """Export the whole state as a JSON document.

    Example:
        lt export > backup.json
        lt export -o backup.json
    """
    with _open_store(db) as store:
        document = store.export_json()
    if output is None:
        click.echo(document)
    else:
        output.write_text(document + "\n", encoding="utf-8")
        click.echo(f"Exported to {output}", err=True)


@main.command("import")
@click.argument("source", type=click.File("r", encoding="utf-8"), default="-")
@db_option
def import_command(source, db: Path | None) -> None:
    """Replace the state with a previously exported document.

    Older and legacy documents are migrated. Invalid documents are rejected
    and the current state is kept.

    Example:
        lt import backup.json
        cat backup.json | lt import
    """
    text = source.read()
    with _open_store(db, must_exist=False) as store:
        try:
            envelope = store.import_json(text)
        except MalformedImportError as e:
            _fail(f"Import rejected: {e}")
        except StorageError as e:
            _fail(f"Could not save imported state: {e}")
    click.echo(
        f"Imported {len(envelope.playlists)} playlists, {len(envelope.videos)} videos, "
        f"{len(envelope.notes)} notes"
    )


@main.command("stats")
@click.argument("playlist_id")
@db_option
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
def stats_command(playlist_id: str, db: Path | None, output_json: bool) -> None:
    """Show completion statistics for one playlist."""
    with _open_store(db) as store:
        state = store.get_state()
    if playlist_id not in state.playlists:
        _fail(f"Unknown playlist: {playlist_id}")

    stats = playlist_stats(state, playlist_id)
    if output_json:
        click.echo(json.dumps(stats.model_dump(), indent=2))
        return

    click.echo(f"Playlist: {state.playlists[playlist_id].title}")
    click.echo(f"  Videos:    {stats.completed_videos}/{stats.total_videos} completed")
    click.echo(f"  Duration:  {format_duration(stats.total_duration)}")
    click.echo(
        f"  Watched:   {format_duration(stats.watched_time)}   "
        f"{make_progress_bar(stats.watched_time, stats.total_duration)}"
    )


@main.command("progress")
@click.argument("video_id")
@db_option
def progress_command(video_id: str, db: Path | None) -> None:
    """Show watch progress and resume position for a video."""
    with _open_store(db) as store:
        state = store.get_state()

    video = state.videos.get(video_id)
    progress = get_progress(state, video_id)
    click.echo(f"Video: {video.title if video else video_id}")
    if video_id not in state.progress:
        click.echo("  Not watched yet")
        return

    click.echo(f"  Watched:   {format_duration(progress.watched_seconds)} ({progress.completion:.0%})")
    click.echo(f"  Segments:  {', '.join(f'{s}-{e}' for s, e in progress.segments) or '-'}")
    click.echo(f"  Resume at: {format_duration(get_resume_time(progress))}")
    click.echo(f"  Last watched: {format_relative_time(progress.last_watched_at)}")
    if progress.completed_at:
        click.echo(f"  Completed: {format_relative_time(progress.completed_at)}")
    notes = notes_for_video(state, video_id)
    if notes:
        click.echo(f"  Notes:     {len(notes)}")


@main.command("checkpoint")
@click.argument("video_id")
@click.argument("end", type=click.FloatRange(min=0))
@click.option("--start", type=click.FloatRange(min=0), default=None, help="Interval start (default: last position)")
@db_option
def checkpoint_command(video_id: str, end: float, start: float | None, db: Path | None) -> None:
    """Mark a watched range of a video, from its last position to END seconds.

    Example:
        lt checkpoint VIDEO_ID 300
        lt checkpoint VIDEO_ID 120 --start 60
    """
    with _open_store(db) as store:
        video = store.get_state().videos.get(video_id)
        if video is None:
            _fail(f"Unknown video: {video_id}")
        if video.duration_sec == 0:
            _fail(f"Video {video_id} has no duration; progress is not tracked")
        tracker = SegmentTracker(
            store,
            video_id,
            video.duration_sec,
            on_complete=lambda _: click.echo(f"Completed: {video.title}"),
        )
        try:
            with tracker:
                progress = tracker.checkpoint(end, start=start)
        except StorageError as e:
            _fail(f"Could not save progress: {e}")
    click.echo(
        f"{video.title}: {format_duration(progress.watched_seconds)} watched "
        f"({progress.completion:.0%})"
    )


@main.command("reset")
@click.argument("video_id")
@db_option
def reset_command(video_id: str, db: Path | None) -> None:
    """Reset watch progress of a video to zero."""
    with _open_store(db) as store:
        video = store.get_state().videos.get(video_id)
        if video is None:
            _fail(f"Unknown video: {video_id}")
        if video.duration_sec == 0:
            _fail(f"Video {video_id} has no duration; progress is not tracked")
        try:
            SegmentTracker(store, video_id, video.duration_sec).reset()
        except StorageError as e:
            _fail(f"Could not save progress: {e}")
    click.echo(f"Reset progress for {video.title}")


def _parse_setting(assignment: str) -> tuple[str, object]:
    name, sep, raw = assignment.partition("=")
    if not sep or not name:
        raise click.BadParameter(f"expected NAME=VALUE, got {assignment!r}")
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        value = raw
    return name.replace("-", "_"), value


@main.command("settings")
@click.argument("assignments", nargs=-1)
@db_option
def settings_command(assignments: tuple[str, ...], db: Path | None) -> None:
    """Show settings, or change them with NAME=VALUE pairs.

    Example:
        lt settings
        lt settings theme=dark player_rate=1.5
    """
    changes = dict(_parse_setting(a) for a in assignments)
    with _open_store(db, must_exist=not changes) as store:
        if changes:
            try:
                update_settings(store, **changes)
            except (ValueError, ValidationError) as e:
                _fail(f"Invalid setting: {e}")
            except StorageError as e:
                _fail(f"Could not save settings: {e}")
        settings = store.get_state().settings

    for name, value in settings.model_dump().items():
        click.echo(f"{name}: {json.dumps(value)}")


@main.command("gc")
@db_option
def gc_command(db: Path | None) -> None:
    """Delete progress and notes of videos that no longer exist."""
    with _open_store(db) as store:
        try:
            removed = prune_orphans(store)
        except StorageError as e:
            _fail(f"Could not save state: {e}")
    click.echo(f"Removed {removed['progress']} progress records and {removed['notes']} notes")


@main.command("clear")
@db_option
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
def clear_command(db: Path | None, yes: bool) -> None:
    """Delete all stored state."""
    path = _resolve_db(db)
    if not path.exists():
        _fail("No database found")
    if not yes:
        click.confirm(f"Delete all learning tracker state in {path}?", abort=True)
    with _open_store(path) as store:
        try:
            store.clear()
        except StorageError as e:
            _fail(f"Could not clear state: {e}")
    click.echo("State cleared")


@main.command("report")
@db_option
@click.option("--json", "output_json", is_flag=True, help="Output as JSON")
def report_command(db: Path | None, output_json: bool) -> None:
    """Show learning metrics across all playlists."""
    with _open_store(db) as store:
        state = store.get_state()

    metrics = compute_metrics(state)
    playlists = playlist_analytics(state)

    if output_json:
        output = {
            "generated_at": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
            **metrics.model_dump(),
            "playlists": [p.model_dump() for p in playlists],
        }
        click.echo(json.dumps(output, indent=2))
        return

    click.echo("Learning Report")
    click.echo()
    click.echo(f"Watched: {format_duration(metrics.total_watched_seconds)}")
    click.echo(
        f"  Completed:   {metrics.completed_videos:>4}\n"
        f"  In progress: {metrics.in_progress_videos:>4}\n"
        f"  Not started: {metrics.not_started_videos:>4}"
    )
    click.echo(
        f"Streak: {metrics.current_streak} days (longest {metrics.longest_streak}, "
        f"{metrics.days_active} days active)"
    )
    click.echo(f"Notes: {metrics.total_notes}")
    if metrics.top_tags:
        click.echo("Top tags: " + ", ".join(f"#{t.tag} ({t.count})" for t in metrics.top_tags))

    if playlists:
        click.echo()
        click.echo("By Playlist:")
        for p in playlists:
            title = p.title if len(p.title) <= 30 else p.title[:27] + "..."
            click.echo(
                f"  {title:<30} {make_progress_bar(p.completed_videos, p.total_videos)} "
                f"{p.completion_rate:>4.0%}  ~{format_duration(p.estimated_time_to_complete)} left"
            )


if __name__ == "__main__":
    main()
