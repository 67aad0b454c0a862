"""The canonical, validated, persisted learning tracker state."""

from __future__ import annotations

import json
import logging
import threading
import uuid
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any, Protocol

from pydantic import BaseModel, ValidationError

from lt_local.channel import ChangeChannel, ChangeEvent, Listener
from lt_local.config import DEBOUNCE_SECONDS
from lt_local.migrations import (
    MigrationExhaustedError,
    UnsupportedVersionError,
    document_version,
    migrate,
    needs_migration,
)
from lt_local.scheduler import CoalescingWriter, TimerFactory
from lt_local.schema import (
    CURRENT_VERSION,
    SLICE_KEYS,
    STORAGE_KEY,
    Envelope,
    default_envelope,
    dump_envelope,
    serialize_envelope,
    validate_envelope,
)
from lt_local.storage import SqliteStorage, StorageError

logger = logging.getLogger(__name__)


class KeyValueStorage(Protocol):
    """Durable medium the store persists to (see storage.SqliteStorage)."""

    def get_item(self, key: str) -> str | None: ...

    def set_item(self, key: str, value: str) -> None: ...

    def remove_item(self, key: str) -> bool: ...

    def changed_externally(self) -> bool: ...

    def close(self) -> None: ...


class MalformedImportError(Exception):
    """Raised when an imported document cannot be parsed or validated."""

    pass


def _to_data(value: Any) -> Any:
    """Convert models nested anywhere in value to plain JSON data."""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", by_alias=True, exclude_none=True)
    if isinstance(value, Mapping):
        return {key: _to_data(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_to_data(item) for item in value]
    return value


class Store:
    """Owns the cached Envelope and mediates every read and write of it.

    Reads return deep copies. Writes are validated, persisted, cached and
    then announced: on the shared ChangeChannel to other contexts (never
    echoed back to this one) and to listeners added with add_listener()
    (which also hear about writes made by other contexts). Announcements
    are made after the store lock is released.

    Two write paths exist:
      - set_state()/update() persist synchronously. If the durable write
        fails a StorageError is raised and the cache is left untouched.
      - set_state_deferred()/update_deferred() update the cache at once and
        coalesce the durable write into one trailing write per debounce
        window. flush() forces it.
    """

    def __init__(
        self,
        storage: KeyValueStorage,
        *,
        key: str = STORAGE_KEY,
        channel: ChangeChannel | None = None,
        context_id: str | None = None,
        debounce_seconds: float = DEBOUNCE_SECONDS,
        timer_factory: TimerFactory = threading.Timer,
    ) -> None:
        self._storage = storage
        self._key = key
        self._channel = channel
        self.context_id = context_id or uuid.uuid4().hex
        self._lock = threading.RLock()
        self._cache: Envelope | None = None
        # Last serialized document this store read from or wrote to storage
        self._persisted: str | None = None
        self._listeners: list[Listener] = []
        # Events produced under the lock, delivered once it is released
        self._outbox: list[ChangeEvent] = []
        self._writer = CoalescingWriter(
            self._write_pending, debounce_seconds, timer_factory=timer_factory
        )
        self._unsubscribe: Callable[[], None] | None = None
        self._owns_storage = False

    @classmethod
    def open(cls, path: Path, **kwargs: Any) -> Store:
        """Open a store on a SQLite database file; teardown() closes it."""
        store = cls(SqliteStorage.open(path), **kwargs)
        store._owns_storage = True
        return store.init()

    @property
    def key(self) -> str:
        return self._key

    @property
    def pending_write(self) -> bool:
        """True while a deferred durable write is waiting to fire."""
        return self._writer.pending

    # Lifecycle

    def init(self) -> Store:
        """Start listening for changes made by other contexts."""
        if self._channel is not None and self._unsubscribe is None:
            self._unsubscribe = self._channel.subscribe(
                self._on_channel_event, origin=self.context_id
            )
        return self

    def teardown(self) -> None:
        """Flush pending writes and release the channel and storage."""
        try:
            self.flush()
        finally:
            if self._unsubscribe is not None:
                self._unsubscribe()
                self._unsubscribe = None
            with self._lock:
                self._cache = None
            if self._owns_storage:
                self._storage.close()

    def __enter__(self) -> Store:
        return self.init()

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        self.teardown()

    # Reads

    def get_state(self) -> Envelope:
        """Return a copy of the current state, loading it on first use.

        Raises:
            UnsupportedVersionError: If storage holds a document written by a
                newer version. The document is left as is.
        """
        with self._lock:
            state = self._current().model_copy(deep=True)
        self._dispatch()
        return state

    def _current(self) -> Envelope:
        if self._cache is None:
            self._cache = self._load()
        return self._cache

    def _load(self) -> Envelope:
        """Read, parse, migrate and validate the stored document.

        Broken documents are replaced by a fresh default state so a bad local
        file never blocks the application.
        """
        try:
            raw_text = self._storage.get_item(self._key)
        except StorageError as e:
            logger.error("Could not read stored state (%s); using a fresh state", e)
            return default_envelope()

        if raw_text is None:
            logger.info("No stored state under %r; creating a fresh one", self._key)
            return self._persist_loaded(default_envelope(), None)

        try:
            raw = json.loads(raw_text)
        except json.JSONDecodeError as e:
            logger.warning("Stored state is not valid JSON (%s); starting with a fresh state", e)
            return self._persist_loaded(default_envelope(), raw_text)

        if not isinstance(raw, dict):
            logger.warning("Stored state is not a JSON object; starting with a fresh state")
            return self._persist_loaded(default_envelope(), raw_text)

        version = document_version(raw)
        if version > CURRENT_VERSION:
            raise UnsupportedVersionError(version)

        if needs_migration(raw):
            logger.info("Stored state is at version %d; migrating", version)
            return self._persist_loaded(migrate(raw), raw_text)

        try:
            envelope = validate_envelope(raw)
        except ValidationError as e:
            logger.warning("Stored state failed validation (%s); starting with a fresh state", e)
            return self._persist_loaded(default_envelope(), raw_text)

        self._persisted = raw_text
        return envelope

    def _persist_loaded(self, envelope: Envelope, previous: str | None) -> Envelope:
        serialized = serialize_envelope(envelope)
        try:
            self._storage.set_item(self._key, serialized)
        except StorageError as e:
            logger.warning("Could not save loaded state (%s); continuing in memory", e)
            self._persisted = previous
            return envelope
        self._persisted = serialized
        self._outbox.append(ChangeEvent(self._key, serialized, previous))
        return envelope

    # Writes

    def set_state(self, partial: Mapping[str, Any]) -> None:
        """Merge top-level slices into the state and persist immediately.

        Args:
            partial: Slice name -> new value (models or plain JSON data).

        Raises:
            ValueError: For unknown slice names or an attempt to set version.
            pydantic.ValidationError: If the merged state is invalid.
            StorageError: If the durable write fails. State is unchanged.
        """
        try:
            with self._lock:
                self._commit(self._merge(partial))
        finally:
            self._dispatch()

    def update(self, key: str, fn: Callable[[Any], Any]) -> None:
        """Replace one slice with fn(copy of that slice) and persist."""
        try:
            with self._lock:
                self._commit(self._merge({key: fn(self._slice(key))}))
        finally:
            self._dispatch()

    def set_state_deferred(self, partial: Mapping[str, Any]) -> None:
        """Like set_state(), but the durable write is debounced.

        The new state is visible to get_state() immediately. Validation
        errors are still raised synchronously.
        """
        with self._lock:
            self._cache = self._merge(partial)
            self._writer.request()
        self._dispatch()

    def update_deferred(self, key: str, fn: Callable[[Any], Any]) -> None:
        with self._lock:
            self._cache = self._merge({key: fn(self._slice(key))})
            self._writer.request()
        self._dispatch()

    def flush(self) -> bool:
        """Write any deferred change now.

        Returns:
            True if a deferred write was pending.

        Raises:
            StorageError: If the durable write fails.
        """
        return self._writer.flush_now()

    def clear(self) -> None:
        """Remove the stored document; the next read starts from defaults."""
        with self._lock:
            self._writer.cancel()
            try:
                self._storage.remove_item(self._key)
            except StorageError:
                raise
            except Exception as e:
                raise StorageError(f"Failed to clear state: {e}") from e
            previous = self._persisted
            self._cache = None
            self._persisted = None
            self._outbox.append(ChangeEvent(self._key, None, previous))
        logger.info("Cleared stored state under %r", self._key)
        self._dispatch()

    def _slice(self, key: str) -> Any:
        if key not in SLICE_KEYS:
            raise ValueError(f"Unknown state slice: {key!r}")
        return getattr(self._current().model_copy(deep=True), key)

    def _merge(self, partial: Mapping[str, Any]) -> Envelope:
        if "version" in partial:
            raise ValueError("version is managed by the store and cannot be set")
        unknown = sorted(set(partial) - set(SLICE_KEYS))
        if unknown:
            raise ValueError(f"Unknown state slice(s): {', '.join(unknown)}")

        data = dump_envelope(self._current())
        for key, value in partial.items():
            data[key] = _to_data(value)
        return validate_envelope(data)

    def _write(self, serialized: str) -> None:
        try:
            self._storage.set_item(self._key, serialized)
        except StorageError:
            raise
        except Exception as e:
            raise StorageError(f"Failed to persist state: {e}") from e

    def _commit(self, envelope: Envelope) -> None:
        """Write envelope and queue its change event. Caller holds the lock."""
        serialized = serialize_envelope(envelope)
        previous = self._persisted
        self._write(serialized)
        self._cache = envelope
        self._persisted = serialized
        # The write above already carried any deferred change
        self._writer.cancel()
        self._outbox.append(ChangeEvent(self._key, serialized, previous))

    def _write_pending(self) -> None:
        """Persist whatever the cache holds at the moment the timer fires."""
        with self._lock:
            if self._cache is None:
                return
            serialized = serialize_envelope(self._cache)
            if serialized == self._persisted:
                return
            previous = self._persisted
            self._write(serialized)
            self._persisted = serialized
            self._outbox.append(ChangeEvent(self._key, serialized, previous))
        self._dispatch()

    # Import / export

    def export_json(self, *, indent: int | None = 2) -> str:
        """Serialize the whole current state for download or backup."""
        return serialize_envelope(self.get_state(), indent=indent)

    def import_json(self, text: str) -> Envelope:
        """Replace the whole state with an imported document.

        The document goes through the same migration and validation as a
        load from storage.

        Raises:
            MalformedImportError: If the text is not a valid state document.
                The current state is left untouched.
            StorageError: If the durable write fails.
        """
        try:
            raw = json.loads(text)
        except json.JSONDecodeError as e:
            raise MalformedImportError(f"Import is not valid JSON: {e}") from e
        if not isinstance(raw, dict):
            raise MalformedImportError("Import must be a JSON object")

        try:
            envelope = migrate(raw, strict=True)
        except (MigrationExhaustedError, UnsupportedVersionError) as e:
            raise MalformedImportError(str(e)) from e

        with self._lock:
            self._commit(envelope)
        self._dispatch()
        logger.info(
            "Imported state with %d playlists and %d videos",
            len(envelope.playlists),
            len(envelope.videos),
        )
        return envelope.model_copy(deep=True)

    # Change notification

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Call listener after every write, local or from another context.

        Returns:
            A function that removes the listener.
        """
        with self._lock:
            self._listeners.append(listener)

        def remove() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return remove

    def _dispatch(self) -> None:
        """Deliver queued events. Must not be called with the lock held."""
        with self._lock:
            events, self._outbox = self._outbox, []
        for event in events:
            self._notify(event)

    def _notify(self, event: ChangeEvent) -> None:
        if self._channel is not None:
            self._channel.publish(event, origin=self.context_id)
        self._notify_listeners(event)

    def _notify_listeners(self, event: ChangeEvent) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("State listener failed")

    def _invalidate(self, reason: str) -> None:
        with self._lock:
            if self._writer.cancel():
                logger.warning("Dropping unsaved local changes: %s", reason)
            self._cache = None
            self._persisted = None

    def _on_channel_event(self, event: ChangeEvent) -> None:
        if event.key != self._key:
            return
        self._invalidate("another context wrote the state")
        logger.debug("State changed in another context; cache invalidated")
        self._notify_listeners(event)

    def poll_external_changes(self) -> bool:
        """Detect writes made to the storage medium by other processes.

        Returns:
            True if the stored document changed and the cache was dropped.
        """
        with self._lock:
            if not self._storage.changed_externally():
                return False
            current = self._storage.get_item(self._key)
            if current == self._persisted:
                return False
            event = ChangeEvent(self._key, current, self._persisted)
            self._invalidate("the stored state changed on disk")
        logger.info("Stored state changed externally; cache invalidated")
        self._notify_listeners(event)
        return True
