# Module: src/fleet_maintenance/store.py
# Description: Key-value store port holding one collection (list of records) per key,
# with in-memory and JSON file adapters.

import copy
import json
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

Record = Dict[str, Any]


class StoreError(Exception):
    """Raised when a backend cannot read or write a collection."""
    pass


class StoreEntry(BaseModel):
    """A stored collection together with its write stamp."""
    version: int = 0
    writer_id: Optional[str] = None
    updated_at: Optional[datetime] = None
    value: List[Record] = Field(default_factory=list)


class StoreDocument(BaseModel):
    entries: Dict[str, StoreEntry] = Field(default_factory=dict)


@dataclass
class ChangeEvent:
    key: str
    value: List[Record]
    version: int
    writer_id: Optional[str]


ChangeCallback = Callable[[ChangeEvent], None]


class StoreBackend(ABC):
    """
    Port for the shared synchronized store.

    Every `set` replaces the whole collection stored under a key and stamps it
    with the next version number and the id of the writer. Subscribers registered
    with `on_change` are told about new versions, both the ones written through
    this backend and the ones discovered by `poll`.
    """

    def __init__(self):
        self._subscribers: Dict[str, List[ChangeCallback]] = {}
        self._seen_versions: Dict[str, int] = {}
        self._lock = threading.RLock()

    @abstractmethod
    def get(self, key: str) -> Optional[StoreEntry]:
        """Return the entry stored under key, or None if the key does not exist."""

    @abstractmethod
    def _write(self, key: str, entry: StoreEntry) -> None:
        """Persist entry under key."""

    def set(self, key: str, value: List[Record], writer_id: Optional[str] = None) -> int:
        """Replace the collection under key. Returns the new version."""
        with self._lock:
            current = self.get(key)
            version = (current.version if current else 0) + 1
            entry = StoreEntry(
                version=version,
                writer_id=writer_id,
                updated_at=datetime.now(),
                value=copy.deepcopy(value),
            )
            self._write(key, entry)
            self._seen_versions[key] = version
        logger.debug(f"Wrote '{key}' version {version} ({len(value)} records) for writer {writer_id}")
        self._emit(key, entry)
        return version

    def on_change(self, key: str, callback: ChangeCallback) -> Callable[[], None]:
        """Subscribe to changes of key. Returns a function that unsubscribes."""
        with self._lock:
            self._subscribers.setdefault(key, []).append(callback)
            if key not in self._seen_versions:
                try:
                    entry = self.get(key)
                except StoreError as e:
                    logger.error(f"Could not read '{key}' while subscribing: {e}")
                    entry = None
                self._seen_versions[key] = entry.version if entry else 0

        def unsubscribe():
            with self._lock:
                callbacks = self._subscribers.get(key, [])
                if callback in callbacks:
                    callbacks.remove(callback)
        return unsubscribe

    def poll(self) -> int:
        """
        Re-read every subscribed key and notify subscribers of versions they have not seen.

        Returns:
            Number of change events emitted.
        """
        emitted = 0
        with self._lock:
            keys = [k for k, callbacks in self._subscribers.items() if callbacks]
        for key in keys:
            entry = self.get(key)
            if entry is None:
                continue
            with self._lock:
                if entry.version <= self._seen_versions.get(key, 0):
                    continue
                self._seen_versions[key] = entry.version
            logger.info(f"Detected new version {entry.version} of '{key}' from writer {entry.writer_id}")
            self._emit(key, entry)
            emitted += 1
        return emitted

    def _emit(self, key: str, entry: StoreEntry) -> None:
        with self._lock:
            callbacks = list(self._subscribers.get(key, []))
        event = ChangeEvent(key=key, value=copy.deepcopy(entry.value), version=entry.version, writer_id=entry.writer_id)
        for callback in callbacks:
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Change listener for '{key}' failed: {e}")


class InMemoryBackend(StoreBackend):
    """Process-local store, used for tests and throwaway sessions."""

    def __init__(self):
        super().__init__()
        self._entries: Dict[str, StoreEntry] = {}

    def get(self, key: str) -> Optional[StoreEntry]:
        entry = self._entries.get(key)
        return entry.model_copy(deep=True) if entry else None

    def _write(self, key: str, entry: StoreEntry) -> None:
        self._entries[key] = entry.model_copy(deep=True)


def load_document(filepath: Path) -> StoreDocument:
    """
    Loads the store document from a JSON file.
    If the file doesn't exist, is empty, or contains invalid JSON/data,
    it returns an empty StoreDocument and logs the problem.
    """
    if not filepath.exists():
        logger.info(f"Store file not found at {filepath}. Starting with an empty store.")
        return StoreDocument()

    try:
        content = filepath.read_text(encoding="utf-8")
        if not content.strip():
            logger.info(f"Store file at {filepath} is empty. Starting with an empty store.")
            return StoreDocument()
        raw_data = json.loads(content)
        return StoreDocument(**raw_data)
    except json.JSONDecodeError as e:
        logger.error(f"JSON decode error loading store from {filepath}: {e}. Starting with an empty store.")
        return StoreDocument()
    except ValidationError as e:
        logger.error(f"Data validation error loading store from {filepath}: {e}. Starting with an empty store.")
        return StoreDocument()
    except (OSError, TypeError) as e:
        logger.error(f"Unexpected error loading store from {filepath}: {e}. Starting with an empty store.")
        return StoreDocument()


def save_document(document: StoreDocument, filepath: Path) -> None:
    """Saves the store document to a JSON file. Raises StoreError on failure."""
    try:
        filepath.parent.mkdir(parents=True, exist_ok=True)
        filepath.write_text(document.model_dump_json(indent=2), encoding="utf-8")
        logger.debug(f"Store saved to {filepath}")
    except OSError as e:
        logger.error(f"IOError saving store to {filepath}: {e}")
        raise StoreError(f"Could not write store file {filepath}: {e}") from e


class JsonFileBackend(StoreBackend):
    """
    Store kept in a single JSON file.

    Several processes may share the file; each reads the current document before
    writing, so the last full-collection write wins. Other writers' changes are
    picked up by `poll`.
    """

    def __init__(self, filepath: Path):
        super().__init__()
        self.filepath = Path(filepath)

    def get(self, key: str) -> Optional[StoreEntry]:
        return load_document(self.filepath).entries.get(key)

    def _write(self, key: str, entry: StoreEntry) -> None:
        document = load_document(self.filepath)
        document.entries[key] = entry
        save_document(document, self.filepath)
