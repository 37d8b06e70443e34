# Module: src/fleet_maintenance/sync.py
# Description: Locally cached collections kept in sync with a shared store backend.

import logging
import threading
import uuid
from typing import Callable, Generic, List, Optional, Type, TypeVar, Union

from pydantic import BaseModel, TypeAdapter, ValidationError

from .config import AppConfig, ConfigError
from .models import RepairOrder, StockItem, StockTransaction, Technician, UsedPart
from .store import ChangeEvent, InMemoryBackend, JsonFileBackend, StoreBackend, StoreError

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

Updater = Callable[[List[T]], List[T]]
Listener = Callable[[List[T]], None]


def _generate_writer_id() -> str:
    return f"client-{uuid.uuid4().hex[:12]}"


class SyncedCollection(Generic[T]):
    """
    A list of records cached locally and mirrored to one key of a StoreBackend.

    Writes are optimistic: `set` updates the local list first and then pushes the
    whole collection. A failed push is logged and the local list is kept, so the
    local view may differ from the store until the next successful write.

    Every write is stamped by the backend with a version and this collection's
    writer id. Change events carrying our own writer id are echoes of our own
    writes and are ignored; events whose version is not newer than the one we
    already hold are stale and ignored too. Anything else replaces the local list.
    """

    def __init__(
        self,
        backend: StoreBackend,
        key: str,
        model: Type[T],
        default: Callable[[], List[T]] = list,
        writer_id: Optional[str] = None,
    ):
        self.backend = backend
        self.key = key
        self.model = model
        self.writer_id = writer_id or _generate_writer_id()
        self._adapter = TypeAdapter(List[model])
        self._items: List[T] = []
        self._version = 0
        self._listeners: List[Listener] = []
        self._lock = threading.RLock()
        self._load(default)
        self._unsubscribe = backend.on_change(key, self._on_store_change)

    @property
    def value(self) -> List[T]:
        with self._lock:
            return list(self._items)

    @property
    def version(self) -> int:
        return self._version

    def _load(self, default: Callable[[], List[T]]) -> None:
        try:
            entry = self.backend.get(self.key)
        except StoreError as e:
            logger.error(f"Could not read '{self.key}' from store: {e}. Using defaults locally.")
            self._items = list(default())
            return

        if entry is None:
            # Key doesn't exist yet: initialize it with the defaults
            logger.info(f"Initializing missing collection '{self.key}'")
            self.set(list(default()))
            return

        try:
            self._items = self._adapter.validate_python(entry.value)
            self._version = entry.version
            logger.debug(f"Loaded '{self.key}' version {entry.version} ({len(self._items)} records)")
        except ValidationError as e:
            logger.error(f"Stored data for '{self.key}' failed validation: {e}. Using defaults locally.")
            self._items = list(default())

    def set(self, new_value: Union[List[T], Updater]) -> List[T]:
        """
        Replace the collection, optimistically.

        Args:
            new_value: The new list, or a function receiving the current list and returning the new one.

        Returns:
            The list now held locally.
        """
        with self._lock:
            resolved = new_value(list(self._items)) if callable(new_value) else new_value
            self._items = list(resolved)
            items = list(self._items)
            data = self._adapter.dump_python(items, mode="json")

        try:
            version = self.backend.set(self.key, data, writer_id=self.writer_id)
            with self._lock:
                self._version = max(self._version, version)
        except StoreError as e:
            logger.error(f"Store write failed for '{self.key}': {e}. Keeping local changes.")

        self._notify(items)
        return items

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a function called with the new list whenever the collection changes."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def close(self) -> None:
        self._unsubscribe()

    def _on_store_change(self, event: ChangeEvent) -> None:
        with self._lock:
            if event.writer_id == self.writer_id:
                self._version = max(self._version, event.version)
                logger.debug(f"Ignoring echo of own write to '{self.key}' (version {event.version})")
                return
            if event.version <= self._version:
                logger.debug(f"Ignoring stale version {event.version} of '{self.key}' (have {self._version})")
                return
            try:
                items = self._adapter.validate_python(event.value)
            except ValidationError as e:
                logger.error(f"Remote data for '{self.key}' version {event.version} failed validation: {e}")
                return
            self._items = items
            self._version = event.version
        logger.info(f"Applied external change to '{self.key}' (version {event.version}, writer {event.writer_id})")
        self._notify(list(items))

    def _notify(self, items: List[T]) -> None:
        for listener in list(self._listeners):
            try:
                listener(items)
            except Exception as e:
                logger.error(f"Listener for '{self.key}' failed: {e}")


class FleetStore:
    """The collections the fleet core reads and writes, sharing one backend."""

    REPAIRS = "repairs"
    TECHNICIANS = "technicians"
    STOCK = "stock"
    STOCK_TRANSACTIONS = "stockTransactions"
    USED_PARTS = "usedParts"

    def __init__(self, backend: StoreBackend, writer_id: Optional[str] = None):
        self.backend = backend
        self.writer_id = writer_id or _generate_writer_id()
        self.repairs: SyncedCollection[RepairOrder] = SyncedCollection(backend, self.REPAIRS, RepairOrder, writer_id=self.writer_id)
        self.technicians: SyncedCollection[Technician] = SyncedCollection(backend, self.TECHNICIANS, Technician, writer_id=self.writer_id)
        self.stock: SyncedCollection[StockItem] = SyncedCollection(backend, self.STOCK, StockItem, writer_id=self.writer_id)
        self.stock_transactions: SyncedCollection[StockTransaction] = SyncedCollection(
            backend, self.STOCK_TRANSACTIONS, StockTransaction, writer_id=self.writer_id
        )
        self.used_parts: SyncedCollection[UsedPart] = SyncedCollection(backend, self.USED_PARTS, UsedPart, writer_id=self.writer_id)

    def close(self) -> None:
        for collection in (self.repairs, self.technicians, self.stock, self.stock_transactions, self.used_parts):
            collection.close()


def build_backend(config: AppConfig) -> StoreBackend:
    """Create the store backend selected by configuration."""
    if config.store_backend == "memory":
        return InMemoryBackend()
    if config.store_backend == "json":
        return JsonFileBackend(config.store_path)
    if config.store_backend == "firebase":
        if not config.firebase_url:
            raise ConfigError("Firebase backend selected but no Firebase URL configured")
        from .firebase_backend import FirebaseBackend
        return FirebaseBackend(config.firebase_url, auth=config.firebase_auth, timeout=config.firebase_timeout)
    raise ConfigError(f"Unknown store backend '{config.store_backend}'")


def open_store(config: AppConfig) -> FleetStore:
    backend = build_backend(config)
    logger.info(f"Opening fleet store on {config.store_backend} backend")
    return FleetStore(backend)
