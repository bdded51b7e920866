"""Collection level access on top of a key-value store."""
from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Iterable, Sequence
from contextlib import asynccontextmanager
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Type

from .clock import to_epoch_ms
from .exceptions import StorageError, ValidationError
from .schemas import (
    CreditRecord,
    InventoryItem,
    LedgerModel,
    PurchaseRecord,
    SaleRecord,
    ScopeSelection,
)
from .storage import KeyValueStore

logger = logging.getLogger(__name__)

SCOPE_KEY = "selected_scope"


class Collection(str, Enum):
    INVENTORY = "inventory"
    SALES = "sales"
    PURCHASES = "purchases"
    CREDITS = "credits"


COLLECTION_MODELS: Dict[Collection, Type[LedgerModel]] = {
    Collection.INVENTORY: InventoryItem,
    Collection.SALES: SaleRecord,
    Collection.PURCHASES: PurchaseRecord,
    Collection.CREDITS: CreditRecord,
}

# Locks are always taken in this order so two operations never wait on each other.
_LOCK_ORDER = (
    Collection.SALES,
    Collection.PURCHASES,
    Collection.CREDITS,
    Collection.INVENTORY,
)


def next_record_id(existing: Iterable[str | None], now: datetime) -> str:
    """Epoch-millisecond id, bumped until it is unique among ``existing``."""

    taken = {value for value in existing if value}
    candidate = to_epoch_ms(now)
    while str(candidate) in taken:
        candidate += 1
    return str(candidate)


class RecordStore:
    """Reads and overwrites whole collections, one JSON array per key."""

    def __init__(self, store: KeyValueStore) -> None:
        self.store = store
        self._locks = {collection: asyncio.Lock() for collection in Collection}

    # ------------------------------------------------------------------
    # Raw access
    # ------------------------------------------------------------------
    async def read_json(self, key: str) -> Any:
        try:
            raw = await self.store.get(key)
        except StorageError:
            logger.error("Key-value read failed for '%s'", key)
            raise
        except Exception as exc:
            logger.error("Key-value read failed for '%s': %s", key, exc)
            raise StorageError(f"Cannot read '{key}': {exc}") from exc
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            logger.error("Stored value for '%s' is not valid JSON", key)
            raise StorageError(f"Stored value for '{key}' is not valid JSON") from exc

    async def write_json(self, key: str, value: Any) -> None:
        payload = json.dumps(value, ensure_ascii=False)
        try:
            await self.store.set(key, payload)
        except StorageError:
            logger.error("Key-value write failed for '%s'", key)
            raise
        except Exception as exc:
            logger.error("Key-value write failed for '%s': %s", key, exc)
            raise StorageError(f"Cannot write '{key}': {exc}") from exc

    async def remove_key(self, key: str) -> None:
        try:
            await self.store.remove(key)
        except StorageError:
            logger.error("Key-value remove failed for '%s'", key)
            raise
        except Exception as exc:
            logger.error("Key-value remove failed for '%s': %s", key, exc)
            raise StorageError(f"Cannot remove '{key}': {exc}") from exc

    # ------------------------------------------------------------------
    # Collections
    # ------------------------------------------------------------------
    async def get_collection(
        self, name: Collection | str, scope: str | None = None
    ) -> List[Any]:
        """Return every record of ``name``; only those tagged ``scope`` when given."""

        collection = Collection(name)
        payload = await self.read_json(collection.value)
        if payload is None:
            return []
        if not isinstance(payload, list):
            raise StorageError(f"Collection '{collection.value}' is not a JSON array")
        model = COLLECTION_MODELS[collection]
        records = []
        for position, raw in enumerate(payload):
            if not isinstance(raw, dict):
                raise StorageError(
                    f"Entry {position} of '{collection.value}' is not a JSON object"
                )
            try:
                records.append(model.from_record(raw))
            except ValidationError as exc:
                raise StorageError(
                    f"Entry {position} of '{collection.value}' is malformed: {exc}"
                ) from exc
        if scope is not None:
            records = [record for record in records if record.scope_id == scope]
        return records

    async def save_collection(self, name: Collection | str, records: Sequence[LedgerModel]) -> None:
        collection = Collection(name)
        await self.write_json(collection.value, [record.to_record() for record in records])

    async def get_scoped(self, name: Collection | str) -> List[Any]:
        return await self.get_collection(name, await self.active_scope_id())

    @asynccontextmanager
    async def lock(self, *names: Collection | str) -> AsyncIterator[None]:
        """Hold the write locks of ``names`` for one read-modify-write cycle."""

        wanted = {Collection(name) for name in names}
        ordered = [collection for collection in _LOCK_ORDER if collection in wanted]
        acquired: List[asyncio.Lock] = []
        try:
            for collection in ordered:
                lock = self._locks[collection]
                await lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()

    # ------------------------------------------------------------------
    # Scope selection
    # ------------------------------------------------------------------
    async def active_scope(self) -> ScopeSelection | None:
        payload = await self.read_json(SCOPE_KEY)
        if not payload:
            return None
        if not isinstance(payload, dict):
            raise StorageError("Scope selection is not a JSON object")
        try:
            return ScopeSelection.from_record(payload)
        except ValidationError as exc:
            raise StorageError(f"Scope selection is malformed: {exc}") from exc

    async def active_scope_id(self) -> str | None:
        selection = await self.active_scope()
        return selection.id if selection is not None else None

    async def select_scope(self, scope_id: str, name: str = "") -> ScopeSelection:
        selection = ScopeSelection(id=scope_id, name=name)
        await self.write_json(SCOPE_KEY, selection.to_record())
        logger.info("Selected scope %s", scope_id)
        return selection

    async def clear_scope(self) -> None:
        await self.remove_key(SCOPE_KEY)


__all__ = [
    "Collection",
    "COLLECTION_MODELS",
    "RecordStore",
    "SCOPE_KEY",
    "next_record_id",
]
