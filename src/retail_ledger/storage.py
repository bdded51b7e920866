"""Asynchronous key-value backends.

Every backend exposes the same three coroutines, ``get``, ``set`` and
``remove``, with string values and no transaction or locking support.
Failures of the underlying medium are raised as
:class:`~retail_ledger.exceptions.StorageError`.
"""
from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from threading import RLock
from typing import Dict, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from .config import Settings, get_settings
from .database import create_engine, create_session_factory, init_database
from .exceptions import StorageError
from .models import KeyValueEntry

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    async def get(self, key: str) -> str | None:
        ...

    async def set(self, key: str, value: str) -> None:
        ...

    async def remove(self, key: str) -> None:
        ...


class MemoryStore:
    """Dict backed store, mostly useful for tests and throwaway sessions."""

    def __init__(self, initial: Dict[str, str] | None = None) -> None:
        self._data: Dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> str | None:
        return self._data.get(key)

    async def set(self, key: str, value: str) -> None:
        if not isinstance(value, str):
            raise StorageError(f"Values must be strings, got {type(value).__name__}")
        self._data[key] = value

    async def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def snapshot(self) -> Dict[str, str]:
        return dict(self._data)


class JsonFileStore:
    """Store every key inside one JSON document on disk."""

    def __init__(self, storage_path: Path | str) -> None:
        self.storage_path = Path(storage_path)
        self._lock = RLock()

    async def get(self, key: str) -> str | None:
        state = await asyncio.to_thread(self._load_state)
        return state.get(key)

    async def set(self, key: str, value: str) -> None:
        await asyncio.to_thread(self._update_state, key, value)

    async def remove(self, key: str) -> None:
        await asyncio.to_thread(self._update_state, key, None)

    def _update_state(self, key: str, value: str | None) -> None:
        with self._lock:
            state = self._load_state()
            if value is None:
                state.pop(key, None)
            else:
                state[key] = value
            self._write_state(state)

    def _load_state(self) -> Dict[str, str]:
        with self._lock:
            if not self.storage_path.exists():
                return {}
            try:
                raw = self.storage_path.read_text(encoding="utf-8") or "{}"
                state = json.loads(raw)
            except (OSError, json.JSONDecodeError) as exc:
                raise StorageError(f"Cannot read {self.storage_path}: {exc}") from exc
            if not isinstance(state, dict):
                raise StorageError(f"{self.storage_path} does not contain a JSON object")
            return state

    def _write_state(self, state: Dict[str, str]) -> None:
        try:
            self.storage_path.parent.mkdir(parents=True, exist_ok=True)
            temp_path = self.storage_path.with_suffix(".tmp")
            temp_path.write_text(json.dumps(state, indent=2, ensure_ascii=False), encoding="utf-8")
            temp_path.replace(self.storage_path)
        except OSError as exc:
            raise StorageError(f"Cannot write {self.storage_path}: {exc}") from exc


class SqlStore:
    """Store keys as rows of the ``kv_entries`` table."""

    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine
        self._sessions = create_session_factory(engine)

    async def create_all(self) -> None:
        try:
            await init_database(self.engine)
        except SQLAlchemyError as exc:
            raise StorageError(f"Cannot initialise key-value table: {exc}") from exc

    async def get(self, key: str) -> str | None:
        try:
            async with self._sessions() as session:
                entry = await session.get(KeyValueEntry, key)
                return entry.value if entry is not None else None
        except SQLAlchemyError as exc:
            raise StorageError(f"Cannot read key '{key}': {exc}") from exc

    async def set(self, key: str, value: str) -> None:
        try:
            async with self._sessions() as session:
                entry = await session.get(KeyValueEntry, key)
                if entry is None:
                    session.add(KeyValueEntry(key=key, value=value))
                else:
                    entry.value = value
                await session.commit()
        except SQLAlchemyError as exc:
            raise StorageError(f"Cannot write key '{key}': {exc}") from exc

    async def remove(self, key: str) -> None:
        try:
            async with self._sessions() as session:
                entry = await session.get(KeyValueEntry, key)
                if entry is not None:
                    await session.delete(entry)
                    await session.commit()
        except SQLAlchemyError as exc:
            raise StorageError(f"Cannot remove key '{key}': {exc}") from exc

    async def close(self) -> None:
        await self.engine.dispose()


async def open_store(url: str | None = None, *, settings: Settings | None = None) -> KeyValueStore:
    """Build the backend named by ``url`` (defaults to ``settings.storage_url``)."""

    settings = settings or get_settings()
    url = url or settings.storage_url
    if url.startswith("memory:"):
        logger.info("Using in-memory key-value store")
        return MemoryStore()
    if url.startswith("json:///"):
        # same convention as sqlite: json:///relative.json, json:////abs/path.json
        path = Path(url[len("json:///"):])
        logger.info("Using JSON key-value store at %s", path)
        return JsonFileStore(path)
    store = SqlStore(create_engine(url, settings=settings))
    await store.create_all()
    logger.info("Using SQL key-value store at %s", store.engine.url.render_as_string(hide_password=True))
    return store


__all__ = [
    "KeyValueStore",
    "MemoryStore",
    "JsonFileStore",
    "SqlStore",
    "open_store",
]
