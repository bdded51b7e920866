from __future__ import annotations

import json
from datetime import datetime, timezone

import pytest

from retail_ledger.exceptions import StorageError
from retail_ledger.records import SCOPE_KEY, Collection, RecordStore, next_record_id
from retail_ledger.schemas import SaleRecord
from retail_ledger.storage import MemoryStore


def test_next_record_id_is_epoch_millis_bumped_until_unique() -> None:
    now = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)
    base = int(now.timestamp() * 1000)

    assert next_record_id([], now) == str(base)
    assert next_record_id([str(base), str(base + 1), None], now) == str(base + 2)


async def test_collections_are_stored_as_camel_case_arrays() -> None:
    store = MemoryStore()
    records = RecordStore(store)
    sale = SaleRecord(id="1", item_name="Rice", carton_quantity=3, quantity_per_carton=6)

    await records.save_collection(Collection.SALES, [sale])

    raw = json.loads(store.snapshot()["sales"])
    assert raw[0]["itemName"] == "Rice"
    assert raw[0]["cartonQuantity"] == 3
    assert raw[0]["totalQuantity"] == 18
    loaded = await records.get_collection("sales")
    assert loaded[0].item_name == "Rice"


async def test_missing_collection_reads_as_empty() -> None:
    records = RecordStore(MemoryStore())

    assert await records.get_collection(Collection.CREDITS) == []


async def test_get_collection_filters_by_scope() -> None:
    store = MemoryStore(
        {
            "sales": json.dumps(
                [
                    {"id": "1", "itemName": "Rice", "scopeId": "a"},
                    {"id": "2", "itemName": "Oil", "scopeId": "b"},
                    {"id": "3", "itemName": "Salt", "scopeId": 7},
                ]
            )
        }
    )
    records = RecordStore(store)

    assert [sale.id for sale in await records.get_collection("sales")] == ["1", "2", "3"]
    assert [sale.id for sale in await records.get_collection("sales", "b")] == ["2"]
    assert [sale.id for sale in await records.get_collection("sales", "7")] == ["3"]


async def test_corrupt_collection_raises_storage_error() -> None:
    records = RecordStore(MemoryStore({"inventory": "{broken"}))

    with pytest.raises(StorageError):
        await records.get_collection(Collection.INVENTORY)


async def test_non_array_collection_raises_storage_error() -> None:
    records = RecordStore(MemoryStore({"purchases": '{"id": "1"}'}))

    with pytest.raises(StorageError):
        await records.get_collection(Collection.PURCHASES)


async def test_malformed_entry_raises_storage_error() -> None:
    records = RecordStore(MemoryStore({"sales": '[{"cartonQuantity": "many"}]'}))

    with pytest.raises(StorageError):
        await records.get_collection(Collection.SALES)


async def test_scope_selection_roundtrip() -> None:
    store = MemoryStore()
    records = RecordStore(store)

    assert await records.active_scope_id() is None

    selection = await records.select_scope("42", "Main shop")
    assert selection.id == "42"
    assert json.loads(store.snapshot()[SCOPE_KEY]) == {"id": "42", "name": "Main shop"}
    assert await records.active_scope_id() == "42"

    await records.clear_scope()
    assert await records.active_scope() is None


async def test_get_scoped_uses_active_scope() -> None:
    store = MemoryStore(
        {
            "credits": json.dumps(
                [
                    {"id": "1", "customerName": "Ali", "scopeId": "a"},
                    {"id": "2", "customerName": "Sara", "scopeId": "b"},
                ]
            )
        }
    )
    records = RecordStore(store)
    await records.select_scope("a")

    assert [credit.customer_name for credit in await records.get_scoped("credits")] == ["Ali"]


class _FailingStore(MemoryStore):
    async def set(self, key: str, value: str) -> None:
        raise OSError("disk full")


async def test_backend_failures_become_storage_errors() -> None:
    records = RecordStore(_FailingStore())

    with pytest.raises(StorageError) as excinfo:
        await records.save_collection(Collection.SALES, [])
    assert isinstance(excinfo.value.__cause__, OSError)


async def test_lock_accepts_names_in_any_order() -> None:
    records = RecordStore(MemoryStore())

    async with records.lock(Collection.INVENTORY, "sales"):
        assert records._locks[Collection.SALES].locked()
        assert records._locks[Collection.INVENTORY].locked()
    assert not records._locks[Collection.SALES].locked()
