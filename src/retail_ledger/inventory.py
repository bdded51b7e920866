"""Inventory reconciliation: the single source of truth for stock on hand.

The ``apply_*`` methods mutate an already loaded inventory list in place and
are meant to be called while the caller holds the inventory lock of the
:class:`~retail_ledger.records.RecordStore`. The coroutine methods take the
lock, load, apply and save on their own.
"""
from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, List

from .clock import Clock
from .exceptions import NotFoundError, StockError, ValidationError
from .records import Collection, RecordStore
from .schemas import InventoryItem, PurchaseRecord, TransactionRecord, parse_record

logger = logging.getLogger(__name__)

PURCHASE_SOURCE = "Purchase"
RETURNED_SALE_SOURCE = "Returned Sale"
RETURNED_CREDIT_SOURCE = "Returned Credit"

_REQUIRED_FIELDS = ("item_name", "carton_quantity", "quantity_per_carton", "price_per_piece")
_NON_NEGATIVE_FIELDS = (
    "carton_quantity",
    "quantity_per_carton",
    "price_per_piece",
    "price_per_carton",
    "purchase_price_per_piece",
    "purchase_price_per_carton",
)


def validate_item(item: InventoryItem) -> None:
    """Reject items missing a required field or carrying a negative value."""

    offending: List[str] = []
    for field_name in _REQUIRED_FIELDS:
        if field_name not in item.model_fields_set:
            offending.append(InventoryItem.field_alias(field_name))
    if not item.item_name.strip() and "itemName" not in offending:
        offending.append("itemName")
    for field_name in _NON_NEGATIVE_FIELDS:
        if getattr(item, field_name) < 0:
            offending.append(InventoryItem.field_alias(field_name))
    if item.min_stock_alert is not None and item.min_stock_alert < 0:
        offending.append("minStockAlert")
    if offending:
        raise ValidationError(offending)


def find_item_index(
    rows: List[InventoryItem],
    item_name: str,
    scope: str | None,
    *,
    source: str | None = None,
    ignore_case: bool = False,
) -> int | None:
    wanted = item_name.lower() if ignore_case else item_name
    for index, row in enumerate(rows):
        name = row.item_name.lower() if ignore_case else row.item_name
        if name != wanted or row.scope_id != scope:
            continue
        if source is not None and row.source != source:
            continue
        return index
    return None


class InventoryReconciler:
    """Keeps inventory rows consistent with sales, purchases and credits."""

    def __init__(self, records: RecordStore, clock: Clock) -> None:
        self.records = records
        self.clock = clock

    # ------------------------------------------------------------------
    # In-place operations on a loaded inventory list
    # ------------------------------------------------------------------
    def check_stock(
        self,
        rows: List[InventoryItem],
        item_name: str,
        scope: str | None,
        *,
        cartons: int,
        per_carton: int = 0,
    ) -> InventoryItem:
        """Return the matching row or raise :class:`StockError` naming the shortfall."""

        index = find_item_index(rows, item_name, scope)
        if index is None:
            raise StockError(item_name, requested=cartons, available=0)
        item = rows[index]
        if cartons > item.carton_quantity:
            raise StockError(item_name, requested=cartons, available=item.carton_quantity)
        if per_carton and per_carton > item.quantity_per_carton:
            raise StockError(
                item_name,
                requested=per_carton,
                available=item.quantity_per_carton,
                unit="pieces per carton",
            )
        return item

    def apply_upsert(
        self,
        rows: List[InventoryItem],
        item: InventoryItem,
        *,
        from_purchase: bool | None = None,
    ) -> InventoryItem:
        validate_item(item)
        if from_purchase is None:
            from_purchase = item.source == PURCHASE_SOURCE
        now = self.clock.now()
        index = find_item_index(rows, item.item_name, item.scope_id, source=item.source)
        if index is None:
            created = item.model_copy(deep=True)
            created.created_at = created.created_at or now
            created.last_updated = now
            created.recalculate()
            rows.append(created)
            logger.debug("Created inventory row %s (%s)", created.item_name, created.source)
            return created

        existing = rows[index]
        supplied = item.model_dump(exclude_unset=True)
        if from_purchase:
            supplied["carton_quantity"] = existing.carton_quantity + item.carton_quantity
        if not supplied.get("quantity_per_carton"):
            supplied["quantity_per_carton"] = existing.quantity_per_carton
        merged = existing.model_copy(update=supplied, deep=True)
        merged.last_updated = now
        merged.recalculate()
        rows[index] = merged
        return merged

    def apply_decrement(
        self,
        rows: List[InventoryItem],
        item_name: str,
        cartons: int,
        scope: str | None,
    ) -> InventoryItem | None:
        """Subtract ``cartons``; the row is dropped once it reaches zero."""

        if cartons < 0:
            raise ValidationError(["cartonQuantity"])
        index = find_item_index(rows, item_name, scope)
        if index is None:
            raise StockError(item_name, requested=cartons, available=0)
        item = rows[index]
        if cartons > item.carton_quantity:
            raise StockError(item_name, requested=cartons, available=item.carton_quantity)
        remaining = item.carton_quantity - cartons
        if remaining <= 0:
            del rows[index]
            logger.info("Inventory row %s sold out and removed", item_name)
            return None
        item.carton_quantity = remaining
        item.last_updated = self.clock.now()
        item.recalculate()
        return item

    def apply_set_quantity(
        self,
        rows: List[InventoryItem],
        item_name: str,
        cartons: int,
        scope: str | None,
    ) -> InventoryItem | None:
        """Direct quantity edit: replaces the carton count, clamped at zero.

        A count of zero or less removes the row.
        """

        cartons = max(0, cartons)
        index = find_item_index(rows, item_name, scope)
        if index is None:
            raise NotFoundError("Inventory item", item_name)
        if cartons == 0:
            del rows[index]
            return None
        item = rows[index]
        item.carton_quantity = cartons
        item.total_quantity = cartons * (item.quantity_per_carton or 1)
        item.last_updated = self.clock.now()
        return item

    def apply_restore(
        self,
        rows: List[InventoryItem],
        record: TransactionRecord,
        *,
        source: str,
    ) -> InventoryItem | None:
        """Put the cartons of a returned ``record`` back on the shelf."""

        scope = record.scope_id
        index = find_item_index(rows, record.item_name, scope)
        if index is not None:
            existing = rows[index]
            return self.apply_set_quantity(
                rows, record.item_name, existing.carton_quantity + record.carton_quantity, scope
            )
        now = self.clock.now()
        restored = InventoryItem(
            item_name=record.item_name,
            item_code=record.item_code,
            carton_quantity=record.carton_quantity,
            quantity_per_carton=record.quantity_per_carton,
            price_per_piece=record.price_per_piece,
            price_per_carton=record.price_per_carton,
            source=source,
            scope_id=scope,
            created_at=now,
            last_updated=now,
        )
        validate_item(restored)
        rows.append(restored)
        logger.info("Recreated inventory row %s from %s", record.item_name, source.lower())
        return restored

    def apply_purchase(self, rows: List[InventoryItem], purchase: PurchaseRecord) -> InventoryItem:
        """Merge ``purchase`` into the matching row or create a new one."""

        now = self.clock.now()
        purchased_at = purchase.purchase_date or now
        index = find_item_index(
            rows, purchase.item_name, purchase.scope_id, ignore_case=True
        )
        if index is not None:
            existing = rows[index]
            cartons = existing.carton_quantity + purchase.carton_quantity
            existing.carton_quantity = cartons
            if purchase.quantity_per_carton:
                existing.quantity_per_carton = purchase.quantity_per_carton
            existing.purchase_price_per_piece = purchase.purchase_price_per_piece
            existing.purchase_price_per_carton = purchase.purchase_price_per_carton
            if purchase.price_per_piece:
                existing.price_per_piece = purchase.price_per_piece
            if purchase.price_per_carton:
                existing.price_per_carton = purchase.price_per_carton
            existing.total_amount = cartons * purchase.purchase_price_per_carton
            existing.source = purchase.source or existing.source or PURCHASE_SOURCE
            existing.bulk_unit = purchase.bulk_unit or existing.bulk_unit
            if purchase.min_stock_alert:
                existing.min_stock_alert = purchase.min_stock_alert
            existing.item_code = purchase.item_code or existing.item_code
            existing.last_purchase_date = purchased_at
            existing.last_updated = now
            existing.recalculate()
            return existing

        created = InventoryItem(
            item_name=purchase.item_name,
            item_code=purchase.item_code,
            carton_quantity=purchase.carton_quantity,
            quantity_per_carton=purchase.quantity_per_carton,
            purchase_price_per_piece=purchase.purchase_price_per_piece,
            purchase_price_per_carton=purchase.purchase_price_per_carton,
            total_amount=purchase.total_amount,
            price_per_piece=purchase.price_per_piece,
            price_per_carton=purchase.price_per_carton,
            bulk_unit=purchase.bulk_unit or "Carton",
            source=purchase.source or PURCHASE_SOURCE,
            min_stock_alert=purchase.min_stock_alert,
            last_purchase_date=purchased_at,
            scope_id=purchase.scope_id,
            created_at=now,
            last_updated=now,
        )
        validate_item(created)
        rows.append(created)
        return created

    def apply_purchase_reversal(
        self, rows: List[InventoryItem], purchase: PurchaseRecord
    ) -> InventoryItem | None:
        """Take back what ``purchase`` added, clamped at zero."""

        index = find_item_index(
            rows, purchase.item_name, purchase.scope_id, ignore_case=True
        )
        if index is None:
            logger.warning(
                "No inventory row left for deleted purchase %s (%s)",
                purchase.id,
                purchase.item_name,
            )
            return None
        item = rows[index]
        remaining = max(0, item.carton_quantity - purchase.carton_quantity)
        if remaining == 0:
            del rows[index]
            return None
        item.carton_quantity = remaining
        item.last_updated = self.clock.now()
        item.recalculate()
        return item

    # ------------------------------------------------------------------
    # Self-contained operations
    # ------------------------------------------------------------------
    async def list_items(self) -> List[InventoryItem]:
        return await self.records.get_scoped(Collection.INVENTORY)

    async def get_item(self, item_name: str) -> InventoryItem:
        scope = await self.records.active_scope_id()
        rows = await self.records.get_collection(Collection.INVENTORY)
        index = find_item_index(rows, item_name, scope)
        if index is None:
            raise NotFoundError("Inventory item", item_name)
        return rows[index]

    async def upsert_item(
        self,
        item: InventoryItem | Mapping[str, Any],
        *,
        from_purchase: bool | None = None,
    ) -> InventoryItem:
        parsed = parse_record(InventoryItem, item)
        async with self.records.lock(Collection.INVENTORY):
            if "scope_id" not in parsed.model_fields_set:
                parsed.scope_id = await self.records.active_scope_id()
            rows = await self.records.get_collection(Collection.INVENTORY)
            saved = self.apply_upsert(rows, parsed, from_purchase=from_purchase)
            await self.records.save_collection(Collection.INVENTORY, rows)
        return saved

    async def decrement_item(self, item_name: str, cartons: int) -> InventoryItem | None:
        async with self.records.lock(Collection.INVENTORY):
            scope = await self.records.active_scope_id()
            rows = await self.records.get_collection(Collection.INVENTORY)
            item = self.apply_decrement(rows, item_name, cartons, scope)
            await self.records.save_collection(Collection.INVENTORY, rows)
        return item

    async def restore_item(
        self,
        record: TransactionRecord,
        *,
        source: str = RETURNED_SALE_SOURCE,
    ) -> InventoryItem | None:
        async with self.records.lock(Collection.INVENTORY):
            rows = await self.records.get_collection(Collection.INVENTORY)
            item = self.apply_restore(rows, record, source=source)
            await self.records.save_collection(Collection.INVENTORY, rows)
        return item

    async def set_quantity(self, item_name: str, cartons: int) -> InventoryItem | None:
        async with self.records.lock(Collection.INVENTORY):
            scope = await self.records.active_scope_id()
            rows = await self.records.get_collection(Collection.INVENTORY)
            item = self.apply_set_quantity(rows, item_name, cartons, scope)
            await self.records.save_collection(Collection.INVENTORY, rows)
        return item

    async def update_item(self, item_name: str, changes: Mapping[str, Any]) -> InventoryItem:
        """Edit fields of a row, recomputing its derived totals."""

        async with self.records.lock(Collection.INVENTORY):
            scope = await self.records.active_scope_id()
            rows = await self.records.get_collection(Collection.INVENTORY)
            index = find_item_index(rows, item_name, scope)
            if index is None:
                raise NotFoundError("Inventory item", item_name)
            updated = rows[index].with_changes(changes)
            validate_item(updated)
            updated.total_amount = updated.carton_quantity * updated.purchase_price_per_carton
            updated.last_updated = self.clock.now()
            rows[index] = updated
            await self.records.save_collection(Collection.INVENTORY, rows)
        return updated

    async def delete_item(self, item_name: str, source: str | None = None) -> None:
        async with self.records.lock(Collection.INVENTORY):
            scope = await self.records.active_scope_id()
            rows = await self.records.get_collection(Collection.INVENTORY)
            index = find_item_index(rows, item_name, scope, source=source)
            if index is None:
                raise NotFoundError("Inventory item", item_name)
            del rows[index]
            await self.records.save_collection(Collection.INVENTORY, rows)

    async def delete_scope(self, scope_id: str) -> int:
        """Drop every inventory row tagged ``scope_id``; returns how many went."""

        async with self.records.lock(Collection.INVENTORY):
            rows = await self.records.get_collection(Collection.INVENTORY)
            kept = [row for row in rows if row.scope_id != scope_id]
            await self.records.save_collection(Collection.INVENTORY, kept)
        removed = len(rows) - len(kept)
        logger.info("Removed %s inventory rows of scope %s", removed, scope_id)
        return removed


__all__ = [
    "InventoryReconciler",
    "validate_item",
    "find_item_index",
    "PURCHASE_SOURCE",
    "RETURNED_SALE_SOURCE",
    "RETURNED_CREDIT_SOURCE",
]
