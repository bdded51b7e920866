"""Sale, purchase and credit transactions with their inventory side effects.

Each command takes the write locks of the collections it touches, validates
against the current inventory, then writes the originating collection first
and inventory second. Notifications and alert re-checks are requested after
the locks are released and never fail the transaction.
"""
from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Awaitable, Callable, List, TypeVar

from .alerts import AlertPolicyEngine
from .clock import Clock
from .exceptions import NotFoundError, StorageError, ValidationError
from .inventory import (
    RETURNED_CREDIT_SOURCE,
    RETURNED_SALE_SOURCE,
    InventoryReconciler,
)
from .records import Collection, RecordStore, next_record_id
from .schemas import (
    CreditRecord,
    InventoryItem,
    PaymentStatus,
    PurchaseRecord,
    SaleRecord,
    TransactionRecord,
    parse_record,
)

logger = logging.getLogger(__name__)

BALANCE_TOLERANCE = 0.01

RecordT = TypeVar("RecordT", bound=TransactionRecord)

_NON_NEGATIVE_FIELDS = (
    "quantity_per_carton",
    "price_per_piece",
    "price_per_carton",
)

# Fields an edit may not touch; they are tied to inventory already moved.
_LOCKED_CREDIT_FIELDS = (
    "id",
    "item_name",
    "carton_quantity",
    "quantity_per_carton",
    "scope_id",
)


def validate_transaction(record: TransactionRecord) -> None:
    offending: List[str] = []
    if not record.item_name.strip():
        offending.append("itemName")
    if record.carton_quantity <= 0:
        offending.append("cartonQuantity")
    for field_name in _NON_NEGATIVE_FIELDS:
        if getattr(record, field_name) < 0:
            offending.append(type(record).field_alias(field_name))
    if isinstance(record, PurchaseRecord):
        for field_name in ("purchase_price_per_piece", "purchase_price_per_carton"):
            if getattr(record, field_name) < 0:
                offending.append(PurchaseRecord.field_alias(field_name))
    if record.total_amount is not None and record.total_amount < 0:
        offending.append("totalAmount")
    if offending:
        raise ValidationError(offending)


def validate_credit_balance(credit: CreditRecord) -> None:
    """Fill in or check ``amountPaid + remainingBalance == totalAmount``."""

    total = credit.amount
    if credit.remaining_balance is None:
        if credit.amount_paid:
            raise ValidationError(
                ["remainingBalance"],
                "remainingBalance is required when amountPaid is given",
            )
        credit.amount_paid = 0
        credit.remaining_balance = total
        return
    if credit.amount_paid is None:
        credit.amount_paid = 0
    offending = [
        CreditRecord.field_alias(name)
        for name in ("amount_paid", "remaining_balance")
        if getattr(credit, name) < 0
    ]
    if offending:
        raise ValidationError(offending)
    if abs(credit.amount_paid + credit.remaining_balance - total) > BALANCE_TOLERANCE:
        raise ValidationError(
            ["amountPaid", "remainingBalance"],
            f"amountPaid + remainingBalance must equal totalAmount ({total:.2f})",
        )


def _fill_from_inventory(record: TransactionRecord, item: InventoryItem) -> None:
    if not record.quantity_per_carton:
        record.quantity_per_carton = item.quantity_per_carton
    if not record.price_per_piece and not record.price_per_carton:
        record.price_per_piece = item.price_per_piece
        record.price_per_carton = item.price_per_carton
    if not record.item_code:
        record.item_code = item.item_code


def _find_index(
    records: List[RecordT], record_id: str, scope: str | None
) -> int | None:
    for index, record in enumerate(records):
        if record.id != str(record_id):
            continue
        if scope is not None and record.scope_id != scope:
            continue
        return index
    return None


class TransactionProcessor:
    """Commands and queries over sales, purchases and credits."""

    def __init__(
        self,
        records: RecordStore,
        reconciler: InventoryReconciler,
        alerts: AlertPolicyEngine,
        clock: Clock,
    ) -> None:
        self.records = records
        self.reconciler = reconciler
        self.alerts = alerts
        self.clock = clock

    def _stamp(self, record: RecordT, existing: List[RecordT], scope: str | None) -> None:
        now = self.clock.now()
        taken = {item.id for item in existing}
        if record.id is None:
            record.id = next_record_id(taken, now)
        elif record.id in taken:
            raise ValidationError(["id"], f"Record id {record.id} already exists")
        if getattr(record, record.date_field) is None:
            setattr(record, record.date_field, now)
        record.scope_id = scope
        record.recalculate()
        if record.total_amount is None:
            record.total_amount = record.default_total_amount()

    # ------------------------------------------------------------------
    # Sales
    # ------------------------------------------------------------------
    async def record_sale(self, sale: SaleRecord | Mapping[str, Any]) -> SaleRecord:
        parsed = parse_record(SaleRecord, sale)
        validate_transaction(parsed)
        async with self.records.lock(Collection.SALES, Collection.INVENTORY):
            scope = await self.records.active_scope_id()
            sales = await self.records.get_collection(Collection.SALES)
            inventory = await self.records.get_collection(Collection.INVENTORY)
            if not parsed.is_converted_credit:
                item = self.reconciler.check_stock(
                    inventory,
                    parsed.item_name,
                    scope,
                    cartons=parsed.carton_quantity,
                    per_carton=parsed.quantity_per_carton,
                )
                _fill_from_inventory(parsed, item)
            self._stamp(parsed, sales, scope)
            sales.append(parsed)
            await self.records.save_collection(Collection.SALES, sales)
            if not parsed.is_converted_credit:
                self.reconciler.apply_decrement(
                    inventory, parsed.item_name, parsed.carton_quantity, scope
                )
                await self.records.save_collection(Collection.INVENTORY, inventory)
        logger.info(
            "Recorded sale %s: %s cartons of %s",
            parsed.id,
            parsed.carton_quantity,
            parsed.item_name,
        )
        await self.alerts.notify_sale(parsed)
        self.alerts.request_recheck()
        return parsed

    async def return_sale(self, sale_id: str) -> SaleRecord:
        """Remove a sale and put its cartons back in stock."""

        async with self.records.lock(Collection.SALES, Collection.INVENTORY):
            scope = await self.records.active_scope_id()
            sales = await self.records.get_collection(Collection.SALES)
            index = _find_index(sales, sale_id, scope)
            if index is None:
                raise NotFoundError("Sale", sale_id)
            sale = sales.pop(index)
            await self.records.save_collection(Collection.SALES, sales)
            inventory = await self.records.get_collection(Collection.INVENTORY)
            self.reconciler.apply_restore(inventory, sale, source=RETURNED_SALE_SOURCE)
            await self.records.save_collection(Collection.INVENTORY, inventory)
        logger.info("Returned sale %s (%s cartons)", sale.id, sale.carton_quantity)
        return sale

    # ------------------------------------------------------------------
    # Purchases
    # ------------------------------------------------------------------
    async def record_purchase(
        self, purchase: PurchaseRecord | Mapping[str, Any]
    ) -> PurchaseRecord:
        parsed = parse_record(PurchaseRecord, purchase)
        validate_transaction(parsed)
        async with self.records.lock(Collection.PURCHASES, Collection.INVENTORY):
            scope = await self.records.active_scope_id()
            purchases = await self.records.get_collection(Collection.PURCHASES)
            self._stamp(parsed, purchases, scope)
            purchases.append(parsed)
            await self.records.save_collection(Collection.PURCHASES, purchases)
            inventory = await self.records.get_collection(Collection.INVENTORY)
            self.reconciler.apply_purchase(inventory, parsed)
            await self.records.save_collection(Collection.INVENTORY, inventory)
        logger.info(
            "Recorded purchase %s: %s cartons of %s",
            parsed.id,
            parsed.carton_quantity,
            parsed.item_name,
        )
        await self.alerts.notify_purchase(parsed)
        self.alerts.request_recheck()
        return parsed

    async def delete_purchase(self, purchase_id: str) -> PurchaseRecord:
        """Remove a purchase and take back the cartons it added."""

        async with self.records.lock(Collection.PURCHASES, Collection.INVENTORY):
            scope = await self.records.active_scope_id()
            purchases = await self.records.get_collection(Collection.PURCHASES)
            index = _find_index(purchases, purchase_id, scope)
            if index is None:
                raise NotFoundError("Purchase", purchase_id)
            purchase = purchases.pop(index)
            await self.records.save_collection(Collection.PURCHASES, purchases)
            inventory = await self.records.get_collection(Collection.INVENTORY)
            self.reconciler.apply_purchase_reversal(inventory, purchase)
            await self.records.save_collection(Collection.INVENTORY, inventory)
        logger.info("Deleted purchase %s", purchase.id)
        self.alerts.request_recheck()
        return purchase

    # ------------------------------------------------------------------
    # Credits
    # ------------------------------------------------------------------
    async def record_credit(self, credit: CreditRecord | Mapping[str, Any]) -> CreditRecord:
        parsed = parse_record(CreditRecord, credit)
        validate_transaction(parsed)
        if parsed.total_amount is not None:
            validate_credit_balance(parsed)
        async with self.records.lock(Collection.CREDITS, Collection.INVENTORY):
            scope = await self.records.active_scope_id()
            credits = await self.records.get_collection(Collection.CREDITS)
            inventory = await self.records.get_collection(Collection.INVENTORY)
            item = self.reconciler.check_stock(
                inventory,
                parsed.item_name,
                scope,
                cartons=parsed.carton_quantity,
                per_carton=parsed.quantity_per_carton,
            )
            _fill_from_inventory(parsed, item)
            self._stamp(parsed, credits, scope)
            validate_credit_balance(parsed)
            credits.append(parsed)
            await self.records.save_collection(Collection.CREDITS, credits)
            self.reconciler.apply_decrement(
                inventory, parsed.item_name, parsed.carton_quantity, scope
            )
            await self.records.save_collection(Collection.INVENTORY, inventory)
        logger.info(
            "Recorded credit %s for %s: %s cartons of %s",
            parsed.id,
            parsed.customer_name,
            parsed.carton_quantity,
            parsed.item_name,
        )
        self.alerts.request_recheck()
        try:
            await self.alerts.check_credit_reminders()
        except StorageError:
            logger.exception("Credit reminder scan after credit %s failed", parsed.id)
        return parsed

    async def return_credit(self, credit_id: str) -> CreditRecord:
        async with self.records.lock(Collection.CREDITS, Collection.INVENTORY):
            scope = await self.records.active_scope_id()
            credits = await self.records.get_collection(Collection.CREDITS)
            index = _find_index(credits, credit_id, scope)
            if index is None:
                raise NotFoundError("Credit", credit_id)
            credit = credits.pop(index)
            await self.records.save_collection(Collection.CREDITS, credits)
            inventory = await self.records.get_collection(Collection.INVENTORY)
            self.reconciler.apply_restore(inventory, credit, source=RETURNED_CREDIT_SOURCE)
            await self.records.save_collection(Collection.INVENTORY, inventory)
        logger.info("Returned credit %s (%s cartons)", credit.id, credit.carton_quantity)
        return credit

    async def transfer_credit_to_sale(self, credit_id: str) -> SaleRecord:
        """Turn a settled credit into a paid sale; inventory was moved already."""

        async with self.records.lock(Collection.SALES, Collection.CREDITS):
            scope = await self.records.active_scope_id()
            credits = await self.records.get_collection(Collection.CREDITS)
            index = _find_index(credits, credit_id, scope)
            if index is None:
                raise NotFoundError("Credit", credit_id)
            credit = credits.pop(index)
            sales = await self.records.get_collection(Collection.SALES)
            payload = credit.model_dump(
                exclude={
                    "id",
                    "credit_date",
                    "payment_status",
                    "amount_paid",
                    "remaining_balance",
                    "due_date",
                }
            )
            sale = SaleRecord.model_validate(
                {
                    **payload,
                    "total_amount": credit.amount,
                    "payment_status": PaymentStatus.PAID,
                    "is_converted_credit": True,
                    "creditId": credit.id,
                }
            )
            sale.id = next_record_id([record.id for record in sales], self.clock.now())
            sale.sale_date = self.clock.now()
            sale.scope_id = credit.scope_id
            await self.records.save_collection(Collection.CREDITS, credits)
            sales.append(sale)
            await self.records.save_collection(Collection.SALES, sales)
        logger.info("Transferred credit %s to sale %s", credit.id, sale.id)
        return sale

    async def update_credit_status(
        self, credit_id: str, status: PaymentStatus | str
    ) -> CreditRecord:
        try:
            new_status = PaymentStatus(status)
        except ValueError as exc:
            raise ValidationError(["paymentStatus"], f"Unknown payment status '{status}'") from exc

        async def apply(credit: CreditRecord) -> CreditRecord:
            credit.payment_status = new_status
            return credit

        return await self._edit_credit(credit_id, apply)

    async def record_credit_payment(self, credit_id: str, amount: float) -> CreditRecord:
        """Move ``amount`` from the outstanding balance to the paid amount."""

        async def apply(credit: CreditRecord) -> CreditRecord:
            paid = credit.amount_paid or 0
            balance = (
                credit.remaining_balance
                if credit.remaining_balance is not None
                else credit.amount - paid
            )
            if amount <= 0 or amount > balance + BALANCE_TOLERANCE:
                raise ValidationError(
                    ["amount"], f"Payment must be between 0 and {balance:.2f}"
                )
            credit.amount_paid = round(paid + amount, 2)
            credit.remaining_balance = max(0.0, round(credit.amount - credit.amount_paid, 2))
            if credit.remaining_balance <= BALANCE_TOLERANCE:
                credit.payment_status = PaymentStatus.PAID
            else:
                credit.payment_status = PaymentStatus.PARTIALLY_PAID
            return credit

        return await self._edit_credit(credit_id, apply)

    async def update_credit(self, credit_id: str, changes: Mapping[str, Any]) -> CreditRecord:
        """Edit a credit; customer, pricing, dates and payment fields only."""

        normalized = CreditRecord.normalize_keys(changes)
        locked = [
            CreditRecord.field_alias(name) for name in _LOCKED_CREDIT_FIELDS if name in normalized
        ]
        if locked:
            raise ValidationError(locked, "These credit fields cannot be edited")

        async def apply(credit: CreditRecord) -> CreditRecord:
            updated = credit.with_changes(normalized)
            validate_transaction(updated)
            validate_credit_balance(updated)
            return updated

        return await self._edit_credit(credit_id, apply)

    async def _edit_credit(
        self, credit_id: str, apply: Callable[[CreditRecord], Awaitable[CreditRecord]]
    ) -> CreditRecord:
        async with self.records.lock(Collection.CREDITS):
            scope = await self.records.active_scope_id()
            credits = await self.records.get_collection(Collection.CREDITS)
            index = _find_index(credits, credit_id, scope)
            if index is None:
                raise NotFoundError("Credit", credit_id)
            updated = await apply(credits[index])
            credits[index] = updated
            await self.records.save_collection(Collection.CREDITS, credits)
        return updated

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    async def list_sales(self) -> List[SaleRecord]:
        return await self.records.get_scoped(Collection.SALES)

    async def list_purchases(self) -> List[PurchaseRecord]:
        return await self.records.get_scoped(Collection.PURCHASES)

    async def list_credits(self) -> List[CreditRecord]:
        return await self.records.get_scoped(Collection.CREDITS)

    async def list_inventory(self) -> List[InventoryItem]:
        return await self.records.get_scoped(Collection.INVENTORY)


__all__ = [
    "TransactionProcessor",
    "validate_transaction",
    "validate_credit_balance",
    "BALANCE_TOLERANCE",
]
