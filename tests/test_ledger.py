from __future__ import annotations

import asyncio
import json
from datetime import timedelta

import pytest

from conftest import START, stock_item
from retail_ledger.clock import ManualClock
from retail_ledger.config import Settings
from retail_ledger.context import LedgerContext, create_context
from retail_ledger.exceptions import NotFoundError, StockError, ValidationError
from retail_ledger.inventory import RETURNED_SALE_SOURCE
from retail_ledger.notifications import Notification, RecordingChannel
from retail_ledger.scheduler import VirtualScheduler
from retail_ledger.schemas import PaymentStatus
from retail_ledger.storage import MemoryStore


def _sale(cartons: int = 3, **extra):
    payload = {"itemName": "Rice", "cartonQuantity": cartons, "quantityPerCarton": 6}
    payload.update(extra)
    return payload


def _credit(**extra):
    payload = {
        "itemName": "Rice",
        "cartonQuantity": 2,
        "quantityPerCarton": 6,
        "customerName": "Amina",
        "totalAmount": 100,
    }
    payload.update(extra)
    return payload


async def _inventory_cartons(context: LedgerContext, name: str = "Rice") -> int | None:
    for row in await context.ledger.list_inventory():
        if row.item_name == name:
            return row.carton_quantity
    return None


async def test_sale_decrements_inventory(context: LedgerContext, channel: RecordingChannel) -> None:
    await stock_item(context)

    sale = await context.ledger.record_sale(_sale(3))

    item = await context.inventory.get_item("Rice")
    assert item.carton_quantity == 7
    assert item.total_quantity == 42
    sales = await context.ledger.list_sales()
    assert [(s.id, s.carton_quantity) for s in sales] == [(sale.id, 3)]
    assert sale.sale_date == START
    assert sale.total_quantity == 18
    assert sale.total_amount == 45
    assert len(channel.of_type("sale_success")) == 1


async def test_sale_fills_pricing_from_inventory(context: LedgerContext) -> None:
    await stock_item(context, itemCode="R-1")

    sale = await context.ledger.record_sale({"itemName": "Rice", "cartonQuantity": 2})

    assert sale.quantity_per_carton == 6
    assert sale.price_per_carton == 15
    assert sale.item_code == "R-1"
    assert sale.total_amount == 30


async def test_sale_with_insufficient_stock_writes_nothing(
    context: LedgerContext, store: MemoryStore
) -> None:
    await stock_item(context)
    before = store.snapshot()

    with pytest.raises(StockError) as excinfo:
        await context.ledger.record_sale(_sale(12))

    assert excinfo.value.requested == 12
    assert excinfo.value.available == 10
    assert store.snapshot() == before


async def test_sale_of_unknown_item_is_a_stock_error(context: LedgerContext) -> None:
    with pytest.raises(StockError) as excinfo:
        await context.ledger.record_sale(_sale(1, itemName="Flour"))

    assert excinfo.value.available == 0
    assert await context.ledger.list_sales() == []


async def test_sale_checks_pieces_per_carton(context: LedgerContext) -> None:
    await stock_item(context)

    with pytest.raises(StockError) as excinfo:
        await context.ledger.record_sale(_sale(1, quantityPerCarton=8))

    assert excinfo.value.unit == "pieces per carton"


async def test_sale_rejects_invalid_payload(context: LedgerContext) -> None:
    await stock_item(context)

    with pytest.raises(ValidationError) as excinfo:
        await context.ledger.record_sale({"itemName": "", "cartonQuantity": 0})

    assert set(excinfo.value.fields) == {"itemName", "cartonQuantity"}


async def test_sale_rejects_duplicate_id(context: LedgerContext) -> None:
    await stock_item(context)
    await context.ledger.record_sale(_sale(1, id="s-1"))

    with pytest.raises(ValidationError):
        await context.ledger.record_sale(_sale(1, id="s-1"))
    assert await _inventory_cartons(context) == 9


async def test_sale_ids_are_unique_at_the_same_instant(context: LedgerContext) -> None:
    await stock_item(context)

    first = await context.ledger.record_sale(_sale(1))
    second = await context.ledger.record_sale(_sale(1))

    assert int(second.id) == int(first.id) + 1


async def test_selling_out_removes_row_and_return_recreates_it(context: LedgerContext) -> None:
    await stock_item(context)

    sale = await context.ledger.record_sale(_sale(10))
    assert await context.ledger.list_inventory() == []

    await context.ledger.return_sale(sale.id)

    rows = await context.ledger.list_inventory()
    assert [(row.item_name, row.carton_quantity, row.source) for row in rows] == [
        ("Rice", 10, RETURNED_SALE_SOURCE)
    ]
    assert await context.ledger.list_sales() == []


async def test_sale_then_return_restores_quantity(context: LedgerContext) -> None:
    await stock_item(context)

    sale = await context.ledger.record_sale(_sale(4))
    returned = await context.ledger.return_sale(sale.id)

    assert returned.id == sale.id
    assert await _inventory_cartons(context) == 10

    with pytest.raises(NotFoundError):
        await context.ledger.return_sale(sale.id)


async def test_converted_credit_sale_skips_inventory(context: LedgerContext) -> None:
    await stock_item(context)

    await context.ledger.record_sale(_sale(50, isConvertedCredit=True))

    assert await _inventory_cartons(context) == 10


async def test_purchase_creates_new_row(context: LedgerContext, channel: RecordingChannel) -> None:
    purchase = await context.ledger.record_purchase(
        {"itemName": "Oil", "cartonQuantity": 5, "purchasePricePerCarton": 84}
    )

    rows = await context.ledger.list_inventory()
    assert len(rows) == 1
    assert rows[0].item_name == "Oil"
    assert rows[0].carton_quantity == 5
    assert rows[0].source == "Purchase"
    assert rows[0].last_purchase_date == START
    assert purchase.total_amount == 420
    notes = channel.of_type("purchase_success")
    assert len(notes) == 1
    assert notes[0].data.purchase_id == purchase.id


async def test_purchase_merges_case_insensitively(context: LedgerContext) -> None:
    await context.ledger.record_purchase(
        {
            "itemName": "Oil",
            "cartonQuantity": 5,
            "quantityPerCarton": 12,
            "purchasePricePerCarton": 84,
            "pricePerCarton": 100,
        }
    )

    await context.ledger.record_purchase(
        {
            "itemName": "oil",
            "cartonQuantity": 3,
            "quantityPerCarton": 12,
            "purchasePricePerCarton": 90,
            "minStockAlert": 2,
        }
    )

    rows = await context.ledger.list_inventory()
    assert len(rows) == 1
    row = rows[0]
    assert row.carton_quantity == 8
    assert row.total_quantity == 96
    assert row.purchase_price_per_carton == 90
    assert row.price_per_carton == 100
    assert row.min_stock_alert == 2
    assert len(await context.ledger.list_purchases()) == 2


async def test_deleting_a_differently_cased_purchase_reverses_it(context: LedgerContext) -> None:
    await context.ledger.record_purchase(
        {"itemName": "Oil", "cartonQuantity": 5, "quantityPerCarton": 12}
    )
    lower = await context.ledger.record_purchase(
        {"itemName": "oil", "cartonQuantity": 3, "quantityPerCarton": 12}
    )

    await context.ledger.delete_purchase(lower.id)

    rows = await context.ledger.list_inventory()
    assert [(row.item_name, row.carton_quantity) for row in rows] == [("Oil", 5)]


async def test_purchase_notification_respects_setting(
    context: LedgerContext, channel: RecordingChannel
) -> None:
    await context.settings_store.update(enablePurchaseReminders=False)

    await context.ledger.record_purchase({"itemName": "Oil", "cartonQuantity": 1})

    assert channel.of_type("purchase_success") == []


async def test_purchase_then_delete_restores_inventory(context: LedgerContext) -> None:
    await context.ledger.record_purchase(
        {"itemName": "Oil", "cartonQuantity": 3, "quantityPerCarton": 12}
    )
    second = await context.ledger.record_purchase(
        {"itemName": "Oil", "cartonQuantity": 5, "quantityPerCarton": 12}
    )

    await context.ledger.delete_purchase(second.id)

    assert await _inventory_cartons(context, "Oil") == 3
    assert len(await context.ledger.list_purchases()) == 1


async def test_delete_purchase_clamps_at_zero(context: LedgerContext) -> None:
    purchase = await context.ledger.record_purchase(
        {"itemName": "Oil", "cartonQuantity": 5, "quantityPerCarton": 12}
    )
    await context.ledger.record_sale({"itemName": "Oil", "cartonQuantity": 4})

    await context.ledger.delete_purchase(purchase.id)

    assert await context.ledger.list_inventory() == []


async def test_delete_unknown_purchase(context: LedgerContext) -> None:
    with pytest.raises(NotFoundError):
        await context.ledger.delete_purchase("missing")


async def test_credit_with_payment_needs_remaining_balance(
    context: LedgerContext, store: MemoryStore
) -> None:
    await stock_item(context)
    before = store.snapshot()

    with pytest.raises(ValidationError) as excinfo:
        await context.ledger.record_credit(_credit(amountPaid=40))

    assert "remainingBalance" in excinfo.value.fields
    assert store.snapshot() == before

    credit = await context.ledger.record_credit(_credit(amountPaid=40, remainingBalance=60))
    assert credit.amount_paid == 40
    assert credit.remaining_balance == 60
    assert credit.payment_status == PaymentStatus.UNPAID
    assert await _inventory_cartons(context) == 8


async def test_credit_balance_must_add_up(context: LedgerContext) -> None:
    await stock_item(context)

    with pytest.raises(ValidationError):
        await context.ledger.record_credit(_credit(amountPaid=40, remainingBalance=50))


async def test_credit_without_payment_owes_everything(context: LedgerContext) -> None:
    await stock_item(context)

    credit = await context.ledger.record_credit(_credit(totalAmount=None))

    assert credit.total_amount == 30
    assert credit.amount_paid == 0
    assert credit.remaining_balance == 30
    assert credit.credit_date == START


async def test_credit_needs_stock(context: LedgerContext) -> None:
    await stock_item(context, cartonQuantity=1)

    with pytest.raises(StockError):
        await context.ledger.record_credit(_credit())
    assert await context.ledger.list_credits() == []


async def test_return_credit_restores_inventory(context: LedgerContext) -> None:
    await stock_item(context)
    credit = await context.ledger.record_credit(_credit())

    await context.ledger.return_credit(credit.id)

    assert await _inventory_cartons(context) == 10
    assert await context.ledger.list_credits() == []


async def test_transfer_credit_to_sale(context: LedgerContext, clock: ManualClock) -> None:
    await stock_item(context)
    credit = await context.ledger.record_credit(_credit())
    clock.advance(timedelta(days=2))

    sale = await context.ledger.transfer_credit_to_sale(credit.id)

    assert sale.payment_status == PaymentStatus.PAID
    assert sale.is_converted_credit is True
    assert sale.customer_name == "Amina"
    assert sale.total_amount == 100
    assert sale.sale_date == START + timedelta(days=2)
    assert sale.id != credit.id
    assert await context.ledger.list_credits() == []
    assert [s.id for s in await context.ledger.list_sales()] == [sale.id]
    assert await _inventory_cartons(context) == 8

    with pytest.raises(NotFoundError):
        await context.ledger.transfer_credit_to_sale(credit.id)


async def test_credit_payments_move_balance(context: LedgerContext) -> None:
    await stock_item(context)
    credit = await context.ledger.record_credit(_credit())

    partial = await context.ledger.record_credit_payment(credit.id, 40)
    assert partial.amount_paid == 40
    assert partial.remaining_balance == 60
    assert partial.payment_status == PaymentStatus.PARTIALLY_PAID

    settled = await context.ledger.record_credit_payment(credit.id, 60)
    assert settled.remaining_balance == 0
    assert settled.payment_status == PaymentStatus.PAID

    with pytest.raises(ValidationError):
        await context.ledger.record_credit_payment(credit.id, 1)


async def test_update_credit_status(context: LedgerContext) -> None:
    await stock_item(context)
    credit = await context.ledger.record_credit(_credit())

    updated = await context.ledger.update_credit_status(credit.id, "Pending")
    assert updated.payment_status == PaymentStatus.PENDING

    with pytest.raises(ValidationError):
        await context.ledger.update_credit_status(credit.id, "Forgotten")
    with pytest.raises(NotFoundError):
        await context.ledger.update_credit_status("missing", "Paid")


async def test_update_credit_keeps_balance_invariant(context: LedgerContext) -> None:
    await stock_item(context)
    credit = await context.ledger.record_credit(_credit())

    edited = await context.ledger.update_credit(
        credit.id, {"customerName": "Amina K.", "amountPaid": 25, "remainingBalance": 75}
    )
    assert edited.customer_name == "Amina K."
    assert edited.amount_paid + edited.remaining_balance == pytest.approx(edited.total_amount)

    with pytest.raises(ValidationError):
        await context.ledger.update_credit(credit.id, {"amountPaid": 30})
    with pytest.raises(ValidationError) as excinfo:
        await context.ledger.update_credit(credit.id, {"cartonQuantity": 1})
    assert excinfo.value.fields == ("cartonQuantity",)

    stored = (await context.ledger.list_credits())[0]
    assert stored.amount_paid == 25


async def test_scoped_writes_keep_other_scopes(context: LedgerContext, store: MemoryStore) -> None:
    await context.records.select_scope("shop-a")
    await stock_item(context)
    await context.ledger.record_sale(_sale(1))
    await context.records.select_scope("shop-b")
    await stock_item(context)
    await context.ledger.record_sale(_sale(2))

    assert [sale.carton_quantity for sale in await context.ledger.list_sales()] == [2]
    stored = json.loads(store.snapshot()["sales"])
    assert sorted((row["scopeId"], row["cartonQuantity"]) for row in stored) == [
        ("shop-a", 1),
        ("shop-b", 2),
    ]
    inventory = json.loads(store.snapshot()["inventory"])
    assert sorted((row["scopeId"], row["cartonQuantity"]) for row in inventory) == [
        ("shop-a", 9),
        ("shop-b", 8),
    ]


async def test_return_is_limited_to_active_scope(context: LedgerContext) -> None:
    await context.records.select_scope("shop-a")
    await stock_item(context)
    sale = await context.ledger.record_sale(_sale(1))
    await context.records.select_scope("shop-b")

    with pytest.raises(NotFoundError):
        await context.ledger.return_sale(sale.id)


class _SlowStore(MemoryStore):
    """Yields to the event loop on every call so operations interleave."""

    async def get(self, key: str):
        await asyncio.sleep(0)
        return await super().get(key)

    async def set(self, key: str, value: str) -> None:
        await asyncio.sleep(0)
        await super().set(key, value)


async def test_concurrent_sales_do_not_lose_updates(
    settings: Settings,
    clock: ManualClock,
    channel: RecordingChannel,
    scheduler: VirtualScheduler,
) -> None:
    context = await create_context(
        settings, store=_SlowStore(), clock=clock, channel=channel, scheduler=scheduler
    )
    await stock_item(context)

    results = await asyncio.gather(
        *(context.ledger.record_sale(_sale(3)) for _ in range(4)),
        return_exceptions=True,
    )

    failures = [result for result in results if isinstance(result, Exception)]
    assert len(failures) == 1
    assert isinstance(failures[0], StockError)
    assert await _inventory_cartons(context) == 1
    assert len(await context.ledger.list_sales()) == 3


class _BrokenChannel:
    async def show(self, notification: Notification) -> None:
        raise RuntimeError("notifications unavailable")

    async def schedule(self, notification: Notification, when) -> None:
        raise RuntimeError("notifications unavailable")


async def test_notification_failure_does_not_fail_sale(
    settings: Settings, clock: ManualClock, scheduler: VirtualScheduler
) -> None:
    context = await create_context(
        settings, store=MemoryStore(), clock=clock, channel=_BrokenChannel(), scheduler=scheduler
    )
    await stock_item(context)

    sale = await context.ledger.record_sale(_sale(2))

    assert [s.id for s in await context.ledger.list_sales()] == [sale.id]
    assert await _inventory_cartons(context) == 8
