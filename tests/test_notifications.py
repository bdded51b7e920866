from __future__ import annotations

import logging

import pydantic
import pytest

from retail_ledger.notifications import (
    CHANNELS,
    PURCHASES,
    SALES,
    STOCK_ALERTS,
    LoggingChannel,
    Notification,
    NotificationData,
    route_notification,
)


def test_channel_levels() -> None:
    assert CHANNELS[STOCK_ALERTS].importance == 4
    assert CHANNELS[PURCHASES].importance == 3
    assert CHANNELS[SALES].importance == 3
    assert {spec.visibility for spec in CHANNELS.values()} == {"public"}


def test_payload_serializes_in_camel_case() -> None:
    notification = Notification(
        title="Low Stock Alert",
        body="Rice is running low!",
        data=NotificationData(type="low_stock", item_name="Rice", screen="Inventory", minStock=5),
        channel=STOCK_ALERTS,
    )

    record = notification.to_record()

    assert record["channel"] == "stock-alerts"
    assert record["data"]["itemName"] == "Rice"
    assert record["data"]["minStock"] == 5
    assert notification.spec.name == "Stock Alerts"


def test_unknown_channel_is_rejected() -> None:
    with pytest.raises(pydantic.ValidationError):
        Notification(title="x", body="y", data=NotificationData(type="sale_success"), channel="sms")


def test_route_low_stock_highlights_item() -> None:
    route = route_notification({"type": "low_stock", "itemName": "Rice", "screen": "Inventory"})

    assert route.screen == "Inventory"
    assert route.params == {"highlight": "Rice"}


def test_route_credit_and_purchase_context() -> None:
    credit = route_notification(NotificationData(type="credit_due", credit_id="17"))
    purchase = route_notification({"type": "purchase_success", "purchaseId": "9"})

    assert (credit.screen, credit.params) == ("Credits", {"creditId": "17"})
    assert (purchase.screen, purchase.params) == ("Purchases", {"purchaseId": "9"})


async def test_logging_channel_writes_deliveries(caplog: pytest.LogCaptureFixture) -> None:
    notification = Notification(
        title="Sale Completed",
        body="Sold 3 cartons of Rice",
        data=NotificationData(type="sale_success"),
        channel=SALES,
    )

    with caplog.at_level(logging.INFO, logger="retail_ledger.notifications"):
        await LoggingChannel().show(notification)

    assert "Sale Completed" in caplog.text
