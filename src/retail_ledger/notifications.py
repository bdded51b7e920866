"""Notification payloads, delivery channels and tap routing."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Literal, Protocol, Tuple

from pydantic import ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .schemas import LedgerModel

logger = logging.getLogger(__name__)

STOCK_ALERTS = "stock-alerts"
PURCHASES = "purchases"
SALES = "sales"

NotificationType = Literal[
    "low_stock",
    "credit_due",
    "purchase_success",
    "sale_success",
    "daily_check",
]


@dataclass(frozen=True)
class ChannelSpec:
    """Static description of a delivery channel."""

    channel_id: str
    name: str
    description: str
    importance: int
    visibility: str = "public"
    play_sound: bool = True
    vibrate: bool = True


CHANNELS: Dict[str, ChannelSpec] = {
    STOCK_ALERTS: ChannelSpec(
        channel_id=STOCK_ALERTS,
        name="Stock Alerts",
        description="Notifications for low stock items",
        importance=4,
    ),
    PURCHASES: ChannelSpec(
        channel_id=PURCHASES,
        name="Purchase Notifications",
        description="Notifications for purchase-related activities",
        importance=3,
    ),
    SALES: ChannelSpec(
        channel_id=SALES,
        name="Sales Notifications",
        description="Notifications for sales-related activities",
        importance=3,
    ),
}


class NotificationData(LedgerModel):
    """Routing payload attached to a notification; extra keys are kept."""

    type: NotificationType
    screen: str = ""
    item_name: str | None = None
    credit_id: str | None = None
    purchase_id: str | None = None


class Notification(LedgerModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    title: str
    body: str
    data: NotificationData
    channel: str = Field(default=STOCK_ALERTS)

    @field_validator("channel")
    @classmethod
    def _known_channel(cls, value: str) -> str:
        if value not in CHANNELS:
            raise ValueError(f"Unknown notification channel '{value}'")
        return value

    @property
    def spec(self) -> ChannelSpec:
        return CHANNELS[self.channel]


class NotificationChannel(Protocol):
    async def show(self, notification: Notification) -> None:
        ...

    async def schedule(self, notification: Notification, when: datetime) -> None:
        ...


class LoggingChannel:
    """Channel that only writes deliveries to the log."""

    async def show(self, notification: Notification) -> None:
        logger.info(
            "[%s] %s: %s", notification.channel, notification.title, notification.body
        )

    async def schedule(self, notification: Notification, when: datetime) -> None:
        logger.info(
            "[%s] scheduled for %s: %s",
            notification.channel,
            when.isoformat(),
            notification.title,
        )


@dataclass
class RecordingChannel:
    """Channel that keeps every notification in memory."""

    shown: List[Notification] = field(default_factory=list)
    scheduled: List[Tuple[datetime, Notification]] = field(default_factory=list)

    async def show(self, notification: Notification) -> None:
        self.shown.append(notification)

    async def schedule(self, notification: Notification, when: datetime) -> None:
        self.scheduled.append((when, notification))

    def of_type(self, kind: str) -> List[Notification]:
        return [item for item in self.shown if item.data.type == kind]

    def clear(self) -> None:
        self.shown.clear()
        self.scheduled.clear()


@dataclass(frozen=True)
class Route:
    screen: str
    params: Dict[str, Any] = field(default_factory=dict)


_DEFAULT_SCREENS = {
    "low_stock": "Inventory",
    "daily_check": "Inventory",
    "credit_due": "Credits",
    "purchase_success": "Purchases",
    "sale_success": "Sales",
}


def route_notification(data: NotificationData | Dict[str, Any]) -> Route:
    """Resolve the screen, and its context, a tapped notification opens."""

    if not isinstance(data, NotificationData):
        data = NotificationData.from_record(data)
    screen = data.screen or _DEFAULT_SCREENS.get(data.type, "Dashboard")
    params: Dict[str, Any] = {}
    if data.item_name:
        params["highlight"] = data.item_name
    if data.credit_id:
        params["creditId"] = data.credit_id
    if data.purchase_id:
        params["purchaseId"] = data.purchase_id
    return Route(screen=screen, params=params)


__all__ = [
    "STOCK_ALERTS",
    "PURCHASES",
    "SALES",
    "CHANNELS",
    "ChannelSpec",
    "Notification",
    "NotificationData",
    "NotificationChannel",
    "LoggingChannel",
    "RecordingChannel",
    "Route",
    "route_notification",
]
