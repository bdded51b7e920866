"""Alert policy engine: low stock and credit due reminders.

A run loads :class:`~retail_ledger.schemas.AlertSettings`, decides whether
alerts may fire right now (quiet hours veto first, then business hours),
then scans inventory and credits and hands notifications to the delivery
channel. Low-stock alerts are throttled per item according to
``stock_alert_frequency``; credit reminders are not throttled and repeat on
every run while the credit stays inside the reminder window.
"""
from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, tzinfo
from typing import Dict, List

from .clock import Clock, from_epoch_ms, to_epoch_ms
from .exceptions import StorageError
from .notifications import (
    PURCHASES,
    SALES,
    STOCK_ALERTS,
    Notification,
    NotificationChannel,
    NotificationData,
)
from .records import Collection, RecordStore
from .scheduler import Scheduler
from .schemas import (
    AlertSettings,
    CreditRecord,
    InventoryItem,
    PaymentStatus,
    PurchaseRecord,
    SaleRecord,
    parse_hhmm,
)
from .settings_store import SettingsStore, low_stock_key

logger = logging.getLogger(__name__)

QUIET_HOURS = "quiet_hours"
OUTSIDE_BUSINESS_HOURS = "outside_business_hours"

_FREQUENCY_WINDOWS: Dict[str, timedelta | None] = {
    "immediate": None,
    "daily": timedelta(days=1),
    "weekly": timedelta(days=7),
}


@dataclass(frozen=True)
class WindowDecision:
    allowed: bool
    reason: str | None = None


def evaluate_window(settings: AlertSettings, local_now: datetime) -> WindowDecision:
    """Quiet hours veto first; outside business hours suppresses too."""

    moment = local_now.time()
    if settings.quiet_hours.enabled and settings.quiet_hours.contains(moment):
        return WindowDecision(False, QUIET_HOURS)
    if not settings.business_hours.contains(moment):
        return WindowDecision(False, OUTSIDE_BUSINESS_HOURS)
    return WindowDecision(True)


def next_business_start(settings: AlertSettings, local_now: datetime) -> datetime:
    """The next moment, strictly after ``local_now``, business hours open."""

    start = parse_hhmm(settings.business_hours.start)
    candidate = local_now.replace(
        hour=start.hour, minute=start.minute, second=0, microsecond=0
    )
    if candidate <= local_now:
        candidate = candidate + timedelta(days=1)
    return candidate


def is_alert_due(frequency: str, last_fired: datetime | None, now: datetime) -> bool:
    window = _FREQUENCY_WINDOWS.get(frequency, _FREQUENCY_WINDOWS["daily"])
    if window is None or last_fired is None:
        return True
    return now - last_fired >= window


def _format_amount(value: float | None) -> str:
    return f"{float(value or 0):,.2f}"


class AlertPolicyEngine:
    """Periodic evaluator deciding when stock and credit alerts fire."""

    def __init__(
        self,
        records: RecordStore,
        settings_store: SettingsStore,
        channel: NotificationChannel,
        clock: Clock,
        scheduler: Scheduler,
        *,
        timezone: tzinfo,
        interval_seconds: float = 30 * 60,
        startup_delay_seconds: float = 5,
        recheck_delay_seconds: float = 1,
    ) -> None:
        self.records = records
        self.settings_store = settings_store
        self.channel = channel
        self.clock = clock
        self.scheduler = scheduler
        self.timezone = timezone
        self.interval_seconds = interval_seconds
        self.startup_delay_seconds = startup_delay_seconds
        self.recheck_delay_seconds = recheck_delay_seconds
        self._low_stock_lock = asyncio.Lock()

    def local_now(self) -> datetime:
        return self.clock.now().astimezone(self.timezone)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> None:
        await self.settings_store.initialize()
        self.scheduler.call_later(
            self.startup_delay_seconds, self.run_checks, key="alerts-startup"
        )
        self.scheduler.every(self.interval_seconds, self.run_checks, key="alerts-periodic")
        logger.info(
            "Alert engine started (first run in %ss, then every %ss)",
            self.startup_delay_seconds,
            self.interval_seconds,
        )

    def stop(self) -> None:
        self.scheduler.cancel_all()
        logger.info("Alert engine stopped")

    def request_recheck(self) -> None:
        """Ask for a low-stock scan shortly; repeated requests coalesce."""

        self.scheduler.call_later(
            self.recheck_delay_seconds, self.check_low_stock, key="low-stock-recheck"
        )

    async def run_checks(self) -> None:
        for check in (self.check_low_stock, self.check_credit_reminders):
            try:
                await check()
            except StorageError:
                logger.exception("Alert check %s failed", check.__name__)

    # ------------------------------------------------------------------
    # Low stock
    # ------------------------------------------------------------------
    async def check_low_stock(self) -> List[InventoryItem]:
        """Scan inventory and notify for items at or below their threshold.

        Overlapping scans run one after the other.
        """

        async with self._low_stock_lock:
            return await self._scan_low_stock()

    async def _scan_low_stock(self) -> List[InventoryItem]:
        settings = await self.settings_store.get()
        if not settings.enable_stock_alerts:
            return []
        local_now = self.local_now()
        decision = evaluate_window(settings, local_now)
        if not decision.allowed:
            if decision.reason == QUIET_HOURS:
                resume_at = next_business_start(settings, local_now)
                self.scheduler.call_at(resume_at, self.check_low_stock, key="low-stock-resume")
                logger.debug("Quiet hours, low stock check moved to %s", resume_at.isoformat())
            return []

        inventory = await self.records.get_scoped(Collection.INVENTORY)
        low_stock = [item for item in inventory if item.is_low_stock]
        if not low_stock:
            return []
        return await self._send_low_stock(settings, low_stock)

    async def _send_low_stock(
        self, settings: AlertSettings, items: List[InventoryItem]
    ) -> List[InventoryItem]:
        last_alerts = await self.settings_store.last_alert_times()
        now = self.clock.now()
        fired: List[InventoryItem] = []
        for item in items:
            key = low_stock_key(item.item_name)
            last_fired = from_epoch_ms(last_alerts[key]) if key in last_alerts else None
            if not is_alert_due(settings.stock_alert_frequency, last_fired, now):
                continue
            notification = Notification(
                title="Low Stock Alert",
                body=(
                    f"{item.item_name} is running low! "
                    f"Only {item.carton_quantity} cartons remaining."
                ),
                data=NotificationData(
                    type="low_stock",
                    item_name=item.item_name,
                    screen="Inventory",
                    currentStock=item.carton_quantity,
                    minStock=item.min_stock_alert,
                ),
                channel=STOCK_ALERTS,
            )
            if not await self._deliver(notification):
                continue
            last_alerts[key] = to_epoch_ms(now)
            await self.settings_store.save_alert_times(last_alerts)
            fired.append(item)
        if fired:
            logger.info("Sent %s low stock alert(s)", len(fired))
        return fired

    # ------------------------------------------------------------------
    # Credit reminders
    # ------------------------------------------------------------------
    async def check_credit_reminders(self) -> List[CreditRecord]:
        """Notify for every unpaid credit falling due within the reminder window."""

        settings = await self.settings_store.get()
        if not settings.enable_credit_reminders:
            return []
        if not evaluate_window(settings, self.local_now()).allowed:
            return []

        now = self.clock.now()
        credits = await self.records.get_scoped(Collection.CREDITS)
        reminded: List[CreditRecord] = []
        for credit in credits:
            if credit.payment_status == PaymentStatus.PAID or credit.due_date is None:
                continue
            days_until_due = (credit.due_date - now).total_seconds() / 86400
            if not 0 < days_until_due <= settings.credit_reminder_days:
                continue
            notification = Notification(
                title="Credit Payment Reminder",
                body=(
                    f"Payment due in {math.ceil(days_until_due)} days for "
                    f"{credit.customer_name}: {_format_amount(credit.amount)}"
                ),
                data=NotificationData(
                    type="credit_due",
                    credit_id=credit.id,
                    screen="Credits",
                    customerName=credit.customer_name,
                    amount=credit.amount,
                    dueDate=credit.due_date.isoformat(),
                ),
                channel=SALES,
            )
            if await self._deliver(notification):
                reminded.append(credit)
        return reminded

    # ------------------------------------------------------------------
    # Transaction notifications
    # ------------------------------------------------------------------
    async def notify_sale(self, sale: SaleRecord) -> bool:
        notification = Notification(
            title="Sale Completed",
            body=(
                f"Sold {sale.carton_quantity} cartons of {sale.item_name} "
                f"for {_format_amount(sale.amount)}"
            ),
            data=NotificationData(
                type="sale_success",
                item_name=sale.item_name,
                screen="Sales",
                quantity=sale.carton_quantity,
                amount=sale.amount,
            ),
            channel=SALES,
        )
        return await self._deliver(notification)

    async def notify_purchase(self, purchase: PurchaseRecord) -> bool:
        try:
            settings = await self.settings_store.get()
        except StorageError:
            logger.exception("Cannot load alert settings for purchase %s", purchase.id)
            return False
        if not settings.enable_purchase_reminders:
            return False
        notification = Notification(
            title="Purchase Recorded",
            body=(
                f"Successfully purchased {purchase.carton_quantity} cartons "
                f"of {purchase.item_name}"
            ),
            data=NotificationData(
                type="purchase_success",
                item_name=purchase.item_name,
                purchase_id=purchase.id,
                screen="Purchases",
                quantity=purchase.carton_quantity,
                amount=purchase.amount,
            ),
            channel=PURCHASES,
        )
        return await self._deliver(notification)

    async def schedule_daily_stock_check(self) -> datetime | None:
        """Schedule a stock check reminder at the next business-hours start."""

        settings = await self.settings_store.get()
        when = next_business_start(settings, self.local_now())
        notification = Notification(
            title="Daily Stock Check",
            body="Checking inventory levels...",
            data=NotificationData(type="daily_check", screen="Inventory"),
            channel=STOCK_ALERTS,
        )
        try:
            await self.channel.schedule(notification, when)
        except Exception:
            logger.exception("Scheduling the daily stock check failed")
            return None
        return when

    async def _deliver(self, notification: Notification) -> bool:
        try:
            await self.channel.show(notification)
        except Exception:
            logger.exception(
                "Notification delivery failed on %s: %s",
                notification.channel,
                notification.title,
            )
            return False
        return True


__all__ = [
    "AlertPolicyEngine",
    "WindowDecision",
    "evaluate_window",
    "next_business_start",
    "is_alert_due",
    "QUIET_HOURS",
    "OUTSIDE_BUSINESS_HOURS",
]
