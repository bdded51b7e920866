"""Explicit wiring of the ledger components around injected collaborators."""
from __future__ import annotations

import logging

from .alerts import AlertPolicyEngine
from .clock import Clock, SystemClock
from .config import Settings, get_settings
from .inventory import InventoryReconciler
from .ledger import TransactionProcessor
from .notifications import LoggingChannel, NotificationChannel
from .records import RecordStore
from .scheduler import AsyncioScheduler, Scheduler
from .settings_store import SettingsStore
from .storage import KeyValueStore, SqlStore, open_store
from .summary import CreditStatistics, DashboardSummary, credit_statistics, dashboard_summary

logger = logging.getLogger(__name__)


class LedgerContext:
    """Owns one store, clock, channel and scheduler and the components built on them."""

    def __init__(
        self,
        settings: Settings,
        store: KeyValueStore,
        clock: Clock,
        channel: NotificationChannel,
        scheduler: Scheduler,
    ) -> None:
        self.settings = settings
        self.store = store
        self.clock = clock
        self.channel = channel
        self.scheduler = scheduler

        self.records = RecordStore(store)
        self.inventory = InventoryReconciler(self.records, clock)
        self.settings_store = SettingsStore(self.records)
        self.alerts = AlertPolicyEngine(
            self.records,
            self.settings_store,
            channel,
            clock,
            scheduler,
            timezone=settings.timezone,
            interval_seconds=settings.alert_interval_seconds,
            startup_delay_seconds=settings.alert_startup_delay_seconds,
            recheck_delay_seconds=settings.alert_recheck_delay_seconds,
        )
        self.ledger = TransactionProcessor(self.records, self.inventory, self.alerts, clock)

    async def start(self) -> None:
        await self.alerts.start()

    async def aclose(self) -> None:
        self.alerts.stop()
        if isinstance(self.scheduler, AsyncioScheduler):
            await self.scheduler.aclose()
        if isinstance(self.store, SqlStore):
            await self.store.close()
        logger.info("%s context closed", self.settings.app_name)

    async def __aenter__(self) -> "LedgerContext":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def dashboard(self) -> DashboardSummary:
        return dashboard_summary(
            await self.ledger.list_inventory(),
            await self.ledger.list_sales(),
            await self.ledger.list_purchases(),
            await self.ledger.list_credits(),
            self.alerts.local_now(),
        )

    async def credit_statistics(self) -> CreditStatistics:
        return credit_statistics(await self.ledger.list_credits(), self.alerts.local_now())


async def create_context(
    settings: Settings | None = None,
    *,
    store: KeyValueStore | None = None,
    clock: Clock | None = None,
    channel: NotificationChannel | None = None,
    scheduler: Scheduler | None = None,
) -> LedgerContext:
    """Build a :class:`LedgerContext`, opening the configured store unless one is given."""

    settings = settings or get_settings()
    clock = clock or SystemClock()
    if store is None:
        store = await open_store(settings=settings)
    context = LedgerContext(
        settings,
        store,
        clock,
        channel or LoggingChannel(),
        scheduler or AsyncioScheduler(clock),
    )
    logger.info("%s context ready (%s)", settings.app_name, settings.environment)
    return context


__all__ = ["LedgerContext", "create_context"]
