from __future__ import annotations

from collections.abc import AsyncIterator
from datetime import datetime, timezone
from typing import Any

import pytest

from retail_ledger.clock import ManualClock
from retail_ledger.config import Settings
from retail_ledger.context import LedgerContext, create_context
from retail_ledger.notifications import RecordingChannel
from retail_ledger.scheduler import VirtualScheduler
from retail_ledger.storage import MemoryStore

# A Monday, inside the default 09:00-18:00 business hours.
START = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        _env_file=None,
        app_name="Test Ledger",
        environment="test",
        storage_url="memory://",
        default_timezone="UTC",
    )


@pytest.fixture()
def clock() -> ManualClock:
    return ManualClock(START)


@pytest.fixture()
def scheduler(clock: ManualClock) -> VirtualScheduler:
    return VirtualScheduler(clock)


@pytest.fixture()
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture()
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture()
async def context(
    settings: Settings,
    store: MemoryStore,
    clock: ManualClock,
    channel: RecordingChannel,
    scheduler: VirtualScheduler,
) -> AsyncIterator[LedgerContext]:
    ctx = await create_context(
        settings, store=store, clock=clock, channel=channel, scheduler=scheduler
    )
    yield ctx
    await ctx.aclose()


async def stock_item(context: LedgerContext, name: str = "Rice", **overrides: Any):
    payload = {
        "itemName": name,
        "cartonQuantity": 10,
        "quantityPerCarton": 6,
        "pricePerPiece": 2.5,
        "pricePerCarton": 15,
        "source": "Purchase",
    }
    payload.update(overrides)
    return await context.inventory.upsert_item(payload, from_purchase=False)
