"""Retail ledger: inventory, sales, purchases and credits with stock alerts."""
from __future__ import annotations

from .clock import ManualClock, SystemClock
from .config import Settings, configure_logging, get_settings
from .context import LedgerContext, create_context
from .exceptions import LedgerError, NotFoundError, StockError, StorageError, ValidationError
from .notifications import LoggingChannel, Notification, RecordingChannel, route_notification
from .scheduler import AsyncioScheduler, VirtualScheduler
from .schemas import (
    AlertSettings,
    CreditRecord,
    InventoryItem,
    PaymentStatus,
    PurchaseRecord,
    SaleRecord,
)
from .storage import JsonFileStore, MemoryStore, SqlStore, open_store

__all__ = [
    "AlertSettings",
    "AsyncioScheduler",
    "CreditRecord",
    "InventoryItem",
    "JsonFileStore",
    "LedgerContext",
    "LedgerError",
    "LoggingChannel",
    "ManualClock",
    "MemoryStore",
    "Notification",
    "NotFoundError",
    "PaymentStatus",
    "PurchaseRecord",
    "RecordingChannel",
    "SaleRecord",
    "Settings",
    "SqlStore",
    "StockError",
    "StorageError",
    "SystemClock",
    "ValidationError",
    "VirtualScheduler",
    "configure_logging",
    "create_context",
    "get_settings",
    "open_store",
    "route_notification",
]
