"""Read-only aggregates for dashboards and the credit list."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import List, Literal, Sequence

from pydantic import BaseModel

from .exceptions import ValidationError
from .schemas import CreditRecord, InventoryItem, PurchaseRecord, SaleRecord, TransactionRecord

DateFilter = Literal["all", "today", "week", "month"]
CreditSort = Literal["date", "customer", "amount"]
SortOrder = Literal["asc", "desc"]

_FILTER_WINDOWS = {"week": timedelta(days=7), "month": timedelta(days=30)}


class DashboardSummary(BaseModel):
    inventory_count: int
    todays_sales: float
    purchase_count: int
    credit_sales: float
    recent_credits: List[CreditRecord]


class CreditStatistics(BaseModel):
    total_credits: int
    total_amount: float
    todays_amount: float


def record_amount(record: TransactionRecord) -> float:
    """Stored total, else cartons times carton price, else pieces times piece price."""

    return float(
        record.total_amount
        or record.carton_quantity * record.price_per_carton
        or record.total_quantity * record.price_per_piece
    )


def _local_day(record: TransactionRecord, now: datetime):
    when = record.recorded_at
    if when is None:
        return None
    return when.astimezone(now.tzinfo).date()


def _start_of_day(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def dashboard_summary(
    inventory: Sequence[InventoryItem],
    sales: Sequence[SaleRecord],
    purchases: Sequence[PurchaseRecord],
    credits: Sequence[CreditRecord],
    now: datetime,
) -> DashboardSummary:
    today = now.date()
    return DashboardSummary(
        inventory_count=len(inventory),
        todays_sales=sum(
            float(sale.total_amount or 0) for sale in sales if _local_day(sale, now) == today
        ),
        purchase_count=len(purchases),
        credit_sales=sum(float(credit.total_amount or 0) for credit in credits),
        recent_credits=list(credits[:5]),
    )


def credit_statistics(credits: Sequence[CreditRecord], now: datetime) -> CreditStatistics:
    today = now.date()
    return CreditStatistics(
        total_credits=len(credits),
        total_amount=sum(record_amount(credit) for credit in credits),
        todays_amount=sum(
            record_amount(credit) for credit in credits if _local_day(credit, now) == today
        ),
    )


_EARLIEST = datetime.min.replace(tzinfo=timezone.utc)


def _by_date(credit: CreditRecord) -> datetime:
    return credit.credit_date or _EARLIEST


def _by_customer(credit: CreditRecord) -> str:
    return (credit.customer_name or "").lower()


_SORT_KEYS = {"date": _by_date, "customer": _by_customer, "amount": record_amount}


def _matches(credit: CreditRecord, query: str) -> bool:
    for value in (credit.item_name, credit.item_code, credit.customer_name):
        if value and query in value.lower():
            return True
    return False


def filter_credits(
    credits: Sequence[CreditRecord],
    now: datetime,
    *,
    query: str = "",
    date_filter: DateFilter = "all",
    sort_by: CreditSort = "date",
    order: SortOrder = "desc",
) -> List[CreditRecord]:
    """Search, restrict to a recent period, then sort the credit list."""

    filtered = list(credits)
    needle = query.strip().lower()
    if needle:
        filtered = [credit for credit in filtered if _matches(credit, needle)]

    if date_filter != "all":
        since: datetime
        if date_filter == "today":
            since = _start_of_day(now)
        elif date_filter in _FILTER_WINDOWS:
            since = _start_of_day(now) - _FILTER_WINDOWS[date_filter]
        else:
            raise ValidationError(["dateFilter"], f"Unknown date filter '{date_filter}'")
        filtered = [
            credit
            for credit in filtered
            if credit.credit_date is not None and credit.credit_date >= since
        ]

    key = _SORT_KEYS.get(sort_by)
    if key is None:
        raise ValidationError(["sortBy"], f"Unknown sort key '{sort_by}'")
    if order not in ("asc", "desc"):
        raise ValidationError(["order"], f"Unknown sort order '{order}'")
    filtered.sort(key=key, reverse=order == "desc")
    return filtered


__all__ = [
    "DashboardSummary",
    "CreditStatistics",
    "dashboard_summary",
    "credit_statistics",
    "filter_credits",
    "record_amount",
]
