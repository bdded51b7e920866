"""Pydantic schemas for persisted records and alert settings."""
from __future__ import annotations

import re
from collections.abc import Mapping
from datetime import datetime, time
from enum import Enum
from typing import Any, ClassVar, Literal, TypeVar

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .clock import ensure_aware
from .exceptions import ValidationError

_HHMM = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")

ModelT = TypeVar("ModelT", bound="LedgerModel")


def parse_hhmm(value: str) -> time:
    match = _HHMM.match(value)
    if match is None:
        raise ValueError(f"'{value}' is not a HH:MM time")
    return time(int(match.group(1)), int(match.group(2)))


def _normalize_threshold(value: Any) -> int | None:
    """Convert threshold inputs to non-negative integers or ``None``."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        if value.strip() == "":
            return None
        try:
            parsed = int(value.strip())
        except ValueError:
            return None
        threshold_int = parsed
    else:
        try:
            threshold_int = int(value)
        except (TypeError, ValueError):
            return None
    if threshold_int < 0:
        return None
    return threshold_int


class LedgerModel(BaseModel):
    """Base model storing attributes in snake_case and records in camelCase."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    @field_validator("*", mode="after")
    @classmethod
    def _aware_datetimes(cls, value: Any) -> Any:
        if isinstance(value, datetime):
            return ensure_aware(value)
        return value

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def field_alias(cls, name: str) -> str:
        info = cls.model_fields.get(name)
        if info is None or info.alias is None:
            return name
        return info.alias

    @classmethod
    def normalize_keys(cls, changes: Mapping[str, Any]) -> dict[str, Any]:
        """Map camelCase keys of ``changes`` to attribute names."""

        lookup = {cls.field_alias(name): name for name in cls.model_fields}
        return {lookup.get(key, key): value for key, value in changes.items()}

    def with_changes(self: ModelT, changes: Mapping[str, Any]) -> ModelT:
        """Return a validated copy with ``changes`` applied."""

        payload = self.model_dump()
        payload.update(self.normalize_keys(changes))
        return parse_record(type(self), payload)

    @classmethod
    def from_record(cls: type[ModelT], record: Mapping[str, Any] | ModelT) -> ModelT:
        return parse_record(cls, record)


def parse_record(model: type[ModelT], payload: Mapping[str, Any] | BaseModel) -> ModelT:
    """Validate ``payload`` into ``model`` raising the ledger's own ``ValidationError``."""

    if isinstance(payload, model):
        return payload.model_copy(deep=True)
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(by_alias=True)
    try:
        return model.model_validate(payload)
    except pydantic.ValidationError as exc:
        fields = [
            ".".join(str(part) for part in error["loc"]) or model.__name__
            for error in exc.errors()
        ]
        raise ValidationError(fields) from exc


def _stringify_scope(value: Any) -> Any:
    if value is None or isinstance(value, str):
        return value
    return str(value)


class PaymentStatus(str, Enum):
    UNPAID = "Unpaid"
    PARTIALLY_PAID = "Partially Paid"
    PAID = "Paid"
    PENDING = "Pending"


class InventoryItem(LedgerModel):
    """A stock row identified by ``item_name`` and ``source`` within a scope."""

    item_name: str = ""
    item_code: str = ""
    carton_quantity: int = 0
    quantity_per_carton: int = 0
    total_quantity: int = 0
    price_per_piece: float = 0
    price_per_carton: float = 0
    purchase_price_per_piece: float = 0
    purchase_price_per_carton: float = 0
    total_amount: float | None = None
    bulk_unit: str = "Carton"
    source: str = "Unknown"
    min_stock_alert: int | None = None
    last_purchase_date: datetime | None = None
    created_at: datetime | None = None
    last_updated: datetime | None = None
    scope_id: str | None = None

    @field_validator("min_stock_alert", mode="before")
    @classmethod
    def _normalize_min_stock(cls, value: Any) -> int | None:
        return _normalize_threshold(value)

    @field_validator("scope_id", mode="before")
    @classmethod
    def _normalize_scope(cls, value: Any) -> Any:
        return _stringify_scope(value)

    @model_validator(mode="after")
    def _derive_total_quantity(self) -> "InventoryItem":
        self.recalculate()
        return self

    def recalculate(self) -> None:
        self.total_quantity = self.carton_quantity * self.quantity_per_carton

    @property
    def is_low_stock(self) -> bool:
        threshold = self.min_stock_alert or 0
        return threshold > 0 and self.carton_quantity <= threshold


class TransactionRecord(LedgerModel):
    """Fields shared by sales, purchases and credits."""

    date_field: ClassVar[str] = ""

    id: str | None = None
    item_name: str = ""
    item_code: str = ""
    carton_quantity: int = 0
    quantity_per_carton: int = 0
    total_quantity: int = 0
    price_per_piece: float = 0
    price_per_carton: float = 0
    total_amount: float | None = None
    scope_id: str | None = None

    @field_validator("id", "scope_id", mode="before")
    @classmethod
    def _stringify_ids(cls, value: Any) -> Any:
        return _stringify_scope(value)

    @model_validator(mode="after")
    def _derive_total_quantity(self) -> "TransactionRecord":
        self.recalculate()
        return self

    def recalculate(self) -> None:
        self.total_quantity = self.carton_quantity * self.quantity_per_carton

    def default_total_amount(self) -> float:
        if self.price_per_carton > 0:
            return self.carton_quantity * self.price_per_carton
        return self.total_quantity * self.price_per_piece

    @property
    def recorded_at(self) -> datetime | None:
        return getattr(self, self.date_field, None)

    @property
    def amount(self) -> float:
        if self.total_amount is None:
            return float(self.default_total_amount())
        return float(self.total_amount)


class SaleRecord(TransactionRecord):
    date_field: ClassVar[str] = "sale_date"

    sale_date: datetime | None = None
    customer_name: str | None = None
    payment_status: PaymentStatus | None = None
    is_converted_credit: bool = False


class PurchaseRecord(TransactionRecord):
    date_field: ClassVar[str] = "purchase_date"

    purchase_date: datetime | None = None
    purchase_price_per_piece: float = 0
    purchase_price_per_carton: float = 0
    source: str | None = None
    bulk_unit: str | None = None
    min_stock_alert: int | None = None

    @field_validator("min_stock_alert", mode="before")
    @classmethod
    def _normalize_min_stock(cls, value: Any) -> int | None:
        return _normalize_threshold(value)

    def default_total_amount(self) -> float:
        if self.purchase_price_per_carton > 0:
            return self.carton_quantity * self.purchase_price_per_carton
        return self.total_quantity * self.purchase_price_per_piece


class CreditRecord(TransactionRecord):
    date_field: ClassVar[str] = "credit_date"

    credit_date: datetime | None = None
    customer_name: str = ""
    payment_status: PaymentStatus = PaymentStatus.UNPAID
    amount_paid: float | None = None
    remaining_balance: float | None = None
    due_date: datetime | None = None


class TimeWindow(LedgerModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    start: str = "09:00"
    end: str = "18:00"

    @field_validator("start", "end")
    @classmethod
    def _validate_hhmm(cls, value: str) -> str:
        parse_hhmm(value)
        return value

    def contains(self, moment: time) -> bool:
        """Whether ``moment`` falls in ``[start, end)``, wrapping past midnight."""

        start = parse_hhmm(self.start)
        end = parse_hhmm(self.end)
        moment = moment.replace(second=0, microsecond=0, tzinfo=None)
        if start == end:
            return False
        if start < end:
            return start <= moment < end
        return moment >= start or moment < end


class QuietHours(TimeWindow):
    enabled: bool = False
    start: str = "22:00"
    end: str = "07:00"


StockAlertFrequency = Literal["immediate", "daily", "weekly"]


class AlertSettings(LedgerModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    enable_stock_alerts: bool = True
    enable_purchase_reminders: bool = True
    enable_credit_reminders: bool = True
    stock_alert_frequency: StockAlertFrequency = "daily"
    credit_reminder_days: int = Field(default=7, ge=0)
    business_hours: TimeWindow = Field(default_factory=TimeWindow)
    quiet_hours: QuietHours = Field(default_factory=QuietHours)


class ScopeSelection(LedgerModel):
    id: str
    name: str = ""

    @field_validator("id", mode="before")
    @classmethod
    def _stringify_id(cls, value: Any) -> Any:
        return _stringify_scope(value)


__all__ = [
    "LedgerModel",
    "parse_record",
    "parse_hhmm",
    "PaymentStatus",
    "InventoryItem",
    "TransactionRecord",
    "SaleRecord",
    "PurchaseRecord",
    "CreditRecord",
    "TimeWindow",
    "QuietHours",
    "StockAlertFrequency",
    "AlertSettings",
    "ScopeSelection",
]
