"""Exception hierarchy shared by the ledger and the alert engine."""
from __future__ import annotations

from collections.abc import Iterable


class LedgerError(Exception):
    """Base class for every error raised by the ledger core."""


class ValidationError(LedgerError):
    """A record is missing a required field or carries a negative value."""

    def __init__(self, fields: Iterable[str], message: str | None = None) -> None:
        self.fields = tuple(dict.fromkeys(fields))
        if message is None:
            message = f"Invalid or missing fields: {', '.join(self.fields)}"
        super().__init__(message)


class StockError(LedgerError):
    """Inventory cannot cover the requested quantity."""

    def __init__(
        self,
        item_name: str,
        *,
        requested: int,
        available: int,
        unit: str = "cartons",
    ) -> None:
        self.item_name = item_name
        self.requested = requested
        self.available = available
        self.unit = unit
        if unit == "pieces per carton":
            message = (
                f"'{item_name}' has {available} pieces per carton in inventory, "
                f"{requested} requested"
            )
        else:
            message = f"Only {available} {unit} of '{item_name}' available, {requested} requested"
        super().__init__(message)

    @property
    def shortfall(self) -> int:
        return max(0, self.requested - self.available)


class NotFoundError(LedgerError):
    """A record id or item name no longer exists."""

    def __init__(self, kind: str, identifier: str) -> None:
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} '{identifier}' not found")


class StorageError(LedgerError):
    """The underlying key-value store failed."""


__all__ = [
    "LedgerError",
    "ValidationError",
    "StockError",
    "NotFoundError",
    "StorageError",
]
