"""Persistence of alert settings and last-fired alert times."""
from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime
from typing import Any, Dict

from .clock import to_epoch_ms
from .exceptions import StorageError, ValidationError
from .records import RecordStore
from .schemas import AlertSettings

logger = logging.getLogger(__name__)

ALERT_SETTINGS_KEY = "alert_settings"
LAST_ALERT_KEY = "last_alert_times"


def low_stock_key(item_name: str) -> str:
    return f"low_stock_{item_name}"


class SettingsStore:
    """Reads and writes :class:`AlertSettings` and the throttling map."""

    def __init__(self, records: RecordStore) -> None:
        self.records = records

    async def initialize(self) -> AlertSettings:
        """Persist the defaults unless settings were saved before."""

        payload = await self.records.read_json(ALERT_SETTINGS_KEY)
        if payload is None:
            settings = AlertSettings()
            await self.records.write_json(ALERT_SETTINGS_KEY, settings.to_record())
            logger.info("Stored default alert settings")
            return settings
        return self._parse(payload)

    async def get(self) -> AlertSettings:
        payload = await self.records.read_json(ALERT_SETTINGS_KEY)
        if payload is None:
            return AlertSettings()
        return self._parse(payload)

    async def update(self, changes: Mapping[str, Any] | None = None, **kwargs: Any) -> AlertSettings:
        """Merge ``changes`` into the stored settings; nested windows merge too."""

        current = await self.get()
        merged = current.model_dump()
        incoming = AlertSettings.normalize_keys({**(changes or {}), **kwargs})
        for name, value in incoming.items():
            if name in ("business_hours", "quiet_hours") and isinstance(value, Mapping):
                window = dict(merged.get(name) or {})
                window.update(value)
                merged[name] = window
            else:
                merged[name] = value
        settings = AlertSettings.from_record(merged)
        await self.records.write_json(ALERT_SETTINGS_KEY, settings.to_record())
        return settings

    async def last_alert_times(self) -> Dict[str, int]:
        payload = await self.records.read_json(LAST_ALERT_KEY)
        if payload is None:
            return {}
        if not isinstance(payload, dict):
            raise StorageError("Last alert times are not a JSON object")
        times: Dict[str, int] = {}
        for key, value in payload.items():
            try:
                times[key] = int(value)
            except (TypeError, ValueError):
                logger.warning("Ignoring unreadable last alert time for %s", key)
        return times

    async def save_alert_times(self, times: Mapping[str, int]) -> None:
        await self.records.write_json(LAST_ALERT_KEY, dict(times))

    async def record_alert(self, key: str, when: datetime) -> None:
        times = await self.last_alert_times()
        times[key] = to_epoch_ms(when)
        await self.save_alert_times(times)

    async def reset_alert_times(self) -> None:
        await self.records.remove_key(LAST_ALERT_KEY)

    @staticmethod
    def _parse(payload: Any) -> AlertSettings:
        if not isinstance(payload, dict):
            raise StorageError("Alert settings are not a JSON object")
        try:
            return AlertSettings.from_record(payload)
        except ValidationError as exc:
            raise StorageError(f"Stored alert settings are malformed: {exc}") from exc


__all__ = [
    "SettingsStore",
    "ALERT_SETTINGS_KEY",
    "LAST_ALERT_KEY",
    "low_stock_key",
]
