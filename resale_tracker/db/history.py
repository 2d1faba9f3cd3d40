"""Typed, append-only price history log stored on each book record."""

import json
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from sqlalchemy import JSON, TypeDecorator

logger = logging.getLogger(__name__)

PRICE_HISTORY_SCHEMA_VERSION = 1


class PriceHistoryEntry(BaseModel):
    """One observed price for a book."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    vendor_name: str = Field(
        default="Unknown",
        validation_alias=AliasChoices("vendor_name", "vendorName"),
    )
    price: Decimal
    captured_at: datetime = Field(
        validation_alias=AliasChoices("captured_at", "timestamp"),
    )


class PriceHistoryLog(BaseModel):
    """
    Ordered, append-only sequence of price observations.

    The log is immutable: appended() returns a new log, which also makes the
    change visible to SQLAlchemy when assigned back to the column.
    """

    model_config = ConfigDict(frozen=True)

    schema_version: int = PRICE_HISTORY_SCHEMA_VERSION
    entries: tuple[PriceHistoryEntry, ...] = ()

    def __len__(self) -> int:
        return len(self.entries)

    def appended(self, entry: PriceHistoryEntry) -> "PriceHistoryLog":
        """Return a new log with entry added at the end."""
        return PriceHistoryLog(
            schema_version=self.schema_version,
            entries=self.entries + (entry,),
        )

    def latest(self) -> Optional[PriceHistoryEntry]:
        """Most recent entry by capture time (insertion order breaks ties)."""
        if not self.entries:
            return None
        _, entry = max(
            enumerate(self.entries),
            key=lambda item: (item[1].captured_at, item[0]),
        )
        return entry

    def highest(self) -> Optional[PriceHistoryEntry]:
        """Entry with the highest price (earliest wins on ties)."""
        best: Optional[PriceHistoryEntry] = None
        for entry in self.entries:
            if best is None or entry.price > best.price:
                best = entry
        return best

    @classmethod
    def from_stored(cls, value: Any) -> "PriceHistoryLog":
        """
        Build a log from a stored JSON value.

        Accepts the current versioned document as well as the legacy shape:
        a bare list (or a JSON string holding a list) of
        {vendorName, price, timestamp} objects.
        """
        if value is None or value == "":
            return cls()
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            value = json.loads(value)
        if isinstance(value, list):
            value = {"schema_version": PRICE_HISTORY_SCHEMA_VERSION, "entries": value}
        if not isinstance(value, dict):
            raise ValueError(f"Unsupported price history value: {type(value).__name__}")

        version = value.get("schema_version", PRICE_HISTORY_SCHEMA_VERSION)
        if version > PRICE_HISTORY_SCHEMA_VERSION:
            raise ValueError(f"Unknown price history schema version {version}")

        return cls.model_validate(
            {"schema_version": PRICE_HISTORY_SCHEMA_VERSION, "entries": value.get("entries", [])}
        )


class PriceHistoryType(TypeDecorator):
    """
    SQLAlchemy TypeDecorator persisting a PriceHistoryLog as JSON.

    Usage:
        price_history: Mapped[PriceHistoryLog] = mapped_column(PriceHistoryType())
    """

    impl = JSON
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Any) -> dict | None:
        if value is None:
            return None
        log = PriceHistoryLog.from_stored(value)
        return log.model_dump(mode="json")

    def process_result_value(self, value: Any, dialect: Any) -> PriceHistoryLog:
        return PriceHistoryLog.from_stored(value)
