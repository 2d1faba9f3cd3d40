"""SQLAlchemy database models."""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from resale_tracker.db.encryption import EncryptedString
from resale_tracker.db.history import PriceHistoryLog, PriceHistoryType
from resale_tracker.utils.clock import utcnow


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class AlertType(str, Enum):
    PRICE_TARGET = "PRICE_TARGET"
    PRICE_DROP = "PRICE_DROP"
    PRICE_SPIKE = "PRICE_SPIKE"
    MARKET_TREND = "MARKET_TREND"
    PROFIT_OPPORTUNITY = "PROFIT_OPPORTUNITY"


class AlertCondition(str, Enum):
    ABOVE = "ABOVE"
    BELOW = "BELOW"
    EQUALS = "EQUALS"
    PERCENTAGE_CHANGE = "PERCENTAGE_CHANGE"


class AlertFrequency(str, Enum):
    IMMEDIATE = "IMMEDIATE"
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class User(Base):
    """Product user. Owns the cached BookScouter token."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(256), nullable=False, unique=True)
    name: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    # Written only by TokenManager, always as a pair
    bookscouter_token: Mapped[Optional[str]] = mapped_column(
        EncryptedString(4096), nullable=True
    )
    bookscouter_token_expiry: Mapped[Optional[datetime]] = mapped_column(
        DateTime, nullable=True
    )

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    settings: Mapped[Optional["UserSettings"]] = relationship(
        "UserSettings", back_populates="user", cascade="all, delete-orphan", uselist=False
    )
    batches: Mapped[list["Batch"]] = relationship(
        "Batch", back_populates="user", cascade="all, delete-orphan"
    )
    alerts: Mapped[list["PriceAlert"]] = relationship(
        "PriceAlert", back_populates="user", cascade="all, delete-orphan"
    )


class UserSettings(Base):
    """Per-user tier thresholds and notification preferences."""

    __tablename__ = "user_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id"), nullable=False, unique=True
    )
    # Percent-of-high boundaries: >= upper is high value, >= lower is mid value
    upper_threshold: Mapped[Decimal] = mapped_column(
        Numeric(7, 2), default=Decimal("50"), nullable=False
    )
    lower_threshold: Mapped[Decimal] = mapped_column(
        Numeric(7, 2), default=Decimal("1"), nullable=False
    )
    email_notifications: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    user: Mapped["User"] = relationship("User", back_populates="settings")


class Batch(Base):
    """A user's group of books, with the summary written by batch refreshes."""

    __tablename__ = "batches"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(128), nullable=False)

    # Summary
    total_books: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    high_value_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    mid_value_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    low_value_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_value: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), default=Decimal("0"), nullable=False
    )
    average_percent: Mapped[Decimal] = mapped_column(
        Numeric(9, 2), default=Decimal("0"), nullable=False
    )
    highest_price: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), default=Decimal("0"), nullable=False
    )
    highest_price_isbn: Mapped[Optional[str]] = mapped_column(String(13), nullable=True)
    last_price_update: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    user: Mapped["User"] = relationship("User", back_populates="batches")
    books: Mapped[list["Book"]] = relationship(
        "Book", back_populates="batch", order_by="Book.id"
    )


class Book(Base):
    """A tracked book and its latest resolved pricing."""

    __tablename__ = "books"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    batch_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("batches.id"), nullable=True
    )
    isbn: Mapped[Optional[str]] = mapped_column(String(13), nullable=True, index=True)
    isbn13: Mapped[Optional[str]] = mapped_column(String(13), nullable=True)
    title: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    current_price: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), default=Decimal("0"), nullable=False
    )
    reference_price: Mapped[Optional[Decimal]] = mapped_column(
        Numeric(10, 2), nullable=True
    )  # Amazon lowest price reported alongside the offers
    best_vendor_name: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    historical_high: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), default=Decimal("0"), nullable=False
    )
    percent_of_high: Mapped[Decimal] = mapped_column(
        Numeric(9, 2), default=Decimal("0"), nullable=False
    )
    tier: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)  # high_value, mid_value, low_value
    price_history: Mapped[PriceHistoryLog] = mapped_column(
        PriceHistoryType(), default=lambda: PriceHistoryLog(), nullable=False
    )
    last_price_update: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    batch: Mapped[Optional["Batch"]] = relationship("Batch", back_populates="books")
    alerts: Mapped[list["PriceAlert"]] = relationship("PriceAlert", back_populates="book")


class PriceAlert(Base):
    """User-defined price condition on a tracked book or a bare ISBN."""

    __tablename__ = "price_alerts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    book_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("books.id"), nullable=True
    )
    isbn: Mapped[Optional[str]] = mapped_column(String(13), nullable=True)

    alert_type: Mapped[str] = mapped_column(String(32), nullable=False)
    condition: Mapped[str] = mapped_column(
        String(32), default=AlertCondition.BELOW.value, nullable=False
    )
    frequency: Mapped[str] = mapped_column(
        String(16), default=AlertFrequency.IMMEDIATE.value, nullable=False
    )
    target_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    current_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    triggered: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    trigger_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_triggered: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    last_checked_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    email_notification: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    user: Mapped["User"] = relationship("User", back_populates="alerts")
    book: Mapped[Optional["Book"]] = relationship("Book", back_populates="alerts")
    notifications: Mapped[list["Notification"]] = relationship(
        "Notification", back_populates="price_alert", cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint(
            "book_id IS NOT NULL OR isbn IS NOT NULL", name="ck_price_alert_target"
        ),
    )


class Notification(Base):
    """Notification event emitted when an alert fires."""

    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    price_alert_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("price_alerts.id"), nullable=True
    )
    type: Mapped[str] = mapped_column(String(32), default="PRICE_ALERT", nullable=False)
    title: Mapped[str] = mapped_column(String(128), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    read_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    price_alert: Mapped[Optional["PriceAlert"]] = relationship(
        "PriceAlert", back_populates="notifications"
    )


class RefreshJob(Base):
    """Tracks batch price refresh progress and outcome."""

    __tablename__ = "refresh_jobs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)  # UUID hex
    batch_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), default=JobStatus.PENDING.value, nullable=False, index=True
    )  # pending, running, completed, failed
    requested_isbns: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)

    # Progress tracking
    total_items: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    processed_items: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    success_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

