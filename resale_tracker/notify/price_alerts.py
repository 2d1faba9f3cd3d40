"""Price alert evaluation, throttling and notification."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from resale_tracker import metrics
from resale_tracker.db.models import (
    AlertCondition,
    AlertFrequency,
    AlertType,
    Book,
    Notification,
    PriceAlert,
)
from resale_tracker.db.session import AsyncSessionLocal
from resale_tracker.errors import NotFoundError
from resale_tracker.notify.formatters import alert_reason, alert_title
from resale_tracker.pricing.bookscouter import BookScouterClient
from resale_tracker.utils.clock import utcnow
from resale_tracker.utils.isbn import normalize_isbn
from resale_tracker.worker.refresh import BookRefresher, load_thresholds

logger = logging.getLogger(__name__)

# Minimum time between fresh fetches, and between triggers, per frequency
FREQUENCY_INTERVALS = {
    AlertFrequency.IMMEDIATE.value: timedelta(hours=1),
    AlertFrequency.DAILY.value: timedelta(hours=24),
    AlertFrequency.WEEKLY.value: timedelta(hours=168),
    AlertFrequency.MONTHLY.value: timedelta(hours=720),
}

EQUALS_TOLERANCE = Decimal("0.01")
PERCENTAGE_CHANGE_THRESHOLD = Decimal("0.1")


@dataclass
class AlertCheckResult:
    """Outcome of checking one alert."""

    alert_id: int
    triggered: bool  # a notification was emitted
    current_price: Optional[Decimal]
    target_price: Optional[Decimal]
    condition_met: bool = False
    throttled: bool = False
    reason: str = ""
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "alert_id": self.alert_id,
            "triggered": self.triggered,
            "condition_met": self.condition_met,
            "throttled": self.throttled,
            "current_price": float(self.current_price) if self.current_price is not None else None,
            "target_price": float(self.target_price) if self.target_price is not None else None,
            "reason": self.reason,
            "error": self.error,
        }


def frequency_interval(frequency: str) -> timedelta:
    try:
        return FREQUENCY_INTERVALS[frequency]
    except KeyError:
        raise ValueError(f"Unknown alert frequency: {frequency}")


def is_due(last: Optional[datetime], frequency: str, now: datetime) -> bool:
    """True when at least one frequency interval has passed since last (or never happened)."""
    if last is None:
        return True
    return now - last >= frequency_interval(frequency)


def should_fetch_fresh(last_update: Optional[datetime], frequency: str, now: datetime) -> bool:
    return is_due(last_update, frequency, now)


def should_trigger(last_triggered: Optional[datetime], frequency: str, now: datetime) -> bool:
    return is_due(last_triggered, frequency, now)


def evaluate_condition(condition: str, current_price: Decimal, target_price: Decimal) -> bool:
    """
    Check an alert condition.

    PERCENTAGE_CHANGE compares against the target as the reference price and
    never matches a zero target.
    """
    if condition == AlertCondition.ABOVE.value:
        return current_price > target_price
    if condition == AlertCondition.BELOW.value:
        return current_price < target_price
    if condition == AlertCondition.EQUALS.value:
        return abs(current_price - target_price) < EQUALS_TOLERANCE
    if condition == AlertCondition.PERCENTAGE_CHANGE.value:
        if target_price == 0:
            return False
        return abs((current_price - target_price) / target_price) >= PERCENTAGE_CHANGE_THRESHOLD
    return False


class AlertEvaluator:
    """
    Evaluates active price alerts and emits notifications.

    Each alert is checked in its own session; a failure on one alert is
    reported in its result and does not stop the others.
    """

    def __init__(
        self,
        client: BookScouterClient,
        refresher: BookRefresher,
        session_factory=None,
        notifier=None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.client = client
        self.refresher = refresher
        self.session_factory = session_factory or AsyncSessionLocal
        self.notifier = notifier
        self.clock = clock

    async def evaluate_all(self) -> list[AlertCheckResult]:
        """Deactivate expired alerts, then check every remaining active alert."""
        now = self.clock()
        await self.deactivate_expired(now)

        async with self.session_factory() as db:
            result = await db.execute(
                select(PriceAlert.id).where(PriceAlert.is_active.is_(True)).order_by(PriceAlert.id)
            )
            alert_ids = [row[0] for row in result.all()]

        if not alert_ids:
            logger.info("No active price alerts to check")
            return []

        results = []
        for alert_id in alert_ids:
            results.append(await self.check_alert(alert_id, now))

        triggered = sum(1 for r in results if r.triggered)
        errors = sum(1 for r in results if r.error)
        logger.info(
            f"Checked {len(results)} price alerts: {triggered} triggered, {errors} errors"
        )
        return results

    async def deactivate_expired(self, now: Optional[datetime] = None) -> int:
        now = now or self.clock()
        async with self.session_factory() as db:
            result = await db.execute(
                select(PriceAlert).where(
                    PriceAlert.is_active.is_(True),
                    PriceAlert.expires_at.is_not(None),
                    PriceAlert.expires_at <= now,
                )
            )
            expired = result.scalars().all()
            for alert in expired:
                alert.is_active = False
            await db.commit()

        if expired:
            logger.info(f"Deactivated {len(expired)} expired price alerts")
        return len(expired)

    async def check_alert(self, alert_id: int, now: Optional[datetime] = None) -> AlertCheckResult:
        """Check one alert and, when it fires past its throttle, notify."""
        now = now or self.clock()

        async with self.session_factory() as db:
            alert = await db.get(PriceAlert, alert_id)
            if alert is None:
                # Deleted after the active alerts were listed
                metrics.record_alert_check("error")
                logger.warning(f"Price alert {alert_id} disappeared before it was checked")
                return AlertCheckResult(
                    alert_id=alert_id,
                    triggered=False,
                    current_price=None,
                    target_price=None,
                    error=f"Price alert {alert_id} not found",
                )

            target_price = alert.target_price
            current_price: Optional[Decimal] = None

            try:
                current_price, book = await self._current_price(db, alert, now)

                if not evaluate_condition(alert.condition, current_price, target_price):
                    await db.commit()
                    metrics.record_alert_check("quiet")
                    return AlertCheckResult(
                        alert_id=alert_id,
                        triggered=False,
                        current_price=current_price,
                        target_price=target_price,
                    )

                reason = alert_reason(
                    alert.alert_type,
                    current_price,
                    target_price,
                    title=book.title if book is not None else None,
                    isbn=book.isbn if book is not None else alert.isbn,
                )

                if not should_trigger(alert.last_triggered, alert.frequency, now):
                    await db.commit()
                    metrics.record_alert_check("throttled")
                    logger.debug(f"Alert {alert_id} condition met but throttled ({alert.frequency})")
                    return AlertCheckResult(
                        alert_id=alert_id,
                        triggered=False,
                        current_price=current_price,
                        target_price=target_price,
                        condition_met=True,
                        throttled=True,
                        reason=reason,
                    )

                notification = self._trigger(alert, book, current_price, reason, now)
                db.add(notification)
                await db.commit()

            except Exception as e:
                await db.rollback()
                metrics.record_alert_check("error")
                logger.error(f"Error checking alert {alert_id}: {type(e).__name__}: {e}")
                return AlertCheckResult(
                    alert_id=alert_id,
                    triggered=False,
                    current_price=current_price,
                    target_price=target_price,
                    error=str(e) or type(e).__name__,
                )

            metrics.record_alert_check("triggered")
            metrics.notifications_sent_total.labels(alert_type=alert.alert_type).inc()
            logger.info(f"Alert triggered: {alert_id} - {reason}")

            if self.notifier is not None and alert.email_notification:
                await self._fan_out(alert, notification, current_price)

            return AlertCheckResult(
                alert_id=alert_id,
                triggered=True,
                current_price=current_price,
                target_price=target_price,
                condition_met=True,
                reason=reason,
            )

    async def _current_price(
        self, db: AsyncSession, alert: PriceAlert, now: datetime
    ) -> tuple[Decimal, Optional[Book]]:
        if alert.book_id is not None:
            book = await db.get(Book, alert.book_id)
            if book is None:
                raise NotFoundError(f"Book {alert.book_id} not found")

            if should_fetch_fresh(book.last_price_update, alert.frequency, now):
                thresholds = await load_thresholds(db, book.user_id)
                outcome = await self.refresher.refresh(db, book, thresholds, alert.user_id)
                return outcome.current_price, book
            return book.current_price, book

        if alert.current_price is not None and not should_fetch_fresh(
            alert.last_checked_at, alert.frequency, now
        ):
            return alert.current_price, None

        quote = await self.client.fetch_current_price(alert.isbn, alert.user_id)
        alert.current_price = quote.current_price
        alert.last_checked_at = now
        return quote.current_price, None

    @staticmethod
    def _trigger(
        alert: PriceAlert,
        book: Optional[Book],
        current_price: Decimal,
        reason: str,
        now: datetime,
    ) -> Notification:
        alert.triggered = True
        alert.trigger_count = (alert.trigger_count or 0) + 1
        alert.last_triggered = now
        alert.current_price = current_price

        return Notification(
            user_id=alert.user_id,
            price_alert_id=alert.id,
            type="PRICE_ALERT",
            title=alert_title(alert.alert_type),
            message=reason,
            data={
                "alertId": alert.id,
                "bookId": alert.book_id,
                "isbn": book.isbn if book is not None else alert.isbn,
                "currentPrice": str(current_price),
                "targetPrice": str(alert.target_price),
                "alertType": alert.alert_type,
                "condition": alert.condition,
            },
            created_at=now,
        )

    async def _fan_out(
        self, alert: PriceAlert, notification: Notification, current_price: Decimal
    ) -> None:
        try:
            await self.notifier.send_price_alert(
                title=notification.title,
                reason=notification.message,
                isbn=notification.data.get("isbn"),
                current_price=current_price,
                target_price=alert.target_price,
                condition=alert.condition,
            )
        except Exception as e:
            # The notification row is already persisted
            logger.warning(f"Webhook delivery failed for alert {alert.id}: {e}")


async def create_alert(
    db: AsyncSession,
    user_id: int,
    alert_type: str,
    target_price: Decimal,
    book_id: Optional[int] = None,
    isbn: Optional[str] = None,
    condition: str = AlertCondition.BELOW.value,
    frequency: str = AlertFrequency.IMMEDIATE.value,
    email_notification: bool = True,
    expires_at: Optional[datetime] = None,
) -> PriceAlert:
    """
    Create an alert on a tracked book or a bare ISBN.

    Raises:
        ValueError: On an unknown type/condition/frequency, a negative target
            or when neither book_id nor isbn is given
        NotFoundError: If book_id does not name one of the user's books
    """
    if alert_type not in AlertType._value2member_map_:
        raise ValueError(f"Unknown alert type: {alert_type}")
    if condition not in AlertCondition._value2member_map_:
        raise ValueError(f"Unknown alert condition: {condition}")
    frequency_interval(frequency)
    if target_price < 0:
        raise ValueError("Target price must not be negative")
    if book_id is None and not isbn:
        raise ValueError("Either book_id or isbn is required")

    if book_id is not None:
        book = await db.get(Book, book_id)
        if book is None or book.user_id != user_id:
            raise NotFoundError(f"Book {book_id} not found")
        isbn = isbn or book.isbn
    if isbn:
        isbn = normalize_isbn(isbn)

    alert = PriceAlert(
        user_id=user_id,
        book_id=book_id,
        isbn=isbn,
        alert_type=alert_type,
        condition=condition,
        frequency=frequency,
        target_price=target_price,
        email_notification=email_notification,
        expires_at=expires_at,
        is_active=True,
        triggered=False,
        trigger_count=0,
    )
    db.add(alert)
    await db.commit()
    await db.refresh(alert)

    logger.info(f"Created {alert_type} alert {alert.id} for user {user_id} ({isbn})")
    return alert


async def list_user_alerts(
    db: AsyncSession, user_id: int, active_only: bool = False
) -> list[PriceAlert]:
    """A user's alerts, newest first."""
    query = select(PriceAlert).where(PriceAlert.user_id == user_id)
    if active_only:
        query = query.where(PriceAlert.is_active.is_(True))
    result = await db.execute(query.order_by(PriceAlert.created_at.desc(), PriceAlert.id.desc()))
    return list(result.scalars().all())
