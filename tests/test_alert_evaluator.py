"""Tests for price alert evaluation and throttling."""

from datetime import timedelta
from decimal import Decimal

import pytest
from sqlalchemy import func, select

from resale_tracker.db.models import (
    AlertCondition,
    AlertFrequency,
    AlertType,
    Book,
    Notification,
    PriceAlert,
)
from resale_tracker.errors import NotFoundError
from resale_tracker.notify.price_alerts import (
    AlertEvaluator,
    create_alert,
    evaluate_condition,
    list_user_alerts,
    should_trigger,
)

from factories import NOW, create_user, sell_payload

ISBN = "9780134093413"


class RecordingNotifier:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent = []

    async def send_price_alert(self, **kwargs):
        self.sent.append(kwargs)
        if self.fail:
            raise RuntimeError("webhook down")
        return "123"


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def evaluator(price_client, refresher, session_factory, notifier, clock):
    return AlertEvaluator(
        price_client,
        refresher,
        session_factory=session_factory,
        notifier=notifier,
        clock=clock,
    )


async def tracked_alert(
    session_factory,
    *,
    price="5",
    last_price_update=NOW - timedelta(hours=2),
    target="10",
    condition=AlertCondition.BELOW.value,
    frequency=AlertFrequency.DAILY.value,
    alert_type=AlertType.PRICE_DROP.value,
    last_triggered=None,
    **alert_fields,
) -> tuple[int, int]:
    user_id = await create_user(session_factory)
    async with session_factory() as db:
        book = Book(
            user_id=user_id,
            isbn=ISBN,
            title="Campbell Biology",
            current_price=Decimal(price),
            last_price_update=last_price_update,
        )
        db.add(book)
        await db.flush()
        alert = PriceAlert(
            user_id=user_id,
            book_id=book.id,
            alert_type=alert_type,
            condition=condition,
            frequency=frequency,
            target_price=Decimal(target),
            last_triggered=last_triggered,
            trigger_count=1 if last_triggered else 0,
            **alert_fields,
        )
        db.add(alert)
        await db.commit()
        return alert.id, book.id


async def isbn_alert(session_factory, user_id, isbn=ISBN, target="10", **fields) -> int:
    async with session_factory() as db:
        alert = PriceAlert(
            user_id=user_id,
            isbn=isbn,
            alert_type=fields.pop("alert_type", AlertType.PRICE_TARGET.value),
            condition=fields.pop("condition", AlertCondition.BELOW.value),
            frequency=fields.pop("frequency", AlertFrequency.IMMEDIATE.value),
            target_price=Decimal(target),
            **fields,
        )
        db.add(alert)
        await db.commit()
        return alert.id


async def notification_count(session_factory) -> int:
    async with session_factory() as db:
        return (await db.execute(select(func.count(Notification.id)))).scalar_one()


@pytest.mark.parametrize(
    "condition, current, target, expected",
    [
        (AlertCondition.ABOVE.value, "10.01", "10", True),
        (AlertCondition.ABOVE.value, "10", "10", False),
        (AlertCondition.BELOW.value, "9.99", "10", True),
        (AlertCondition.BELOW.value, "10", "10", False),
        (AlertCondition.EQUALS.value, "10.009", "10", True),
        (AlertCondition.EQUALS.value, "10.01", "10", False),
        (AlertCondition.PERCENTAGE_CHANGE.value, "11", "10", True),
        (AlertCondition.PERCENTAGE_CHANGE.value, "9", "10", True),
        (AlertCondition.PERCENTAGE_CHANGE.value, "10.5", "10", False),
        (AlertCondition.PERCENTAGE_CHANGE.value, "5", "0", False),
        ("SIDEWAYS", "5", "10", False),
    ],
)
def test_evaluate_condition(condition, current, target, expected):
    assert evaluate_condition(condition, Decimal(current), Decimal(target)) is expected


@pytest.mark.parametrize(
    "frequency, hours_ago, expected",
    [
        (AlertFrequency.IMMEDIATE.value, 0.5, False),
        (AlertFrequency.IMMEDIATE.value, 1, True),
        (AlertFrequency.DAILY.value, 23, False),
        (AlertFrequency.DAILY.value, 25, True),
        (AlertFrequency.WEEKLY.value, 167, False),
        (AlertFrequency.MONTHLY.value, 720, True),
    ],
)
def test_should_trigger_follows_frequency(frequency, hours_ago, expected):
    assert should_trigger(NOW - timedelta(hours=hours_ago), frequency, NOW) is expected


def test_never_triggered_alert_may_trigger():
    assert should_trigger(None, AlertFrequency.MONTHLY.value, NOW) is True


@pytest.mark.asyncio
async def test_daily_alert_triggered_23h_ago_is_throttled(evaluator, session_factory, bookscouter):
    alert_id, _ = await tracked_alert(session_factory, last_triggered=NOW - timedelta(hours=23))

    [result] = await evaluator.evaluate_all()

    assert result.alert_id == alert_id
    assert result.condition_met is True
    assert result.throttled is True
    assert result.triggered is False
    assert await notification_count(session_factory) == 0
    assert bookscouter.requests == []
    async with session_factory() as db:
        alert = await db.get(PriceAlert, alert_id)
    assert alert.trigger_count == 1
    assert alert.last_triggered == NOW - timedelta(hours=23)


@pytest.mark.asyncio
async def test_daily_alert_triggered_25h_ago_fires(evaluator, session_factory, notifier):
    alert_id, _ = await tracked_alert(session_factory, last_triggered=NOW - timedelta(hours=25))

    [result] = await evaluator.evaluate_all()

    assert result.triggered is True
    assert result.current_price == Decimal("5")
    assert result.reason == "Campbell Biology price dropped to $5.00 (50.0% decrease)"

    async with session_factory() as db:
        alert = await db.get(PriceAlert, alert_id)
        notification = (await db.execute(select(Notification))).scalar_one()

    assert alert.trigger_count == 2
    assert alert.triggered is True
    assert alert.last_triggered == NOW
    assert alert.current_price == Decimal("5")
    assert notification.price_alert_id == alert_id
    assert notification.type == "PRICE_ALERT"
    assert notification.title == "📉 Price Drop Alert"
    assert notification.message == result.reason
    assert notification.data["isbn"] == ISBN
    assert notification.read is False
    assert len(notifier.sent) == 1


@pytest.mark.asyncio
async def test_unmet_condition_does_nothing(evaluator, session_factory):
    await tracked_alert(session_factory, price="15")

    [result] = await evaluator.evaluate_all()

    assert result.condition_met is False
    assert result.triggered is False
    assert await notification_count(session_factory) == 0


@pytest.mark.asyncio
async def test_stale_tracked_book_is_refreshed_through_pipeline(evaluator, session_factory, bookscouter):
    bookscouter.sell[ISBN] = sell_payload([("BooksRun", 12)])
    alert_id, book_id = await tracked_alert(
        session_factory,
        last_price_update=None,
        condition=AlertCondition.ABOVE.value,
        frequency=AlertFrequency.IMMEDIATE.value,
        alert_type=AlertType.PRICE_SPIKE.value,
    )

    [result] = await evaluator.evaluate_all()

    assert result.triggered is True
    assert result.current_price == Decimal("12")
    assert result.reason == "Campbell Biology price spiked to $12.00 (20.0% increase)"
    async with session_factory() as db:
        book = await db.get(Book, book_id)
    assert book.current_price == Decimal("12")
    assert book.tier == "high_value"
    assert book.last_price_update == NOW
    assert len(book.price_history) == 1


@pytest.mark.asyncio
async def test_bare_isbn_alert_fetches_and_records_check(evaluator, session_factory, bookscouter):
    user_id = await create_user(session_factory)
    bookscouter.sell[ISBN] = sell_payload([("Ziffit", 8)])
    alert_id = await isbn_alert(session_factory, user_id)

    [result] = await evaluator.evaluate_all()

    assert result.triggered is True
    assert result.reason == f"ISBN {ISBN} has reached your target price of $10.00 (current: $8.00)"
    async with session_factory() as db:
        alert = await db.get(PriceAlert, alert_id)
        notification = (await db.execute(select(Notification))).scalar_one()
    assert alert.last_checked_at == NOW
    assert alert.current_price == Decimal("8")
    assert notification.title == "🎯 Price Target Reached"


@pytest.mark.asyncio
async def test_bare_isbn_alert_reuses_recent_price(evaluator, session_factory, bookscouter, clock):
    user_id = await create_user(session_factory)
    bookscouter.sell[ISBN] = sell_payload([("Ziffit", 8)])
    await isbn_alert(session_factory, user_id)

    await evaluator.evaluate_all()
    clock.advance(minutes=10)
    [second] = await evaluator.evaluate_all()

    assert len(bookscouter.requests_to("sell")) == 1
    assert second.current_price == Decimal("8")
    assert second.throttled is True
    assert await notification_count(session_factory) == 1


@pytest.mark.asyncio
async def test_failing_alert_does_not_stop_others(evaluator, session_factory, bookscouter):
    bad_isbn = "9780000000099"
    bookscouter.sell[bad_isbn] = 500
    alert_id, _ = await tracked_alert(session_factory)
    async with session_factory() as db:
        user_id = (await db.get(PriceAlert, alert_id)).user_id
    bad_id = await isbn_alert(session_factory, user_id, isbn=bad_isbn)

    results = {r.alert_id: r for r in await evaluator.evaluate_all()}

    assert results[bad_id].triggered is False
    assert "500" in results[bad_id].error
    assert results[alert_id].triggered is True
    assert await notification_count(session_factory) == 1


@pytest.mark.asyncio
async def test_expired_alert_is_deactivated(evaluator, session_factory):
    alert_id, _ = await tracked_alert(session_factory, expires_at=NOW - timedelta(minutes=1))

    results = await evaluator.evaluate_all()

    assert results == []
    async with session_factory() as db:
        alert = await db.get(PriceAlert, alert_id)
    assert alert.is_active is False


@pytest.mark.asyncio
async def test_webhook_failure_keeps_notification(price_client, refresher, session_factory, clock):
    notifier = RecordingNotifier(fail=True)
    evaluator = AlertEvaluator(
        price_client, refresher, session_factory=session_factory, notifier=notifier, clock=clock
    )
    await tracked_alert(session_factory)

    [result] = await evaluator.evaluate_all()

    assert result.triggered is True
    assert len(notifier.sent) == 1
    assert await notification_count(session_factory) == 1


@pytest.mark.asyncio
async def test_notification_preference_off_skips_webhook(evaluator, session_factory, notifier):
    await tracked_alert(session_factory, email_notification=False)

    [result] = await evaluator.evaluate_all()

    assert result.triggered is True
    assert notifier.sent == []
    assert await notification_count(session_factory) == 1


@pytest.mark.asyncio
async def test_create_alert_defaults(session_factory):
    user_id = await create_user(session_factory)

    async with session_factory() as db:
        alert = await create_alert(
            db, user_id, AlertType.PRICE_TARGET.value, Decimal("12.50"), isbn="978-0-13-409341-3"
        )

    assert alert.isbn == ISBN
    assert alert.condition == AlertCondition.BELOW.value
    assert alert.frequency == AlertFrequency.IMMEDIATE.value
    assert alert.is_active is True
    assert alert.email_notification is True
    assert alert.trigger_count == 0


@pytest.mark.asyncio
async def test_create_alert_on_book_copies_isbn(session_factory):
    _, book_id = await tracked_alert(session_factory)
    async with session_factory() as db:
        book = await db.get(Book, book_id)
        alert = await create_alert(db, book.user_id, AlertType.PRICE_DROP.value, Decimal("3"), book_id=book_id)

    assert alert.book_id == book_id
    assert alert.isbn == ISBN


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "kwargs",
    [
        {"alert_type": "PRICE_TARGET", "target_price": Decimal("5")},
        {"alert_type": "BOGUS", "target_price": Decimal("5"), "isbn": ISBN},
        {"alert_type": "PRICE_TARGET", "target_price": Decimal("5"), "isbn": ISBN, "frequency": "HOURLY"},
        {"alert_type": "PRICE_TARGET", "target_price": Decimal("-1"), "isbn": ISBN},
        {"alert_type": "PRICE_TARGET", "target_price": Decimal("5"), "isbn": "12345"},
    ],
)
async def test_create_alert_rejects_invalid_input(session_factory, kwargs):
    user_id = await create_user(session_factory)

    async with session_factory() as db:
        with pytest.raises(ValueError):
            await create_alert(db, user_id, **kwargs)


@pytest.mark.asyncio
async def test_create_alert_on_foreign_book_is_not_found(session_factory):
    _, book_id = await tracked_alert(session_factory)
    other_user = await create_user(session_factory, email="other@example.com")

    async with session_factory() as db:
        with pytest.raises(NotFoundError):
            await create_alert(db, other_user, AlertType.PRICE_DROP.value, Decimal("3"), book_id=book_id)


@pytest.mark.asyncio
async def test_list_user_alerts(session_factory):
    user_id = await create_user(session_factory)
    other_user = await create_user(session_factory, email="other@example.com")
    first = await isbn_alert(session_factory, user_id)
    second = await isbn_alert(session_factory, user_id, is_active=False)
    await isbn_alert(session_factory, other_user)

    async with session_factory() as db:
        everything = await list_user_alerts(db, user_id)
        active = await list_user_alerts(db, user_id, active_only=True)

    assert {a.id for a in everything} == {first, second}
    assert [a.id for a in active] == [first]


@pytest.mark.asyncio
async def test_missing_alert_returns_error_result(evaluator):
    result = await evaluator.check_alert(9999)

    assert result.triggered is False
    assert result.target_price is None
    assert result.error == "Price alert 9999 not found"
    assert result.to_dict()["target_price"] is None


class DeletingNotifier(RecordingNotifier):
    """Deletes another alert while the first one is being delivered."""

    def __init__(self, session_factory):
        super().__init__()
        self.session_factory = session_factory
        self.doomed_id = None

    async def send_price_alert(self, **kwargs):
        await super().send_price_alert(**kwargs)
        async with self.session_factory() as db:
            doomed = await db.get(PriceAlert, self.doomed_id)
            if doomed is not None:
                await db.delete(doomed)
                await db.commit()
        return "123"


@pytest.mark.asyncio
async def test_alert_deleted_mid_run_does_not_stop_others(
    price_client, refresher, session_factory, clock
):
    notifier = DeletingNotifier(session_factory)
    evaluator = AlertEvaluator(
        price_client, refresher, session_factory=session_factory, notifier=notifier, clock=clock
    )
    first_id, _ = await tracked_alert(session_factory)
    async with session_factory() as db:
        user_id = (await db.get(PriceAlert, first_id)).user_id
    doomed_id = await isbn_alert(session_factory, user_id)
    last_id = await isbn_alert(
        session_factory, user_id, current_price=Decimal("4"), last_checked_at=NOW
    )
    notifier.doomed_id = doomed_id

    results = {r.alert_id: r for r in await evaluator.evaluate_all()}

    assert results[first_id].triggered is True
    assert results[doomed_id].triggered is False
    assert results[doomed_id].error == f"Price alert {doomed_id} not found"
    assert results[last_id].triggered is True
    assert await notification_count(session_factory) == 2
