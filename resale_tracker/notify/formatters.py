"""Message formatting for price alert notifications.

Provides:
- Notification titles per alert type
- Human-readable trigger reasons
- Discord embed payloads
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional

from resale_tracker.db.models import AlertType

ALERT_TITLES = {
    AlertType.PRICE_TARGET.value: "🎯 Price Target Reached",
    AlertType.PRICE_DROP.value: "📉 Price Drop Alert",
    AlertType.PRICE_SPIKE.value: "📈 Price Spike Alert",
    AlertType.MARKET_TREND.value: "📊 Market Trend Alert",
    AlertType.PROFIT_OPPORTUNITY.value: "💰 Profit Opportunity",
}
DEFAULT_ALERT_TITLE = "🔔 Price Alert"


def alert_title(alert_type: str) -> str:
    """Notification title for an alert type."""
    return ALERT_TITLES.get(alert_type, DEFAULT_ALERT_TITLE)


def book_label(title: Optional[str], isbn: Optional[str]) -> str:
    return title or f"ISBN {isbn}"


def alert_reason(
    alert_type: str,
    current_price: Decimal,
    target_price: Decimal,
    title: Optional[str] = None,
    isbn: Optional[str] = None,
) -> str:
    """
    Build the reason text stored on the notification.

    Args:
        alert_type: Alert type value
        current_price: Price the alert fired on
        target_price: Alert target
        title: Book title, if the alert is bound to a tracked book
        isbn: ISBN used when there is no title

    Returns:
        Reason message
    """
    label = book_label(title, isbn)

    if target_price:
        change = (current_price - target_price) / target_price * 100
    else:
        change = Decimal("0")

    if alert_type == AlertType.PRICE_TARGET.value:
        return (
            f"{label} has reached your target price of ${target_price:.2f} "
            f"(current: ${current_price:.2f})"
        )
    if alert_type == AlertType.PRICE_DROP.value:
        return f"{label} price dropped to ${current_price:.2f} ({abs(change):.1f}% decrease)"
    if alert_type == AlertType.PRICE_SPIKE.value:
        return f"{label} price spiked to ${current_price:.2f} ({abs(change):.1f}% increase)"
    return f"{label} price alert triggered: ${current_price:.2f}"


def format_discord_embed(
    title: str,
    reason: str,
    current_price: Decimal,
    target_price: Decimal,
    isbn: Optional[str],
    condition: str,
    image_url: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Format a triggered alert as a Discord webhook payload.

    Returns:
        Discord webhook payload
    """
    if current_price >= target_price:
        color = 0x00FF00  # Green at or above target
    else:
        color = 0xFFA500  # Orange below target

    embed = {
        "title": title,
        "description": reason,
        "color": color,
        "fields": [
            {
                "name": "Current Price",
                "value": f"${current_price:.2f}",
                "inline": True,
            },
            {
                "name": "Target",
                "value": f"${target_price:.2f} ({condition.lower()})",
                "inline": True,
            },
        ],
        "footer": {"text": f"ISBN: {isbn or 'unknown'}"},
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

    if image_url:
        embed["thumbnail"] = {"url": image_url}

    return {
        "embeds": [embed],
        "username": "Resale Tracker",
    }
