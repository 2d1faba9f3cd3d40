"""Discord webhook integration for price alerts."""

import logging
from decimal import Decimal
from typing import Optional

import httpx

from resale_tracker.notify.formatters import format_discord_embed

logger = logging.getLogger(__name__)


class DiscordWebhook:
    """Discord webhook client for fanning out triggered price alerts."""

    def __init__(self, webhook_url: str, http_client: Optional[httpx.AsyncClient] = None):
        self.webhook_url = webhook_url
        self._http_client = http_client
        self._owns_client = http_client is None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=30.0)
        return self._http_client

    async def close(self):
        """Close HTTP client."""
        if self._http_client and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None

    async def send_price_alert(
        self,
        title: str,
        reason: str,
        isbn: Optional[str],
        current_price: Decimal,
        target_price: Decimal,
        condition: str,
        image_url: Optional[str] = None,
    ) -> Optional[str]:
        """
        Send a triggered price alert to Discord.

        Args:
            title: Notification title
            reason: Reason for alert
            isbn: Book ISBN
            current_price: Price the alert fired on
            target_price: Alert target
            condition: Alert condition value
            image_url: Book cover URL (optional)

        Returns:
            Discord message ID if the webhook returned one
        """
        client = await self._get_client()
        payload = format_discord_embed(
            title=title,
            reason=reason,
            current_price=current_price,
            target_price=target_price,
            isbn=isbn,
            condition=condition,
            image_url=image_url,
        )

        try:
            # wait=true makes Discord return the created message
            response = await client.post(self.webhook_url, params={"wait": "true"}, json=payload)
            response.raise_for_status()

            message_id = None
            if response.content:
                data = response.json()
                message_id = data.get("id") or None

            logger.info(f"Sent Discord alert for {isbn}: {reason}")
            return message_id

        except Exception as e:
            logger.error(f"Failed to send Discord alert for {isbn}: {e}")
            raise
