"""Shared pipeline components and background tasks."""

import logging
from typing import Optional

from resale_tracker.config import settings
from resale_tracker.db.session import AsyncSessionLocal
from resale_tracker.detect.resolver import HistoricalResolver
from resale_tracker.notify.discord import DiscordWebhook
from resale_tracker.notify.price_alerts import AlertCheckResult, AlertEvaluator
from resale_tracker.pricing.auth import TokenManager
from resale_tracker.pricing.bookscouter import BookScouterClient
from resale_tracker.worker.batch_refresh import BatchRefreshOrchestrator
from resale_tracker.worker.locks import create_book_locks
from resale_tracker.worker.refresh import BookRefresher

logger = logging.getLogger(__name__)


class TaskRunner:
    """
    Owns the pipeline components used by the API and the scheduler.

    Every refresh path shares one BookRefresher so they all take the same
    per-book locks.
    """

    def __init__(self, session_factory=None):
        self.session_factory = session_factory or AsyncSessionLocal
        self.token_manager: Optional[TokenManager] = None
        self.client: Optional[BookScouterClient] = None
        self.locks = None
        self.refresher: Optional[BookRefresher] = None
        self.orchestrator: Optional[BatchRefreshOrchestrator] = None
        self.evaluator: Optional[AlertEvaluator] = None
        self.notifier: Optional[DiscordWebhook] = None

    async def initialize(self):
        """Initialize task runner."""
        self.token_manager = TokenManager(session_factory=self.session_factory)
        self.client = BookScouterClient(self.token_manager)
        self.locks = create_book_locks()
        self.refresher = BookRefresher(self.client, HistoricalResolver(), self.locks)
        self.orchestrator = BatchRefreshOrchestrator(
            self.refresher, session_factory=self.session_factory
        )

        if settings.discord_webhook_url:
            self.notifier = DiscordWebhook(settings.discord_webhook_url)

        self.evaluator = AlertEvaluator(
            self.client,
            self.refresher,
            session_factory=self.session_factory,
            notifier=self.notifier,
        )
        logger.info("Task runner initialized")

    async def close(self):
        """Clean up resources."""
        if self.client:
            await self.client.close()
        if self.token_manager:
            await self.token_manager.close()
        if self.notifier:
            await self.notifier.close()
        if self.locks:
            await self.locks.close()

    async def evaluate_alerts(self) -> list[AlertCheckResult]:
        """Run one alert evaluation pass (scheduled trigger)."""
        if self.evaluator is None:
            raise RuntimeError("Task runner is not initialized")
        logger.info("Evaluating price alerts")
        return await self.evaluator.evaluate_all()


# Global task runner instance
task_runner = TaskRunner()
