"""Background batch price refresh with persisted job status."""

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Awaitable, Callable, Optional
from uuid import uuid4

from sqlalchemy import select

from resale_tracker import metrics
from resale_tracker.config import settings
from resale_tracker.db.models import Batch, Book, JobStatus, RefreshJob
from resale_tracker.db.session import AsyncSessionLocal
from resale_tracker.detect.tiers import Tier
from resale_tracker.errors import NotFoundError
from resale_tracker.logging_config import get_logger
from resale_tracker.utils.clock import utcnow
from resale_tracker.utils.isbn import normalize_isbn
from resale_tracker.worker.refresh import BookRefresher, RefreshOutcome, load_thresholds

logger = logging.getLogger(__name__)


@dataclass
class BatchTotals:
    """Running aggregates over the books refreshed in one job."""

    tier_counts: dict[Tier, int] = field(default_factory=lambda: {tier: 0 for tier in Tier})
    total_value: Decimal = Decimal("0")
    highest_price: Decimal = Decimal("0")
    highest_price_isbn: Optional[str] = None
    percent_sum: Decimal = Decimal("0")
    updated: int = 0

    def add(
        self, isbn: Optional[str], current_price: Decimal, tier: Tier, percent_of_high: Decimal
    ) -> None:
        self.tier_counts[tier] += 1
        self.total_value += current_price
        self.percent_sum += percent_of_high
        self.updated += 1
        if current_price > self.highest_price:
            self.highest_price = current_price
            self.highest_price_isbn = isbn

    def add_outcome(self, outcome: RefreshOutcome) -> None:
        self.add(outcome.isbn, outcome.current_price, outcome.tier, outcome.percent_of_high)

    @property
    def average_percent(self) -> Decimal:
        if self.updated == 0:
            return Decimal("0")
        return self.percent_sum / self.updated


@dataclass
class JobStatusView:
    """Job status as seen by a polling client."""

    job_id: str
    batch_id: int
    status: str
    total: int
    processed: int
    success_count: int = 0
    error_count: int = 0
    error: Optional[str] = None

    @property
    def progress_percent(self) -> float:
        if self.total == 0:
            return 0.0
        return self.processed / self.total * 100

    @classmethod
    def from_job(cls, job: RefreshJob) -> "JobStatusView":
        return cls(
            job_id=job.id,
            batch_id=job.batch_id,
            status=job.status,
            total=job.total_items,
            processed=job.processed_items,
            success_count=job.success_count,
            error_count=job.error_count,
            error=job.error_message,
        )


class BatchRefreshOrchestrator:
    """
    Refreshes every book of a batch, one at a time.

    Items are processed sequentially with a fixed pause between them to stay
    under BookScouter's rate limit. A failing item is logged and skipped; only
    a failure before the item loop marks the job failed.
    """

    def __init__(
        self,
        refresher: BookRefresher,
        session_factory=None,
        item_delay_seconds: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.refresher = refresher
        self.session_factory = session_factory or AsyncSessionLocal
        self.item_delay_seconds = (
            item_delay_seconds
            if item_delay_seconds is not None
            else settings.batch_item_delay_seconds
        )
        self.sleep = sleep
        self._tasks: dict[str, asyncio.Task] = {}

    async def start(
        self,
        batch_id: int,
        isbns: Optional[list[str]] = None,
        user_id: Optional[int] = None,
    ) -> str:
        """
        Create a pending job for the batch and run it in the background.

        Args:
            batch_id: Batch whose books are refreshed
            isbns: Optional subset of the batch's ISBNs to refresh
            user_id: User whose BookScouter token is used (defaults to the batch owner)

        Returns:
            Job id to poll with status()

        Raises:
            NotFoundError: If the batch does not exist
            ValueError: If an ISBN in isbns is malformed
        """
        requested = [normalize_isbn(isbn) for isbn in isbns] if isbns else None

        async with self.session_factory() as db:
            batch = await db.get(Batch, batch_id)
            if batch is None:
                raise NotFoundError(f"Batch {batch_id} not found")

            job = RefreshJob(
                id=uuid4().hex,
                batch_id=batch_id,
                user_id=user_id if user_id is not None else batch.user_id,
                status=JobStatus.PENDING.value,
                requested_isbns=requested,
            )
            db.add(job)
            await db.commit()
            job_id = job.id

        task = asyncio.create_task(self.run(job_id), name=f"batch-refresh-{job_id}")
        self._tasks[job_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(job_id, None))

        logger.info(f"Queued refresh job {job_id} for batch {batch_id}")
        return job_id

    async def wait(self, job_id: str) -> None:
        """Wait for a job started by this orchestrator to finish."""
        task = self._tasks.get(job_id)
        if task is not None:
            await task

    async def status(self, job_id: str) -> JobStatusView:
        """Current status of a job."""
        async with self.session_factory() as db:
            job = await db.get(RefreshJob, job_id)
            if job is None:
                raise NotFoundError(f"Job {job_id} not found")
            return JobStatusView.from_job(job)

    async def run(self, job_id: str) -> None:
        """Process a pending job to completion (or failure before the loop)."""
        log = get_logger(__name__, job_id=job_id)

        async with self.session_factory() as db:
            job = await db.get(RefreshJob, job_id)
            if job is None:
                raise NotFoundError(f"Job {job_id} not found")
            job.status = JobStatus.RUNNING.value
            job.started_at = utcnow()
            await db.commit()
            batch_id, user_id, requested = job.batch_id, job.user_id, job.requested_isbns

        metrics.batch_jobs_running.inc()
        try:
            try:
                items, thresholds, owner_id = await self._load_items(batch_id, requested)
            except Exception as e:
                log.error(f"Refresh job for batch {batch_id} failed before processing: {e}")
                await self._update_job(
                    job_id,
                    status=JobStatus.FAILED.value,
                    error_message=str(e) or type(e).__name__,
                    completed_at=utcnow(),
                )
                metrics.batch_jobs_total.labels(status=JobStatus.FAILED.value).inc()
                return

            user_id = user_id if user_id is not None else owner_id
            await self._update_job(job_id, total_items=len(items))

            totals = BatchTotals()
            errors = 0
            for index, (book_id, isbn) in enumerate(items):
                if index > 0 and self.item_delay_seconds > 0:
                    await self.sleep(self.item_delay_seconds)

                if not isbn:
                    log.info(f"Skipping book {book_id}: no ISBN")
                    metrics.record_batch_item("skipped")
                else:
                    try:
                        async with self.session_factory() as db:
                            book = await db.get(Book, book_id)
                            if book is None:
                                raise NotFoundError(f"Book {book_id} no longer exists")
                            outcome = await self.refresher.refresh(db, book, thresholds, user_id)
                        totals.add_outcome(outcome)
                        metrics.record_batch_item("updated")
                    except Exception as e:
                        errors += 1
                        metrics.record_batch_item("failed")
                        log.warning(f"Skipping {isbn} (book {book_id}): {type(e).__name__}: {e}")

                await self._update_job(
                    job_id,
                    processed_items=index + 1,
                    success_count=totals.updated,
                    error_count=errors,
                )

            if requested:
                # A subset run only saw some books; summarize the whole batch
                summary, total_books = await self._stored_totals(batch_id)
            else:
                summary, total_books = totals, len(items)
            await self._write_summary(batch_id, total_books, summary)
            await self._update_job(
                job_id,
                status=JobStatus.COMPLETED.value,
                completed_at=utcnow(),
            )
            metrics.batch_jobs_total.labels(status=JobStatus.COMPLETED.value).inc()
            log.info(
                f"Refresh job finished for batch {batch_id}: "
                f"{totals.updated}/{len(items)} updated, {errors} failed"
            )
        finally:
            metrics.batch_jobs_running.dec()

    async def _load_items(
        self, batch_id: int, requested: Optional[list[str]]
    ) -> tuple[list[tuple[int, Optional[str]]], object, int]:
        async with self.session_factory() as db:
            batch = await db.get(Batch, batch_id)
            if batch is None:
                raise NotFoundError("Batch not found")

            result = await db.execute(
                select(Book.id, Book.isbn).where(Book.batch_id == batch_id).order_by(Book.id)
            )
            items = [(row[0], row[1]) for row in result.all()]
            if requested:
                wanted = set(requested)
                items = [(book_id, isbn) for book_id, isbn in items if isbn in wanted]

            thresholds = await load_thresholds(db, batch.user_id)
            return items, thresholds, batch.user_id

    async def _stored_totals(self, batch_id: int) -> tuple[BatchTotals, int]:
        """Aggregate the stored pricing of every book in the batch."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(Book).where(Book.batch_id == batch_id).order_by(Book.id)
            )
            books = result.scalars().all()

        totals = BatchTotals()
        for book in books:
            if book.last_price_update is None or book.tier is None:
                continue
            totals.add(book.isbn, book.current_price, Tier(book.tier), book.percent_of_high)
        return totals, len(books)

    async def _write_summary(self, batch_id: int, total_books: int, totals: BatchTotals) -> None:
        async with self.session_factory() as db:
            batch = await db.get(Batch, batch_id)
            if batch is None:
                raise NotFoundError("Batch not found")
            batch.total_books = total_books
            batch.high_value_count = totals.tier_counts[Tier.HIGH_VALUE]
            batch.mid_value_count = totals.tier_counts[Tier.MID_VALUE]
            batch.low_value_count = totals.tier_counts[Tier.LOW_VALUE]
            batch.total_value = totals.total_value
            batch.average_percent = totals.average_percent.quantize(Decimal("0.01"))
            batch.highest_price = totals.highest_price
            batch.highest_price_isbn = totals.highest_price_isbn
            batch.last_price_update = utcnow()
            await db.commit()

    async def _update_job(self, job_id: str, **fields) -> None:
        async with self.session_factory() as db:
            job = await db.get(RefreshJob, job_id)
            if job is None:
                raise NotFoundError(f"Job {job_id} not found")
            for name, value in fields.items():
                setattr(job, name, value)
            await db.commit()
