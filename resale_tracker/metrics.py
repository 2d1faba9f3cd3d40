"""Prometheus metrics for the resale tracker."""

from prometheus_client import Counter, Gauge, Histogram, Info

app_info = Info("resale_tracker", "Resale tracker application info")
app_info.info({"version": "0.1.0", "name": "resale-tracker"})

# Upstream fetch metrics
price_fetches_total = Counter(
    "bookscouter_fetches_total",
    "Total number of BookScouter requests",
    ["endpoint", "status"],
)

price_fetch_duration_seconds = Histogram(
    "bookscouter_fetch_duration_seconds",
    "Time spent on BookScouter requests",
    ["endpoint"],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0],
)

token_exchanges_total = Counter(
    "bookscouter_token_exchanges_total",
    "Total number of credential exchanges against BookScouter",
    ["reason", "status"],
)

# Batch metrics
batch_items_total = Counter(
    "batch_refresh_items_total",
    "Books processed by batch refresh jobs",
    ["outcome"],
)

batch_jobs_total = Counter(
    "batch_refresh_jobs_total",
    "Batch refresh jobs by terminal status",
    ["status"],
)

batch_jobs_running = Gauge(
    "batch_refresh_jobs_running",
    "Batch refresh jobs currently running",
)

# Alert metrics
alert_checks_total = Counter(
    "price_alert_checks_total",
    "Price alert evaluations by outcome",
    ["outcome"],
)

notifications_sent_total = Counter(
    "price_alert_notifications_total",
    "Notifications emitted for triggered alerts",
    ["alert_type"],
)


def record_fetch(endpoint: str, status: str) -> None:
    """Record an upstream request outcome."""
    price_fetches_total.labels(endpoint=endpoint, status=status).inc()


def record_token_exchange(reason: str, status: str) -> None:
    """Record a credential exchange (reason: expired, forced)."""
    token_exchanges_total.labels(reason=reason, status=status).inc()


def record_batch_item(outcome: str) -> None:
    """Record one batch item outcome (updated, skipped, failed)."""
    batch_items_total.labels(outcome=outcome).inc()


def record_alert_check(outcome: str) -> None:
    """Record an alert check outcome (triggered, throttled, quiet, error)."""
    alert_checks_total.labels(outcome=outcome).inc()
