"""Prometheus metric definitions for the connector.

Single source of truth for all custom metrics. Import from here in API and Celery code.
"""

from prometheus_client import Counter, Histogram

# --- Celery task metrics ---

celery_task_total = Counter(
    "connector_celery_task_total",
    "Total Celery tasks executed",
    ["task_name", "status"],
)

# --- Provider calls ---

graph_request_duration_seconds = Histogram(
    "connector_graph_request_duration_seconds",
    "Graph API request duration in seconds",
    ["endpoint"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 15.0, 30.0),
)

graph_request_errors_total = Counter(
    "connector_graph_request_errors_total",
    "Graph API requests that failed, by endpoint and error kind",
    ["endpoint", "kind"],
)

# --- Business metrics ---

oauth_completions_total = Counter(
    "connector_oauth_completions_total",
    "OAuth flows completed, by outcome",
    ["outcome"],
)

token_refreshes_total = Counter(
    "connector_token_refreshes_total",
    "Long-lived token refresh attempts, by outcome",
    ["outcome"],
)

content_items_upserted_total = Counter(
    "connector_content_items_upserted_total",
    "Content items processed by the sync worker, by outcome",
    ["outcome"],
)

sweep_duration_seconds = Histogram(
    "connector_sweep_duration_seconds",
    "Scheduled sweep duration in seconds",
    ["sweep"],
    buckets=(1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1800.0),
)
