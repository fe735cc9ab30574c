"""Prometheus metrics for docshelf ingestion and retrieval."""

from typing import Optional
import logging

from prometheus_client import Counter, Histogram, generate_latest
from prometheus_client.core import CollectorRegistry

logger = logging.getLogger(__name__)

# Create custom registry for docshelf metrics
docshelf_registry = CollectorRegistry()

# Sync metrics
sync_runs = Counter(
    'docshelf_sync_runs_total',
    'Sync runs by terminal status',
    ['status'],
    registry=docshelf_registry
)

sync_duration = Histogram(
    'docshelf_sync_duration_seconds',
    'Wall time of a sync run',
    ['status'],
    buckets=[1, 5, 15, 30, 60, 120, 300, 600, 1800],
    registry=docshelf_registry
)

sync_documents = Counter(
    'docshelf_sync_documents_total',
    'Files seen by sync runs, by outcome',
    ['outcome'],
    registry=docshelf_registry
)

sync_chunks_created = Counter(
    'docshelf_sync_chunks_created_total',
    'Chunks written by sync runs',
    registry=docshelf_registry
)

sync_conflicts = Counter(
    'docshelf_sync_conflicts_total',
    'Sync requests rejected because a run was already active',
    registry=docshelf_registry
)

# Fetch metrics
fetch_attempts = Counter(
    'docshelf_fetch_strategy_attempts_total',
    'Fetch strategy attempts by outcome',
    ['strategy', 'outcome'],
    registry=docshelf_registry
)

# Search metrics
search_requests = Counter(
    'docshelf_search_requests_total',
    'Total number of search requests',
    ['search_type', 'status'],
    registry=docshelf_registry
)

search_duration = Histogram(
    'docshelf_search_duration_seconds',
    'Search request duration in seconds',
    ['search_type'],
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
    registry=docshelf_registry
)

search_results_count = Histogram(
    'docshelf_search_results_count',
    'Number of search results returned',
    ['search_type'],
    buckets=[1, 5, 10, 25, 50, 100],
    registry=docshelf_registry
)

embedding_duration = Histogram(
    'docshelf_embedding_batch_duration_seconds',
    'Embedding batch duration in seconds',
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=docshelf_registry
)


def record_sync_metrics(status: str, duration: float, chunks_created: int = 0) -> None:
    """Record the terminal state of one sync run."""
    sync_runs.labels(status=status).inc()
    sync_duration.labels(status=status).observe(duration)
    if chunks_created:
        sync_chunks_created.inc(chunks_created)


def record_document_outcome(outcome: str) -> None:
    """Count one file as processed, skipped or failed."""
    sync_documents.labels(outcome=outcome).inc()


def record_sync_conflict() -> None:
    sync_conflicts.inc()


def record_fetch_attempt(strategy: str, outcome: str) -> None:
    fetch_attempts.labels(strategy=strategy, outcome=outcome).inc()


def record_search_metrics(search_type: str, duration: float, result_count: int,
                          error: Optional[str] = None) -> None:
    """Record search-related metrics."""
    status = "error" if error else "success"

    search_requests.labels(search_type=search_type, status=status).inc()
    search_duration.labels(search_type=search_type).observe(duration)

    if not error:
        search_results_count.labels(search_type=search_type).observe(result_count)


def record_embedding_batch(duration: float) -> None:
    embedding_duration.observe(duration)


def get_metrics_text() -> bytes:
    """Render the registry in the Prometheus text exposition format."""
    return generate_latest(docshelf_registry)


__all__ = [
    'CONTENT_TYPE_LATEST',
    'docshelf_registry',
    'get_metrics_text',
    'record_document_outcome',
    'record_embedding_batch',
    'record_fetch_attempt',
    'record_search_metrics',
    'record_sync_conflict',
    'record_sync_metrics',
]
