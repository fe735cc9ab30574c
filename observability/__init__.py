"""Observability package for docshelf."""

from .logging import setup_logging, get_logger, get_structured_logger, StructuredLogger
from .metrics import (
    docshelf_registry,
    get_metrics_text,
    record_document_outcome,
    record_embedding_batch,
    record_fetch_attempt,
    record_search_metrics,
    record_sync_conflict,
    record_sync_metrics,
)

__all__ = [
    'setup_logging',
    'get_logger',
    'get_structured_logger',
    'StructuredLogger',
    'docshelf_registry',
    'get_metrics_text',
    'record_document_outcome',
    'record_embedding_batch',
    'record_fetch_attempt',
    'record_search_metrics',
    'record_sync_conflict',
    'record_sync_metrics',
]
