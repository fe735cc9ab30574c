import json
import logging

from observability.logging import ColoredFormatter, JSONFormatter, get_structured_logger
from observability.metrics import (
    docshelf_registry,
    get_metrics_text,
    record_fetch_attempt,
    record_search_metrics,
    record_sync_metrics,
)


def _record(message="hello", **extra):
    record = logging.LogRecord("docshelf.test", logging.INFO, __file__, 10, message, None, None)
    record.__dict__.update(extra)
    return record


class TestFormatters:
    """Log formatting"""

    def test_json_formatter_includes_context(self):
        """Context fields are merged into the JSON entry."""
        entry = json.loads(JSONFormatter("docshelf").format(_record(run_id="r1", version_id="v1")))
        assert entry["message"] == "hello"
        assert entry["service"] == "docshelf"
        assert entry["run_id"] == "r1"
        assert entry["version_id"] == "v1"

    def test_colored_formatter_appends_key_values(self):
        """Console output ends with sorted key=value pairs."""
        line = ColoredFormatter(use_colors=False).format(_record(version_id="v1", run_id="r1"))
        assert line.endswith("| run_id=r1 version_id=v1")


class TestStructuredLogger:
    """Bound logging context"""

    def test_bind_carries_context(self, caplog):
        """Bound fields appear on every record alongside per-call fields."""
        log = get_structured_logger("docshelf.sync").bind(run_id="r1")
        with caplog.at_level(logging.INFO, logger="docshelf.sync"):
            log.info("Sync run started", path="docs/a.md")

        record = caplog.records[-1]
        assert record.run_id == "r1"
        assert record.path == "docs/a.md"
        assert record.getMessage() == "Sync run started"


class TestMetrics:
    """Prometheus exposition"""

    def test_metrics_are_exported(self):
        """Recorded metrics show up in the text exposition."""
        record_sync_metrics("SUCCESS", 1.5, chunks_created=4)
        record_fetch_attempt("Archive", "success")
        record_search_metrics("hybrid", 0.02, 3)

        text = get_metrics_text().decode("utf-8")
        assert 'docshelf_sync_runs_total{status="SUCCESS"}' in text
        assert docshelf_registry.get_sample_value(
            "docshelf_fetch_strategy_attempts_total", {"strategy": "Archive", "outcome": "success"}
        ) >= 1
        assert docshelf_registry.get_sample_value(
            "docshelf_search_requests_total", {"search_type": "hybrid", "status": "success"}
        ) >= 1
