"""
Metrics Collection for the Legal Chatbot

Tracks request volume, latency, plan usage and per-source backend failures
for the operator metrics endpoint.
"""

import time
import logging
import threading
from dataclasses import dataclass, field
from collections import defaultdict
from typing import Optional
from datetime import datetime, timedelta

logger = logging.getLogger(__name__)


@dataclass
class QueryMetrics:
    """Metrics for a single ask request."""
    request_id: str
    plan: str
    language: str
    question: str
    start_time: float
    end_time: float = 0
    latency_ms: float = 0
    sources_count: int = 0
    streamed: bool = False
    failed_sources: list = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class SystemMetrics:
    """Aggregated chatbot metrics."""
    # Request metrics
    total_queries: int = 0
    successful_queries: int = 0
    failed_queries: int = 0
    streamed_queries: int = 0

    # Latency tracking (in ms)
    total_latency_ms: float = 0
    min_latency_ms: float = float('inf')
    max_latency_ms: float = 0
    latencies: list = field(default_factory=list)

    # Routing
    queries_by_plan: dict = field(default_factory=lambda: defaultdict(int))
    queries_by_language: dict = field(default_factory=lambda: defaultdict(int))

    # Backend failures keyed by "source:kind"
    backend_failures: dict = field(default_factory=lambda: defaultdict(int))

    # Error tracking
    errors_by_type: dict = field(default_factory=lambda: defaultdict(int))

    @property
    def avg_latency_ms(self) -> float:
        """Calculate average query latency."""
        if self.total_queries == 0:
            return 0
        return self.total_latency_ms / self.total_queries

    @property
    def p95_latency_ms(self) -> float:
        """Calculate 95th percentile latency."""
        if not self.latencies:
            return 0
        sorted_latencies = sorted(self.latencies)
        index = int(len(sorted_latencies) * 0.95)
        return sorted_latencies[min(index, len(sorted_latencies) - 1)]

    @property
    def p99_latency_ms(self) -> float:
        """Calculate 99th percentile latency."""
        if not self.latencies:
            return 0
        sorted_latencies = sorted(self.latencies)
        index = int(len(sorted_latencies) * 0.99)
        return sorted_latencies[min(index, len(sorted_latencies) - 1)]

    @property
    def error_rate(self) -> float:
        """Calculate error rate."""
        if self.total_queries == 0:
            return 0
        return self.failed_queries / self.total_queries

    def to_dict(self) -> dict:
        """Convert to dictionary for display."""
        return {
            "queries": {
                "total": self.total_queries,
                "successful": self.successful_queries,
                "failed": self.failed_queries,
                "streamed": self.streamed_queries,
                "error_rate": f"{self.error_rate:.2%}",
            },
            "latency_ms": {
                "avg": round(self.avg_latency_ms, 2),
                "min": round(self.min_latency_ms, 2) if self.min_latency_ms != float('inf') else 0,
                "max": round(self.max_latency_ms, 2),
                "p95": round(self.p95_latency_ms, 2),
                "p99": round(self.p99_latency_ms, 2),
            },
            "plans": dict(self.queries_by_plan),
            "languages": dict(self.queries_by_language),
            "backend_failures": dict(self.backend_failures),
            "errors": dict(self.errors_by_type),
        }


class MetricsCollector:
    """
    Collects and aggregates chatbot metrics.

    Usage:
        collector = MetricsCollector()

        with collector.track_query(request_id, plan.label, "nl", question) as tracker:
            envelope = run_plan(...)
            tracker.set_result(envelope)

        metrics = collector.get_metrics_dict()
    """

    _instance = None

    def __new__(cls):
        """Singleton pattern for global metrics collection."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        if self._initialized:
            return

        self.metrics = SystemMetrics()
        self._query_history: list[QueryMetrics] = []
        self._max_history = 1000  # Keep last 1000 queries
        self._start_time = datetime.now()
        self._lock = threading.Lock()
        self._initialized = True

    def reset(self):
        """Reset all metrics (for testing)."""
        with self._lock:
            self.metrics = SystemMetrics()
            self._query_history = []
            self._start_time = datetime.now()

    class QueryTracker:
        """Context manager for tracking one ask request."""

        def __init__(
            self,
            collector: 'MetricsCollector',
            request_id: str,
            plan: str,
            language: str,
            question: str,
            streamed: bool = False,
        ):
            self.collector = collector
            self.query = QueryMetrics(
                request_id=request_id,
                plan=plan,
                language=language,
                question=question[:200],  # Truncate for storage
                start_time=time.time(),
                streamed=streamed,
            )

        def __enter__(self):
            return self

        def __exit__(self, exc_type, exc_val, exc_tb):
            self.query.end_time = time.time()
            self.query.latency_ms = (self.query.end_time - self.query.start_time) * 1000

            if exc_type:
                self.query.error = str(exc_val)
                self.collector._record_error(exc_type.__name__)

            self.collector._record_query(self.query)
            return False  # Don't suppress exceptions

        def set_result(self, envelope, failures=()):
            """Record the envelope outcome and any per-source failures."""
            self.query.sources_count = len(envelope.sources)
            self.query.failed_sources = list(envelope.failed_sources)
            if envelope.error:
                self.query.error = envelope.error
            for failure in failures:
                self.collector.record_backend_failure(failure.source, failure.kind)

    def track_query(
        self,
        request_id: str,
        plan: str,
        language: str,
        question: str,
        streamed: bool = False,
    ) -> QueryTracker:
        """
        Create a query tracker context manager.

        Usage:
            with collector.track_query(request_id, "all", "nl", question) as tracker:
                envelope = dispatch()
                tracker.set_result(envelope)
        """
        return self.QueryTracker(self, request_id, plan, language, question, streamed)

    def _record_query(self, query: QueryMetrics):
        """Record completed query metrics."""
        with self._lock:
            self.metrics.total_queries += 1

            if query.error:
                self.metrics.failed_queries += 1
            else:
                self.metrics.successful_queries += 1
            if query.streamed:
                self.metrics.streamed_queries += 1

            # Latency tracking
            self.metrics.total_latency_ms += query.latency_ms
            self.metrics.min_latency_ms = min(self.metrics.min_latency_ms, query.latency_ms)
            self.metrics.max_latency_ms = max(self.metrics.max_latency_ms, query.latency_ms)
            self.metrics.latencies.append(query.latency_ms)

            # Keep latencies list bounded
            if len(self.metrics.latencies) > self._max_history:
                self.metrics.latencies = self.metrics.latencies[-self._max_history:]

            self.metrics.queries_by_plan[query.plan] += 1
            self.metrics.queries_by_language[query.language] += 1

            # Query history
            self._query_history.append(query)
            if len(self._query_history) > self._max_history:
                self._query_history = self._query_history[-self._max_history:]

    def _record_error(self, error_type: str):
        """Record an error by type."""
        with self._lock:
            self.metrics.errors_by_type[error_type] += 1

    def record_backend_failure(self, source: str, kind: str):
        """Record one adapter failure."""
        with self._lock:
            self.metrics.backend_failures[f"{source}:{kind}"] += 1

    def get_metrics(self) -> SystemMetrics:
        """Get current metrics."""
        return self.metrics

    def get_metrics_dict(self) -> dict:
        """Get metrics as a dictionary."""
        with self._lock:
            data = self.metrics.to_dict()
        data["uptime_seconds"] = round(self.get_uptime().total_seconds(), 1)
        return data

    def get_recent_queries(self, limit: int = 10) -> list[QueryMetrics]:
        """Get most recent queries."""
        return self._query_history[-limit:]

    def get_uptime(self) -> timedelta:
        """Get system uptime."""
        return datetime.now() - self._start_time


# Global metrics collector instance
_collector = None


def get_metrics_collector() -> MetricsCollector:
    """Get the global metrics collector instance."""
    global _collector
    if _collector is None:
        _collector = MetricsCollector()
    return _collector
