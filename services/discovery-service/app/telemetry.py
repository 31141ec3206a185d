"""
Observability setup:
  - OpenTelemetry distributed tracing → Jaeger (via OTLP gRPC)
  - Prometheus metrics: feed latency, candidate counts, degraded signals,
    cache hit ratio, invalidation events

Metrics live on a FeedMetrics instance with its own CollectorRegistry, so
the API, the worker and each test can hold independent counters.
"""
import logging
from typing import Optional

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.instrumentation.redis import RedisInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram

logger = logging.getLogger(__name__)


# ─────────────────────────── Prometheus Metrics ───────────────────────────

class FeedMetrics:
    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        self.registry = registry or CollectorRegistry()

        self.feed_latency = Histogram(
            "feed_latency_seconds",
            "End-to-end latency of a ranked feed page",
            buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0],
            registry=self.registry,
        )
        self.candidates_total = Counter(
            "feed_candidates_total",
            "Candidate posts seen per pipeline stage",
            ["stage"],  # 'retrieved' | 'visible' | 'ranked'
            registry=self.registry,
        )
        self.visibility_ratio = Gauge(
            "feed_visibility_ratio",
            "Fraction of retrieved candidates surviving the visibility filter",
            registry=self.registry,
        )
        self.degraded_total = Counter(
            "feed_degraded_total",
            "Signals that fell back to a neutral value because an upstream failed",
            ["signal"],
            registry=self.registry,
        )
        self.cache_requests_total = Counter(
            "feed_cache_requests_total",
            "Artifact cache lookups",
            ["artifact", "result"],  # result: 'hit' | 'miss' | 'error'
            registry=self.registry,
        )
        self.invalidation_events_total = Counter(
            "feed_invalidation_events_total",
            "Cache invalidation events applied",
            ["type"],
            registry=self.registry,
        )
        self.seen_purged_total = Counter(
            "feed_seen_purged_total",
            "Expired seen records deleted by the worker",
            registry=self.registry,
        )

    def degraded(self, signal: str) -> None:
        self.degraded_total.labels(signal=signal).inc()

    def cache_lookup(self, artifact: str, result: str) -> None:
        self.cache_requests_total.labels(artifact=artifact, result=result).inc()

    def candidates(self, retrieved: int, visible: int, ranked: int) -> None:
        self.candidates_total.labels(stage="retrieved").inc(retrieved)
        self.candidates_total.labels(stage="visible").inc(visible)
        self.candidates_total.labels(stage="ranked").inc(ranked)
        self.visibility_ratio.set(visible / retrieved if retrieved else 1.0)


# ─────────────────────────── OpenTelemetry Setup ──────────────────────────

def setup_tracing(service_name: str, environment: str, endpoint: str) -> None:
    """Configure the global OTel TracerProvider with OTLP/Jaeger export."""
    resource = Resource.create(
        {
            "service.name": service_name,
            "deployment.environment": environment,
        }
    )
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(
        BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint, insecure=True))
    )
    logger.info("OTel tracing configured → %s", endpoint)
    trace.set_tracer_provider(provider)

    # Auto-instrument popular libraries so their spans appear in traces
    HTTPXClientInstrumentor().instrument()
    RedisInstrumentor().instrument()
    SQLAlchemyInstrumentor().instrument()


def instrument_app(app) -> None:  # noqa: ANN001
    """Call after app is created to add FastAPI request spans."""
    FastAPIInstrumentor.instrument_app(app)
