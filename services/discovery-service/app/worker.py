"""
Invalidation worker — Kafka consumer + seen-record janitor.

For every 'feed-invalidation' event:
  1. Validate it against InvalidationEvent (malformed events are logged and
     skipped, never retried).
  2. Delete the cached artifacts the mutation made stale.

In the background, every seen_purge_interval_seconds:
  • Delete seen_posts rows older than seen_retention_days. They no longer
    affect scores, so keeping them only grows the table.

Run with:  python -m app.worker
"""
import asyncio
import contextlib
import json
import logging

from aiokafka import AIOKafkaConsumer
from opentelemetry import trace
from pydantic import ValidationError

from app.clients.redis_client import FeedCache, FeedInvalidator, build_redis
from app.config import RankingConfig, Settings
from app.database import build_engine, build_sessionmaker
from app.errors import UpstreamUnavailable
from app.repository import ContentRepository
from app.schemas import InvalidationEvent
from app.service import purge_expired_seen
from app.telemetry import FeedMetrics, setup_tracing

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


# ─────────────────────────── Message Handler ─────────────────────────────

async def process_message(msg: dict, invalidator: FeedInvalidator) -> bool:
    """Apply one raw event; returns False when the payload was rejected."""
    try:
        event = InvalidationEvent.model_validate(msg)
    except ValidationError as exc:
        logger.warning("Malformed invalidation event %s: %s", msg, exc.errors())
        return False

    with tracer.start_as_current_span("invalidate") as span:
        span.set_attribute("event.type", event.type)
        span.set_attribute("event.actor_id", event.actor_id)
        await invalidator.handle(event)
    return True


def _deserialize(raw: bytes):
    try:
        return json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        logger.warning("Dropping undecodable message (%d bytes)", len(raw))
        return None


# ─────────────────────────── Seen purge loop ─────────────────────────────

async def purge_loop(
    repository: ContentRepository,
    retention_days: int,
    interval_seconds: int,
    metrics: FeedMetrics,
) -> None:
    while True:
        try:
            await purge_expired_seen(repository, retention_days, metrics)
        except UpstreamUnavailable as exc:
            logger.warning("Seen purge skipped: %s", exc)
        except Exception:
            logger.exception("Seen purge failed")
        await asyncio.sleep(interval_seconds)


# ─────────────────────────── Main Loop ───────────────────────────────────

async def main() -> None:
    settings = Settings()
    setup_tracing(
        f"{settings.service_name}-worker",
        settings.environment,
        settings.otel_exporter_otlp_endpoint,
    )
    config = RankingConfig.from_settings(settings)
    metrics = FeedMetrics()

    engine = build_engine(settings.tidb_url, pool_size=2, max_overflow=2)
    repository = ContentRepository(build_sessionmaker(engine))

    redis = build_redis(settings.redis_host, settings.redis_port)
    await redis.ping()
    invalidator = FeedInvalidator(FeedCache(redis, settings.cache_prefix, metrics), metrics)

    consumer = AIOKafkaConsumer(
        settings.kafka_topic_invalidation,
        bootstrap_servers=settings.kafka_bootstrap_servers,
        group_id=settings.kafka_consumer_group,
        auto_offset_reset="latest",
        value_deserializer=_deserialize,
    )
    await consumer.start()
    logger.info(
        "Invalidation worker listening on topic '%s'", settings.kafka_topic_invalidation
    )

    purger = asyncio.create_task(
        purge_loop(
            repository,
            config.seen_retention_days,
            settings.seen_purge_interval_seconds,
            metrics,
        )
    )
    try:
        async for msg in consumer:
            if msg.value is None:
                continue
            await process_message(msg.value, invalidator)
    finally:
        purger.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await purger
        await consumer.stop()
        await redis.aclose()
        await engine.dispose()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
