"""
Discovery Feed Service — entry point.

Startup sequence:
  1. Configure OTel tracing (→ Jaeger via OTLP)
  2. Validate the ranking configuration (fatal on error)
  3. Initialise DB connection pool (TiDB) and create tables if asked to
  4. Connect to Redis
  5. Connect to Qdrant & ensure collection exists
  6. Initialise MinIO client for media URL signing
  7. Expose Prometheus /metrics endpoint

Every component is built here and stored on app.state; nothing is a
module-level connection. create_app(components=...) skips the lifespan
wiring so tests can hand in their own collaborators.
"""
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app

from app.clients.minio_client import MediaUrlSigner, build_s3_client
from app.clients.qdrant_client import QdrantCandidateSource, build_qdrant
from app.clients.redis_client import FeedCache, FeedInvalidator, build_redis
from app.config import RankingConfig, Settings
from app.database import build_engine, build_sessionmaker, init_db
from app.errors import InvalidInput, UpstreamUnavailable
from app.repository import ContentRepository
from app.routers import events, feed, posts, users
from app.service import FeedService
from app.telemetry import FeedMetrics, instrument_app, setup_tracing

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)


@dataclass
class Components:
    feed_service: FeedService
    invalidator: FeedInvalidator


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage startup and shutdown of all external connections."""
    if getattr(app.state, "feed_service", None) is not None:
        yield
        return

    settings: Settings = app.state.settings
    metrics: FeedMetrics = app.state.metrics
    logger.info("Starting Discovery Feed Service (env=%s)", settings.environment)

    setup_tracing(settings.service_name, settings.environment, settings.otel_exporter_otlp_endpoint)
    config = RankingConfig.from_settings(settings)

    engine = build_engine(settings.tidb_url)
    if settings.db_create_tables:
        await init_db(engine)

    redis = build_redis(settings.redis_host, settings.redis_port)
    await redis.ping()
    logger.info("Redis connected at %s:%s", settings.redis_host, settings.redis_port)

    qdrant = build_qdrant(settings.qdrant_host, settings.qdrant_port)
    source = QdrantCandidateSource(qdrant, settings.qdrant_collection)
    await source.ensure_collection()

    # presigning is local, no network round trip
    s3 = build_s3_client(
        settings.minio_endpoint, settings.minio_access_key, settings.minio_secret_key
    )

    cache = FeedCache(redis, settings.cache_prefix, metrics)
    app.state.feed_service = FeedService(
        repository=ContentRepository(build_sessionmaker(engine)),
        candidates=source,
        cache=cache,
        config=config,
        metrics=metrics,
        media_url=MediaUrlSigner(s3, settings.minio_bucket, settings.media_url_ttl),
    )
    app.state.invalidator = FeedInvalidator(cache, metrics)

    logger.info("All services connected. API ready.")
    try:
        yield
    finally:
        logger.info("Shutting down...")
        await qdrant.close()
        await redis.aclose()
        await engine.dispose()


async def _invalid_input(request: Request, exc: InvalidInput) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc)})


async def _upstream_unavailable(request: Request, exc: UpstreamUnavailable) -> JSONResponse:
    logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=503, content={"detail": str(exc)})


def create_app(
    settings: Optional[Settings] = None,
    components: Optional[Components] = None,
    metrics: Optional[FeedMetrics] = None,
) -> FastAPI:
    settings = settings or Settings()
    metrics = metrics or FeedMetrics()

    app = FastAPI(
        title="Discovery Feed Service",
        description=(
            "Personalised discovery feed: vector retrieval, visibility "
            "filtering and multi-signal ranking."
        ),
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.metrics = metrics
    if components is not None:
        app.state.feed_service = components.feed_service
        app.state.invalidator = components.invalidator

    app.add_exception_handler(InvalidInput, _invalid_input)
    app.add_exception_handler(UpstreamUnavailable, _upstream_unavailable)

    # ── Routers ────────────────────────────────────────────────────────────
    app.include_router(feed.router, prefix="/feed", tags=["Feed"])
    app.include_router(posts.router, prefix="/posts", tags=["Posts"])
    app.include_router(users.router, prefix="/users", tags=["Users"])
    app.include_router(events.router, prefix="/events", tags=["Events"])

    # ── Prometheus metrics endpoint ────────────────────────────────────────
    app.mount("/metrics", make_asgi_app(registry=metrics.registry))

    # ── OTel FastAPI instrumentation ──────────────────────────────────────
    instrument_app(app)

    @app.get("/health", tags=["Health"])
    async def health():
        return {"status": "ok", "service": settings.service_name}

    return app


app = create_app()
