"""
Configuration management using Pydantic BaseSettings.
All values can be overridden via DISCOVERY_* environment variables or a
.env file.

Settings only parses values; RankingConfig.from_settings() validates the
ranking surface and raises ConfigurationError. The service calls it during
startup so a bad deployment fails fast instead of ranking with defaults.
"""
from dataclasses import dataclass

from pydantic import ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from app.errors import ConfigurationError
from app.ranking.scoring import ScoringWeights
from app.ranking.signals import EngagementCaps


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="DISCOVERY_",
        env_file=".env",
        env_file_encoding="utf-8",
    )

    # ── TiDB (MySQL-protocol compatible) ───────────────────────────────────
    tidb_host: str = "tidb"
    tidb_port: int = 4000
    tidb_user: str = "root"
    tidb_password: str = ""
    tidb_database: str = "social_feed"
    db_create_tables: bool = True

    @property
    def tidb_url(self) -> str:
        return (
            f"mysql+aiomysql://{self.tidb_user}:{self.tidb_password}"
            f"@{self.tidb_host}:{self.tidb_port}/{self.tidb_database}"
        )

    # ── Redis (artifact cache) ─────────────────────────────────────────────
    redis_host: str = "redis"
    redis_port: int = 6379
    cache_prefix: str = "discovery"

    # Per-artifact TTLs (seconds)
    ttl_interest_vector: int = 1800
    ttl_follows: int = 1800
    ttl_blocks: int = 1800
    ttl_seen: int = 3600
    ttl_topics: int = 600
    ttl_profile: int = 600
    ttl_feed_page: int = 300
    ttl_similar: int = 900

    # ── Qdrant ─────────────────────────────────────────────────────────────
    qdrant_host: str = "qdrant"
    qdrant_port: int = 6333
    qdrant_collection: str = "posts"

    # ── MinIO (S3-compatible, media hydration only) ────────────────────────
    minio_endpoint: str = "minio:9000"
    minio_access_key: str = "minioadmin"
    minio_secret_key: str = "minioadmin"
    minio_bucket: str = "media"
    media_url_ttl: int = 3600

    # ── Kafka (invalidation events) ────────────────────────────────────────
    kafka_bootstrap_servers: str = "kafka:9092"
    kafka_topic_invalidation: str = "feed-invalidation"
    kafka_consumer_group: str = "discovery-invalidation"
    seen_purge_interval_seconds: int = 3600

    # ── Ranking ────────────────────────────────────────────────────────────
    weight_similarity: float = 0.3
    weight_temporal: float = 0.2
    weight_diversity: float = 0.2
    weight_engagement: float = 0.2
    weight_privacy: float = 0.1
    over_fetch_factor: int = 10
    diversity_threshold: float = 0.7
    temporal_decay_rate: float = 0.1          # per hour
    seen_retention_days: int = 30
    engagement_save_cap: int = 100
    engagement_comment_cap: int = 50
    engagement_save_weight: float = 0.5
    engagement_comment_weight: float = 0.5
    recent_saves_limit: int = 50
    interest_source_limit: int = 50
    default_page_size: int = 20
    max_page_size: int = 100
    upstream_timeout_seconds: float = 2.0

    # ── Observability ──────────────────────────────────────────────────────
    otel_exporter_otlp_endpoint: str = "http://jaeger:4317"
    service_name: str = "discovery-service"
    environment: str = "development"


@dataclass(frozen=True)
class CacheTTLs:
    interest_vector: int
    follows: int
    blocks: int
    seen: int
    topics: int
    profile: int
    feed_page: int
    similar: int


@dataclass(frozen=True)
class RankingConfig:
    """Validated, immutable ranking parameters handed to the feed service."""
    weights: ScoringWeights
    over_fetch_factor: int
    diversity_threshold: float
    temporal_decay_rate: float
    seen_retention_days: int
    engagement: EngagementCaps
    recent_saves_limit: int
    interest_source_limit: int
    default_page_size: int
    max_page_size: int
    upstream_timeout_seconds: float
    ttls: CacheTTLs

    @classmethod
    def from_settings(cls, settings: Settings) -> "RankingConfig":
        weights = ScoringWeights(
            similarity=settings.weight_similarity,
            temporal=settings.weight_temporal,
            diversity=settings.weight_diversity,
            engagement=settings.weight_engagement,
            privacy=settings.weight_privacy,
        )
        config = cls(
            weights=weights,
            over_fetch_factor=settings.over_fetch_factor,
            diversity_threshold=settings.diversity_threshold,
            temporal_decay_rate=settings.temporal_decay_rate,
            seen_retention_days=settings.seen_retention_days,
            engagement=EngagementCaps(
                save_cap=settings.engagement_save_cap,
                comment_cap=settings.engagement_comment_cap,
                save_weight=settings.engagement_save_weight,
                comment_weight=settings.engagement_comment_weight,
            ),
            recent_saves_limit=settings.recent_saves_limit,
            interest_source_limit=settings.interest_source_limit,
            default_page_size=settings.default_page_size,
            max_page_size=settings.max_page_size,
            upstream_timeout_seconds=settings.upstream_timeout_seconds,
            ttls=CacheTTLs(
                interest_vector=settings.ttl_interest_vector,
                follows=settings.ttl_follows,
                blocks=settings.ttl_blocks,
                seen=settings.ttl_seen,
                topics=settings.ttl_topics,
                profile=settings.ttl_profile,
                feed_page=settings.ttl_feed_page,
                similar=settings.ttl_similar,
            ),
        )
        config.validate()
        return config

    def validate(self) -> None:
        errors: list[str] = []
        if self.over_fetch_factor < 1:
            errors.append("over_fetch_factor must be >= 1")
        if not 0.0 <= self.diversity_threshold <= 1.0:
            errors.append("diversity_threshold must be between 0 and 1")
        if not self.temporal_decay_rate > 0:
            errors.append("temporal_decay_rate must be positive")
        if self.seen_retention_days < 1:
            errors.append("seen_retention_days must be >= 1")
        if self.engagement.save_cap <= 0 or self.engagement.comment_cap <= 0:
            errors.append("engagement caps must be positive")
        if self.engagement.save_weight < 0 or self.engagement.comment_weight < 0:
            errors.append("engagement weights must be non-negative")
        if self.recent_saves_limit < 1 or self.interest_source_limit < 1:
            errors.append("recent_saves_limit and interest_source_limit must be >= 1")
        if self.max_page_size < 1:
            errors.append("max_page_size must be >= 1")
        if not 1 <= self.default_page_size <= self.max_page_size:
            errors.append("default_page_size must be between 1 and max_page_size")
        if not self.upstream_timeout_seconds > 0:
            errors.append("upstream_timeout_seconds must be positive")
        for name, ttl in vars(self.ttls).items():
            if ttl <= 0:
                errors.append(f"ttl for '{name}' must be positive")
        if errors:
            raise ConfigurationError("; ".join(errors))


def load_ranking_config(**overrides) -> RankingConfig:
    """Build settings from the environment and validate the ranking surface."""
    try:
        settings = Settings(**overrides)
    except ValidationError as exc:
        raise ConfigurationError(str(exc)) from exc
    return RankingConfig.from_settings(settings)
