"""
Discovery feed service — request orchestration for the ranking pipeline.

  Stage 1 │ Context load (parallel, each bounded by upstream_timeout_seconds)
  ────────┼──────────────────────────────────────────────────────────────
          │  interest vector, follow set, block set, seen records,
          │  recent-topic set, identity profile — Redis first, TiDB on miss

  Stage 2 │ Candidate retrieval
  ────────┼──────────────────────────────────────────────────────────────
          │  Qdrant ANN search, limit = page_size × over_fetch_factor,
          │  blocked authors excluded inside the index query

  Stage 3 │ Visibility + signals + scoring
  ────────┼──────────────────────────────────────────────────────────────
          │  content rows and author profiles from TiDB, visibility filter,
          │  five-signal blend with seen decay, greedy diversity ordering

  Stage 4 │ Assembly
  ────────┼──────────────────────────────────────────────────────────────
          │  cursor pagination, hydration of the page slice only,
          │  page written back to Redis

Degradation: seen records, recent topics, identity profile and follow set
fall back to neutral values. A missing interest vector, candidate list or
content fetch ends in an empty feed. Block set and author lookups fail
closed, leaving only the requester's own posts.
"""
import asyncio
import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Iterable, Mapping, Optional

import numpy as np
from opentelemetry import trace

from app.clients.redis_client import FeedCache
from app.config import RankingConfig
from app.domain import (
    Candidate,
    CandidateFilter,
    ContentItem,
    IdentityProfile,
    ScoredCandidate,
)
from app.errors import ConfigurationError, DimensionMismatch, InvalidInput, UpstreamUnavailable
from app.ranking.assembler import (
    hydrate,
    paginate,
    validate_content_id,
    validate_cursor,
    validate_page_size,
)
from app.ranking.scoring import CandidateSignals, ScoringWeights, order_scored, rank_candidates
from app.ranking.signals import (
    classify_content_type,
    days_between,
    engagement_rate,
    extract_topics,
    privacy_score,
    recent_topic_set,
    seen_decay_multiplier,
    temporal_relevance,
    topic_novelty,
)
from app.ranking.vector_math import as_vector, batch_similarity, centroid, normalize
from app.ranking.visibility import VisibilityContext, filter_visible, is_visible
from app.schemas import FeedResponse, InterestVectorRebuild, SimilarPostsResponse
from app.telemetry import FeedMetrics

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

MAX_IMPRESSION_BATCH = 500


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _overrides_fingerprint(overrides: Optional[Mapping[str, Optional[float]]]) -> str:
    changes = sorted((k, v) for k, v in (overrides or {}).items() if v is not None)
    if not changes:
        return "default"
    return ",".join(f"{k}={float(v)!r}" for k, v in changes)


class FeedService:
    def __init__(
        self,
        repository,
        candidates,
        cache: FeedCache,
        config: RankingConfig,
        metrics: FeedMetrics,
        media_url: Optional[Callable[[str], Optional[str]]] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._repo = repository
        self._candidates = candidates
        self._cache = cache
        self._config = config
        self._metrics = metrics
        self._media_url = media_url
        self._clock = clock

    # ═══════════════════════════════════════════════════════════════════════
    #  Upstream helpers
    # ═══════════════════════════════════════════════════════════════════════

    async def _bounded(self, upstream: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=self._config.upstream_timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise UpstreamUnavailable(upstream, "timed out") from exc

    async def _attempt(self, signal: str, awaitable: Awaitable[Any]) -> tuple[Any, bool]:
        """Run one bounded load; an unavailable upstream yields (None, False)."""
        try:
            return await self._bounded(signal, awaitable), True
        except UpstreamUnavailable as exc:
            logger.warning("Degrading '%s': %s", signal, exc)
            self._metrics.degraded(signal)
            return None, False

    # ─────────────────────── Cached context loaders ───────────────────────

    async def _load_interest_vector(self, identity_id: str) -> Optional[list[float]]:
        key = self._cache.interest_vector_key(identity_id)
        cached = await self._cache.get(key)
        if cached is not None:
            return cached
        vector = await self._repo.get_interest_vector(identity_id)
        if vector is not None:
            await self._cache.set(key, vector, self._config.ttls.interest_vector)
        return vector

    async def _load_following(self, identity_id: str) -> frozenset[str]:
        key = self._cache.follows_key(identity_id)
        cached = await self._cache.get(key)
        if cached is not None:
            return frozenset(cached)
        following = await self._repo.get_following(identity_id)
        await self._cache.set(key, sorted(following), self._config.ttls.follows)
        return frozenset(following)

    async def _load_blocked(self, identity_id: str) -> frozenset[str]:
        key = self._cache.blocks_key(identity_id)
        cached = await self._cache.get(key)
        if cached is not None:
            return frozenset(cached)
        blocked = await self._repo.get_blocked(identity_id)
        await self._cache.set(key, sorted(blocked), self._config.ttls.blocks)
        return frozenset(blocked)

    async def _load_seen(self, identity_id: str, now: datetime) -> dict[str, datetime]:
        key = self._cache.seen_key(identity_id)
        cached = await self._cache.get(key)
        if cached is not None:
            seen = {pid: datetime.fromisoformat(ts) for pid, ts in cached.items()}
        else:
            since = now - timedelta(days=self._config.seen_retention_days)
            seen = await self._repo.get_seen(identity_id, since)
            await self._cache.set(
                key,
                {pid: ts.isoformat() for pid, ts in seen.items()},
                self._config.ttls.seen,
            )
        return seen

    async def _load_recent_topics(self, identity_id: str) -> frozenset[str]:
        key = self._cache.topics_key(identity_id)
        cached = await self._cache.get(key)
        if cached is not None:
            return frozenset(cached)
        saves = await self._repo.get_recent_saves(identity_id, self._config.recent_saves_limit)
        topics = recent_topic_set(saves)
        await self._cache.set(key, sorted(topics), self._config.ttls.topics)
        return topics

    async def _load_profile(self, identity_id: str) -> Optional[IdentityProfile]:
        key = self._cache.profile_key(identity_id)
        cached = await self._cache.get(key)
        if cached is not None:
            if not cached.get("exists"):
                return None
            return IdentityProfile(
                identity_id=identity_id,
                weights=cached.get("weights"),
                muted_keywords=tuple(cached.get("muted_keywords") or ()),
            )
        profile = await self._repo.get_profile(identity_id)
        entry: dict[str, Any] = {"exists": profile is not None}
        if profile is not None:
            entry["weights"] = profile.weights
            entry["muted_keywords"] = list(profile.muted_keywords)
        await self._cache.set(key, entry, self._config.ttls.profile)
        return profile

    # ─────────────────────── Weights ──────────────────────────────────────

    def _resolve_weights(
        self,
        profile: Optional[IdentityProfile],
        overrides: Optional[Mapping[str, Optional[float]]],
    ) -> ScoringWeights:
        """Request overrides > identity profile weights > configured defaults."""
        weights = self._config.weights
        if profile is not None and profile.weights:
            try:
                weights = ScoringWeights.from_mapping(profile.weights)
            except ConfigurationError as exc:
                logger.warning(
                    "Ignoring malformed weights for %s: %s", profile.identity_id, exc
                )
                self._metrics.degraded("profile_weights")
        return weights.with_overrides(overrides or {})

    # ═══════════════════════════════════════════════════════════════════════
    #  Discovery feed
    # ═══════════════════════════════════════════════════════════════════════

    async def rank_feed(
        self,
        identity_id: str,
        page_size: Optional[int] = None,
        cursor: Optional[str] = None,
        weight_overrides: Optional[Mapping[str, Optional[float]]] = None,
    ) -> FeedResponse:
        if not identity_id:
            raise InvalidInput("identity_id is required")
        if page_size is None:
            page_size = self._config.default_page_size
        page_size = validate_page_size(page_size, self._config.max_page_size)
        cursor = validate_cursor(cursor)
        # Reject bad overrides before any I/O
        self._config.weights.with_overrides(weight_overrides or {})

        start_time = time.perf_counter()
        try:
            with tracer.start_as_current_span("rank_feed") as span:
                span.set_attribute("identity.id", identity_id)
                span.set_attribute("feed.page_size", page_size)

                page_key = self._cache.page_key(
                    identity_id, _overrides_fingerprint(weight_overrides), page_size, cursor
                )
                cached = await self._cache.get(page_key)
                if cached is not None:
                    span.set_attribute("feed.cache_hit", True)
                    return FeedResponse.model_validate(cached)

                response, complete = await self._compute_page(
                    identity_id, page_size, cursor, weight_overrides, span
                )
                if complete:
                    await self._cache.set(
                        page_key, response.model_dump(mode="json"), self._config.ttls.feed_page
                    )
                return response
        finally:
            self._metrics.feed_latency.observe(time.perf_counter() - start_time)

    async def _compute_page(
        self,
        identity_id: str,
        page_size: int,
        cursor: Optional[str],
        weight_overrides: Optional[Mapping[str, Optional[float]]],
        span,
    ) -> tuple[FeedResponse, bool]:
        """Run the pipeline; the flag is False when any upstream degraded."""
        empty = FeedResponse(identity_id=identity_id, items=[])
        now = self._clock()

        # ── Stage 1: context ──────────────────────────────────────────────
        with tracer.start_as_current_span("load_context"):
            (
                (raw_vector, vector_ok),
                (following, following_ok),
                (blocked, blocked_ok),
                (seen, seen_ok),
                (recent_topics, topics_ok),
                (profile, profile_ok),
            ) = await asyncio.gather(
                self._attempt("interest_vector", self._load_interest_vector(identity_id)),
                self._attempt("follows", self._load_following(identity_id)),
                self._attempt("blocks", self._load_blocked(identity_id)),
                self._attempt("seen", self._load_seen(identity_id, now)),
                self._attempt("topics", self._load_recent_topics(identity_id)),
                self._attempt("profile", self._load_profile(identity_id)),
            )
        complete = all((vector_ok, following_ok, blocked_ok, seen_ok, topics_ok, profile_ok))
        weights = self._resolve_weights(profile, weight_overrides)

        if raw_vector is None:
            logger.info("No interest vector for %s — cold start, empty feed", identity_id)
            span.set_attribute("feed.cold_start", vector_ok)
            # not cached: a vector written elsewhere must show up on the next request
            return empty, False
        try:
            query = as_vector(raw_vector)
        except DimensionMismatch as exc:
            logger.warning("Stored interest vector for %s is unusable: %s", identity_id, exc)
            self._metrics.degraded("interest_vector")
            return empty, False

        # ── Stage 2: retrieval ────────────────────────────────────────────
        limit = page_size * self._config.over_fetch_factor
        exclude = CandidateFilter(exclude_author_ids=blocked if blocked_ok else frozenset())
        with tracer.start_as_current_span("retrieve"):
            found, ok = await self._attempt(
                "candidates", self._candidates.search(query, limit, exclude)
            )
        if not ok:
            return empty, False
        span.set_attribute("candidates.retrieved", len(found))
        if not found:
            return empty, complete

        # ── Stage 3: content, visibility, signals, scoring ────────────────
        with tracer.start_as_current_span("fetch_content"):
            content, ok = await self._attempt(
                "content", self._repo.get_content(c.content_id for c in found)
            )
            if not ok:
                return empty, False
            items = [content[c.content_id] for c in found if c.content_id in content]
            authors, authors_ok = await self._attempt(
                "authors", self._repo.get_authors(i.author_id for i in items)
            )
        complete = complete and authors_ok

        with tracer.start_as_current_span("visibility"):
            if blocked_ok and authors_ok:
                ctx = VisibilityContext(
                    requester_id=identity_id,
                    following=following or frozenset(),
                    blocked=blocked,
                    authors=authors,
                )
            else:
                ctx = VisibilityContext.fail_closed(identity_id)
                authors = authors or {}
            visible = filter_visible(ctx, items)

        with tracer.start_as_current_span("score"):
            signals = self._extract_signals(
                query,
                visible,
                {c.content_id: c for c in found},
                seen or {},
                recent_topics or frozenset(),
                profile.muted_keywords if profile else (),
                now,
            )
            ranked = rank_candidates(signals, weights, self._config.diversity_threshold)
        self._metrics.candidates(len(found), len(visible), len(ranked))

        # ── Stage 4: assembly ─────────────────────────────────────────────
        with tracer.start_as_current_span("assemble"):
            page = paginate(ranked, page_size, cursor)
            items_out = hydrate(page.items, authors, self._media_url)
        span.set_attribute("feed.items", len(items_out))
        return (
            FeedResponse(
                identity_id=identity_id,
                items=items_out,
                next_cursor=page.next_cursor,
                has_next_page=page.has_next_page,
            ),
            complete,
        )

    def _extract_signals(
        self,
        query: np.ndarray,
        items: list[ContentItem],
        found: Mapping[str, Candidate],
        seen: Mapping[str, datetime],
        recent_topics: frozenset[str],
        muted_keywords: Iterable[str],
        now: datetime,
    ) -> list[CandidateSignals]:
        muted = tuple(muted_keywords)
        retention_days = self._config.seen_retention_days

        vectors: list[Optional[np.ndarray]] = []
        for item in items:
            candidate = found.get(item.content_id)
            vector = candidate.vector if candidate is not None else None
            vectors.append(vector if vector is not None else item.embedding)

        with_vector = [i for i, v in enumerate(vectors) if v is not None]
        similarities = [0.0] * len(items)
        if with_vector:
            scores = batch_similarity(query, np.stack([vectors[i] for i in with_vector]))
            for i, score in zip(with_vector, scores):
                similarities[i] = float(score)
        for i, item in enumerate(items):
            if vectors[i] is None and item.content_id in found:
                similarities[i] = found[item.content_id].score

        signals: list[CandidateSignals] = []
        for i, item in enumerate(items):
            seen_at = seen.get(item.content_id)
            days = days_between(seen_at, now) if seen_at is not None else None
            if days is not None and days > retention_days:
                days = None
            signals.append(
                CandidateSignals(
                    item=item,
                    similarity=similarities[i],
                    engagement=engagement_rate(item, self._config.engagement),
                    temporal=temporal_relevance(item, now, self._config.temporal_decay_rate),
                    privacy=privacy_score(item, muted),
                    topic_novelty=topic_novelty(extract_topics(item), recent_topics),
                    seen_multiplier=seen_decay_multiplier(days),
                    content_type=classify_content_type(item),
                    vector=vectors[i],
                )
            )
        return signals

    # ═══════════════════════════════════════════════════════════════════════
    #  Similar content
    # ═══════════════════════════════════════════════════════════════════════

    async def similar_posts(
        self,
        post_id: str,
        requester_id: str,
        limit: Optional[int] = None,
    ) -> SimilarPostsResponse:
        """Posts nearest to `post_id`, filtered for what the requester may see."""
        post_id = validate_content_id(post_id)
        if not requester_id:
            raise InvalidInput("identity_id is required")
        if limit is None:
            limit = self._config.default_page_size
        limit = validate_page_size(limit, self._config.max_page_size)
        empty = SimilarPostsResponse(post_id=post_id, items=[])

        key = self._cache.similar_key(post_id, requester_id, limit)
        cached = await self._cache.get(key)
        if cached is not None:
            return SimilarPostsResponse.model_validate(cached)

        with tracer.start_as_current_span("similar_posts") as span:
            span.set_attribute("post.id", post_id)
            (
                (source, source_ok),
                (stored, _),
                (following, _),
                (blocked, blocked_ok),
            ) = await asyncio.gather(
                self._attempt("content", self._repo.get_content([post_id])),
                self._attempt("candidates", self._candidates.get_vectors([post_id])),
                self._attempt("follows", self._load_following(requester_id)),
                self._attempt("blocks", self._load_blocked(requester_id)),
            )
            if not source_ok or not blocked_ok or post_id not in source:
                return empty
            item = source[post_id]

            source_authors, ok = await self._attempt(
                "authors", self._repo.get_authors([item.author_id])
            )
            if not ok:
                return empty
            ctx = VisibilityContext(
                requester_id=requester_id,
                following=following or frozenset(),
                blocked=blocked,
                authors=source_authors,
            )
            if not is_visible(ctx, item.author_id):
                logger.info("Post %s not visible to %s", post_id, requester_id)
                return empty

            vector = (stored or {}).get(post_id)
            if vector is None:
                vector = item.embedding
            if vector is None:
                return empty

            found, ok = await self._attempt(
                "candidates",
                self._candidates.search(
                    vector,
                    limit,
                    CandidateFilter(
                        exclude_author_ids=blocked,
                        exclude_content_ids=frozenset({post_id}),
                    ),
                ),
            )
            if not ok or not found:
                return empty

            content, ok = await self._attempt(
                "content", self._repo.get_content(c.content_id for c in found)
            )
            if not ok:
                return empty
            items = [content[c.content_id] for c in found if c.content_id in content]
            authors, ok = await self._attempt(
                "authors", self._repo.get_authors(i.author_id for i in items)
            )
            if not ok:
                return empty
            ctx = VisibilityContext(
                requester_id=requester_id,
                following=following or frozenset(),
                blocked=blocked,
                authors=authors,
            )
            visible = filter_visible(ctx, items)

            now = self._clock()
            by_id = {c.content_id: c for c in found}
            scored = []
            for candidate_item in visible:
                similarity = by_id[candidate_item.content_id].score
                scored.append(
                    ScoredCandidate(
                        item=candidate_item,
                        similarity=similarity,
                        engagement=engagement_rate(candidate_item, self._config.engagement),
                        temporal=temporal_relevance(
                            candidate_item, now, self._config.temporal_decay_rate
                        ),
                        diversity=1.0,
                        privacy=1.0,
                        seen_multiplier=1.0,
                        final=max(0.0, similarity),
                        content_type=classify_content_type(candidate_item),
                    )
                )
            response = SimilarPostsResponse(
                post_id=post_id,
                items=hydrate(order_scored(scored)[:limit], authors, self._media_url),
            )

        await self._cache.set(key, response.model_dump(mode="json"), self._config.ttls.similar)
        return response

    # ═══════════════════════════════════════════════════════════════════════
    #  Writes: interest vector, impressions, seen purge
    # ═══════════════════════════════════════════════════════════════════════

    async def rebuild_interest_vector(self, identity_id: str) -> InterestVectorRebuild:
        """
        Recompute the interest vector as the normalised centroid of the
        identity's recent saved and authored posts. Upstream failures
        propagate; a rebuild is an explicit write, not a degradable read.
        """
        if not identity_id:
            raise InvalidInput("identity_id is required")
        with tracer.start_as_current_span("rebuild_interest_vector") as span:
            span.set_attribute("identity.id", identity_id)
            source_ids = await self._bounded(
                "tidb",
                self._repo.get_interest_sources(identity_id, self._config.interest_source_limit),
            )
            vectors = await self._bounded("qdrant", self._candidates.get_vectors(source_ids))
            missing = [pid for pid in source_ids if pid not in vectors]
            if missing:
                rows = await self._bounded("tidb", self._repo.get_content(missing))
                for pid, item in rows.items():
                    if item.embedding is not None:
                        vectors[pid] = item.embedding

            ordered = [vectors[pid] for pid in source_ids if pid in vectors]
            if not ordered:
                logger.info("No embedded posts for %s — interest vector left unchanged", identity_id)
                return InterestVectorRebuild(identity_id=identity_id, rebuilt=False, source_posts=0)

            vector = normalize(centroid(np.stack(ordered)))
            await self._bounded(
                "tidb", self._repo.set_interest_vector(identity_id, vector.tolist())
            )

        await self._cache.delete(self._cache.interest_vector_key(identity_id))
        await self._cache.invalidate_pages(identity_id)
        logger.info("Rebuilt interest vector for %s from %d posts", identity_id, len(ordered))
        return InterestVectorRebuild(
            identity_id=identity_id, rebuilt=True, source_posts=len(ordered)
        )

    async def record_impressions(self, identity_id: str, post_ids: list[str]) -> int:
        if not identity_id:
            raise InvalidInput("identity_id is required")
        if not post_ids or len(post_ids) > MAX_IMPRESSION_BATCH:
            raise InvalidInput(f"post_ids must hold between 1 and {MAX_IMPRESSION_BATCH} ids")
        ids = list(dict.fromkeys(validate_content_id(pid) for pid in post_ids))

        await self._bounded("tidb", self._repo.record_seen(identity_id, ids, self._clock()))
        await self._cache.delete(self._cache.seen_key(identity_id))
        await self._cache.invalidate_pages(identity_id)
        logger.debug("Recorded %d impressions for %s", len(ids), identity_id)
        return len(ids)

    async def purge_expired_seen(self) -> int:
        return await purge_expired_seen(
            self._repo, self._config.seen_retention_days, self._metrics, self._clock()
        )


async def purge_expired_seen(
    repository,
    retention_days: int,
    metrics: Optional[FeedMetrics] = None,
    now: Optional[datetime] = None,
) -> int:
    """Delete seen records older than the retention window; they no longer affect scores."""
    before = (now or _utcnow()) - timedelta(days=retention_days)
    purged = await repository.purge_seen(before)
    if metrics is not None:
        metrics.seen_purged_total.inc(purged)
    logger.info("Purged %d seen records older than %s", purged, before.isoformat())
    return purged
