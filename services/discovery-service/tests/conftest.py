import uuid
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

import numpy as np
import pytest
import pytest_asyncio
from fakeredis.aioredis import FakeRedis

from app.clients.redis_client import FeedCache, FeedInvalidator
from app.config import RankingConfig, Settings
from app.domain import AuthorProfile, Candidate, CandidateFilter, ContentItem, IdentityProfile
from app.errors import UpstreamUnavailable
from app.ranking.vector_math import VECTOR_DIM, batch_similarity
from app.service import FeedService
from app.telemetry import FeedMetrics

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

USER_ME = "00000000-0000-0000-0000-000000000010"
USER_ALICE = "00000000-0000-0000-0000-000000000011"
USER_BOB = "00000000-0000-0000-0000-000000000012"
USER_CAROL = "00000000-0000-0000-0000-000000000013"


def post_id(n: int) -> str:
    return str(uuid.UUID(int=0xA000_0000 + n))


def unit(seed: int) -> np.ndarray:
    rng = np.random.default_rng(seed)
    v = rng.standard_normal(VECTOR_DIM).astype(np.float32)
    return v / np.linalg.norm(v)


def nudge(base: np.ndarray, amount: float, seed: int) -> np.ndarray:
    """A unit vector at a controlled distance from `base`."""
    v = base + amount * unit(seed)
    return (v / np.linalg.norm(v)).astype(np.float32)


def make_item(
    n: int,
    author_id: str,
    hours_old: float = 1.0,
    body: str = "",
    saves: int = 0,
    comments: int = 0,
    tags: Iterable[str] = (),
    embedding: Optional[np.ndarray] = None,
    media_key: Optional[str] = None,
    media_type: Optional[str] = None,
) -> ContentItem:
    return ContentItem(
        content_id=post_id(n),
        author_id=author_id,
        body=body,
        created_at=NOW - timedelta(hours=hours_old),
        save_count=saves,
        comment_count=comments,
        tags=tuple(tags),
        media_key=media_key,
        media_type=media_type,
        embedding=embedding,
    )


class FakeRepository:
    """In-memory stand-in for ContentRepository with per-operation failure injection."""

    def __init__(self) -> None:
        self.vectors: dict[str, list[float]] = {}
        self.authors: dict[str, AuthorProfile] = {}
        self.profiles: dict[str, IdentityProfile] = {}
        self.follows: set[tuple[str, str]] = set()
        self.blocks: set[tuple[str, str]] = set()
        self.posts: dict[str, ContentItem] = {}
        self.saves: dict[str, list[str]] = {}
        self.seen: dict[tuple[str, str], datetime] = {}
        self.failing: set[str] = set()
        self.calls: list[str] = []

    def _check(self, op: str) -> None:
        self.calls.append(op)
        if op in self.failing:
            raise UpstreamUnavailable("tidb", f"{op} failed")

    def add_user(self, identity_id: str, private: bool = False, vector=None) -> None:
        self.authors[identity_id] = AuthorProfile(
            identity_id=identity_id,
            is_private=private,
            username=f"user-{identity_id[-2:]}",
            display_name=f"User {identity_id[-2:]}",
        )
        if vector is not None:
            self.vectors[identity_id] = [float(x) for x in vector]

    def add_post(self, item: ContentItem) -> ContentItem:
        self.posts[item.content_id] = item
        return item

    async def get_interest_vector(self, identity_id):
        self._check("get_interest_vector")
        return self.vectors.get(identity_id)

    async def set_interest_vector(self, identity_id, vector):
        self._check("set_interest_vector")
        self.vectors[identity_id] = list(vector)

    async def get_profile(self, identity_id):
        self._check("get_profile")
        return self.profiles.get(identity_id)

    async def get_following(self, identity_id):
        self._check("get_following")
        return {b for a, b in self.follows if a == identity_id}

    async def get_blocked(self, identity_id):
        self._check("get_blocked")
        out = {b for a, b in self.blocks if a == identity_id}
        out |= {a for a, b in self.blocks if b == identity_id}
        return out

    async def get_authors(self, author_ids):
        self._check("get_authors")
        return {a: self.authors[a] for a in set(author_ids) if a in self.authors}

    async def get_content(self, post_ids):
        self._check("get_content")
        return {p: self.posts[p] for p in post_ids if p in self.posts}

    async def get_recent_saves(self, identity_id, limit):
        self._check("get_recent_saves")
        ids = self.saves.get(identity_id, [])[:limit]
        return [self.posts[p] for p in ids if p in self.posts]

    async def get_interest_sources(self, identity_id, limit):
        self._check("get_interest_sources")
        saved = self.saves.get(identity_id, [])[:limit]
        authored = [p.content_id for p in self.posts.values() if p.author_id == identity_id][:limit]
        return list(dict.fromkeys(saved + authored))

    async def get_seen(self, identity_id, since):
        self._check("get_seen")
        return {p: ts for (u, p), ts in self.seen.items() if u == identity_id and ts >= since}

    async def record_seen(self, identity_id, post_ids, seen_at):
        self._check("record_seen")
        for p in post_ids:
            self.seen[(identity_id, p)] = seen_at

    async def purge_seen(self, before):
        self._check("purge_seen")
        expired = [k for k, ts in self.seen.items() if ts < before]
        for k in expired:
            del self.seen[k]
        return len(expired)


class FakeCandidateSource:
    """Exact (brute-force) nearest-neighbour search over registered posts."""

    def __init__(self) -> None:
        self.points: dict[str, tuple[np.ndarray, str]] = {}
        self.failing = False
        self.searches: list[tuple[int, CandidateFilter]] = []

    def add(self, item: ContentItem, vector: np.ndarray) -> None:
        self.points[item.content_id] = (np.asarray(vector, dtype=np.float32), item.author_id)

    async def search(self, query_vector, limit, exclude=None):
        if self.failing:
            raise UpstreamUnavailable("qdrant", "search failed")
        exclude = exclude or CandidateFilter()
        self.searches.append((limit, exclude))
        ids = [
            pid for pid, (_, author) in self.points.items()
            if author not in exclude.exclude_author_ids and pid not in exclude.exclude_content_ids
        ]
        if not ids:
            return []
        matrix = np.stack([self.points[pid][0] for pid in ids])
        scores = batch_similarity(query_vector, matrix)
        ranked = sorted(zip(ids, scores), key=lambda t: (-t[1], t[0]))[:limit]
        return [Candidate(pid, float(s), self.points[pid][0]) for pid, s in ranked]

    async def get_vectors(self, content_ids):
        if self.failing:
            raise UpstreamUnavailable("qdrant", "retrieve failed")
        return {pid: self.points[pid][0] for pid in content_ids if pid in self.points}


@pytest.fixture
def settings():
    return Settings(_env_file=None)


@pytest.fixture
def config(settings):
    return RankingConfig.from_settings(settings)


@pytest.fixture
def metrics():
    return FeedMetrics()


@pytest_asyncio.fixture
async def fake_redis():
    client = FakeRedis(decode_responses=True)
    try:
        yield client
    finally:
        await client.flushall()
        await client.aclose()


@pytest.fixture
def cache(fake_redis, metrics):
    return FeedCache(fake_redis, "test", metrics)


@pytest.fixture
def invalidator(cache, metrics):
    return FeedInvalidator(cache, metrics)


@pytest.fixture
def repo():
    return FakeRepository()


@pytest.fixture
def source():
    return FakeCandidateSource()


@pytest.fixture
def media_urls():
    return lambda key: f"https://media.test/{key}"


@pytest.fixture
def service(repo, source, cache, config, metrics, media_urls):
    return FeedService(
        repository=repo,
        candidates=source,
        cache=cache,
        config=config,
        metrics=metrics,
        media_url=media_urls,
        clock=lambda: NOW,
    )
