"""
Relational reads (and the few writes) the ranking pipeline needs from TiDB.

Every batch lookup is keyed by an id list and returns partial results
silently for ids that do not exist. Driver / connection errors are
re-raised as UpstreamUnavailable so the feed service can apply its
degradation policy without knowing about SQLAlchemy.
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Iterable, Optional

import numpy as np
from sqlalchemy import delete, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.domain import AuthorProfile, ContentItem, IdentityProfile
from app.errors import UpstreamUnavailable
from app.models import Block, Follow, Post, Save, SeenPost, User
from app.ranking.vector_math import VECTOR_DIM

logger = logging.getLogger(__name__)


def as_utc(value: datetime) -> datetime:
    """MySQL DATETIME columns come back naive; they are stored in UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _embedding(raw) -> Optional[np.ndarray]:
    if not raw or len(raw) != VECTOR_DIM:
        return None
    return np.asarray(raw, dtype=np.float32)


def post_to_item(post: Post) -> ContentItem:
    return ContentItem(
        content_id=post.post_id,
        author_id=post.user_id,
        body=post.content or "",
        created_at=as_utc(post.created_at),
        save_count=post.save_count or 0,
        comment_count=post.comment_count or 0,
        tags=tuple(post.tags or ()),
        content_type=post.content_type,
        media_key=post.media_key,
        media_type=post.media_type,
        embedding=_embedding(post.embedding),
    )


class ContentRepository:
    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]) -> None:
        self._sessionmaker = sessionmaker

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncIterator[AsyncSession]:
        try:
            async with self._sessionmaker() as session:
                yield session
        except SQLAlchemyError as exc:
            logger.warning("TiDB %s failed: %s", operation, exc)
            raise UpstreamUnavailable("tidb", exc) from exc

    # ─────────────────────── Identity ─────────────────────────────────────

    async def get_interest_vector(self, identity_id: str) -> Optional[list[float]]:
        async with self._session("interest vector lookup") as session:
            row = await session.execute(
                select(User.interest_vector).where(User.user_id == identity_id)
            )
            vector = row.scalar_one_or_none()
        return list(vector) if vector else None

    async def set_interest_vector(self, identity_id: str, vector: list[float]) -> None:
        async with self._session("interest vector update") as session:
            user = await session.get(User, identity_id)
            if user is None:
                return
            user.interest_vector = [float(x) for x in vector]
            user.interest_vector_updated_at = datetime.now(timezone.utc)
            await session.commit()

    async def get_profile(self, identity_id: str) -> Optional[IdentityProfile]:
        async with self._session("profile lookup") as session:
            row = await session.execute(
                select(User.user_id, User.scoring_weights, User.muted_keywords).where(
                    User.user_id == identity_id
                )
            )
            found = row.first()
        if found is None:
            return None
        return IdentityProfile(
            identity_id=found.user_id,
            weights=found.scoring_weights or None,
            muted_keywords=tuple(found.muted_keywords or ()),
        )

    # ─────────────────────── Visibility edges ─────────────────────────────

    async def get_following(self, identity_id: str) -> set[str]:
        async with self._session("follow lookup") as session:
            rows = await session.execute(
                select(Follow.followee_id).where(Follow.follower_id == identity_id)
            )
            return {r[0] for r in rows.all()}

    async def get_blocked(self, identity_id: str) -> set[str]:
        """Identities on either side of a block edge with `identity_id`."""
        async with self._session("block lookup") as session:
            rows = await session.execute(
                select(Block.blocker_id, Block.blocked_id).where(
                    or_(Block.blocker_id == identity_id, Block.blocked_id == identity_id)
                )
            )
            edges = rows.all()
        blocked: set[str] = set()
        for blocker_id, blocked_id in edges:
            blocked.add(blocked_id if blocker_id == identity_id else blocker_id)
        blocked.discard(identity_id)
        return blocked

    async def get_authors(self, author_ids: Iterable[str]) -> dict[str, AuthorProfile]:
        ids = list(set(author_ids))
        if not ids:
            return {}
        async with self._session("author lookup") as session:
            rows = await session.execute(
                select(
                    User.user_id,
                    User.is_private,
                    User.username,
                    User.display_name,
                    User.avatar_url,
                ).where(User.user_id.in_(ids))
            )
            return {
                r.user_id: AuthorProfile(
                    identity_id=r.user_id,
                    is_private=bool(r.is_private),
                    username=r.username,
                    display_name=r.display_name,
                    avatar_url=r.avatar_url,
                )
                for r in rows.all()
            }

    # ─────────────────────── Content ──────────────────────────────────────

    async def get_content(self, post_ids: Iterable[str]) -> dict[str, ContentItem]:
        ids = list(dict.fromkeys(post_ids))
        if not ids:
            return {}
        async with self._session("content fetch") as session:
            rows = await session.execute(select(Post).where(Post.post_id.in_(ids)))
            return {p.post_id: post_to_item(p) for p in rows.scalars().all()}

    async def get_recent_saves(self, identity_id: str, limit: int) -> list[ContentItem]:
        async with self._session("recent saves lookup") as session:
            rows = await session.execute(
                select(Post)
                .join(Save, Save.post_id == Post.post_id)
                .where(Save.user_id == identity_id)
                .order_by(Save.created_at.desc())
                .limit(limit)
            )
            return [post_to_item(p) for p in rows.scalars().all()]

    async def get_interest_sources(self, identity_id: str, limit: int) -> list[str]:
        """Ids of the identity's most recent saved and authored posts."""
        async with self._session("interest source lookup") as session:
            saved = await session.execute(
                select(Save.post_id)
                .where(Save.user_id == identity_id)
                .order_by(Save.created_at.desc())
                .limit(limit)
            )
            authored = await session.execute(
                select(Post.post_id)
                .where(Post.user_id == identity_id)
                .order_by(Post.created_at.desc())
                .limit(limit)
            )
            ids = [r[0] for r in saved.all()] + [r[0] for r in authored.all()]
        return list(dict.fromkeys(ids))

    # ─────────────────────── Seen records ─────────────────────────────────

    async def get_seen(self, identity_id: str, since: datetime) -> dict[str, datetime]:
        async with self._session("seen lookup") as session:
            rows = await session.execute(
                select(SeenPost.post_id, SeenPost.seen_at).where(
                    SeenPost.user_id == identity_id,
                    SeenPost.seen_at >= since,
                )
            )
            return {r.post_id: as_utc(r.seen_at) for r in rows.all()}

    async def record_seen(
        self,
        identity_id: str,
        post_ids: Iterable[str],
        seen_at: datetime,
    ) -> None:
        async with self._session("seen write") as session:
            for post_id in dict.fromkeys(post_ids):
                await session.merge(
                    SeenPost(user_id=identity_id, post_id=post_id, seen_at=seen_at)
                )
            await session.commit()

    async def purge_seen(self, before: datetime) -> int:
        async with self._session("seen purge") as session:
            result = await session.execute(delete(SeenPost).where(SeenPost.seen_at < before))
            await session.commit()
        return result.rowcount or 0
