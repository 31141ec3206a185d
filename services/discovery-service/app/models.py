"""
SQLAlchemy ORM models for TiDB.

These tables are owned by the users / posts services; the discovery service
only reads them, apart from seen_posts (impressions) and the interest vector
column, which it writes.

Tables:
  users       — profiles, private flag, serialised interest vector,
                per-identity ranking weights and muted keywords
  follows     — social graph edges (follower → followee)
  blocks      — block edges (blocker → blocked); hide content both ways
  posts       — post metadata, engagement counters, tags, embedding
  saves       — user × post saves (recent-topic context, vector rebuilds)
  seen_posts  — impressions, purged after the retention window
"""
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


class User(Base):
    __tablename__ = "users"

    user_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    username: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    display_name: Mapped[Optional[str]] = mapped_column(String(255))
    avatar_url: Mapped[Optional[str]] = mapped_column(String(500))
    is_private: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    # Serialised list[float] (1024) — centroid of recent authored/saved posts.
    # NULL means cold start: no personalised discovery yet.
    interest_vector: Mapped[Optional[list]] = mapped_column(JSON)
    interest_vector_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    # {"similarity": .., "temporal": .., "diversity": .., "engagement": .., "privacy": ..}
    scoring_weights: Mapped[Optional[dict]] = mapped_column(JSON)
    muted_keywords: Mapped[Optional[list]] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    posts = relationship("Post", back_populates="author", lazy="noload")


class Follow(Base):
    __tablename__ = "follows"

    follower_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.user_id"), primary_key=True
    )
    followee_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.user_id"), primary_key=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (Index("idx_followee", "followee_id"),)


class Block(Base):
    __tablename__ = "blocks"

    blocker_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.user_id"), primary_key=True
    )
    blocked_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.user_id"), primary_key=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (
        # "who blocked user X?" — needed because blocks hide content both ways
        Index("idx_blocked", "blocked_id"),
    )


class Post(Base):
    __tablename__ = "posts"

    post_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.user_id"), nullable=False
    )
    content: Mapped[Optional[str]] = mapped_column(Text)
    # MinIO object key — hydrated into a pre-signed URL for the final page only
    media_key: Mapped[Optional[str]] = mapped_column(String(500))
    media_type: Mapped[Optional[str]] = mapped_column(String(20))  # 'image' | 'video' | None
    content_type: Mapped[Optional[str]] = mapped_column(String(20))  # text|image|video|mixed
    tags: Mapped[Optional[list]] = mapped_column(JSON)
    embedding: Mapped[Optional[list]] = mapped_column(JSON)
    save_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    comment_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    author = relationship("User", back_populates="posts", lazy="noload")

    __table_args__ = (
        Index("idx_posts_user", "user_id"),
        Index("idx_posts_created", "created_at"),
    )


class Save(Base):
    __tablename__ = "saves"

    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.user_id"), primary_key=True
    )
    post_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("posts.post_id"), primary_key=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    __table_args__ = (Index("idx_saves_user_created", "user_id", "created_at"),)


class SeenPost(Base):
    __tablename__ = "seen_posts"

    user_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    post_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (Index("idx_seen_at", "seen_at"),)
