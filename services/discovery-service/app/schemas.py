"""
Pydantic request / response schemas for the API layer.
Kept separate from ORM models and ranking dataclasses to avoid coupling
transport to storage.
"""
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field


# ──────────────────────────── Feed ────────────────────────────────────────

class ScoreBreakdown(BaseModel):
    """Per-signal scores, exposed for debugging / tuning."""
    similarity: float
    engagement: float
    temporal: float
    diversity: float
    privacy: float
    seen_multiplier: float
    final: float


class FeedItem(BaseModel):
    """A hydrated, ranked post returned in the feed."""
    post_id: str
    author_id: str
    username: Optional[str] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    content: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    content_type: str
    media_url: Optional[str] = None    # pre-signed MinIO URL
    media_type: Optional[str] = None
    save_count: int
    comment_count: int
    created_at: datetime
    scores: ScoreBreakdown


class FeedResponse(BaseModel):
    identity_id: str
    items: list[FeedItem]
    next_cursor: Optional[str] = None
    has_next_page: bool = False


class WeightOverrides(BaseModel):
    similarity: Optional[float] = None
    temporal: Optional[float] = None
    diversity: Optional[float] = None
    engagement: Optional[float] = None
    privacy: Optional[float] = None

    def as_overrides(self) -> dict[str, Optional[float]]:
        return self.model_dump()


# ──────────────────────────── Impressions ─────────────────────────────────

class ImpressionRecord(BaseModel):
    identity_id: str
    post_ids: list[str] = Field(..., min_length=1, max_length=500)


# ──────────────────────────── Similar content ─────────────────────────────

class SimilarPostsResponse(BaseModel):
    post_id: str
    items: list[FeedItem]


# ──────────────────────────── Interest vector ─────────────────────────────

class InterestVectorRebuild(BaseModel):
    identity_id: str
    rebuilt: bool
    source_posts: int


# ──────────────────────────── Invalidation events ─────────────────────────

EventType = Literal[
    "follow_changed",
    "block_changed",
    "post_created",
    "privacy_changed",
    "post_saved",
    "seen_recorded",
]


class InvalidationEvent(BaseModel):
    """
    Mutation event raised by a collaborator (users / posts services).

      follow_changed   — actor_id followed / unfollowed target_id
      block_changed    — actor_id blocked / unblocked target_id
      post_created     — actor_id authored post_id
      privacy_changed  — actor_id toggled their private-profile flag
      post_saved       — actor_id saved post_id
      seen_recorded    — actor_id was shown posts
    """
    type: EventType
    actor_id: str
    target_id: Optional[str] = None
    post_id: Optional[str] = None
