"""
Request-scoped domain types shared by the ranking pipeline.

These are plain dataclasses, decoupled from both the ORM rows (models.py)
and the HTTP schemas (schemas.py).
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

import numpy as np


@dataclass(frozen=True)
class ContentItem:
    content_id: str
    author_id: str
    body: str
    created_at: datetime            # always timezone-aware (UTC)
    save_count: int = 0
    comment_count: int = 0
    tags: tuple[str, ...] = ()
    content_type: Optional[str] = None  # 'text' | 'image' | 'video' | 'mixed'
    media_key: Optional[str] = None
    media_type: Optional[str] = None    # 'image' | 'video'
    embedding: Optional[np.ndarray] = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class AuthorProfile:
    identity_id: str
    is_private: bool
    username: Optional[str] = None
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None


@dataclass(frozen=True)
class IdentityProfile:
    """Per-identity ranking parameters stored alongside the user row."""
    identity_id: str
    weights: Optional[dict] = None
    muted_keywords: tuple[str, ...] = ()


@dataclass(frozen=True)
class Candidate:
    content_id: str
    score: float
    vector: Optional[np.ndarray] = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class CandidateFilter:
    exclude_author_ids: frozenset[str] = frozenset()
    exclude_content_ids: frozenset[str] = frozenset()


@dataclass
class ScoredCandidate:
    item: ContentItem
    similarity: float
    engagement: float
    temporal: float
    diversity: float
    privacy: float
    seen_multiplier: float
    final: float
    content_type: str

    @property
    def content_id(self) -> str:
        return self.item.content_id

    def sort_key(self) -> tuple:
        # Descending final, then newest first, then id for full determinism
        return (-self.final, -self.item.created_at.timestamp(), self.item.content_id)


@dataclass(frozen=True)
class PageSlice:
    items: list[ScoredCandidate]
    next_cursor: Optional[str]
    has_next_page: bool
