"""
Per-candidate secondary signals.

  engagement   — capped, weighted blend of save and comment counts
  temporal     — exponential decay on hours since creation
  topics       — tags + lightweight body tokenization (diversity input only)
  content type — stored classification or one derived from media/body
  privacy      — muted-keyword suppression for the requester
  seen decay   — recovering multiplier for already-surfaced posts
"""
import math
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from app.domain import ContentItem
from app.ranking.vector_math import temporal_decay

# Seen-decay curve: starts at 0.1 and is back at 1.0 after ~18 days
SEEN_FLOOR = 0.1
SEEN_CEILING = 1.0
SEEN_HALF_LIFE_DAYS = 18.0      # base retention doubles every 18 days
SEEN_RECOVERY_PER_DAY = 0.05

MUTED_PRIVACY_SCORE = 0.1
TOPIC_OVERLAP_WEIGHT = 0.5
MIN_TOKEN_LENGTH = 3

CONTENT_TYPES = ("text", "image", "video", "mixed")

_TOKEN_RE = re.compile(r"#?[^\W_]+", re.UNICODE)

STOP_WORDS = frozenset(
    """
    the and for are but not you all any can had her was one our out day get has
    him his how man new now old see two way who boy did its let put say she too
    use that with have this will your from they know want been good much some
    time very when come here just like long make many more only over such take
    than them well were what about after again also back because before being
    could every first into most other really should still their there these
    thing think those through today where which while would
    """.split()
)


@dataclass(frozen=True)
class EngagementCaps:
    save_cap: int = 100
    comment_cap: int = 50
    save_weight: float = 0.5
    comment_weight: float = 0.5


def engagement_rate(item: ContentItem, caps: EngagementCaps) -> float:
    """Weighted sum of capped counts; one viral counter cannot dominate."""
    saves = min(max(item.save_count, 0) / caps.save_cap, 1.0)
    comments = min(max(item.comment_count, 0) / caps.comment_cap, 1.0)
    return saves * caps.save_weight + comments * caps.comment_weight


def temporal_relevance(item: ContentItem, now: datetime, rate: float) -> float:
    age_hours = (now - item.created_at).total_seconds() / 3600.0
    return temporal_decay(age_hours, rate)


def _normalize_tag(tag: str) -> str:
    return tag.strip().lstrip("#").lower()


def tokenize(text: str) -> set[str]:
    tokens: set[str] = set()
    for match in _TOKEN_RE.finditer(text.lower()):
        token = match.group(0)
        if token.startswith("#"):
            token = token[1:]
            if token:
                tokens.add(token)
            continue
        if len(token) >= MIN_TOKEN_LENGTH and token not in STOP_WORDS and not token.isdigit():
            tokens.add(token)
    return tokens


def extract_topics(item: ContentItem) -> frozenset[str]:
    topics = {_normalize_tag(t) for t in item.tags}
    topics.update(tokenize(item.body or ""))
    topics.discard("")
    return frozenset(topics)


def recent_topic_set(saved_items: Iterable[ContentItem]) -> frozenset[str]:
    topics: set[str] = set()
    for item in saved_items:
        topics.update(extract_topics(item))
    return frozenset(topics)


def topic_overlap(candidate_topics: frozenset[str], recent_topics: frozenset[str]) -> float:
    if not candidate_topics or not recent_topics:
        return 0.0
    return len(candidate_topics & recent_topics) / len(candidate_topics)


def topic_novelty(candidate_topics: frozenset[str], recent_topics: frozenset[str]) -> float:
    """1.0 for entirely new topics, down to 0.5 for a full overlap."""
    return 1.0 - TOPIC_OVERLAP_WEIGHT * topic_overlap(candidate_topics, recent_topics)


def classify_content_type(item: ContentItem) -> str:
    if item.content_type in CONTENT_TYPES:
        return item.content_type
    has_text = bool((item.body or "").strip())
    if item.media_type in ("image", "video"):
        return "mixed" if has_text else item.media_type
    return "text"


def privacy_score(item: ContentItem, muted_keywords: Iterable[str]) -> float:
    body = (item.body or "").lower()
    for keyword in muted_keywords:
        if keyword and keyword.lower() in body:
            return MUTED_PRIVACY_SCORE
    return 1.0


def seen_decay_multiplier(days_since_seen: Optional[float]) -> float:
    """
    Score multiplier for a previously surfaced post.

    clamp(0.1, 1.0, 0.1 * 2 ** (days / 18) + 0.05 * days); unseen → 1.0.
    """
    if days_since_seen is None:
        return 1.0
    days = max(0.0, float(days_since_seen))
    if days * SEEN_RECOVERY_PER_DAY >= SEEN_CEILING:
        return SEEN_CEILING
    base = SEEN_FLOOR * math.pow(2.0, days / SEEN_HALF_LIFE_DAYS)
    return min(SEEN_CEILING, max(SEEN_FLOOR, base + SEEN_RECOVERY_PER_DAY * days))


def days_between(earlier: datetime, later: datetime) -> float:
    return (later - earlier).total_seconds() / 86400.0
