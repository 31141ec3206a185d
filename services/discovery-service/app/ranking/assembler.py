"""
Feed assembly — cursor pagination over the ranked list and page hydration.

The cursor is the post_id of the last item of the previous page. Each request
recomputes the full ranking and resumes at index(cursor) + 1, so pages are
only guaranteed consistent while the underlying data does not change.
"""
import logging
import uuid
from typing import Callable, Mapping, Optional, Sequence

from app.domain import AuthorProfile, PageSlice, ScoredCandidate
from app.errors import InvalidInput
from app.schemas import FeedItem, ScoreBreakdown

logger = logging.getLogger(__name__)


def validate_page_size(page_size: int, max_page_size: int) -> int:
    if isinstance(page_size, bool) or not isinstance(page_size, int):
        raise InvalidInput(f"page_size must be an integer, got {page_size!r}")
    if page_size < 1 or page_size > max_page_size:
        raise InvalidInput(f"page_size must be between 1 and {max_page_size}, got {page_size}")
    return page_size


def validate_content_id(value: str, field: str = "post_id") -> str:
    """Post ids are canonical UUID strings; returns the lowercase form."""
    if not isinstance(value, str) or not value:
        raise InvalidInput(f"{field} must be a non-empty string")
    try:
        parsed = uuid.UUID(value)
    except ValueError as exc:
        raise InvalidInput(f"malformed {field} {value!r}") from exc
    if str(parsed) != value.lower():
        raise InvalidInput(f"malformed {field} {value!r}")
    return value.lower()


def validate_cursor(cursor: Optional[str]) -> Optional[str]:
    """Cursors are the post id of the last item on the previous page."""
    if cursor is None:
        return None
    return validate_content_id(cursor, "cursor")


def paginate(
    ranked: Sequence[ScoredCandidate],
    page_size: int,
    cursor: Optional[str] = None,
) -> PageSlice:
    """
    Slice one page out of the full ranked list.

    A cursor that is no longer part of the list (the post became invisible or
    fell out of the candidate window) ends the feed with an empty page rather
    than restarting from the top and repeating items.
    """
    start = 0
    if cursor is not None:
        index = next(
            (i for i, sc in enumerate(ranked) if sc.content_id == cursor),
            None,
        )
        if index is None:
            logger.info("Cursor %s not in current ranking — ending feed", cursor)
            return PageSlice(items=[], next_cursor=None, has_next_page=False)
        start = index + 1

    end = start + page_size
    items = list(ranked[start:end])
    has_next = end < len(ranked)
    next_cursor = items[-1].content_id if has_next and items else None
    return PageSlice(items=items, next_cursor=next_cursor, has_next_page=has_next)


def hydrate(
    page: Sequence[ScoredCandidate],
    authors: Mapping[str, AuthorProfile],
    media_url: Callable[[str], Optional[str]] | None = None,
) -> list[FeedItem]:
    """Attach author profile and media URL to the final page slice only."""
    feed_items: list[FeedItem] = []
    for sc in page:
        item = sc.item
        author = authors.get(item.author_id)
        url = None
        if item.media_key and media_url is not None:
            url = media_url(item.media_key)
        feed_items.append(
            FeedItem(
                post_id=item.content_id,
                author_id=item.author_id,
                username=author.username if author else None,
                display_name=author.display_name if author else None,
                avatar_url=author.avatar_url if author else None,
                content=item.body,
                tags=list(item.tags),
                content_type=sc.content_type,
                media_url=url,
                media_type=item.media_type,
                save_count=item.save_count,
                comment_count=item.comment_count,
                created_at=item.created_at,
                scores=ScoreBreakdown(
                    similarity=round(sc.similarity, 6),
                    engagement=round(sc.engagement, 6),
                    temporal=round(sc.temporal, 6),
                    diversity=round(sc.diversity, 6),
                    privacy=round(sc.privacy, 6),
                    seen_multiplier=round(sc.seen_multiplier, 6),
                    final=round(sc.final, 6),
                ),
            )
        )
    return feed_items
