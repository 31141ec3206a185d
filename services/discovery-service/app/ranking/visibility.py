"""
Visibility filter — may the requester see a given post?

Evaluated in a fixed order, short-circuiting on the first decision:

  1. block edge in either direction   → hidden
  2. requester authored the post      → visible
  3. author profile is public         → visible
  4. private author, requester follows → visible
  5. otherwise                        → hidden

The predicate is pure: all edge data is loaded up front into a
VisibilityContext. Authors missing from the context are treated as private,
and a context built from a failed block lookup hides everything except the
requester's own posts, so a lookup failure can only exclude, never include.
"""
import logging
from dataclasses import dataclass
from typing import Iterable, Mapping

from app.domain import AuthorProfile, ContentItem

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VisibilityContext:
    requester_id: str
    following: frozenset[str]
    # Union of identities the requester blocked and identities blocking the requester
    blocked: frozenset[str]
    authors: Mapping[str, AuthorProfile]
    edges_complete: bool = True

    @classmethod
    def fail_closed(cls, requester_id: str) -> "VisibilityContext":
        return cls(
            requester_id=requester_id,
            following=frozenset(),
            blocked=frozenset(),
            authors={},
            edges_complete=False,
        )


def is_visible(ctx: VisibilityContext, author_id: str) -> bool:
    if not ctx.edges_complete:
        return author_id == ctx.requester_id
    if author_id in ctx.blocked:
        return False
    if author_id == ctx.requester_id:
        return True
    author = ctx.authors.get(author_id)
    if author is None:
        return False
    if not author.is_private:
        return True
    return author_id in ctx.following


def filter_visible(ctx: VisibilityContext, items: Iterable[ContentItem]) -> list[ContentItem]:
    """Keep the items the requester may see, preserving input order."""
    kept: list[ContentItem] = []
    dropped = 0
    for item in items:
        if is_visible(ctx, item.author_id):
            kept.append(item)
        else:
            dropped += 1
    if dropped:
        logger.debug(
            "Visibility filter dropped %d of %d candidates for %s",
            dropped, dropped + len(kept), ctx.requester_id,
        )
    return kept
