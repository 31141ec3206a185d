"""
Similar content:
  GET /posts/{post_id}/similar?identity_id=<id> — nearest visible posts
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query

from app.dependencies import get_feed_service
from app.schemas import SimilarPostsResponse
from app.service import FeedService

router = APIRouter()


@router.get("/{post_id}/similar", response_model=SimilarPostsResponse)
async def similar_posts(
    post_id: str,
    identity_id: str = Query(..., min_length=1, description="ID of the requesting user"),
    limit: Optional[int] = Query(None),
    service: FeedService = Depends(get_feed_service),
):
    return await service.similar_posts(post_id, identity_id, limit)
