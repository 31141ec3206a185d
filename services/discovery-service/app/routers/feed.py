"""
Feed endpoints:
  GET  /feed/             — one ranked discovery page for an identity
  POST /feed/impressions  — record posts the client actually displayed

Pages are recomputed on every request and resumed from the cursor, which is
the post_id of the last item on the previous page.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from app.dependencies import get_feed_service
from app.schemas import FeedResponse, ImpressionRecord, WeightOverrides
from app.service import FeedService

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/", response_model=FeedResponse)
async def get_feed(
    identity_id: str = Query(..., min_length=1, description="ID of the requesting user"),
    page_size: Optional[int] = Query(None, description="Items per page"),
    cursor: Optional[str] = Query(None, description="post_id of the previous page's last item"),
    w_similarity: Optional[float] = Query(None),
    w_temporal: Optional[float] = Query(None),
    w_diversity: Optional[float] = Query(None),
    w_engagement: Optional[float] = Query(None),
    w_privacy: Optional[float] = Query(None),
    service: FeedService = Depends(get_feed_service),
):
    overrides = WeightOverrides(
        similarity=w_similarity,
        temporal=w_temporal,
        diversity=w_diversity,
        engagement=w_engagement,
        privacy=w_privacy,
    )
    return await service.rank_feed(
        identity_id,
        page_size=page_size,
        cursor=cursor,
        weight_overrides=overrides.as_overrides(),
    )


@router.post("/impressions", status_code=status.HTTP_202_ACCEPTED)
async def record_impressions(
    body: ImpressionRecord,
    service: FeedService = Depends(get_feed_service),
):
    """Seen posts are down-weighted (never hidden) and recover over ~18 days."""
    recorded = await service.record_impressions(body.identity_id, body.post_ids)
    return {"identity_id": body.identity_id, "recorded": recorded}
