"""
Interest vector maintenance:
  POST /users/{identity_id}/interest-vector — rebuild from recent saves and posts
"""
from fastapi import APIRouter, Depends

from app.dependencies import get_feed_service
from app.schemas import InterestVectorRebuild
from app.service import FeedService

router = APIRouter()


@router.post("/{identity_id}/interest-vector", response_model=InterestVectorRebuild)
async def rebuild_interest_vector(
    identity_id: str,
    service: FeedService = Depends(get_feed_service),
):
    return await service.rebuild_interest_vector(identity_id)
