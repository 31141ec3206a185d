"""
Synchronous twin of the Kafka invalidation consumer:
  POST /events — apply one mutation event to the artifact cache
"""
from fastapi import APIRouter, Depends, status

from app.clients.redis_client import FeedInvalidator
from app.dependencies import get_invalidator
from app.schemas import InvalidationEvent

router = APIRouter()


@router.post("", status_code=status.HTTP_202_ACCEPTED)
async def apply_event(
    event: InvalidationEvent,
    invalidator: FeedInvalidator = Depends(get_invalidator),
):
    await invalidator.handle(event)
    return {"applied": event.type}
