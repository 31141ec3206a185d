"""FastAPI dependencies — components are built in the lifespan and kept on app.state."""
from fastapi import Request

from app.clients.redis_client import FeedInvalidator
from app.service import FeedService


def get_feed_service(request: Request) -> FeedService:
    return request.app.state.feed_service


def get_invalidator(request: Request) -> FeedInvalidator:
    return request.app.state.invalidator
