"""
Qdrant vector database client.

Collection layout:
  name    : posts  (settings.qdrant_collection)
  vector  : 1024-dim float, cosine distance
  payload : { author_id, created_at_ts }

Used for discovery retrieval (interest vector → nearest posts) and for
similar-content lookups (post vector → nearest posts).
"""
import logging
from typing import Iterable, Optional

import httpx
import numpy as np
from qdrant_client import AsyncQdrantClient
from qdrant_client.http.exceptions import ResponseHandlingException, UnexpectedResponse
from qdrant_client.models import (
    Distance,
    FieldCondition,
    Filter,
    HasIdCondition,
    MatchAny,
    PointStruct,
    VectorParams,
)

from app.domain import Candidate, CandidateFilter
from app.errors import UpstreamUnavailable
from app.ranking.vector_math import VECTOR_DIM, as_vector

logger = logging.getLogger(__name__)

_QDRANT_ERRORS = (UnexpectedResponse, ResponseHandlingException, httpx.HTTPError, OSError)


def build_qdrant(host: str, port: int) -> AsyncQdrantClient:
    return AsyncQdrantClient(host=host, port=port)


def _exclusion_filter(exclude: Optional[CandidateFilter]) -> Optional[Filter]:
    if exclude is None:
        return None
    must_not = []
    if exclude.exclude_author_ids:
        must_not.append(
            FieldCondition(
                key="author_id",
                match=MatchAny(any=sorted(exclude.exclude_author_ids)),
            )
        )
    if exclude.exclude_content_ids:
        must_not.append(HasIdCondition(has_id=sorted(exclude.exclude_content_ids)))
    return Filter(must_not=must_not) if must_not else None


def _point_vector(raw) -> Optional[np.ndarray]:
    if raw is None or isinstance(raw, dict):
        return None
    vector = np.asarray(raw, dtype=np.float32)
    return vector if vector.shape == (VECTOR_DIM,) else None


class QdrantCandidateSource:
    def __init__(self, client: AsyncQdrantClient, collection: str = "posts") -> None:
        self._client = client
        self._collection = collection

    async def ensure_collection(self) -> None:
        """Create the collection if it doesn't exist."""
        try:
            exists = await self._client.collection_exists(self._collection)
            if not exists:
                await self._client.create_collection(
                    collection_name=self._collection,
                    vectors_config=VectorParams(size=VECTOR_DIM, distance=Distance.COSINE),
                )
                logger.info("Created Qdrant collection '%s'", self._collection)
            else:
                logger.info("Qdrant collection '%s' already exists", self._collection)
        except _QDRANT_ERRORS as exc:
            raise UpstreamUnavailable("qdrant", exc) from exc

    async def upsert(self, content_id: str, vector, author_id: str, created_at_ts: float) -> None:
        """Store/update a post embedding."""
        v = as_vector(vector)
        try:
            await self._client.upsert(
                collection_name=self._collection,
                points=[
                    PointStruct(
                        id=content_id,
                        vector=v.tolist(),
                        payload={"author_id": author_id, "created_at_ts": created_at_ts},
                    )
                ],
            )
        except _QDRANT_ERRORS as exc:
            raise UpstreamUnavailable("qdrant", exc) from exc

    async def search(
        self,
        query_vector,
        limit: int,
        exclude: Optional[CandidateFilter] = None,
    ) -> list[Candidate]:
        """
        ANN search for posts nearest to `query_vector`.
        Returns candidates in descending score order, at most `limit` long.
        """
        query = as_vector(query_vector)
        if limit <= 0:
            return []
        try:
            response = await self._client.query_points(
                collection_name=self._collection,
                query=query.tolist(),
                limit=limit,
                query_filter=_exclusion_filter(exclude),
                with_payload=False,
                with_vectors=True,
            )
        except _QDRANT_ERRORS as exc:
            raise UpstreamUnavailable("qdrant", exc) from exc

        candidates = [
            Candidate(content_id=str(p.id), score=float(p.score), vector=_point_vector(p.vector))
            for p in response.points
        ]
        logger.debug("Qdrant returned %d candidates (limit=%d)", len(candidates), limit)
        return candidates

    async def get_vectors(self, content_ids: Iterable[str]) -> dict[str, np.ndarray]:
        """Stored vectors for the given ids; missing ids are simply absent."""
        ids = list(dict.fromkeys(content_ids))
        if not ids:
            return {}
        try:
            points = await self._client.retrieve(
                collection_name=self._collection,
                ids=ids,
                with_payload=False,
                with_vectors=True,
            )
        except _QDRANT_ERRORS as exc:
            raise UpstreamUnavailable("qdrant", exc) from exc

        vectors: dict[str, np.ndarray] = {}
        for p in points:
            vector = _point_vector(p.vector)
            if vector is None:
                logger.warning("Point %s has no %d-dim vector", p.id, VECTOR_DIM)
                continue
            vectors[str(p.id)] = vector
        return vectors
