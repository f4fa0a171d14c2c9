"""
Centroid maintenance.

A person's centroid is the elementwise mean of its valid embeddings, where
valid means the vector has the deployment dimension. A person with no valid
embeddings has no centroid and is always a coarse-stage candidate.
"""
import numpy as np
from typing import Iterable, Optional, Dict
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from face_organizer.config import Thresholds, DEFAULT_THRESHOLDS
from face_organizer.records import EmbeddingRecord, Vector, as_vector
from face_organizer.repository import PersonRepository, EmbeddingRepository

logger = logging.getLogger(__name__)


def compute_centroid(embeddings: Iterable[EmbeddingRecord], dim: int) -> Optional[Vector]:
    """Mean of the embeddings with length `dim`; None when there are none."""
    vectors = [e.vector for e in embeddings if len(e.vector) == dim]
    if not vectors:
        return None
    return as_vector(np.mean(np.array(vectors, dtype=np.float64), axis=0))


class CentroidMaintainer:
    """Recomputes centroids after a commit changes a person's embedding set."""

    def __init__(self, thresholds: Thresholds = DEFAULT_THRESHOLDS):
        self.dim = thresholds.embedding_dim

    async def refresh(self, session: AsyncSession, user_id: str, person_id: str) -> Optional[Vector]:
        """Recompute and store one person's centroid from its current embeddings."""
        embeddings = await EmbeddingRepository.find_by_person(session, user_id, person_id)
        centroid = compute_centroid(embeddings, self.dim)
        await PersonRepository.update_centroid(session, user_id, person_id, centroid)

        if centroid is None:
            logger.debug(f"Cleared centroid of person {person_id}")
        return centroid

    async def refresh_many(
        self,
        session: AsyncSession,
        user_id: str,
        person_ids: Iterable[str]
    ) -> Dict[str, Optional[Vector]]:
        """
        Recompute centroids for several persons with a single embedding query.

        Each person is recomputed once no matter how many of its embeddings
        changed, which bounds the cost of a bulk import.
        """
        person_ids = sorted(set(person_ids))
        if not person_ids:
            return {}

        embeddings = await EmbeddingRepository.find_by_persons(session, user_id, person_ids)
        grouped: Dict[str, list] = {person_id: [] for person_id in person_ids}
        for embedding in embeddings:
            grouped[embedding.person_id].append(embedding)

        centroids = {}
        for person_id, members in grouped.items():
            centroid = compute_centroid(members, self.dim)
            await PersonRepository.update_centroid(session, user_id, person_id, centroid)
            centroids[person_id] = centroid

        logger.debug(f"Refreshed {len(centroids)} centroids for user {user_id}")
        return centroids
