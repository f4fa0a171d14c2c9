"""
Face Organizer Service

One atomic unit of work per exposed operation:
- State-changing operations hold the user's lock for their whole duration
- Every operation runs in a single transaction (all-or-nothing)
- An optional timeout cancels the operation and rolls it back

Reads (search, listings) take no lock and see the last committed state.
"""
import asyncio
from typing import Awaitable, Callable, List, Optional, Sequence, TypeVar
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
import logging

from face_organizer.config import Thresholds, DEFAULT_THRESHOLDS
from face_organizer.centroids import CentroidMaintainer
from face_organizer.clustering import ClusterAssignor
from face_organizer.database import async_session_maker
from face_organizer.exceptions import PersistenceFailure, OperationTimeout
from face_organizer.locks import UserLockRegistry
from face_organizer.matching import CandidateFilter, Matcher
from face_organizer.records import (
    EmbeddingRecord,
    FaceInput,
    InsertResult,
    PersonRecord,
    SearchMatch,
    as_vector,
)
from face_organizer.repository import PersonRepository, EmbeddingRepository
from face_organizer.search import SearchEngine

logger = logging.getLogger(__name__)

T = TypeVar("T")


class FaceOrganizerService:
    """
    Entry point for clustering, search and person management.

    Components share one Thresholds instance so the insert and search paths
    always use the same values.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker = async_session_maker,
        thresholds: Thresholds = DEFAULT_THRESHOLDS,
        locks: Optional[UserLockRegistry] = None
    ):
        self.session_maker = session_maker
        self.thresholds = thresholds
        self.locks = locks or UserLockRegistry()

        candidate_filter = CandidateFilter(thresholds)
        matcher = Matcher(thresholds)
        self.centroids = CentroidMaintainer(thresholds)
        self.assignor = ClusterAssignor(thresholds, candidate_filter, matcher, self.centroids)
        self.search_engine = SearchEngine(thresholds, candidate_filter, matcher)

    # ------------------------------------------------------------------
    # Unit of work
    # ------------------------------------------------------------------
    async def _transact(
        self,
        operation: str,
        user_id: str,
        work: Callable[[AsyncSession], Awaitable[T]]
    ) -> T:
        try:
            async with self.session_maker() as session:
                async with session.begin():
                    return await work(session)
        except SQLAlchemyError as e:
            logger.error(f"{operation} failed for user {user_id}, rolled back: {e}")
            raise PersistenceFailure(operation, user_id, e) from e

    async def _run(
        self,
        operation: str,
        user_id: str,
        work: Callable[[AsyncSession], Awaitable[T]],
        exclusive: bool = False,
        timeout: Optional[float] = None
    ) -> T:
        async def unit() -> T:
            if exclusive:
                async with self.locks.hold(user_id):
                    return await self._transact(operation, user_id, work)
            return await self._transact(operation, user_id, work)

        if timeout is None:
            return await unit()

        try:
            return await asyncio.wait_for(unit(), timeout)
        except asyncio.TimeoutError:
            logger.error(f"{operation} for user {user_id} timed out after {timeout}s")
            raise OperationTimeout(operation, user_id, timeout) from None

    # ------------------------------------------------------------------
    # Clustering
    # ------------------------------------------------------------------
    async def insert_face(
        self,
        user_id: str,
        vector: Sequence[float],
        image_ref: str,
        source: str = "local",
        thumbnail: Optional[str] = None,
        timeout: Optional[float] = None
    ) -> InsertResult:
        """Cluster and store a single face."""
        face = FaceInput(vector=as_vector(vector), image_ref=image_ref, source=source, thumbnail=thumbnail)

        async def work(session: AsyncSession) -> InsertResult:
            return await self.assignor.insert_face(session, user_id, face)

        return await self._run("insert_face", user_id, work, exclusive=True, timeout=timeout)

    async def insert_batch(
        self,
        user_id: str,
        faces: Sequence[FaceInput],
        timeout: Optional[float] = None
    ) -> List[InsertResult]:
        """Cluster and store a batch of faces in one commit."""
        faces = list(faces)

        async def work(session: AsyncSession) -> List[InsertResult]:
            return await self.assignor.insert_batch(session, user_id, faces)

        return await self._run("insert_batch", user_id, work, exclusive=True, timeout=timeout)

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------
    async def search(
        self,
        user_id: str,
        vectors: Sequence[Sequence[float]],
        timeout: Optional[float] = None
    ) -> List[SearchMatch]:
        """Rank the user's persons against the faces of one query image."""
        queries = [as_vector(v) for v in vectors]

        async def work(session: AsyncSession) -> List[SearchMatch]:
            return await self.search_engine.search(session, user_id, queries)

        return await self._run("search", user_id, work, timeout=timeout)

    # ------------------------------------------------------------------
    # Person management
    # ------------------------------------------------------------------
    async def delete_person(self, user_id: str, person_id: str, timeout: Optional[float] = None) -> bool:
        """
        Delete a person and every embedding it owns.

        Returns:
            True if the person existed; deleting an unknown person is not an error
        """
        async def work(session: AsyncSession) -> bool:
            removed_embeddings = await EmbeddingRepository.delete_by_person(session, user_id, person_id)
            deleted = await PersonRepository.delete(session, user_id, person_id)
            if deleted:
                logger.info(
                    f"Deleted person {person_id} of user {user_id} "
                    f"with {removed_embeddings} embeddings"
                )
            return deleted

        return await self._run("delete_person", user_id, work, exclusive=True, timeout=timeout)

    async def remove_embedding(self, user_id: str, embedding_id: int, timeout: Optional[float] = None) -> bool:
        """Remove one embedding and recompute its person's centroid."""
        async def work(session: AsyncSession) -> bool:
            embedding = await EmbeddingRepository.get(session, user_id, embedding_id)
            if embedding is None:
                return False
            await EmbeddingRepository.delete(session, user_id, embedding_id)
            await self.centroids.refresh(session, user_id, embedding.person_id)
            logger.info(f"Removed embedding {embedding_id} from person {embedding.person_id}")
            return True

        return await self._run("remove_embedding", user_id, work, exclusive=True, timeout=timeout)

    async def rename_person(
        self,
        user_id: str,
        person_id: str,
        name: str,
        timeout: Optional[float] = None
    ) -> Optional[PersonRecord]:
        """Rename a person. Returns None if the person does not exist."""
        async def work(session: AsyncSession) -> Optional[PersonRecord]:
            return await PersonRepository.rename(session, user_id, person_id, name)

        return await self._run("rename_person", user_id, work, exclusive=True, timeout=timeout)

    async def reset_user(self, user_id: str, timeout: Optional[float] = None) -> int:
        """Delete all persons and embeddings of a user; returns the persons removed."""
        async def work(session: AsyncSession) -> int:
            removed_embeddings = await EmbeddingRepository.delete_by_user(session, user_id)
            removed_persons = await PersonRepository.delete_by_user(session, user_id)
            logger.info(
                f"Reset user {user_id}: removed {removed_persons} persons "
                f"and {removed_embeddings} embeddings"
            )
            return removed_persons

        return await self._run("reset_user", user_id, work, exclusive=True, timeout=timeout)

    # ------------------------------------------------------------------
    # Listings
    # ------------------------------------------------------------------
    async def list_persons(self, user_id: str, timeout: Optional[float] = None) -> List[PersonRecord]:
        async def work(session: AsyncSession) -> List[PersonRecord]:
            return await PersonRepository.find_by_user(session, user_id)

        return await self._run("list_persons", user_id, work, timeout=timeout)

    async def list_embeddings(
        self,
        user_id: str,
        person_id: Optional[str] = None,
        timeout: Optional[float] = None
    ) -> List[EmbeddingRecord]:
        """All embeddings of a user, or of one of its persons."""
        async def work(session: AsyncSession) -> List[EmbeddingRecord]:
            if person_id is None:
                return await EmbeddingRepository.find_by_user(session, user_id)
            return await EmbeddingRepository.find_by_person(session, user_id, person_id)

        return await self._run("list_embeddings", user_id, work, timeout=timeout)

    async def counts(self) -> dict:
        """Total persons and embeddings across all users, for health checks."""
        async def work(session: AsyncSession) -> dict:
            return {
                "persons": await PersonRepository.count(session),
                "embeddings": await EmbeddingRepository.count(session),
            }

        return await self._run("counts", "*", work)


# Singleton instance
organizer = FaceOrganizerService()
