"""
Person and Embedding Repositories

Database operations for the persons and face_embeddings tables using
SQLAlchemy async. Every query is scoped by user_id.

Methods flush instead of committing: the caller owns the transaction, so a
failure anywhere in an operation rolls back everything it wrote.
"""
from typing import Optional, List, Iterable, Sequence
from sqlalchemy import select, update, delete, func
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from face_organizer.config import DEFAULT_PERSON_NAME
from face_organizer.models import PersonDB, FaceEmbeddingDB
from face_organizer.records import PersonRecord, EmbeddingRecord, Vector, as_vector

logger = logging.getLogger(__name__)


class PersonRepository:
    """
    Repository class for persons table operations.

    All methods are async and require an AsyncSession.
    """

    @staticmethod
    async def create(
        session: AsyncSession,
        user_id: str,
        person_id: str,
        name: str = DEFAULT_PERSON_NAME,
        thumbnail: Optional[str] = None
    ) -> PersonRecord:
        """
        Create a new person without a centroid.

        Args:
            session: Database session
            user_id: Owning user
            person_id: Globally unique person identifier
            name: Display name
            thumbnail: Face crop reference used as the person's picture

        Returns:
            Created PersonRecord
        """
        db_person = PersonDB(
            user_id=user_id,
            person_id=person_id,
            name=name,
            thumbnail=thumbnail,
            centroid=None
        )

        session.add(db_person)
        await session.flush()

        logger.debug(f"Created person {person_id} for user {user_id}")
        return PersonRepository.db_to_record(db_person)

    @staticmethod
    async def update_centroid(
        session: AsyncSession,
        user_id: str,
        person_id: str,
        centroid: Optional[Vector]
    ) -> bool:
        """Set or clear a person's centroid. Returns False if the person does not exist."""
        result = await session.execute(
            update(PersonDB)
            .where(PersonDB.user_id == user_id)
            .where(PersonDB.person_id == person_id)
            .values(centroid=list(centroid) if centroid is not None else None)
        )
        return result.rowcount > 0

    @staticmethod
    async def rename(session: AsyncSession, user_id: str, person_id: str, name: str) -> Optional[PersonRecord]:
        """Rename a person; returns the updated record or None if not found."""
        db_person = await PersonRepository._get(session, user_id, person_id)
        if db_person is None:
            return None
        db_person.name = name
        await session.flush()
        return PersonRepository.db_to_record(db_person)

    @staticmethod
    async def find_by_user(session: AsyncSession, user_id: str) -> List[PersonRecord]:
        """Get all persons of a user, newest first."""
        result = await session.execute(
            select(PersonDB)
            .where(PersonDB.user_id == user_id)
            .order_by(PersonDB.created_at.desc(), PersonDB.id.desc())
        )
        return [PersonRepository.db_to_record(p) for p in result.scalars().all()]

    @staticmethod
    async def delete(session: AsyncSession, user_id: str, person_id: str) -> bool:
        """
        Permanently delete a person row.

        Returns:
            True if deleted, False if not found
        """
        result = await session.execute(
            delete(PersonDB)
            .where(PersonDB.user_id == user_id)
            .where(PersonDB.person_id == person_id)
        )
        return result.rowcount > 0

    @staticmethod
    async def delete_by_user(session: AsyncSession, user_id: str) -> int:
        """Delete every person of a user; returns the number removed."""
        result = await session.execute(delete(PersonDB).where(PersonDB.user_id == user_id))
        return result.rowcount or 0

    @staticmethod
    async def count(session: AsyncSession, user_id: Optional[str] = None) -> int:
        """Count persons, optionally for one user."""
        query = select(func.count(PersonDB.id))
        if user_id is not None:
            query = query.where(PersonDB.user_id == user_id)
        result = await session.execute(query)
        return result.scalar() or 0

    @staticmethod
    async def _get(session: AsyncSession, user_id: str, person_id: str) -> Optional[PersonDB]:
        result = await session.execute(
            select(PersonDB)
            .where(PersonDB.user_id == user_id)
            .where(PersonDB.person_id == person_id)
        )
        return result.scalar_one_or_none()

    @staticmethod
    def db_to_record(db_person: PersonDB) -> PersonRecord:
        """Convert database model to a detached record."""
        return PersonRecord(
            user_id=db_person.user_id,
            person_id=db_person.person_id,
            name=db_person.name,
            thumbnail=db_person.thumbnail,
            centroid=as_vector(db_person.centroid) if db_person.centroid is not None else None,
            created_at=db_person.created_at
        )


class EmbeddingRepository:
    """
    Repository class for face_embeddings table operations.

    All methods are async and require an AsyncSession.
    """

    @staticmethod
    async def create(
        session: AsyncSession,
        user_id: str,
        person_id: str,
        vector: Sequence[float],
        image_ref: str,
        source: str = "local"
    ) -> EmbeddingRecord:
        """Insert one embedding row attached to a person."""
        db_embedding = FaceEmbeddingDB(
            user_id=user_id,
            person_id=person_id,
            embedding=[float(v) for v in vector],
            image_ref=image_ref,
            source=source
        )

        session.add(db_embedding)
        await session.flush()

        return EmbeddingRepository.db_to_record(db_embedding)

    @staticmethod
    async def find_by_user(session: AsyncSession, user_id: str) -> List[EmbeddingRecord]:
        """Get every embedding of a user."""
        result = await session.execute(
            select(FaceEmbeddingDB)
            .where(FaceEmbeddingDB.user_id == user_id)
            .order_by(FaceEmbeddingDB.id)
        )
        return [EmbeddingRepository.db_to_record(e) for e in result.scalars().all()]

    @staticmethod
    async def find_by_person(session: AsyncSession, user_id: str, person_id: str) -> List[EmbeddingRecord]:
        """Get the embeddings of one person."""
        result = await session.execute(
            select(FaceEmbeddingDB)
            .where(FaceEmbeddingDB.user_id == user_id)
            .where(FaceEmbeddingDB.person_id == person_id)
            .order_by(FaceEmbeddingDB.id)
        )
        return [EmbeddingRepository.db_to_record(e) for e in result.scalars().all()]

    @staticmethod
    async def find_by_persons(
        session: AsyncSession,
        user_id: str,
        person_ids: Iterable[str]
    ) -> List[EmbeddingRecord]:
        """Get the embeddings of several persons in one query."""
        person_ids = list(person_ids)
        if not person_ids:
            return []

        result = await session.execute(
            select(FaceEmbeddingDB)
            .where(FaceEmbeddingDB.user_id == user_id)
            .where(FaceEmbeddingDB.person_id.in_(person_ids))
            .order_by(FaceEmbeddingDB.id)
        )
        return [EmbeddingRepository.db_to_record(e) for e in result.scalars().all()]

    @staticmethod
    async def get(session: AsyncSession, user_id: str, embedding_id: int) -> Optional[EmbeddingRecord]:
        result = await session.execute(
            select(FaceEmbeddingDB)
            .where(FaceEmbeddingDB.user_id == user_id)
            .where(FaceEmbeddingDB.id == embedding_id)
        )
        db_embedding = result.scalar_one_or_none()
        return EmbeddingRepository.db_to_record(db_embedding) if db_embedding else None

    @staticmethod
    async def delete(session: AsyncSession, user_id: str, embedding_id: int) -> bool:
        """Delete a single embedding. Returns False if not found."""
        result = await session.execute(
            delete(FaceEmbeddingDB)
            .where(FaceEmbeddingDB.user_id == user_id)
            .where(FaceEmbeddingDB.id == embedding_id)
        )
        return result.rowcount > 0

    @staticmethod
    async def delete_by_person(session: AsyncSession, user_id: str, person_id: str) -> int:
        """Delete all embeddings of a person; returns the number removed."""
        result = await session.execute(
            delete(FaceEmbeddingDB)
            .where(FaceEmbeddingDB.user_id == user_id)
            .where(FaceEmbeddingDB.person_id == person_id)
        )
        return result.rowcount or 0

    @staticmethod
    async def delete_by_user(session: AsyncSession, user_id: str) -> int:
        result = await session.execute(delete(FaceEmbeddingDB).where(FaceEmbeddingDB.user_id == user_id))
        return result.rowcount or 0

    @staticmethod
    async def count(session: AsyncSession, user_id: Optional[str] = None) -> int:
        """Count embeddings, optionally for one user."""
        query = select(func.count(FaceEmbeddingDB.id))
        if user_id is not None:
            query = query.where(FaceEmbeddingDB.user_id == user_id)
        result = await session.execute(query)
        return result.scalar() or 0

    @staticmethod
    def db_to_record(db_embedding: FaceEmbeddingDB) -> EmbeddingRecord:
        """Convert database model to a detached record."""
        return EmbeddingRecord(
            embedding_id=db_embedding.id,
            user_id=db_embedding.user_id,
            person_id=db_embedding.person_id,
            vector=as_vector(db_embedding.embedding),
            image_ref=db_embedding.image_ref,
            source=db_embedding.source,
            created_at=db_embedding.created_at
        )
