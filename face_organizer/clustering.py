"""
Cluster assignment: decides which person a new face belongs to.

Single insert runs both matching stages against the persisted state. Batch
insert additionally clusters faces within the batch itself, comparing each
face to the first member (representative) of every batch cluster formed so
far instead of to every other face. Both paths discard faces that are
almost identical to one already stored or accepted.
"""
import uuid
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional, Sequence, Tuple
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from face_organizer.config import Thresholds, DEFAULT_THRESHOLDS
from face_organizer.centroids import CentroidMaintainer
from face_organizer.matching import CandidateFilter, Matcher, distance
from face_organizer.records import EmbeddingRecord, FaceInput, InsertResult, PersonRecord, UserPartition, Vector
from face_organizer.repository import PersonRepository, EmbeddingRepository

logger = logging.getLogger(__name__)


def new_person_id() -> str:
    """Globally unique person identifier."""
    return f"person_{uuid.uuid4().hex}"


@dataclass
class BatchCluster:
    """A person formed inside a batch that does not exist in storage yet."""
    person_id: str
    representative: Vector
    thumbnail: Optional[str] = None
    members: int = 1


@dataclass
class BatchPlan:
    """Clustering decisions for a batch, one assignment per input face."""
    assignments: List[InsertResult] = field(default_factory=list)
    new_clusters: List[BatchCluster] = field(default_factory=list)


def closest_below(
    query: Sequence[float],
    anchors: Iterable[Tuple[str, Sequence[float]]],
    threshold: float
) -> Optional[str]:
    """Key of the anchor nearest to `query` if it is strictly closer than `threshold`."""
    best_key = None
    best_distance = threshold
    for key, anchor in anchors:
        dist = distance(query, anchor)
        if dist < best_distance:
            best_key, best_distance = key, dist
    return best_key


class ClusterAssignor:
    """
    Attaches faces to existing persons or creates new ones.

    The caller is expected to hold the user's lock and own the transaction;
    the assignor only reads and writes through the given session.
    """

    def __init__(
        self,
        thresholds: Thresholds = DEFAULT_THRESHOLDS,
        candidate_filter: Optional[CandidateFilter] = None,
        matcher: Optional[Matcher] = None,
        centroids: Optional[CentroidMaintainer] = None,
        id_factory: Callable[[], str] = new_person_id
    ):
        self.thresholds = thresholds
        self.candidate_filter = candidate_filter or CandidateFilter(thresholds)
        self.matcher = matcher or Matcher(thresholds)
        self.centroids = centroids or CentroidMaintainer(thresholds)
        self.id_factory = id_factory

    async def insert_face(self, session: AsyncSession, user_id: str, face: FaceInput) -> InsertResult:
        """
        Resolve one face against the user's persisted persons and store it.

        Returns:
            InsertResult with the resolved person_id. `duplicate` is set when
            the face was discarded because an almost identical embedding is
            already stored; nothing is written in that case.
        """
        persons = await PersonRepository.find_by_user(session, user_id)
        candidates = self.candidate_filter.filter(face.vector, persons)
        embeddings = await EmbeddingRepository.find_by_persons(
            session, user_id, [p.person_id for p in candidates]
        )
        verdict = self.matcher.match(face.vector, embeddings)

        if verdict.is_duplicate:
            logger.debug(f"Discarded duplicate face of person {verdict.duplicate.person_id}")
            return InsertResult(person_id=verdict.duplicate.person_id, created=False, duplicate=True)

        best = verdict.best
        if best is not None:
            person_id = best[0].person_id
            created = False
            logger.debug(f"Face matched person {person_id} at distance {best[1]:.4f}")
        else:
            person_id = self.id_factory()
            created = True
            await PersonRepository.create(session, user_id, person_id, thumbnail=face.thumbnail)
            logger.info(f"Created person {person_id} for user {user_id}")

        await EmbeddingRepository.create(
            session, user_id, person_id, face.vector, face.image_ref, face.source
        )
        await self.centroids.refresh(session, user_id, person_id)

        return InsertResult(person_id=person_id, created=created)

    def plan_batch(
        self,
        faces: Sequence[FaceInput],
        persons: Iterable[PersonRecord],
        embeddings: Iterable[EmbeddingRecord] = ()
    ) -> BatchPlan:
        """
        Cluster a batch in arrival order without touching storage.

        0. A face closer than the duplicate threshold to a stored embedding
           of a coarse candidate, or to a face already accepted from this
           batch, is discarded and reported as a duplicate.
        1. Nearest persisted centroid below the batch_persisted threshold wins.
        2. Otherwise nearest batch representative below the stricter
           batch_local threshold.
        3. Otherwise the face founds a new batch cluster.

        `embeddings` are the stored embeddings of the persons the coarse stage
        may let through; they are only used for the duplicate check.
        """
        persons = list(persons)
        partition = UserPartition.build("", persons, embeddings)
        indexed = [(p.person_id, p.centroid) for p in persons if p.centroid is not None]
        accepted: List[Tuple[str, Vector]] = []
        plan = BatchPlan()

        for face in faces:
            candidates = self.candidate_filter.filter(face.vector, persons)
            verdict = self.matcher.match(
                face.vector, partition.embeddings_for(p.person_id for p in candidates)
            )
            person_id = (
                verdict.duplicate.person_id if verdict.is_duplicate
                else closest_below(face.vector, accepted, self.thresholds.duplicate)
            )
            if person_id is not None:
                plan.assignments.append(InsertResult(person_id=person_id, created=False, duplicate=True))
                continue

            person_id = closest_below(face.vector, indexed, self.thresholds.batch_persisted)
            if person_id is not None:
                plan.assignments.append(InsertResult(person_id=person_id, created=False))
                accepted.append((person_id, face.vector))
                continue

            clusters = {c.person_id: c for c in plan.new_clusters}
            person_id = closest_below(
                face.vector,
                ((c.person_id, c.representative) for c in plan.new_clusters),
                self.thresholds.batch_local
            )
            if person_id is not None:
                clusters[person_id].members += 1
                plan.assignments.append(InsertResult(person_id=person_id, created=False))
                accepted.append((person_id, face.vector))
                continue

            cluster = BatchCluster(
                person_id=self.id_factory(),
                representative=face.vector,
                thumbnail=face.thumbnail
            )
            plan.new_clusters.append(cluster)
            plan.assignments.append(InsertResult(person_id=cluster.person_id, created=True))
            accepted.append((cluster.person_id, face.vector))

        return plan

    async def insert_batch(
        self,
        session: AsyncSession,
        user_id: str,
        faces: Sequence[FaceInput]
    ) -> List[InsertResult]:
        """Plan the batch, then persist new persons, embeddings and centroids."""
        if not faces:
            return []

        persons = await PersonRepository.find_by_user(session, user_id)
        candidate_ids = sorted({
            p.person_id
            for face in faces
            for p in self.candidate_filter.filter(face.vector, persons)
        })
        stored = await EmbeddingRepository.find_by_persons(session, user_id, candidate_ids)
        plan = self.plan_batch(faces, persons, stored)

        for cluster in plan.new_clusters:
            await PersonRepository.create(session, user_id, cluster.person_id, thumbnail=cluster.thumbnail)

        stored_faces = [
            (face, assignment)
            for face, assignment in zip(faces, plan.assignments)
            if not assignment.duplicate
        ]
        for face, assignment in stored_faces:
            await EmbeddingRepository.create(
                session, user_id, assignment.person_id, face.vector, face.image_ref, face.source
            )

        await self.centroids.refresh_many(session, user_id, (a.person_id for _, a in stored_faces))

        logger.info(
            f"Clustered batch of {len(faces)} faces for user {user_id}: "
            f"{len(plan.new_clusters)} new persons, "
            f"{len(faces) - len(stored_faces)} duplicates discarded"
        )
        return plan.assignments
