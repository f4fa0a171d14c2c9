"""
Similarity search over a user's persons.

Each query vector (an image may hold several faces) runs the coarse and fine
matching stages; the results are merged per person, keeping the closest
embedding found by any query vector.
"""
from typing import Dict, List, Optional, Sequence, Tuple
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from face_organizer.config import Thresholds, DEFAULT_THRESHOLDS
from face_organizer.matching import CandidateFilter, Matcher, confidence_tier
from face_organizer.records import EmbeddingRecord, SearchMatch, UserPartition
from face_organizer.repository import PersonRepository, EmbeddingRepository

logger = logging.getLogger(__name__)


class SearchEngine:
    """Ranks a user's persons against one or more query vectors."""

    def __init__(
        self,
        thresholds: Thresholds = DEFAULT_THRESHOLDS,
        candidate_filter: Optional[CandidateFilter] = None,
        matcher: Optional[Matcher] = None
    ):
        self.thresholds = thresholds
        self.candidate_filter = candidate_filter or CandidateFilter(thresholds)
        self.matcher = matcher or Matcher(thresholds)

    async def search(
        self,
        session: AsyncSession,
        user_id: str,
        queries: Sequence[Sequence[float]]
    ) -> List[SearchMatch]:
        """
        Load only what the coarse stage lets through, then rank it.

        Returns:
            Matches sorted by descending score; empty for unknown users.
        """
        if not queries:
            return []

        persons = await PersonRepository.find_by_user(session, user_id)
        if not persons:
            return []

        candidates_per_query = [
            [p.person_id for p in self.candidate_filter.filter(query, persons)]
            for query in queries
        ]
        candidate_ids = sorted({pid for ids in candidates_per_query for pid in ids})
        embeddings = await EmbeddingRepository.find_by_persons(session, user_id, candidate_ids)

        partition = UserPartition.build(user_id, persons, embeddings)
        return self.rank(queries, partition, candidates_per_query)

    def rank(
        self,
        queries: Sequence[Sequence[float]],
        partition: UserPartition,
        candidates_per_query: Optional[List[List[str]]] = None
    ) -> List[SearchMatch]:
        """
        Rank a partition against the query vectors.

        Args:
            queries: Query vectors
            partition: The user's persons with their loaded embeddings
            candidates_per_query: Coarse-stage survivors per query; computed
                from the partition when omitted
        """
        if candidates_per_query is None:
            candidates_per_query = [
                [p.person_id for p in self.candidate_filter.filter(query, partition.persons)]
                for query in queries
            ]

        best: Dict[str, Tuple[EmbeddingRecord, float]] = {}
        for query, candidate_ids in zip(queries, candidates_per_query):
            verdict = self.matcher.match(query, partition.embeddings_for(candidate_ids))
            for person_id, (record, dist) in verdict.best_per_person.items():
                current = best.get(person_id)
                if current is None or dist < current[1]:
                    best[person_id] = (record, dist)

        matches = []
        for person_id, (record, dist) in best.items():
            tier = confidence_tier(dist, self.thresholds)
            if tier is None:
                continue
            matches.append(SearchMatch(
                person_id=person_id,
                embedding_id=record.embedding_id,
                image_ref=record.image_ref,
                distance=dist,
                confidence=tier
            ))

        matches.sort(key=lambda m: (-m.score, m.person_id))
        logger.debug(f"Search over {len(queries)} query vectors returned {len(matches)} persons")
        return matches
