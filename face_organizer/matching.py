"""
Two-stage face matching.

- distance: Euclidean dissimilarity that never raises on malformed input
- CandidateFilter: coarse stage, prunes persons by their centroid
- Matcher: fine stage, exact comparison against candidate embeddings
"""
import numpy as np
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple
import logging

from face_organizer.config import MAX_DISTANCE, Thresholds, DEFAULT_THRESHOLDS
from face_organizer.records import ConfidenceTier, EmbeddingRecord, PersonRecord
from face_organizer.vector_store import EmbeddingIndex

logger = logging.getLogger(__name__)


def distance(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Euclidean distance between two vectors.

    Returns MAX_DISTANCE when either vector is empty or the lengths differ,
    so malformed vectors are treated as "never a match" instead of failing.
    """
    a_array = np.asarray(a, dtype=np.float64).ravel()
    b_array = np.asarray(b, dtype=np.float64).ravel()
    if a_array.size == 0 or b_array.size == 0 or a_array.size != b_array.size:
        return MAX_DISTANCE
    return float(np.linalg.norm(a_array - b_array))


def confidence_tier(dist: float, thresholds: Thresholds = DEFAULT_THRESHOLDS) -> Optional[ConfidenceTier]:
    """Map a distance to its confidence tier; None at or beyond the match threshold."""
    if dist >= thresholds.match:
        return None
    if dist < thresholds.high_confidence:
        return ConfidenceTier.HIGH
    if dist < thresholds.medium_confidence:
        return ConfidenceTier.MEDIUM
    return ConfidenceTier.LOW


class CandidateFilter:
    """
    Coarse stage: keep the persons worth an exact comparison.

    A person survives when its centroid is closer than the coarse threshold.
    Persons without a centroid have nothing to compare against and are always
    kept.
    """

    def __init__(self, thresholds: Thresholds = DEFAULT_THRESHOLDS):
        self.thresholds = thresholds

    def filter(self, query: Sequence[float], persons: Iterable[PersonRecord]) -> List[PersonRecord]:
        candidates = []
        pruned = 0
        for person in persons:
            if person.centroid is None or distance(query, person.centroid) < self.thresholds.coarse:
                candidates.append(person)
            else:
                pruned += 1
        logger.debug(f"Coarse filter kept {len(candidates)} persons, pruned {pruned}")
        return candidates


@dataclass
class MatchVerdict:
    """
    Outcome of comparing one query against candidate embeddings.

    `duplicate` is the first embedding closer than the duplicate threshold;
    `best_per_person` keeps the closest matching embedding of every person
    below the match threshold.
    """
    duplicate: Optional[EmbeddingRecord] = None
    best_per_person: Dict[str, Tuple[EmbeddingRecord, float]] = field(default_factory=dict)

    @property
    def is_duplicate(self) -> bool:
        return self.duplicate is not None

    @property
    def best(self) -> Optional[Tuple[EmbeddingRecord, float]]:
        if not self.best_per_person:
            return None
        return min(self.best_per_person.values(), key=lambda match: (match[1], match[0].person_id))


class Matcher:
    """Fine stage: exact comparison of a query against individual embeddings."""

    def __init__(self, thresholds: Thresholds = DEFAULT_THRESHOLDS):
        self.thresholds = thresholds

    def match(self, query: Sequence[float], embeddings: Iterable[EmbeddingRecord]) -> MatchVerdict:
        verdict = MatchVerdict()

        index = EmbeddingIndex.build(embeddings, self.thresholds.embedding_dim)
        if index.skipped:
            logger.debug(f"Skipped {index.skipped} embeddings with a mismatched dimension")

        # Results are sorted by distance, so the first hit per person is its best
        for record, dist in index.search(query):
            if dist >= self.thresholds.match:
                break
            if dist < self.thresholds.duplicate and verdict.duplicate is None:
                verdict.duplicate = record
            verdict.best_per_person.setdefault(record.person_id, (record, dist))

        return verdict
