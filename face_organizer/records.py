"""
Domain records passed between the clustering components.

These are plain immutable values detached from the ORM session, so the
matching code can run without a database. Vectors are stored as float tuples.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

Vector = Tuple[float, ...]


def as_vector(values: Sequence[float]) -> Vector:
    """Copy any float sequence (list, tuple, numpy array) into a Vector."""
    return tuple(float(v) for v in values)


class PersonState(str, Enum):
    """A person is Indexed once it has a centroid, Unindexed otherwise."""
    UNINDEXED = "unindexed"
    INDEXED = "indexed"


class ConfidenceTier(str, Enum):
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"


@dataclass(frozen=True)
class PersonRecord:
    user_id: str
    person_id: str
    name: str
    thumbnail: Optional[str] = None
    centroid: Optional[Vector] = None
    created_at: Optional[datetime] = None

    @property
    def state(self) -> PersonState:
        return PersonState.INDEXED if self.centroid is not None else PersonState.UNINDEXED


@dataclass(frozen=True)
class EmbeddingRecord:
    embedding_id: int
    user_id: str
    person_id: str
    vector: Vector
    image_ref: str
    source: str = "local"
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class FaceInput:
    """One face to be clustered: its descriptor plus where it came from."""
    vector: Vector
    image_ref: str
    source: str = "local"
    thumbnail: Optional[str] = None


@dataclass(frozen=True)
class InsertResult:
    person_id: str
    created: bool
    duplicate: bool = False


@dataclass(frozen=True)
class SearchMatch:
    person_id: str
    embedding_id: int
    image_ref: str
    distance: float
    confidence: ConfidenceTier

    @property
    def score(self) -> float:
        return 1.0 - self.distance


@dataclass
class UserPartition:
    """
    The slice of storage that belongs to one user.

    Holds the user's persons and, when loaded, the embeddings of some or all
    of them keyed by person_id. Nothing outside this user is ever reachable
    from a partition.
    """
    user_id: str
    persons: List[PersonRecord] = field(default_factory=list)
    embeddings_by_person: Dict[str, List[EmbeddingRecord]] = field(default_factory=dict)

    @classmethod
    def build(
        cls,
        user_id: str,
        persons: Iterable[PersonRecord],
        embeddings: Iterable[EmbeddingRecord] = ()
    ) -> "UserPartition":
        partition = cls(user_id=user_id, persons=list(persons))
        for embedding in embeddings:
            partition.embeddings_by_person.setdefault(embedding.person_id, []).append(embedding)
        return partition

    def embeddings_for(self, person_ids: Iterable[str]) -> List[EmbeddingRecord]:
        """Embeddings of the given persons, in person order."""
        result: List[EmbeddingRecord] = []
        for person_id in person_ids:
            result.extend(self.embeddings_by_person.get(person_id, ()))
        return result
