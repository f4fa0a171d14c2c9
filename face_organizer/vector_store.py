"""
FAISS Vector Index

Exact nearest-neighbour lookup over a set of face embeddings. The matcher
builds one index per query over the embeddings of the candidate persons only,
so the index never outlives a request and needs no persistence or deletion
bookkeeping.
"""
import faiss
import numpy as np
from typing import Iterable, List, Optional, Sequence, Tuple
import logging

from face_organizer.records import EmbeddingRecord

logger = logging.getLogger(__name__)


class EmbeddingIndex:
    """
    FAISS IndexFlatL2 over embedding records of one dimension.

    IndexFlatL2 performs brute-force exact search and reports squared
    Euclidean distances; `search` converts them back to plain distances.
    Records whose vector length differs from the index dimension are skipped
    on add, since they can never be a match.
    """

    def __init__(self, dim: int):
        self.dim = dim
        self._index = faiss.IndexFlatL2(dim)
        self._records: List[EmbeddingRecord] = []
        self.skipped = 0

    @classmethod
    def build(cls, records: Iterable[EmbeddingRecord], dim: int) -> "EmbeddingIndex":
        index = cls(dim)
        index.add(records)
        return index

    @property
    def count(self) -> int:
        return self._index.ntotal

    def add(self, records: Iterable[EmbeddingRecord]) -> int:
        """Add records with a matching dimension; returns how many were added."""
        valid = []
        for record in records:
            if len(record.vector) != self.dim:
                self.skipped += 1
                continue
            valid.append(record)

        if not valid:
            return 0

        matrix = np.array([r.vector for r in valid], dtype=np.float32)
        self._index.add(matrix)
        self._records.extend(valid)
        return len(valid)

    def search(
        self,
        query: Sequence[float],
        top_k: Optional[int] = None
    ) -> List[Tuple[EmbeddingRecord, float]]:
        """
        Find the nearest embeddings to a query vector.

        Args:
            query: Query vector; must have the index dimension
            top_k: Number of neighbours to return (all when None)

        Returns:
            List of (record, distance) sorted by ascending distance. Empty when
            the index is empty or the query has the wrong dimension.
        """
        if self.count == 0:
            return []

        query_array = np.asarray(query, dtype=np.float32).reshape(1, -1)
        if query_array.shape[1] != self.dim:
            return []

        k = self.count if top_k is None else min(top_k, self.count)
        if k <= 0:
            return []

        squared, positions = self._index.search(query_array, k)

        results = []
        for sq_distance, position in zip(squared[0], positions[0]):
            if position < 0:
                continue
            # float32 round-off can push an exact match slightly below zero
            results.append((self._records[position], float(np.sqrt(max(0.0, float(sq_distance))))))
        return results
