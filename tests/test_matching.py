"""Tests for the distance function and both matching stages."""
import math

import pytest

from face_organizer.config import Thresholds
from face_organizer.matching import CandidateFilter, Matcher, confidence_tier, distance
from face_organizer.records import ConfidenceTier, EmbeddingRecord, PersonRecord
from face_organizer.vector_store import EmbeddingIndex


def make_embedding(embedding_id, person_id, vector, user_id="u1"):
    return EmbeddingRecord(
        embedding_id=embedding_id,
        user_id=user_id,
        person_id=person_id,
        vector=tuple(vector),
        image_ref=f"img_{embedding_id}",
    )


def make_person(person_id, centroid=None, user_id="u1"):
    return PersonRecord(
        user_id=user_id,
        person_id=person_id,
        name="Unknown Person",
        centroid=tuple(centroid) if centroid is not None else None,
    )


class TestDistance:
    """Tests for distance()."""

    @pytest.mark.parametrize("vector", [(0.0,), (1.0, 0.0), (0.3, -2.5, 7.0), tuple(range(128))])
    def test_same_vector_is_zero(self, vector):
        assert distance(vector, vector) == 0.0

    def test_euclidean(self):
        assert distance((1.0, 0.0), (0.98, 0.02)) == pytest.approx(math.sqrt(0.0008))
        assert distance((1.0, 0.0), (5.0, 5.0)) == pytest.approx(math.sqrt(41))

    def test_mismatched_lengths_return_maximum(self):
        """Content does not matter when the lengths differ."""
        assert distance((1.0, 0.0), (1.0, 0.0, 0.0)) == 1.0
        assert distance((100.0,), (-100.0, 3.0)) == 1.0

    def test_empty_vectors_return_maximum(self):
        assert distance((), (1.0, 2.0)) == 1.0
        assert distance((1.0, 2.0), []) == 1.0
        assert distance((), ()) == 1.0

    def test_accepts_lists_and_tuples(self):
        assert distance([0.0, 3.0], (4.0, 0.0)) == pytest.approx(5.0)


class TestConfidenceTier:
    """Tests for confidence_tier()."""

    @pytest.mark.parametrize("dist,expected", [
        (0.0, ConfidenceTier.HIGH),
        (0.39, ConfidenceTier.HIGH),
        (0.4, ConfidenceTier.MEDIUM),
        (0.49, ConfidenceTier.MEDIUM),
        (0.5, ConfidenceTier.LOW),
        (0.59, ConfidenceTier.LOW),
        (0.6, None),
        (3.0, None),
    ])
    def test_bands(self, dist, expected):
        assert confidence_tier(dist, Thresholds()) == expected


class TestCandidateFilter:
    """Tests for the coarse stage."""

    def test_keeps_close_centroids_and_prunes_far_ones(self, thresholds):
        persons = [
            make_person("near", (0.7, 0.0)),
            make_person("far", (0.76, 0.0)),
        ]

        kept = CandidateFilter(thresholds).filter((0.0, 0.0), persons)

        assert [p.person_id for p in kept] == ["near"]

    def test_persons_without_centroid_are_always_candidates(self, thresholds):
        persons = [make_person("unindexed"), make_person("far", (50.0, 50.0))]

        kept = CandidateFilter(thresholds).filter((0.0, 0.0), persons)

        assert [p.person_id for p in kept] == ["unindexed"]

    def test_centroid_of_other_dimension_is_pruned(self, thresholds):
        persons = [make_person("odd", (0.0, 0.0, 0.0))]

        assert CandidateFilter(thresholds).filter((0.0, 0.0), persons) == []


class TestMatcher:
    """Tests for the fine stage."""

    def test_duplicate_is_flagged(self, thresholds):
        embeddings = [make_embedding(1, "p1", (1.0, 0.0))]

        verdict = Matcher(thresholds).match((1.0, 0.01), embeddings)

        assert verdict.is_duplicate
        assert verdict.duplicate.embedding_id == 1

    def test_keeps_best_embedding_per_person(self, thresholds):
        embeddings = [
            make_embedding(1, "p1", (0.5, 0.0)),
            make_embedding(2, "p1", (0.1, 0.0)),
            make_embedding(3, "p2", (0.0, 0.3)),
        ]

        verdict = Matcher(thresholds).match((0.0, 0.0), embeddings)

        assert not verdict.is_duplicate
        assert verdict.best_per_person["p1"][0].embedding_id == 2
        assert verdict.best_per_person["p1"][1] == pytest.approx(0.1, abs=1e-6)
        assert verdict.best_per_person["p2"][1] == pytest.approx(0.3, abs=1e-6)
        assert verdict.best[0].person_id == "p1"

    def test_nothing_at_or_beyond_match_threshold(self, thresholds):
        embeddings = [make_embedding(1, "p1", (0.61, 0.0)), make_embedding(2, "p2", (5.0, 5.0))]

        verdict = Matcher(thresholds).match((0.0, 0.0), embeddings)

        assert verdict.best is None
        assert verdict.best_per_person == {}

    def test_mismatched_dimensions_never_match(self, thresholds):
        embeddings = [make_embedding(1, "p1", (0.0, 0.0, 0.0)), make_embedding(2, "p2", ())]

        assert Matcher(thresholds).match((0.0, 0.0), embeddings).best is None
        assert Matcher(thresholds).match((0.0, 0.0, 0.0), embeddings).best is None

    def test_no_embeddings(self, thresholds):
        verdict = Matcher(thresholds).match((0.0, 0.0), [])
        assert verdict.best is None and not verdict.is_duplicate


class TestEmbeddingIndex:
    """Tests for the FAISS flat index wrapper."""

    def test_search_returns_plain_distances_in_order(self):
        index = EmbeddingIndex.build(
            [make_embedding(1, "p1", (3.0, 4.0)), make_embedding(2, "p2", (1.0, 0.0))],
            dim=2,
        )

        results = index.search((0.0, 0.0))

        assert [r.embedding_id for r, _ in results] == [2, 1]
        assert results[0][1] == pytest.approx(1.0)
        assert results[1][1] == pytest.approx(5.0)

    def test_top_k_and_skipped_records(self):
        index = EmbeddingIndex.build(
            [
                make_embedding(1, "p1", (0.0, 0.0)),
                make_embedding(2, "p1", (1.0, 1.0)),
                make_embedding(3, "p2", (1.0, 1.0, 1.0)),
            ],
            dim=2,
        )

        assert index.count == 2
        assert index.skipped == 1
        assert len(index.search((0.0, 0.0), top_k=1)) == 1

    def test_empty_index_and_wrong_query_dimension(self):
        assert EmbeddingIndex(2).search((0.0, 0.0)) == []

        index = EmbeddingIndex.build([make_embedding(1, "p1", (0.0, 0.0))], dim=2)
        assert index.search((0.0, 0.0, 0.0)) == []
