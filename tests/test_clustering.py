"""Tests for single and batch cluster assignment."""
import itertools

import pytest

from face_organizer.clustering import ClusterAssignor, closest_below, new_person_id
from face_organizer.records import EmbeddingRecord, FaceInput, InsertResult, PersonRecord


def face(x, y, ref=None):
    return FaceInput(vector=(float(x), float(y)), image_ref=ref or f"img_{x}_{y}", thumbnail=f"thumb_{x}_{y}")


def persisted(person_id, centroid):
    return PersonRecord(user_id="u1", person_id=person_id, name="Unknown Person", centroid=centroid)


class TestHelpers:
    """Tests for the id factory and nearest-anchor helper."""

    def test_person_ids_are_unique(self):
        ids = {new_person_id() for _ in range(1000)}
        assert len(ids) == 1000
        assert all(pid.startswith("person_") for pid in ids)

    def test_closest_below_picks_nearest_under_threshold(self):
        anchors = [("a", (0.4, 0.0)), ("b", (0.2, 0.0)), ("c", (0.0, 5.0))]

        assert closest_below((0.0, 0.0), anchors, 0.5) == "b"
        assert closest_below((0.0, 0.0), anchors, 0.2) is None


class TestPlanBatch:
    """Tests for in-memory batch clustering."""

    @pytest.fixture
    def assignor(self, thresholds):
        return ClusterAssignor(thresholds)

    def test_mutually_close_faces_form_one_person_in_any_order(self, assignor):
        faces = [face(0, 0), face(0.2, 0), face(0.1, 0.15), face(0.05, 0.05)]

        for ordering in itertools.permutations(faces):
            plan = assignor.plan_batch(list(ordering), persons=[])

            assert len(plan.new_clusters) == 1
            assert len({a.person_id for a in plan.assignments}) == 1
            assert [a.created for a in plan.assignments] == [True, False, False, False]

    def test_first_member_is_representative_and_thumbnail(self, assignor):
        plan = assignor.plan_batch([face(0, 0), face(0.3, 0)], persons=[])

        cluster = plan.new_clusters[0]
        assert cluster.representative == (0.0, 0.0)
        assert cluster.thumbnail == "thumb_0_0"
        assert cluster.members == 2

    def test_persisted_person_wins_over_batch_cluster(self, assignor):
        """0.52 from the persisted centroid, 0.48 from the batch representative."""
        persons = [persisted("known", (0.0, 0.0))]

        plan = assignor.plan_batch([face(1.0, 0), face(0.52, 0)], persons)

        assert plan.assignments[0].created is True
        assert plan.assignments[1].person_id == "known"
        assert plan.assignments[1].created is False

    def test_batch_threshold_is_stricter_than_match(self, assignor):
        """0.52 apart: a match for single insert, but a new cluster inside a batch."""
        plan = assignor.plan_batch([face(0, 0), face(0.52, 0)], persons=[])

        assert len(plan.new_clusters) == 2

    def test_compares_against_representative_not_running_mean(self, assignor):
        plan = assignor.plan_batch([face(0, 0), face(0.45, 0), face(0.9, 0)], persons=[])

        assert len(plan.new_clusters) == 2
        assert plan.assignments[0].person_id == plan.assignments[1].person_id
        assert plan.assignments[2].person_id != plan.assignments[0].person_id

    def test_unindexed_persisted_persons_are_ignored(self, assignor):
        persons = [persisted("empty", None)]

        plan = assignor.plan_batch([face(0, 0)], persons)

        assert plan.assignments[0].created is True
        assert plan.assignments[0].person_id != "empty"

    def test_empty_batch(self, assignor):
        plan = assignor.plan_batch([], persons=[persisted("p", (0.0, 0.0))])
        assert plan.assignments == [] and plan.new_clusters == []

    def test_stored_duplicate_is_flagged_not_assigned(self, assignor):
        persons = [persisted("known", (0.0, 0.0))]
        stored = [EmbeddingRecord(embedding_id=1, user_id="u1", person_id="known", vector=(0.0, 0.0), image_ref="img_0")]

        plan = assignor.plan_batch([face(0.01, 0), face(0.1, 0)], persons, stored)

        assert plan.assignments[0] == InsertResult(person_id="known", created=False, duplicate=True)
        assert plan.assignments[1] == InsertResult(person_id="known", created=False)
        assert plan.new_clusters == []


class TestSingleInsert:
    """Tests for insert_face against a real database."""

    @pytest.mark.asyncio
    async def test_two_people_three_faces(self, service):
        first = await service.insert_face("u1", (1.0, 0.0), "img_a")
        second = await service.insert_face("u1", (0.98, 0.02), "img_b")
        third = await service.insert_face("u1", (5.0, 5.0), "img_c")

        assert first.created is True
        assert second.created is False
        assert second.person_id == first.person_id
        assert third.created is True
        assert third.person_id != first.person_id

        persons = await service.list_persons("u1")
        embeddings = await service.list_embeddings("u1")
        assert len(persons) == 2
        assert len(embeddings) == 3

    @pytest.mark.asyncio
    async def test_same_face_twice_is_stored_once(self, service):
        first = await service.insert_face("u1", (0.3, 0.4), "img_a")
        again = await service.insert_face("u1", (0.3, 0.4), "img_b")

        assert again.duplicate is True
        assert again.created is False
        assert again.person_id == first.person_id
        assert len(await service.list_embeddings("u1")) == 1
        assert len(await service.list_persons("u1")) == 1

    @pytest.mark.asyncio
    async def test_far_faces_each_get_a_new_person(self, service):
        results = [
            await service.insert_face("u1", (float(i * 10), 0.0), f"img_{i}")
            for i in range(5)
        ]

        assert all(r.created for r in results)
        assert len({r.person_id for r in results}) == 5

    @pytest.mark.asyncio
    async def test_new_person_uses_face_thumbnail(self, service):
        result = await service.insert_face("u1", (0.0, 0.0), "img_a", thumbnail="data:image/jpeg;base64,AAA")

        persons = await service.list_persons("u1")
        assert persons[0].person_id == result.person_id
        assert persons[0].thumbnail == "data:image/jpeg;base64,AAA"
        assert persons[0].name == "Unknown Person"

    @pytest.mark.asyncio
    async def test_attaches_to_closest_person(self, service):
        a = await service.insert_face("u1", (0.0, 0.0), "img_a")
        b = await service.insert_face("u1", (1.0, 0.0), "img_b")

        result = await service.insert_face("u1", (0.7, 0.0), "img_c")

        assert result.person_id == b.person_id
        assert result.person_id != a.person_id

    @pytest.mark.asyncio
    async def test_users_never_see_each_other(self, service):
        mine = await service.insert_face("u1", (0.0, 0.0), "img_a")
        theirs = await service.insert_face("u2", (0.0, 0.0), "img_a")

        assert theirs.created is True
        assert theirs.duplicate is False
        assert theirs.person_id != mine.person_id


class TestBatchInsert:
    """Tests for insert_batch against a real database."""

    @pytest.mark.asyncio
    async def test_batch_clusters_within_itself(self, service):
        faces = [face(0, 0), face(5, 5), face(0.1, 0), face(5.1, 5), face(0, 0.2)]

        results = await service.insert_batch("u1", faces)

        assert [r.created for r in results] == [True, True, False, False, False]
        assert results[0].person_id == results[2].person_id == results[4].person_id
        assert results[1].person_id == results[3].person_id
        assert len(await service.list_persons("u1")) == 2
        assert len(await service.list_embeddings("u1")) == 5

    @pytest.mark.asyncio
    async def test_batch_attaches_to_persisted_persons(self, service):
        known = await service.insert_face("u1", (0.0, 0.0), "img_known")

        results = await service.insert_batch("u1", [face(0.1, 0.1), face(9, 9)])

        assert results[0].person_id == known.person_id
        assert results[0].created is False
        assert results[1].created is True
        assert len(await service.list_persons("u1")) == 2

    @pytest.mark.asyncio
    async def test_batch_sets_centroids_once_committed(self, service):
        results = await service.insert_batch("u1", [face(0, 0), face(0.2, 0), face(0.1, 0.3)])

        persons = await service.list_persons("u1")
        assert len(persons) == 1
        assert persons[0].person_id == results[0].person_id
        assert persons[0].centroid == pytest.approx((0.1, 0.1))

    @pytest.mark.asyncio
    async def test_empty_batch_writes_nothing(self, service):
        assert await service.insert_batch("u1", []) == []
        assert await service.list_persons("u1") == []

    @pytest.mark.asyncio
    async def test_same_batch_twice_is_stored_once(self, service):
        first = await service.insert_batch("u1", [face(0.3, 0.4, ref="img_a")])
        again = await service.insert_batch("u1", [face(0.3, 0.4, ref="img_b")])

        assert again[0].duplicate is True
        assert again[0].created is False
        assert again[0].person_id == first[0].person_id
        assert len(await service.list_embeddings("u1")) == 1
        assert len(await service.list_persons("u1")) == 1

    @pytest.mark.asyncio
    async def test_batch_discards_face_already_inserted_singly(self, service):
        single = await service.insert_face("u1", (0.3, 0.4), "img_a")

        [result] = await service.insert_batch("u1", [face(0.3, 0.4, ref="img_b")])

        assert result.duplicate is True
        assert result.person_id == single.person_id
        assert len(await service.list_embeddings("u1")) == 1

    @pytest.mark.asyncio
    async def test_duplicates_within_one_batch_are_stored_once(self, service):
        results = await service.insert_batch("u1", [face(0, 0), face(0.005, 0), face(0.2, 0)])

        assert [r.duplicate for r in results] == [False, True, False]
        assert len({r.person_id for r in results}) == 1
        assert len(await service.list_embeddings("u1")) == 2

        [person] = await service.list_persons("u1")
        assert person.centroid == pytest.approx((0.1, 0.0))
