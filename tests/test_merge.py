from contextlib import contextmanager

import pytest

from orbit_assessment.domain.catalog import get_capability_model
from orbit_assessment.domain.merge import (
    REASON_HISTORY_EXISTS,
    REASON_IDENTICAL,
    REASON_NO_RESIDENT,
    REASON_OLDER,
    REASON_REPLACED,
    REASON_SAME_TIME,
    BundleContents,
    MergeEngine,
    assessment_fingerprint,
    build_snapshot,
    content_fingerprint,
    derive_id,
)
from orbit_assessment.domain.models import AssessmentHistory, Tag
from orbit_assessment.domain.services import ScoringService
from orbit_assessment.infrastructure.memory_store import InMemoryRatingStore
from tests.helpers import T0, later, make_assessment, rate, rate_many

FRESH = {"culture-mindset": 3, "capability": 3, "quality-consistency": 4}
STALE = {"culture-mindset": 1, "capability": 2}


def seeded_store(area_id="provider-enrollment", levels=STALE, updated_at=T0):
    resident = make_assessment(area_id, updated_at=updated_at)
    store = InMemoryRatingStore.from_snapshot(
        [resident], {resident.id: rate_many(resident.id, levels, updated_at)}
    )
    return store, resident


def bundle_of(*pairs, history=(), tags=()):
    return BundleContents(
        assessments=[a for a, _ in pairs],
        ratings={a.id: r for a, r in pairs},
        history=list(history),
        tags=list(tags),
    )


def candidate(area_id="provider-enrollment", levels=FRESH, updated_at=None, **kw):
    a = make_assessment(area_id, updated_at=updated_at or later(60), **kw)
    return a, rate_many(a.id, levels, a.updated_at)


class TestFingerprints:
    def test_ignores_ids_timestamps_and_tag_order(self):
        a, ra = candidate(tags=("b", "a"))
        b, rb = candidate(updated_at=later(999), tags=("a", "b"))
        assert assessment_fingerprint(a, ra) == assessment_fingerprint(b, rb)

    def test_changes_with_content(self):
        a, ra = candidate()
        b, rb = candidate(levels={**FRESH, "capability": 4})
        assert assessment_fingerprint(a, ra) != assessment_fingerprint(b, rb)
        assert content_fingerprint("x", (), ra) != content_fingerprint("y", (), ra)

    def test_attachments_count_but_edit_bookkeeping_does_not(self):
        base = [rate("a", "capability", 3)]
        attached = [rate("a", "capability", 3, attachment_ids=("doc-2", "doc-1"))]
        reordered = [rate("a", "capability", 3, attachment_ids=("doc-1", "doc-2"))]
        carried = [rate("a", "capability", 3, previous_level=3, carried_forward=True)]

        fingerprint = content_fingerprint("provider-enrollment", (), base)
        assert content_fingerprint("provider-enrollment", (), attached) != fingerprint
        assert content_fingerprint("provider-enrollment", (), attached) == content_fingerprint(
            "provider-enrollment", (), reordered
        )
        assert content_fingerprint("provider-enrollment", (), carried) == fingerprint

    def test_derive_id_is_stable(self):
        assert derive_id("assessment", "a", "f") == derive_id("assessment", "a", "f")
        assert derive_id("assessment", "a", "f") != derive_id("assessment", "a", "g")


class TestMergeAssessment:
    def test_fresh_import_becomes_current(self):
        store = InMemoryRatingStore()
        engine = MergeEngine()
        a, ratings = candidate()

        item = engine.merge_assessment(store, a, ratings)

        assert item.action == "imported_current"
        assert item.reason == REASON_NO_RESIDENT
        assert item.area_name == "Provider Enrollment"
        current = store.get_assessment("provider-enrollment")
        assert current.overall_score == 3.3
        assert current.id == derive_id("assessment", a.id, assessment_fingerprint(a, ratings))
        assert len(store.get_ratings(current.id)) == 3
        assert all(r.assessment_id == current.id for r in store.get_ratings(current.id))

    def test_newer_candidate_demotes_resident(self):
        store, resident = seeded_store()
        engine = MergeEngine()
        a, ratings = candidate(updated_at=later(60))

        item = engine.merge_assessment(store, a, ratings)

        assert item.action == "imported_current"
        assert item.reason == REASON_REPLACED
        current = store.get_assessment("provider-enrollment")
        assert current.id != resident.id
        # the resident is kept, snapshotted and no longer current
        assert resident.id in store.assessments
        history = store.list_history("provider-enrollment")
        assert [h.capability_assessment_id for h in history] == [resident.id]
        assert history[0].overall_score == 1.5

    def test_stale_candidate_filed_to_history(self):
        store, resident = seeded_store(levels=FRESH, updated_at=later(60))
        engine = MergeEngine()
        a, ratings = candidate(levels=STALE, updated_at=T0)

        item = engine.merge_assessment(store, a, ratings)

        assert item.action == "imported_history"
        assert item.reason == REASON_OLDER
        assert store.get_assessment("provider-enrollment").id == resident.id
        history = store.list_history("provider-enrollment")
        assert len(history) == 1
        assert history[0].overall_score == 1.5
        assert history[0].snapshot_date == T0

    def test_equal_timestamp_keeps_resident(self):
        store, resident = seeded_store(updated_at=later(30))
        engine = MergeEngine()
        a, ratings = candidate(updated_at=later(30))

        item = engine.merge_assessment(store, a, ratings)

        assert item.action == "imported_history"
        assert item.reason == REASON_SAME_TIME
        assert store.get_assessment("provider-enrollment").id == resident.id

    def test_identical_content_skipped(self):
        store, resident = seeded_store(levels=FRESH)
        engine = MergeEngine()
        a, ratings = candidate(levels=FRESH, updated_at=later(500))

        item = engine.merge_assessment(store, a, ratings)

        assert item.action == "skipped"
        assert item.reason == REASON_IDENTICAL
        assert store.get_assessment("provider-enrollment").id == resident.id
        assert store.list_history("provider-enrollment") == []

    def test_content_already_in_history_skipped(self):
        store, resident = seeded_store(levels=FRESH, updated_at=later(60))
        engine = MergeEngine()
        old, old_ratings = candidate(levels=STALE, updated_at=T0)
        store.put_history(build_snapshot(old, old_ratings, ScoringService()))

        item = engine.merge_assessment(store, *candidate(levels=STALE, updated_at=later(5)))

        assert item.action == "skipped"
        assert item.reason == REASON_HISTORY_EXISTS

    def test_unknown_area_is_error(self):
        store = InMemoryRatingStore()
        a, ratings = candidate("not-a-real-area")
        item = MergeEngine().merge_assessment(store, a, ratings)
        assert item.action == "error"
        assert "not-a-real-area" in item.reason
        assert store.row_counts()["assessments"] == 0

    def test_bad_rating_is_error(self):
        store = InMemoryRatingStore()
        a = make_assessment()
        item = MergeEngine().merge_assessment(store, a, [rate(a.id, "no-such-aspect", 3)])
        assert item.action == "error"
        assert store.row_counts()["assessments"] == 0


class TestMergeBundle:
    def test_replay_is_idempotent_and_additive(self):
        store, _ = seeded_store()
        engine = MergeEngine()
        bundle = bundle_of(
            candidate(updated_at=later(60)),
            candidate("claims-payment"),
            candidate("provider-screening", levels=STALE, updated_at=later(10)),
        )

        first = engine.merge_bundle(bundle, store.transaction)
        counts = store.row_counts()
        second = engine.merge_bundle(bundle, store.transaction)

        assert first.imported_as_current == 3
        assert second.skipped == 3
        assert second.imported_as_current == second.imported_as_history == 0
        assert store.row_counts() == counts

    def test_older_and_newer_in_one_bundle(self):
        store = InMemoryRatingStore()
        bundle = bundle_of(
            candidate(levels=FRESH, updated_at=later(60)),
            candidate(levels=STALE, updated_at=later(0)),
        )
        result = MergeEngine().merge_bundle(bundle, store.transaction)

        assert result.imported_as_current == 2
        current = store.get_assessment("provider-enrollment")
        assert current.overall_score == 3.3
        assert len(store.list_history("provider-enrollment")) == 1

    def test_failing_area_rolls_back_alone(self):
        store = InMemoryRatingStore()
        engine = MergeEngine()
        real_put = store.put_assessment

        def flaky_put(assessment, ratings):
            if assessment.capability_area_id == "claims-payment":
                raise RuntimeError("disk full")
            real_put(assessment, ratings)

        store.put_assessment = flaky_put
        result = engine.merge_bundle(
            bundle_of(candidate(), candidate("claims-payment"), candidate("data-warehouse")),
            store.transaction,
        )

        assert not result.success
        assert result.imported_as_current == 2
        assert result.errors == ["Claims Payment: disk full"]
        assert store.get_assessment("claims-payment") is None
        assert store.get_assessment("data-warehouse") is not None

    def test_progress_reported(self):
        calls = []
        MergeEngine().merge_bundle(
            bundle_of(candidate(), candidate("claims-payment")),
            InMemoryRatingStore().transaction,
            progress=lambda pct, msg: calls.append((pct, msg)),
        )
        percents = [p for p, _ in calls]
        assert percents[0] == 0
        assert percents[-1] == 100
        assert percents == sorted(percents)
        assert calls[-1][1] == "Import complete"

    def test_cancel_between_areas(self):
        store = InMemoryRatingStore()
        checks = iter([True, False, False])
        result = MergeEngine().merge_bundle(
            bundle_of(candidate(), candidate("claims-payment"), candidate("data-warehouse")),
            store.transaction,
            should_continue=lambda: next(checks),
        )
        assert result.cancelled
        assert result.imported_as_current == 1
        assert store.get_assessment("provider-enrollment") is not None
        assert store.get_assessment("claims-payment") is None

    def test_threaded_merge_matches_sequential(self):
        pairs = [candidate(area.id) for area in get_capability_model().all_areas()]
        sequential, threaded = InMemoryRatingStore(), InMemoryRatingStore()
        engine = MergeEngine()

        engine.merge_bundle(bundle_of(*pairs), sequential.transaction)
        result = engine.merge_bundle(bundle_of(*pairs), threaded.transaction, max_workers=4)

        assert result.imported_as_current == len(pairs)
        assert threaded.row_counts() == sequential.row_counts()

    def test_history_entries_and_tags(self):
        store = InMemoryRatingStore()
        a, ratings = candidate()
        entry = AssessmentHistory(
            id="hist-1",
            capability_assessment_id="elsewhere",
            capability_area_id="provider-enrollment",
            snapshot_date=T0,
            overall_score=9.9,
            ratings=tuple(r.to_historical() for r in rate_many("x", STALE)),
        )
        orphan = AssessmentHistory(
            id="hist-2",
            capability_assessment_id="elsewhere",
            capability_area_id="unknown-area",
            snapshot_date=T0,
            overall_score=None,
        )
        bundle = bundle_of(
            (a, ratings),
            history=[entry, orphan],
            tags=[Tag(id="t1", name="baseline", usage_count=2, last_used=T0)],
        )

        engine = MergeEngine()
        result = engine.merge_bundle(bundle, store.transaction)
        again = engine.merge_bundle(bundle, store.transaction)

        assert result.history_imported == 1
        assert result.tags_imported == 1
        stored = store.get_history("hist-1")
        # scores are recomputed from the ratings, not trusted from the bundle
        assert stored.overall_score == 1.5
        assert again.history_imported == 0
        assert again.tags_imported == 0
        assert store.get_history("hist-2") is None


@pytest.mark.parametrize("max_workers", [1, 3])
def test_transaction_factory_is_used_per_area(max_workers):
    store = InMemoryRatingStore()
    opened = []

    @contextmanager
    def transaction():
        with store.transaction() as s:
            opened.append(1)
            yield s

    MergeEngine().merge_bundle(
        bundle_of(candidate(), candidate("claims-payment")), transaction, max_workers=max_workers
    )
    assert len(opened) == 2
