"""Tests for the rotation scheduler.

Tests cover:
- A due experiment flips exactly once per tick and is rescheduled
- Catalog failures keep the case and retry sooner
- One failing experiment never blocks the others
- Gallery diffs reuse live media; variant heroes never delete BASE media
- A concurrent writer turns the rotation into a conflict
- History and metrics
"""

from datetime import timedelta
from uuid import uuid4

import pytest
from sqlalchemy import select, update

from conftest import NOW, PRODUCT, VARIANT_RED, FakeCatalog
from merchswap.core.errors import InvalidTransitionError, NotFoundError
from merchswap.models.experiment import Case, Experiment, ExperimentStatus, Scope
from merchswap.models.rotation import RotationHistoryEntry, RotationTrigger
from merchswap.services.rotation import RotationScheduler, rotation_history, rotation_metrics

BASE_URLS = ["https://cdn.shop.com/base-1.jpg", "https://cdn.shop.com/base-2.jpg"]
TEST_URLS = ["https://cdn.shop.com/test-1.jpg", "https://cdn.shop.com/test-2.jpg"]
OTHER_PRODUCT = "gid://shopify/Product/3003"


def _scheduler(session_factory, catalog, **kwargs):
    kwargs.setdefault("concurrency", 1)
    kwargs.setdefault("timeout_seconds", 5.0)
    kwargs.setdefault("retry_hours", 1.0)
    return RotationScheduler(session_factory, catalog, **kwargs)


async def _reload(session_factory, experiment_id):
    async with session_factory() as db:
        return await db.get(Experiment, experiment_id)


async def _history(session_factory, experiment_id):
    async with session_factory() as db:
        return await rotation_history(db, experiment_id, limit=50)


# ======================================================================
# Scheduled rotations
# ======================================================================


class TestScheduledRotation:
    def test_due_experiment_flips_once(self, run, make_experiment, catalog):
        catalog.seed_gallery(PRODUCT, BASE_URLS)

        async def scenario(session_factory):
            experiment = await make_experiment(session_factory)
            scheduler = _scheduler(session_factory, catalog)
            first = await scheduler.run_due_rotations(now=NOW)
            second = await scheduler.run_due_rotations(now=NOW)
            return first, second, await _reload(session_factory, experiment.id), await _history(
                session_factory, experiment.id
            )

        first, second, experiment, history = run(scenario)
        assert first.processed == 1 and first.succeeded == 1
        assert second.processed == 0
        assert experiment.current_case is Case.TEST
        assert experiment.last_rotation_at == NOW
        assert experiment.next_rotation_at == NOW + timedelta(hours=24)
        assert catalog.gallery_urls(PRODUCT) == TEST_URLS
        (entry,) = history
        assert entry.success
        assert entry.from_case is Case.BASE and entry.to_case is Case.TEST
        assert entry.trigger is RotationTrigger.SCHEDULED
        assert entry.details["added"] == 2 and entry.details["deleted"] == 2

    def test_not_due_and_paused_are_left_alone(self, run, make_experiment, catalog):
        async def scenario(session_factory):
            later = await make_experiment(session_factory, next_rotation_at=NOW + timedelta(hours=1))
            paused = await make_experiment(
                session_factory, status=ExperimentStatus.PAUSED, next_rotation_at=NOW - timedelta(hours=1)
            )
            summary = await _scheduler(session_factory, catalog).run_due_rotations(now=NOW)
            return summary, await _reload(session_factory, later.id), await _reload(session_factory, paused.id)

        summary, later, paused = run(scenario)
        assert summary.processed == 0
        assert later.current_case is Case.BASE
        assert paused.current_case is Case.BASE
        assert catalog.calls == []

    def test_round_trip_restores_base_gallery(self, run, make_experiment, catalog):
        catalog.seed_gallery(PRODUCT, BASE_URLS)

        async def scenario(session_factory):
            experiment = await make_experiment(session_factory, rotation_interval_hours=1.0)
            scheduler = _scheduler(session_factory, catalog)
            await scheduler.run_due_rotations(now=NOW)
            await scheduler.run_due_rotations(now=NOW + timedelta(hours=1))
            return await _reload(session_factory, experiment.id)

        experiment = run(scenario)
        assert experiment.current_case is Case.BASE
        assert catalog.gallery_urls(PRODUCT) == BASE_URLS
        # Stored media ids track what is live; the TEST copies were deleted
        assert {image["media_id"] for image in experiment.base_images} == catalog.media_ids(PRODUCT)
        assert all(image["media_id"] is None for image in experiment.test_images)

    def test_shared_image_is_not_reuploaded(self, run, make_experiment, catalog):
        shared = "https://cdn.shop.com/shared.jpg"
        seeded = catalog.seed_gallery(PRODUCT, [shared, BASE_URLS[0]])

        async def scenario(session_factory):
            await make_experiment(
                session_factory, base_urls=[shared, BASE_URLS[0]], test_urls=[shared, TEST_URLS[0]]
            )
            await _scheduler(session_factory, catalog).run_due_rotations(now=NOW)

        run(scenario)
        assert catalog.gallery_urls(PRODUCT) == [shared, TEST_URLS[0]]
        assert catalog.galleries[PRODUCT][0].media_id == seeded[0].media_id
        assert ("reorder_media", PRODUCT) not in catalog.calls

    def test_reorder_when_order_differs(self, run, make_experiment, catalog):
        catalog.seed_gallery(PRODUCT, [TEST_URLS[1], TEST_URLS[0]])

        async def scenario(session_factory):
            await make_experiment(session_factory)
            await _scheduler(session_factory, catalog).run_due_rotations(now=NOW)

        run(scenario)
        assert catalog.gallery_urls(PRODUCT) == TEST_URLS
        assert ("reorder_media", PRODUCT) in catalog.calls
        assert ("create_media", PRODUCT) not in catalog.calls


# ======================================================================
# Failures
# ======================================================================


class TestRotationFailures:
    def test_failure_keeps_case_and_retries_within_an_hour(self, run, make_experiment, catalog):
        catalog.fail_products.add(PRODUCT)

        async def scenario(session_factory):
            experiment = await make_experiment(session_factory)
            summary = await _scheduler(session_factory, catalog).run_due_rotations(now=NOW)
            return summary, await _reload(session_factory, experiment.id), await _history(
                session_factory, experiment.id
            )

        summary, experiment, history = run(scenario)
        assert summary.failed == 1
        assert summary.results[0].error == "Shopify returned 503"
        assert experiment.current_case is Case.BASE
        assert experiment.last_rotation_at is None
        assert experiment.next_rotation_at == NOW + timedelta(hours=1)
        (entry,) = history
        assert not entry.success
        assert entry.error == "Shopify returned 503"

    def test_short_interval_retries_at_interval(self, run, make_experiment, catalog):
        catalog.fail_products.add(PRODUCT)

        async def scenario(session_factory):
            experiment = await make_experiment(session_factory, rotation_interval_hours=0.5)
            await _scheduler(session_factory, catalog).run_due_rotations(now=NOW)
            return await _reload(session_factory, experiment.id)

        assert run(scenario).next_rotation_at == NOW + timedelta(minutes=30)

    def test_one_failure_does_not_block_the_tick(self, run, make_experiment, catalog):
        catalog.fail_products.add(OTHER_PRODUCT)

        async def scenario(session_factory):
            broken = await make_experiment(
                session_factory, product_id=OTHER_PRODUCT, next_rotation_at=NOW - timedelta(hours=2)
            )
            healthy = await make_experiment(session_factory)
            summary = await _scheduler(session_factory, catalog).run_due_rotations(now=NOW)
            return summary, await _reload(session_factory, broken.id), await _reload(session_factory, healthy.id)

        summary, broken, healthy = run(scenario)
        assert summary.processed == 2
        assert summary.succeeded == 1 and summary.failed == 1
        assert broken.current_case is Case.BASE
        assert healthy.current_case is Case.TEST

    def test_timeout_is_a_failure(self, run, make_experiment, catalog):
        catalog.delay_seconds = 0.5

        async def scenario(session_factory):
            experiment = await make_experiment(session_factory)
            summary = await _scheduler(session_factory, catalog, timeout_seconds=0.05).run_due_rotations(now=NOW)
            return summary, await _reload(session_factory, experiment.id)

        summary, experiment = run(scenario)
        assert summary.failed == 1
        assert "did not respond" in summary.results[0].error
        assert experiment.current_case is Case.BASE

    def test_unexpected_catalog_error_is_recorded_and_rescheduled(self, run, make_experiment, catalog, monkeypatch):
        async def broken_gallery(product_id):
            raise ValueError("Expecting value: line 1 column 1 (char 0)")

        monkeypatch.setattr(catalog, "list_product_media", broken_gallery)

        async def scenario(session_factory):
            experiment = await make_experiment(session_factory)
            summary = await _scheduler(session_factory, catalog).run_due_rotations(now=NOW)
            return summary, await _reload(session_factory, experiment.id), await _history(
                session_factory, experiment.id
            )

        summary, experiment, history = run(scenario)
        assert summary.failed == 1
        assert experiment.current_case is Case.BASE
        assert experiment.next_rotation_at == NOW + timedelta(hours=1)
        (entry,) = history
        assert not entry.success
        assert "ValueError" in entry.error

    def test_unexpected_error_on_manual_rotation_is_reported(self, run, make_experiment, catalog, monkeypatch):
        async def broken_gallery(product_id):
            raise KeyError("media")

        monkeypatch.setattr(catalog, "list_product_media", broken_gallery)

        async def scenario(session_factory):
            experiment = await make_experiment(session_factory)
            result = await _scheduler(session_factory, catalog).rotate_now(experiment.id, now=NOW)
            return result, await _reload(session_factory, experiment.id)

        result, experiment = run(scenario)
        assert result.outcome == "failed"
        assert "KeyError" in result.error
        assert experiment.next_rotation_at == NOW - timedelta(minutes=1)

    def test_concurrent_writer_causes_conflict(self, run, make_experiment, catalog):
        async def scenario(session_factory):
            experiment = await make_experiment(session_factory)

            async def someone_else_rotates():
                async with session_factory() as other:
                    await other.execute(
                        update(Experiment)
                        .where(Experiment.id == experiment.id)
                        .values(current_case=Case.TEST, next_rotation_at=NOW + timedelta(hours=24))
                    )
                    await other.commit()

            catalog.during_mutation = someone_else_rotates
            summary = await _scheduler(session_factory, catalog).run_due_rotations(now=NOW)
            return summary, await _history(session_factory, experiment.id)

        summary, history = run(scenario)
        assert summary.conflicts == 1
        assert summary.results[0].outcome == "conflict"
        assert history == []


# ======================================================================
# Variant scope
# ======================================================================


class TestVariantRotation:
    def test_hero_swaps_and_base_hero_survives(self, run, make_experiment, catalog):
        (base_hero,) = catalog.seed_gallery(PRODUCT, ["https://cdn.shop.com/red-studio.jpg"])
        catalog.heroes[(PRODUCT, VARIANT_RED)] = base_hero

        async def scenario(session_factory):
            experiment = await make_experiment(
                session_factory,
                scope=Scope.VARIANT,
                base_urls=[],
                test_urls=[],
                rotation_interval_hours=1.0,
                variants=[
                    {
                        "variant_id": VARIANT_RED,
                        "base_hero_image": base_hero.model_dump(),
                        "test_hero_image": {"url": "https://cdn.shop.com/red-lifestyle.jpg"},
                    }
                ],
            )
            scheduler = _scheduler(session_factory, catalog)
            await scheduler.run_due_rotations(now=NOW)
            on_test = catalog.heroes[(PRODUCT, VARIANT_RED)].url
            await scheduler.run_due_rotations(now=NOW + timedelta(hours=1))
            return on_test, await _reload(session_factory, experiment.id)

        on_test, experiment = run(scenario)
        assert on_test == "https://cdn.shop.com/red-lifestyle.jpg"
        assert catalog.heroes[(PRODUCT, VARIANT_RED)].media_id == base_hero.media_id
        # TEST hero media was removed again; BASE hero was never deleted
        assert catalog.media_ids(PRODUCT) == {base_hero.media_id}
        (variant_case,) = experiment.variant_cases
        assert variant_case.test_hero_image["media_id"] is None
        assert experiment.current_case is Case.BASE


# ======================================================================
# Manual rotation, history & metrics
# ======================================================================


class TestManualRotation:
    def test_rotate_now_restarts_cadence(self, run, make_experiment, catalog):
        async def scenario(session_factory):
            experiment = await make_experiment(session_factory, next_rotation_at=NOW + timedelta(hours=20))
            result = await _scheduler(session_factory, catalog).rotate_now(experiment.id, now=NOW)
            return result, await _reload(session_factory, experiment.id), await _history(
                session_factory, experiment.id
            )

        result, experiment, history = run(scenario)
        assert result.succeeded
        assert experiment.current_case is Case.TEST
        assert experiment.next_rotation_at == NOW + timedelta(hours=24)
        assert history[0].trigger is RotationTrigger.MANUAL

    def test_manual_failure_leaves_schedule(self, run, make_experiment, catalog):
        catalog.fail_products.add(PRODUCT)
        scheduled = NOW + timedelta(hours=20)

        async def scenario(session_factory):
            experiment = await make_experiment(session_factory, next_rotation_at=scheduled)
            result = await _scheduler(session_factory, catalog).rotate_now(experiment.id, now=NOW)
            return result, await _reload(session_factory, experiment.id)

        result, experiment = run(scenario)
        assert result.outcome == "failed"
        assert experiment.next_rotation_at == scheduled

    def test_rotate_now_requires_running(self, run, make_experiment, catalog):
        async def scenario(session_factory):
            experiment = await make_experiment(session_factory, status=ExperimentStatus.PAUSED)
            await _scheduler(session_factory, catalog).rotate_now(experiment.id, now=NOW)

        with pytest.raises(InvalidTransitionError):
            run(scenario)

    def test_rotate_now_unknown(self, run):
        async def scenario(session_factory):
            await _scheduler(session_factory, FakeCatalog()).rotate_now(uuid4(), now=NOW)

        with pytest.raises(NotFoundError):
            run(scenario)


class TestHistoryAndMetrics:
    def test_metrics_count_successes_and_failures(self, run, make_experiment, catalog):
        catalog.fail_products.add(OTHER_PRODUCT)

        async def scenario(session_factory):
            await make_experiment(session_factory, product_id=OTHER_PRODUCT)
            await make_experiment(session_factory)
            await _scheduler(session_factory, catalog).run_due_rotations(now=NOW)
            async with session_factory() as db:
                all_time = await rotation_metrics(db, since=NOW - timedelta(days=3650))
                future = await rotation_metrics(db, since=NOW + timedelta(days=3650))
            return all_time, future

        metrics, empty = run(scenario)
        assert metrics.total == 2
        assert metrics.succeeded == 1 and metrics.failed == 1
        assert metrics.success_rate == pytest.approx(50.0)
        assert metrics.failure_reasons == {"Shopify returned 503": 1}
        assert empty.total == 0
        assert empty.success_rate == 100.0

    def test_history_is_newest_first_and_limited(self, run, make_experiment, catalog):
        async def scenario(session_factory):
            experiment = await make_experiment(session_factory, rotation_interval_hours=1.0)
            scheduler = _scheduler(session_factory, catalog)
            for hour in range(3):
                await scheduler.run_due_rotations(now=NOW + timedelta(hours=hour))
            async with session_factory() as db:
                return await rotation_history(db, experiment.id, limit=2)

        history = run(scenario)
        assert len(history) == 2
        assert history[0].created_at >= history[1].created_at
        assert history[0].to_case is Case.TEST

    def test_history_outlives_the_experiment(self, run, make_experiment, catalog):
        async def scenario(session_factory):
            experiment = await make_experiment(session_factory)
            await _scheduler(session_factory, catalog).run_due_rotations(now=NOW)
            async with session_factory() as db:
                await db.delete(await db.get(Experiment, experiment.id))
                await db.commit()
                result = await db.execute(
                    select(RotationHistoryEntry).where(RotationHistoryEntry.experiment_id == experiment.id)
                )
                return result.scalars().all()

        assert len(run(scenario)) == 1
