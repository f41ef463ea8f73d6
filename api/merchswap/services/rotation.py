"""Rotation scheduler: flips due experiments between BASE and TEST on the catalog.

A rotation reads the experiment, pushes the target case's images to the
catalog, and only then commits the flip with a guarded UPDATE that requires
``current_case`` and ``next_rotation_at`` to still hold the values read at the
start. A crash before the commit leaves the experiment due again with no
partial state; a concurrent rotation makes the guard match zero rows and the
loser reports a conflict.
"""

import asyncio
import logging
import time
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from merchswap.core.config import settings
from merchswap.core.errors import ConsistencyError, ExternalServiceError, InvalidTransitionError, NotFoundError
from merchswap.media.diff import ImageRef, diff, normalize_url
from merchswap.models.experiment import Case, Experiment, ExperimentStatus, Scope, VariantCase
from merchswap.models.rotation import RotationHistoryEntry, RotationTrigger
from merchswap.services.catalog import CatalogClient

logger = logging.getLogger(__name__)

Outcome = Literal["success", "failed", "conflict", "skipped"]


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

class RotationResult(BaseModel):
    experiment_id: UUID
    from_case: Case | None = None
    to_case: Case | None = None
    outcome: Outcome
    error: str | None = None
    duration_ms: int = 0
    next_rotation_at: datetime | None = None

    @property
    def succeeded(self) -> bool:
        return self.outcome == "success"


class TickSummary(BaseModel):
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    conflicts: int = 0
    skipped: int = 0
    results: list[RotationResult] = []


class RotationMetrics(BaseModel):
    total: int
    succeeded: int
    failed: int
    success_rate: float
    average_duration_ms: float
    failure_reasons: dict[str, int]


class _SwapPlan:
    """What to persist once the catalog mutation has gone through."""

    def __init__(self) -> None:
        self.experiment_values: dict[str, Any] = {}
        self.variant_heroes: list[tuple[VariantCase, dict | None, dict | None]] = []
        self.details: dict[str, Any] = {"added": 0, "deleted": 0, "reordered": False, "variants_updated": 0}


def _refs(images: list[dict] | None) -> list[ImageRef]:
    return [ImageRef.model_validate(image) for image in images or []]


def _dump(images: list[ImageRef]) -> list[dict]:
    return [image.model_dump() for image in images]


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------

class RotationScheduler:
    """Runs scheduled and manual rotations.

    Parameters
    ----------
    session_factory : Callable[[], AsyncSession]
        Opens a fresh session; each experiment in a tick gets its own.
    catalog : CatalogClient
        Storefront adapter the media swap is applied to.
    concurrency : int
        Maximum experiments rotated in parallel within one tick.
    timeout_seconds : float
        Deadline for the whole catalog mutation of one experiment.
    retry_hours : float
        Upper bound on the delay before a failed rotation is retried.
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        catalog: CatalogClient,
        concurrency: int = settings.ROTATION_CONCURRENCY,
        timeout_seconds: float = settings.CATALOG_TIMEOUT_SECONDS,
        retry_hours: float = settings.FAILED_ROTATION_RETRY_HOURS,
    ) -> None:
        self.session_factory = session_factory
        self.catalog = catalog
        self.concurrency = max(1, concurrency)
        self.timeout_seconds = timeout_seconds
        self.retry_hours = retry_hours

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def run_due_rotations(self, now: datetime | None = None) -> TickSummary:
        """Rotate every RUNNING experiment whose ``next_rotation_at`` has passed.

        Experiments are isolated from each other: one failing (or raising
        unexpectedly) never stops the rest of the tick.
        """
        now = now or datetime.now(UTC)
        async with self.session_factory() as db:
            result = await db.execute(
                select(Experiment.id)
                .where(
                    Experiment.status == ExperimentStatus.RUNNING,
                    Experiment.next_rotation_at.is_not(None),
                    Experiment.next_rotation_at <= now,
                )
                .order_by(Experiment.next_rotation_at)
            )
            due_ids = list(result.scalars().all())

        if not due_ids:
            return TickSummary()

        logger.info("Rotation tick: %d experiment(s) due", len(due_ids))
        semaphore = asyncio.Semaphore(self.concurrency)

        async def _bounded(experiment_id: UUID) -> RotationResult:
            async with semaphore:
                return await self._rotate_due(experiment_id, now)

        outcomes = await asyncio.gather(*(_bounded(eid) for eid in due_ids), return_exceptions=True)

        summary = TickSummary()
        for experiment_id, outcome in zip(due_ids, outcomes):
            if isinstance(outcome, Exception):
                logger.error("Rotation of %s crashed: %r", experiment_id, outcome, exc_info=outcome)
                outcome = RotationResult(experiment_id=experiment_id, outcome="failed", error=str(outcome))
            elif isinstance(outcome, BaseException):
                raise outcome
            summary.results.append(outcome)
            if outcome.outcome == "skipped":
                summary.skipped += 1
                continue
            summary.processed += 1
            if outcome.outcome == "success":
                summary.succeeded += 1
            elif outcome.outcome == "conflict":
                summary.conflicts += 1
            else:
                summary.failed += 1

        logger.info(
            "Rotation tick done: %d processed, %d succeeded, %d failed, %d conflicts",
            summary.processed,
            summary.succeeded,
            summary.failed,
            summary.conflicts,
        )
        return summary

    async def rotate_now(self, experiment_id: UUID, now: datetime | None = None) -> RotationResult:
        """Rotate one RUNNING experiment immediately, ignoring its schedule.

        On success the cadence restarts from ``now``. On failure the schedule
        is left alone and the result carries the catalog error.
        """
        now = now or datetime.now(UTC)
        async with self.session_factory() as db:
            experiment = await db.get(Experiment, experiment_id)
            if experiment is None:
                raise NotFoundError(f"Experiment {experiment_id} not found")
            if experiment.status != ExperimentStatus.RUNNING:
                raise InvalidTransitionError(
                    f"Only running experiments can be rotated (status is {experiment.status.value})"
                )
            return await self.rotate(db, experiment, now, RotationTrigger.MANUAL)

    async def _rotate_due(self, experiment_id: UUID, now: datetime) -> RotationResult:
        async with self.session_factory() as db:
            experiment = await db.get(Experiment, experiment_id)
            if (
                experiment is None
                or experiment.status != ExperimentStatus.RUNNING
                or experiment.next_rotation_at is None
                or experiment.next_rotation_at > now
            ):
                # Rotated, paused or deleted since the due query ran
                return RotationResult(experiment_id=experiment_id, outcome="skipped")
            return await self.rotate(db, experiment, now, RotationTrigger.SCHEDULED)

    # ------------------------------------------------------------------
    # Core rotation
    # ------------------------------------------------------------------

    async def rotate(
        self,
        db: AsyncSession,
        experiment: Experiment,
        now: datetime,
        trigger: RotationTrigger,
        to_case: Case | None = None,
    ) -> RotationResult:
        """Swap ``experiment`` to the other case (or ``to_case``) and commit.

        Commits ``db``. Never raises for catalog failures, unexpected errors
        while swapping media, or lost races; those are reported through
        ``RotationResult.outcome``.
        """
        experiment_id = experiment.id
        from_case = experiment.current_case
        to_case = to_case or from_case.other
        expected_next = experiment.next_rotation_at
        started = time.monotonic()

        try:
            plan = await asyncio.wait_for(self._swap_media(experiment, to_case), timeout=self.timeout_seconds)
        except TimeoutError:
            error = f"Catalog did not respond within {self.timeout_seconds:g}s"
            return await self._record_failure(db, experiment, from_case, to_case, now, trigger, error, started)
        except ExternalServiceError as exc:
            return await self._record_failure(db, experiment, from_case, to_case, now, trigger, str(exc), started)
        except Exception as exc:
            logger.exception("Unexpected error rotating %s", experiment_id)
            error = f"Unexpected catalog error: {type(exc).__name__}: {exc}"
            return await self._record_failure(db, experiment, from_case, to_case, now, trigger, error, started)

        duration_ms = int((time.monotonic() - started) * 1000)
        next_rotation_at = now + timedelta(hours=experiment.rotation_interval_hours)
        values = {
            **plan.experiment_values,
            "current_case": to_case,
            "last_rotation_at": now,
            "next_rotation_at": next_rotation_at,
        }

        try:
            await self._guarded_update(db, experiment_id, from_case, expected_next, values)
        except ConsistencyError as exc:
            await db.rollback()
            logger.warning("Rotation of %s lost a race: %s", experiment_id, exc)
            return RotationResult(
                experiment_id=experiment_id,
                from_case=from_case,
                to_case=to_case,
                outcome="conflict",
                error=str(exc),
                duration_ms=duration_ms,
            )

        for variant_case, base_hero, test_hero in plan.variant_heroes:
            variant_case.base_hero_image = base_hero
            variant_case.test_hero_image = test_hero

        db.add(
            RotationHistoryEntry(
                experiment_id=experiment_id,
                from_case=from_case,
                to_case=to_case,
                trigger=trigger,
                success=True,
                duration_ms=duration_ms,
                details=plan.details,
            )
        )
        await db.commit()
        await db.refresh(experiment)

        logger.info(
            "Rotated %s %s -> %s (%s) in %dms",
            experiment_id,
            from_case.value,
            to_case.value,
            trigger.value,
            duration_ms,
        )
        return RotationResult(
            experiment_id=experiment_id,
            from_case=from_case,
            to_case=to_case,
            outcome="success",
            duration_ms=duration_ms,
            next_rotation_at=next_rotation_at,
        )

    async def _guarded_update(
        self,
        db: AsyncSession,
        experiment_id: UUID,
        expected_case: Case,
        expected_next: datetime | None,
        values: dict[str, Any],
    ) -> None:
        if expected_next is None:
            next_matches = Experiment.next_rotation_at.is_(None)
        else:
            next_matches = Experiment.next_rotation_at == expected_next
        result = await db.execute(
            update(Experiment)
            .where(
                Experiment.id == experiment_id,
                Experiment.current_case == expected_case,
                next_matches,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConsistencyError(f"Experiment {experiment_id} changed while rotating")

    async def _record_failure(
        self,
        db: AsyncSession,
        experiment: Experiment,
        from_case: Case,
        to_case: Case,
        now: datetime,
        trigger: RotationTrigger,
        error: str,
        started: float,
    ) -> RotationResult:
        experiment_id = experiment.id
        duration_ms = int((time.monotonic() - started) * 1000)
        logger.warning("Rotation of %s %s -> %s failed: %s", experiment_id, from_case.value, to_case.value, error)

        next_rotation_at = experiment.next_rotation_at
        if trigger is RotationTrigger.SCHEDULED:
            retry_in = min(experiment.rotation_interval_hours, self.retry_hours)
            retry_at = now + timedelta(hours=retry_in)
            try:
                await self._guarded_update(
                    db, experiment_id, from_case, experiment.next_rotation_at, {"next_rotation_at": retry_at}
                )
                next_rotation_at = retry_at
            except ConsistencyError:
                logger.warning("Not rescheduling %s: it changed while the rotation was failing", experiment_id)

        db.add(
            RotationHistoryEntry(
                experiment_id=experiment_id,
                from_case=from_case,
                to_case=to_case,
                trigger=trigger,
                success=False,
                error=error,
                duration_ms=duration_ms,
            )
        )
        await db.commit()
        await db.refresh(experiment)
        return RotationResult(
            experiment_id=experiment_id,
            from_case=from_case,
            to_case=to_case,
            outcome="failed",
            error=error,
            duration_ms=duration_ms,
            next_rotation_at=next_rotation_at,
        )

    # ------------------------------------------------------------------
    # Catalog mutation
    # ------------------------------------------------------------------

    async def _swap_media(self, experiment: Experiment, to_case: Case) -> _SwapPlan:
        if experiment.scope is Scope.VARIANT:
            return await self._swap_variant_heroes(experiment, to_case)
        return await self._swap_gallery(experiment, to_case)

    async def _swap_gallery(self, experiment: Experiment, to_case: Case) -> _SwapPlan:
        plan = _SwapPlan()
        product_id = experiment.product_id
        target = _refs(experiment.images_for(to_case))

        live = await self.catalog.list_product_media(product_id)
        media_diff = diff(live, target)

        if media_diff.to_delete:
            await self.catalog.delete_media(product_id, [image.media_id for image in media_diff.to_delete])
        created_ids = await self.catalog.create_media(product_id, media_diff.to_add)

        media_ids = {image.key: image.media_id for image in media_diff.to_keep}
        for image, media_id in zip(media_diff.to_add, created_ids):
            media_ids[image.key] = media_id

        # Kept images stay in their live order; created ones land at the end
        target_keys = [image.key for image in target]
        live_keys = [image.key for image in live if image.key in media_ids]
        resulting_order = list(dict.fromkeys(live_keys)) + [image.key for image in media_diff.to_add]
        deduped_target = list(dict.fromkeys(target_keys))
        reordered = resulting_order != deduped_target
        if reordered:
            await self.catalog.reorder_media(product_id, [media_ids[key] for key in deduped_target])

        deleted_keys = {image.key for image in media_diff.to_delete}
        from_case = to_case.other
        updated_target = [
            image.model_copy(update={"media_id": media_ids.get(image.key)}) for image in target
        ]
        updated_source = [
            image.model_copy(update={"media_id": None}) if image.key in deleted_keys else image
            for image in _refs(experiment.images_for(from_case))
        ]
        plan.experiment_values = {
            f"{to_case.value.lower()}_images": _dump(updated_target),
            f"{from_case.value.lower()}_images": _dump(updated_source),
        }
        plan.details.update(
            added=len(media_diff.to_add),
            deleted=len(media_diff.to_delete),
            kept=len(media_diff.to_keep),
            reordered=reordered,
        )
        return plan

    async def _swap_variant_heroes(self, experiment: Experiment, to_case: Case) -> _SwapPlan:
        plan = _SwapPlan()
        product_id = experiment.product_id
        from_case = to_case.other

        for variant_case in experiment.variant_cases:
            base = ImageRef.model_validate(variant_case.base_hero_image) if variant_case.base_hero_image else None
            test = ImageRef.model_validate(variant_case.test_hero_image) if variant_case.test_hero_image else None
            target = base if to_case is Case.BASE else test
            if target is None:
                if to_case is Case.TEST:
                    raise ExternalServiceError(f"Variant {variant_case.variant_id} has no TEST hero image")
                # The variant had no hero before the experiment; only the TEST hero goes away

            live = [image for image in (base, test if from_case is Case.TEST else None) if image is not None]
            media_diff = diff(live, [target] if target is not None else [])

            created_ids = await self.catalog.create_media(product_id, media_diff.to_add)
            if target is not None:
                kept = {image.key: image.media_id for image in media_diff.to_keep}
                target_media_id = created_ids[0] if media_diff.to_add else kept.get(target.key)
                if target_media_id is None:
                    raise ExternalServiceError(f"No catalog media for hero of {variant_case.variant_id}")
                await self.catalog.set_variant_hero(product_id, variant_case.variant_id, target_media_id)
                target = target.model_copy(update={"media_id": target_media_id})

            # BASE heroes pre-date the experiment and are never deleted
            base_key = normalize_url(base.url) if base is not None else None
            doomed = [image for image in media_diff.to_delete if image.key != base_key]
            if doomed:
                await self.catalog.delete_media(product_id, [image.media_id for image in doomed])

            if to_case is Case.TEST:
                new_base, new_test = base, target
            else:
                new_base = target
                new_test = test.model_copy(update={"media_id": None}) if test is not None else None
            plan.variant_heroes.append(
                (
                    variant_case,
                    new_base.model_dump() if new_base is not None else None,
                    new_test.model_dump() if new_test is not None else None,
                )
            )
            plan.details["added"] += len(media_diff.to_add)
            plan.details["deleted"] += len(doomed)
            plan.details["variants_updated"] += 1

        return plan


# ---------------------------------------------------------------------------
# History & metrics
# ---------------------------------------------------------------------------

async def rotation_history(db: AsyncSession, experiment_id: UUID, limit: int = 10) -> list[RotationHistoryEntry]:
    result = await db.execute(
        select(RotationHistoryEntry)
        .where(RotationHistoryEntry.experiment_id == experiment_id)
        .order_by(RotationHistoryEntry.created_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def latest_failure(db: AsyncSession, experiment_id: UUID) -> RotationHistoryEntry | None:
    result = await db.execute(
        select(RotationHistoryEntry)
        .where(RotationHistoryEntry.experiment_id == experiment_id, RotationHistoryEntry.success.is_(False))
        .order_by(RotationHistoryEntry.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def rotation_metrics(db: AsyncSession, since: datetime) -> RotationMetrics:
    """Success rate, mean duration and failure reasons since ``since``."""
    result = await db.execute(
        select(
            func.count(RotationHistoryEntry.id),
            func.count(RotationHistoryEntry.id).filter(RotationHistoryEntry.success.is_(True)),
            func.avg(RotationHistoryEntry.duration_ms),
        ).where(RotationHistoryEntry.created_at >= since)
    )
    total, succeeded, avg_duration = result.one()

    reasons = await db.execute(
        select(RotationHistoryEntry.error, func.count(RotationHistoryEntry.id))
        .where(RotationHistoryEntry.created_at >= since, RotationHistoryEntry.success.is_(False))
        .group_by(RotationHistoryEntry.error)
    )
    failure_reasons = {error or "unknown": count for error, count in reasons.all()}

    return RotationMetrics(
        total=total,
        succeeded=succeeded,
        failed=total - succeeded,
        success_rate=succeeded / total * 100 if total else 100.0,
        average_duration_ms=float(avg_duration or 0.0),
        failure_reasons=failure_reasons,
    )


# ---------------------------------------------------------------------------
# Background loop
# ---------------------------------------------------------------------------

async def run_scheduler_loop(scheduler: RotationScheduler, interval_seconds: float) -> None:
    """Tick forever; started from the app lifespan when SCHEDULER_ENABLED."""
    while True:
        try:
            await scheduler.run_due_rotations()
        except Exception:
            logger.exception("Rotation tick failed")
        await asyncio.sleep(interval_seconds)

