"""Experiment lifecycle.

    DRAFT -> RUNNING <-> PAUSED
    RUNNING | PAUSED -> COMPLETED
    DRAFT | RUNNING | PAUSED | COMPLETED -> ARCHIVED

Starting captures the BASE snapshot from the catalog (once). Completing or
archiving puts BASE back on the catalog first, so TEST media never outlives
the experiment. COMPLETED and ARCHIVED rows are otherwise immutable.
"""

import logging
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from merchswap.core.errors import ExternalServiceError, InvalidTransitionError, NotFoundError, ValidationError
from merchswap.core.identifiers import normalize_product_id, normalize_variant_id
from merchswap.media.diff import ImageRef
from merchswap.models.event import Event
from merchswap.models.experiment import Case, Experiment, ExperimentStatus, Scope, VariantCase
from merchswap.models.rotation import RotationTrigger
from merchswap.services.rotation import RotationScheduler

logger = logging.getLogger(__name__)

_ALLOWED: dict[ExperimentStatus, set[ExperimentStatus]] = {
    ExperimentStatus.DRAFT: {ExperimentStatus.RUNNING, ExperimentStatus.ARCHIVED},
    ExperimentStatus.RUNNING: {ExperimentStatus.PAUSED, ExperimentStatus.COMPLETED, ExperimentStatus.ARCHIVED},
    ExperimentStatus.PAUSED: {ExperimentStatus.RUNNING, ExperimentStatus.COMPLETED, ExperimentStatus.ARCHIVED},
    ExperimentStatus.COMPLETED: {ExperimentStatus.ARCHIVED},
    ExperimentStatus.ARCHIVED: set(),
}

_EDITABLE = {ExperimentStatus.DRAFT, ExperimentStatus.RUNNING, ExperimentStatus.PAUSED}


def _check_transition(experiment: Experiment, target: ExperimentStatus) -> None:
    if target not in _ALLOWED[experiment.status]:
        raise InvalidTransitionError(
            f"Cannot move experiment {experiment.id} from {experiment.status.value} to {target.value}"
        )


def _image_dicts(images: list[ImageRef]) -> list[dict]:
    return [image.model_copy(update={"position": index}).model_dump() for index, image in enumerate(images)]


class ExperimentService:
    def __init__(self, db: AsyncSession, scheduler: RotationScheduler) -> None:
        self.db = db
        self.scheduler = scheduler

    async def get(self, experiment_id: UUID) -> Experiment:
        experiment = await self.db.get(Experiment, experiment_id)
        if experiment is None:
            raise NotFoundError(f"Experiment {experiment_id} not found")
        return experiment

    async def list_experiments(
        self, tenant_id: str | None = None, status: ExperimentStatus | None = None
    ) -> list[Experiment]:
        query = select(Experiment).order_by(Experiment.created_at.desc())
        if tenant_id is not None:
            query = query.where(Experiment.tenant_id == tenant_id)
        if status is not None:
            query = query.where(Experiment.status == status)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def create(
        self,
        tenant_id: str,
        name: str,
        product_id: str,
        test_images: list[ImageRef] | None = None,
        scope: Scope = Scope.PRODUCT,
        variant_id: str | None = None,
        variants: list[dict[str, Any]] | None = None,
        rotation_interval_hours: float = 24.0,
    ) -> Experiment:
        """Create a DRAFT experiment.

        ``variants`` (VARIANT scope only) is a list of
        ``{"variant_id", "test_hero_image", "variant_name"?}``.
        """
        if rotation_interval_hours <= 0:
            raise ValidationError("rotation_interval_hours must be positive")
        product_gid = normalize_product_id(product_id)
        if product_gid is None:
            raise ValidationError("product_id is required")

        experiment = Experiment(
            tenant_id=tenant_id,
            name=name,
            product_id=product_gid,
            variant_id=normalize_variant_id(variant_id),
            scope=scope,
            status=ExperimentStatus.DRAFT,
            current_case=Case.BASE,
            base_images=[],
            test_images=_image_dicts(test_images or []),
            rotation_interval_hours=rotation_interval_hours,
        )
        experiment.variant_cases = [
            VariantCase(
                variant_id=normalize_variant_id(variant["variant_id"]),
                variant_name=variant.get("variant_name"),
                test_hero_image=ImageRef.model_validate(variant["test_hero_image"]).model_dump()
                if variant.get("test_hero_image")
                else None,
            )
            for variant in variants or []
        ]
        self.db.add(experiment)
        await self.db.flush()
        logger.info("Created experiment %s on %s (%s)", experiment.id, product_gid, scope.value)
        return experiment

    async def update(self, experiment: Experiment, changes: dict[str, Any], now: datetime | None = None) -> Experiment:
        if experiment.status not in _EDITABLE:
            raise InvalidTransitionError(f"Experiment {experiment.id} is {experiment.status.value} and read-only")
        now = now or datetime.now(UTC)

        if "name" in changes and changes["name"] is not None:
            experiment.name = changes["name"]
        if "test_images" in changes and changes["test_images"] is not None:
            if experiment.status is not ExperimentStatus.DRAFT:
                raise InvalidTransitionError("Images can only change while the experiment is a draft")
            experiment.test_images = _image_dicts(changes["test_images"])
        interval = changes.get("rotation_interval_hours")
        if interval is not None:
            if interval <= 0:
                raise ValidationError("rotation_interval_hours must be positive")
            experiment.rotation_interval_hours = interval
            if experiment.status is ExperimentStatus.RUNNING:
                anchor = experiment.last_rotation_at or now
                experiment.next_rotation_at = max(anchor + timedelta(hours=interval), now)
        await self.db.flush()
        return experiment

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def start(self, experiment: Experiment, now: datetime | None = None) -> Experiment:
        """DRAFT -> RUNNING: snapshot BASE from the catalog and seed the schedule."""
        _check_transition(experiment, ExperimentStatus.RUNNING)
        if experiment.status is not ExperimentStatus.DRAFT:
            raise InvalidTransitionError("Use resume to restart a paused experiment")
        now = now or datetime.now(UTC)
        catalog = self.scheduler.catalog

        if experiment.scope is Scope.PRODUCT:
            if not experiment.test_images:
                raise ValidationError("A PRODUCT experiment needs at least one TEST image")
            if not experiment.base_images:
                live = await catalog.list_product_media(experiment.product_id)
                experiment.base_images = _image_dicts(live)
        else:
            if not experiment.variant_cases:
                raise ValidationError("A VARIANT experiment needs at least one variant")
            for variant_case in experiment.variant_cases:
                if not variant_case.test_hero_image:
                    raise ValidationError(f"Variant {variant_case.variant_id} has no TEST hero image")
                if variant_case.base_hero_image is None:
                    hero = await catalog.get_variant_hero(experiment.product_id, variant_case.variant_id)
                    if hero is not None:
                        variant_case.base_hero_image = hero.model_dump()

        experiment.status = ExperimentStatus.RUNNING
        experiment.current_case = Case.BASE
        experiment.next_rotation_at = now + timedelta(hours=experiment.rotation_interval_hours)
        await self.db.flush()
        logger.info("Started experiment %s; first rotation at %s", experiment.id, experiment.next_rotation_at)
        return experiment

    async def pause(self, experiment: Experiment) -> Experiment:
        """RUNNING -> PAUSED. The live case stays on the catalog."""
        _check_transition(experiment, ExperimentStatus.PAUSED)
        experiment.status = ExperimentStatus.PAUSED
        experiment.next_rotation_at = None
        await self.db.flush()
        return experiment

    async def resume(self, experiment: Experiment, now: datetime | None = None) -> Experiment:
        if experiment.status is not ExperimentStatus.PAUSED:
            raise InvalidTransitionError(f"Only paused experiments can be resumed (status is {experiment.status.value})")
        now = now or datetime.now(UTC)
        experiment.status = ExperimentStatus.RUNNING
        experiment.next_rotation_at = now + timedelta(hours=experiment.rotation_interval_hours)
        await self.db.flush()
        return experiment

    async def complete(self, experiment: Experiment, now: datetime | None = None) -> Experiment:
        _check_transition(experiment, ExperimentStatus.COMPLETED)
        await self._restore_base(experiment, now or datetime.now(UTC))
        experiment.status = ExperimentStatus.COMPLETED
        experiment.next_rotation_at = None
        await self.db.flush()
        logger.info("Completed experiment %s", experiment.id)
        return experiment

    async def archive(self, experiment: Experiment, now: datetime | None = None) -> Experiment:
        _check_transition(experiment, ExperimentStatus.ARCHIVED)
        await self._restore_base(experiment, now or datetime.now(UTC))
        experiment.status = ExperimentStatus.ARCHIVED
        experiment.next_rotation_at = None
        await self.db.flush()
        return experiment

    async def delete(self, experiment: Experiment) -> None:
        """Delete the experiment with its variant cases and events.

        Rotation history is kept.
        """
        if experiment.status is ExperimentStatus.RUNNING:
            raise InvalidTransitionError("Pause or complete the experiment before deleting it")
        if experiment.current_case is Case.TEST:
            await self._restore_base(experiment, datetime.now(UTC))
        await self.db.execute(delete(Event).where(Event.experiment_id == experiment.id))
        await self.db.delete(experiment)
        await self.db.flush()

    async def _restore_base(self, experiment: Experiment, now: datetime) -> None:
        if experiment.current_case is not Case.TEST:
            return
        result = await self.scheduler.rotate(
            self.db, experiment, now, RotationTrigger.MANUAL, to_case=Case.BASE
        )
        if not result.succeeded:
            raise ExternalServiceError(f"Could not restore BASE media: {result.error}")
