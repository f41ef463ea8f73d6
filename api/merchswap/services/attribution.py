"""Which case is live for a product (or one of its variants) right now.

Storefront instrumentation calls this before emitting an event and tags the
event with the answer. When nothing is running it gets a sentinel, not an
error, so it can skip tracking cleanly.
"""

import uuid

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from merchswap.core.identifiers import normalize_product_id, normalize_variant_id
from merchswap.models.experiment import Case, Experiment, ExperimentStatus, Scope


class ActiveCase(BaseModel):
    experiment_id: uuid.UUID | None = None
    current_case: Case | None = None
    # Set only when the requested variant is part of the experiment
    variant_case: Case | None = None

    @property
    def is_active(self) -> bool:
        return self.experiment_id is not None


NO_ACTIVE_EXPERIMENT = ActiveCase()


async def running_experiments_for_product(db: AsyncSession, product_id: str) -> list[Experiment]:
    """RUNNING experiments on ``product_id``, newest first."""
    result = await db.execute(
        select(Experiment)
        .where(Experiment.product_id == product_id, Experiment.status == ExperimentStatus.RUNNING)
        .order_by(Experiment.created_at.desc())
    )
    return list(result.scalars().all())


def _covers_variant(experiment: Experiment, variant_id: str) -> bool:
    if experiment.variant_id == variant_id:
        return True
    return any(vc.variant_id == variant_id for vc in experiment.variant_cases)


async def resolve_active_case(
    db: AsyncSession,
    product_id: str,
    variant_id: str | None = None,
) -> ActiveCase:
    """Live case for ``product_id``, narrowed to ``variant_id`` when given.

    A VARIANT-scope experiment that covers the requested variant wins over a
    PRODUCT-scope one. A VARIANT-scope experiment never answers for variants
    it does not cover.
    """
    product_id = normalize_product_id(product_id)
    variant_id = normalize_variant_id(variant_id)
    if product_id is None:
        return NO_ACTIVE_EXPERIMENT

    experiments = await running_experiments_for_product(db, product_id)

    if variant_id is not None:
        for experiment in experiments:
            if experiment.scope is Scope.VARIANT and _covers_variant(experiment, variant_id):
                return ActiveCase(
                    experiment_id=experiment.id,
                    current_case=experiment.current_case,
                    variant_case=experiment.current_case,
                )

    for experiment in experiments:
        if experiment.scope is Scope.PRODUCT:
            return ActiveCase(experiment_id=experiment.id, current_case=experiment.current_case)

    return NO_ACTIVE_EXPERIMENT
