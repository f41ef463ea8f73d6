from uuid import UUID

from fastapi import Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from merchswap.core.database import async_session, get_db
from merchswap.models.experiment import Experiment
from merchswap.services.catalog import CatalogClient, get_catalog
from merchswap.services.experiments import ExperimentService
from merchswap.services.rotation import RotationScheduler


def get_scheduler(catalog: CatalogClient = Depends(get_catalog)) -> RotationScheduler:
    """Dependency: scheduler bound to the app's session factory and catalog."""
    return RotationScheduler(async_session, catalog)


def get_experiment_service(
    db: AsyncSession = Depends(get_db),
    scheduler: RotationScheduler = Depends(get_scheduler),
) -> ExperimentService:
    return ExperimentService(db, scheduler)


async def get_experiment_or_404(experiment_id: UUID, db: AsyncSession = Depends(get_db)) -> Experiment:
    """Load an experiment by id.

    Raises HTTP 404 if the experiment does not exist.
    """
    experiment = await db.get(Experiment, experiment_id)
    if experiment is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Experiment not found")
    return experiment
