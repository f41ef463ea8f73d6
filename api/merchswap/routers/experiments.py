import logging
from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from merchswap.core.database import get_db
from merchswap.core.dependencies import get_experiment_or_404, get_experiment_service, get_scheduler
from merchswap.core.security import verify_cron_secret
from merchswap.media.diff import ImageRef
from merchswap.models.experiment import Case, Experiment, ExperimentStatus, Scope
from merchswap.models.rotation import RotationTrigger
from merchswap.services.experiments import ExperimentService
from merchswap.services.rotation import RotationResult, RotationScheduler, latest_failure, rotation_history

logger = logging.getLogger(__name__)

router = APIRouter(tags=["experiments"])


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------

class VariantIn(BaseModel):
    variant_id: str
    variant_name: str | None = None
    test_hero_image: ImageRef


class ExperimentCreate(BaseModel):
    tenant_id: str
    name: str
    product_id: str
    scope: Scope = Scope.PRODUCT
    variant_id: str | None = None
    test_images: list[ImageRef] = []
    variants: list[VariantIn] = []
    rotation_interval_hours: float = Field(default=24.0, gt=0)


class ExperimentUpdate(BaseModel):
    name: str | None = None
    test_images: list[ImageRef] | None = None
    rotation_interval_hours: float | None = Field(default=None, gt=0)


class VariantCaseOut(BaseModel):
    id: UUID
    variant_id: str
    variant_name: str | None = None
    base_hero_image: ImageRef | None = None
    test_hero_image: ImageRef | None = None

    model_config = {"from_attributes": True}


class ExperimentOut(BaseModel):
    id: UUID
    tenant_id: str
    name: str
    product_id: str
    variant_id: str | None = None
    scope: Scope
    status: ExperimentStatus
    current_case: Case
    base_images: list[ImageRef]
    test_images: list[ImageRef]
    rotation_interval_hours: float
    last_rotation_at: datetime | None = None
    next_rotation_at: datetime | None = None
    created_at: datetime
    variant_cases: list[VariantCaseOut] = []

    model_config = {"from_attributes": True}


class RotationHistoryOut(BaseModel):
    id: UUID
    experiment_id: UUID
    from_case: Case
    to_case: Case
    trigger: RotationTrigger
    success: bool
    error: str | None = None
    duration_ms: int
    details: dict | None = None
    created_at: datetime

    model_config = {"from_attributes": True}


# ---------------------------------------------------------------------------
# CRUD
# ---------------------------------------------------------------------------

@router.get("/experiments", response_model=list[ExperimentOut])
async def list_experiments(
    tenant_id: str | None = None,
    status_filter: ExperimentStatus | None = Query(default=None, alias="status"),
    service: ExperimentService = Depends(get_experiment_service),
) -> list[ExperimentOut]:
    """List experiments, newest first."""
    return await service.list_experiments(tenant_id=tenant_id, status=status_filter)


@router.post("/experiments", response_model=ExperimentOut, status_code=status.HTTP_201_CREATED)
async def create_experiment(
    body: ExperimentCreate,
    service: ExperimentService = Depends(get_experiment_service),
) -> ExperimentOut:
    """Create a DRAFT experiment."""
    return await service.create(
        tenant_id=body.tenant_id,
        name=body.name,
        product_id=body.product_id,
        test_images=body.test_images,
        scope=body.scope,
        variant_id=body.variant_id,
        variants=[variant.model_dump() for variant in body.variants],
        rotation_interval_hours=body.rotation_interval_hours,
    )


@router.get("/experiments/{experiment_id}", response_model=ExperimentOut)
async def get_experiment(experiment: Experiment = Depends(get_experiment_or_404)) -> ExperimentOut:
    return experiment


@router.patch("/experiments/{experiment_id}", response_model=ExperimentOut)
async def update_experiment(
    body: ExperimentUpdate,
    experiment: Experiment = Depends(get_experiment_or_404),
    service: ExperimentService = Depends(get_experiment_service),
) -> ExperimentOut:
    """Rename, replace draft TEST images, or change the rotation interval."""
    return await service.update(experiment, body.model_dump(exclude_unset=True))


@router.delete("/experiments/{experiment_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_experiment(
    experiment: Experiment = Depends(get_experiment_or_404),
    service: ExperimentService = Depends(get_experiment_service),
) -> None:
    """Delete an experiment and its events. Rotation history is kept."""
    await service.delete(experiment)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

@router.post("/experiments/{experiment_id}/start", response_model=ExperimentOut)
async def start_experiment(
    experiment: Experiment = Depends(get_experiment_or_404),
    service: ExperimentService = Depends(get_experiment_service),
) -> ExperimentOut:
    """Capture the BASE snapshot and begin rotating."""
    return await service.start(experiment)


@router.post("/experiments/{experiment_id}/pause", response_model=ExperimentOut)
async def pause_experiment(
    experiment: Experiment = Depends(get_experiment_or_404),
    service: ExperimentService = Depends(get_experiment_service),
) -> ExperimentOut:
    return await service.pause(experiment)


@router.post("/experiments/{experiment_id}/resume", response_model=ExperimentOut)
async def resume_experiment(
    experiment: Experiment = Depends(get_experiment_or_404),
    service: ExperimentService = Depends(get_experiment_service),
) -> ExperimentOut:
    return await service.resume(experiment)


@router.post("/experiments/{experiment_id}/complete", response_model=ExperimentOut)
async def complete_experiment(
    experiment: Experiment = Depends(get_experiment_or_404),
    service: ExperimentService = Depends(get_experiment_service),
) -> ExperimentOut:
    """Restore BASE on the catalog, then mark the experiment COMPLETED."""
    return await service.complete(experiment)


@router.post("/experiments/{experiment_id}/archive", response_model=ExperimentOut)
async def archive_experiment(
    experiment: Experiment = Depends(get_experiment_or_404),
    service: ExperimentService = Depends(get_experiment_service),
) -> ExperimentOut:
    return await service.archive(experiment)


# ---------------------------------------------------------------------------
# Rotation
# ---------------------------------------------------------------------------

@router.post(
    "/experiments/{experiment_id}/rotate",
    response_model=RotationResult,
    dependencies=[Depends(verify_cron_secret)],
)
async def rotate_experiment(
    experiment_id: UUID,
    scheduler: RotationScheduler = Depends(get_scheduler),
    db: AsyncSession = Depends(get_db),
) -> RotationResult:
    """Rotate one experiment now, regardless of its schedule."""
    result = await scheduler.rotate_now(experiment_id)
    if result.outcome == "failed":
        entry = await latest_failure(db, experiment_id)
        reason = entry.error if entry is not None and entry.error else result.error
        logger.warning("Manual rotation of %s failed: %s", experiment_id, reason)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=f"Rotation failed: {reason}")
    if result.outcome == "conflict":
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Experiment was rotated concurrently")
    return result


@router.get("/experiments/{experiment_id}/rotations", response_model=list[RotationHistoryOut])
async def list_rotations(
    experiment_id: UUID,
    limit: int = Query(default=10, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
) -> list[RotationHistoryOut]:
    """Most recent rotation attempts for an experiment, newest first."""
    return await rotation_history(db, experiment_id, limit=limit)
