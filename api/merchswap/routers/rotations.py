from datetime import UTC, datetime, timedelta

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from merchswap.core.database import get_db
from merchswap.core.dependencies import get_scheduler
from merchswap.core.security import verify_cron_secret
from merchswap.services.rotation import RotationMetrics, RotationScheduler, TickSummary, rotation_metrics

router = APIRouter(prefix="/rotations", tags=["rotations"])


@router.post("/run", response_model=TickSummary, dependencies=[Depends(verify_cron_secret)])
async def run_due_rotations(scheduler: RotationScheduler = Depends(get_scheduler)) -> TickSummary:
    """Rotate every experiment that is due. Called by the external cron."""
    return await scheduler.run_due_rotations()


@router.get("/metrics", response_model=RotationMetrics)
async def get_rotation_metrics(
    hours: int = Query(default=24, ge=1, le=24 * 30),
    db: AsyncSession = Depends(get_db),
) -> RotationMetrics:
    """Rotation success rate, mean duration and failure reasons over the last ``hours``."""
    since = datetime.now(UTC) - timedelta(hours=hours)
    return await rotation_metrics(db, since)
