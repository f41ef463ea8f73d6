"""Stats router: lift and significance for an experiment.

A non-significant result always reports ``winner: null`` and a "No winner
yet" summary.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from merchswap.core.database import get_db
from merchswap.core.dependencies import get_experiment_or_404
from merchswap.models.experiment import Case, Experiment, ExperimentStatus
from merchswap.stats.engine import StatsEngine
from merchswap.stats.significance import CaseStats, sample_size_needed

router = APIRouter(tags=["stats"])


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------


class CaseResult(BaseModel):
    impressions: int
    add_to_carts: int
    purchases: int
    revenue: float
    rate: float
    rate_percent: float


class ExperimentResults(BaseModel):
    experiment_id: UUID
    status: ExperimentStatus
    current_case: Case
    base: CaseResult
    test: CaseResult
    lift: float
    z_score: float
    p_value: float
    confidence: float
    is_significant: bool
    winner: Case | None = None
    sample_size: int
    summary: str


class SampleSizeOut(BaseModel):
    baseline_rate: float
    minimum_detectable_effect: float
    power: float
    significance: float
    per_case: int
    total: int


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


def _case_result(stats: CaseStats) -> CaseResult:
    return CaseResult(
        impressions=stats.impressions,
        add_to_carts=stats.add_to_carts,
        purchases=stats.purchases,
        revenue=round(stats.revenue, 2),
        rate=round(stats.rate, 6),
        rate_percent=round(stats.rate_percent, 2),
    )


@router.get("/experiments/{experiment_id}/results", response_model=ExperimentResults)
async def get_experiment_results(
    experiment: Experiment = Depends(get_experiment_or_404),
    db: AsyncSession = Depends(get_db),
) -> ExperimentResults:
    """Per-case counts, lift, confidence and (only when significant) the winner."""
    analysis = await StatsEngine(db).analyze_experiment(experiment)
    stats = analysis["statistics"]
    return ExperimentResults(
        experiment_id=analysis["experiment_id"],
        status=analysis["status"],
        current_case=analysis["current_case"],
        base=_case_result(stats.base),
        test=_case_result(stats.test),
        lift=round(stats.lift, 2),
        z_score=round(stats.z_score, 4),
        p_value=round(stats.p_value, 6),
        confidence=round(stats.confidence, 1),
        is_significant=stats.is_significant,
        winner=stats.winner,
        sample_size=stats.sample_size,
        summary=analysis["summary"],
    )


@router.get("/stats/sample-size", response_model=SampleSizeOut)
async def get_sample_size(
    baseline_rate: float = Query(..., gt=0, lt=1),
    mde: float = Query(..., gt=0, description="Relative lift to detect, e.g. 0.1 for +10%"),
    power: float = Query(default=0.8, gt=0, lt=1),
    significance: float = Query(default=0.05, gt=0, lt=1),
) -> SampleSizeOut:
    """Impressions needed per case to detect ``mde`` at the given power."""
    try:
        per_case = sample_size_needed(baseline_rate, mde, power=power, significance=significance)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    return SampleSizeOut(
        baseline_rate=baseline_rate,
        minimum_detectable_effect=mde,
        power=power,
        significance=significance,
        per_case=per_case,
        total=per_case * 2,
    )
