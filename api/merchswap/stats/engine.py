"""StatsEngine: loads an experiment's events and runs the significance test.

This is the entry point for the results router.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from merchswap.core.config import settings
from merchswap.models.event import Event
from merchswap.models.experiment import Experiment
from merchswap.stats.distributions import NormalDistribution, get_distribution
from merchswap.stats.significance import compute_statistics, summarize


class StatsEngine:
    """Computes lift and confidence for one experiment from stored events.

    Parameters
    ----------
    db : AsyncSession
        SQLAlchemy async session for querying events.
    distribution : NormalDistribution, optional
        Normal backend; defaults to ``settings.STATS_NORMAL_BACKEND``.
    """

    def __init__(self, db: AsyncSession, distribution: NormalDistribution | None = None) -> None:
        self.db = db
        self.distribution = distribution or get_distribution(settings.STATS_NORMAL_BACKEND)

    async def analyze_experiment(self, experiment: Experiment) -> dict[str, Any]:
        """Run the two-proportion test over every event of ``experiment``.

        Returns
        -------
        dict
            ``statistics`` (an ``ExperimentStatistics``), ``summary`` (str) and
            the experiment's current status and case.
        """
        events = await self._load_events(experiment.id)
        stats = compute_statistics(events, self.distribution)
        return {
            "experiment_id": experiment.id,
            "status": experiment.status,
            "current_case": experiment.current_case,
            "statistics": stats,
            "summary": summarize(stats),
        }

    # ------------------------------------------------------------------
    # Query helpers
    # ------------------------------------------------------------------

    async def _load_events(self, experiment_id) -> list:
        result = await self.db.execute(
            select(Event.event_type, Event.active_case, Event.revenue).where(
                Event.experiment_id == experiment_id
            )
        )
        return list(result.all())
