"""MerchSwap statistics.

Public API:
- compute_statistics: events -> per-case stats, lift, confidence, winner
- sample_size_needed: per-case impressions needed to detect a relative lift
- normal_cdf / inverse_normal_cdf: closed-form normal approximations
- get_distribution: pick the "approximate" or "scipy" normal backend
- StatsEngine: async orchestrator that loads events and runs the test
"""

from merchswap.stats.distributions import (
    ApproximateNormal,
    NormalDistribution,
    ScipyNormal,
    get_distribution,
    inverse_normal_cdf,
    normal_cdf,
)
from merchswap.stats.engine import StatsEngine
from merchswap.stats.significance import (
    CaseStats,
    ExperimentStatistics,
    compute_statistics,
    sample_size_needed,
    summarize,
)

__all__ = [
    "ApproximateNormal",
    "NormalDistribution",
    "ScipyNormal",
    "get_distribution",
    "inverse_normal_cdf",
    "normal_cdf",
    "StatsEngine",
    "CaseStats",
    "ExperimentStatistics",
    "compute_statistics",
    "sample_size_needed",
    "summarize",
]
