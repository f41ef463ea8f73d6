"""Frequentist lift and significance for a BASE vs TEST rotation experiment.

The conversion being tested is add-to-cart per impression. Everything here is
a pure function of the full event list, so results can be re-derived at any
time; nothing is stored incrementally.
"""

from __future__ import annotations

import math
from collections.abc import Iterable
from typing import Any

from pydantic import BaseModel

from merchswap.models.event import EventType
from merchswap.models.experiment import Case
from merchswap.stats.distributions import NormalDistribution, get_distribution

SIGNIFICANCE_THRESHOLD = 95.0


class CaseStats(BaseModel):
    impressions: int = 0
    add_to_carts: int = 0
    purchases: int = 0
    revenue: float = 0.0
    rate: float = 0.0

    @property
    def rate_percent(self) -> float:
        return self.rate * 100


class ExperimentStatistics(BaseModel):
    base: CaseStats
    test: CaseStats
    lift: float
    z_score: float
    p_value: float
    confidence: float
    is_significant: bool
    winner: Case | None
    sample_size: int


# ======================================================================
# Aggregation
# ======================================================================

def _field(event: Any, name: str) -> Any:
    if isinstance(event, dict):
        return event.get(name)
    return getattr(event, name)


def aggregate_events(events: Iterable[Any]) -> dict[Case, CaseStats]:
    """Count impressions, add-to-carts, purchases and revenue per case.

    Accepts ORM ``Event`` rows or plain dicts with ``event_type``,
    ``active_case`` and ``revenue``. Missing revenue counts as zero.
    """
    counts = {case: {"impressions": 0, "add_to_carts": 0, "purchases": 0, "revenue": 0.0} for case in Case}
    for event in events:
        case = Case(_field(event, "active_case"))
        event_type = EventType(_field(event, "event_type"))
        bucket = counts[case]
        if event_type is EventType.IMPRESSION:
            bucket["impressions"] += 1
        elif event_type is EventType.ADD_TO_CART:
            bucket["add_to_carts"] += 1
        else:
            bucket["purchases"] += 1
            bucket["revenue"] += float(_field(event, "revenue") or 0.0)

    return {
        case: CaseStats(
            **bucket,
            rate=bucket["add_to_carts"] / bucket["impressions"] if bucket["impressions"] > 0 else 0.0,
        )
        for case, bucket in counts.items()
    }


# ======================================================================
# Two-proportion z-test
# ======================================================================

def two_proportion_z_test(
    conversions_a: int,
    trials_a: int,
    conversions_b: int,
    trials_b: int,
    distribution: NormalDistribution | None = None,
) -> tuple[float, float]:
    """Pooled two-proportion z-test.

    Parameters
    ----------
    conversions_a, trials_a : int
        Successes and trials for the first arm.
    conversions_b, trials_b : int
        Successes and trials for the second arm.
    distribution : NormalDistribution, optional
        Normal backend; defaults to the closed-form approximation.

    Returns
    -------
    tuple[float, float]
        ``(z, p_value)`` with ``z = |p_a - p_b| / se`` and a two-tailed p-value.
        Degenerate inputs (an empty arm, no conversions at all, zero standard
        error) return ``(0.0, 1.0)``.
    """
    if trials_a <= 0 or trials_b <= 0 or conversions_a + conversions_b <= 0:
        return 0.0, 1.0

    distribution = distribution or get_distribution()
    rate_a = conversions_a / trials_a
    rate_b = conversions_b / trials_b
    pooled = (conversions_a + conversions_b) / (trials_a + trials_b)
    se = math.sqrt(pooled * (1 - pooled) * (1 / trials_a + 1 / trials_b))
    if se <= 0:
        return 0.0, 1.0

    z = abs(rate_a - rate_b) / se
    p_value = 2 * (1 - distribution.cdf(z))
    return z, p_value


def compute_statistics(
    events: Iterable[Any],
    distribution: NormalDistribution | None = None,
) -> ExperimentStatistics:
    """Reduce an experiment's events to a lift/significance verdict.

    A winner is only named when confidence reaches 95%; anything below that
    reports ``winner=None``.
    """
    per_case = aggregate_events(events)
    base, test = per_case[Case.BASE], per_case[Case.TEST]

    z, p_value = two_proportion_z_test(
        base.add_to_carts, base.impressions, test.add_to_carts, test.impressions, distribution
    )
    confidence = max(0.0, (1 - p_value) * 100)
    is_significant = confidence >= SIGNIFICANCE_THRESHOLD
    lift = (test.rate - base.rate) / base.rate * 100 if base.rate > 0 else 0.0

    winner = None
    if is_significant and test.rate != base.rate:
        winner = Case.TEST if test.rate > base.rate else Case.BASE

    return ExperimentStatistics(
        base=base,
        test=test,
        lift=lift,
        z_score=z,
        p_value=p_value,
        confidence=confidence,
        is_significant=is_significant,
        winner=winner,
        sample_size=base.impressions + test.impressions,
    )


# ======================================================================
# Planning
# ======================================================================

def sample_size_needed(
    baseline_rate: float,
    minimum_detectable_effect: float,
    power: float = 0.8,
    significance: float = 0.05,
    distribution: NormalDistribution | None = None,
) -> int:
    """Impressions needed *per case* to detect a relative lift.

    Parameters
    ----------
    baseline_rate : float
        Expected BASE add-to-cart rate, in (0, 1).
    minimum_detectable_effect : float
        Relative lift to detect, e.g. 0.1 for +10%.
    power : float
        1 - beta.
    significance : float
        Two-tailed alpha.

    Returns
    -------
    int
        Required sample size per case, rounded up.
    """
    if not 0 < baseline_rate < 1:
        raise ValueError("baseline_rate must be between 0 and 1")
    if minimum_detectable_effect <= 0:
        raise ValueError("minimum_detectable_effect must be positive")
    if not 0 < power < 1 or not 0 < significance < 1:
        raise ValueError("power and significance must be between 0 and 1")

    p1 = baseline_rate
    p2 = baseline_rate * (1 + minimum_detectable_effect)
    if p2 >= 1:
        raise ValueError("baseline_rate * (1 + minimum_detectable_effect) must stay below 1")

    distribution = distribution or get_distribution()
    z_alpha = distribution.inverse_cdf(1 - significance / 2)
    z_beta = distribution.inverse_cdf(power)
    pooled = (p1 + p2) / 2

    numerator = (
        z_alpha * math.sqrt(2 * pooled * (1 - pooled))
        + z_beta * math.sqrt(p1 * (1 - p1) + p2 * (1 - p2))
    ) ** 2
    return math.ceil(numerator / (p2 - p1) ** 2)


def summarize(stats: ExperimentStatistics) -> str:
    """Plain-English verdict for dashboards."""
    if stats.sample_size == 0:
        return "No impressions recorded yet."
    if stats.winner is None:
        return (
            f"No winner yet: TEST is {stats.lift:+.1f}% vs BASE "
            f"at {stats.confidence:.1f}% confidence (95% needed)."
        )
    return (
        f"{stats.winner.value} wins: {stats.lift:+.1f}% lift in add-to-cart rate "
        f"at {stats.confidence:.1f}% confidence."
    )
