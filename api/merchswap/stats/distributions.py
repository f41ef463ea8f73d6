"""Standard normal CDF and inverse CDF behind a swappable interface.

``ApproximateNormal`` is the closed-form default: Abramowitz & Stegun 7.1.26
for the CDF and the Beasley-Springer-Moro rational approximation for the
inverse. Significance thresholds are compared at the 95% boundary, so these
constants are kept exactly as published. ``ScipyNormal`` is the exact
alternative backed by ``scipy.stats.norm``.

Both accept scalars or numpy arrays and return the same shape (scalars come
back as plain ``float``).
"""

from __future__ import annotations

import math
from typing import Protocol

import numpy as np
from scipy import stats as sp_stats

ArrayLike = float | np.ndarray


class NormalDistribution(Protocol):
    name: str

    def cdf(self, x: ArrayLike) -> ArrayLike: ...

    def inverse_cdf(self, p: ArrayLike) -> ArrayLike: ...


def _unwrap(values: np.ndarray) -> ArrayLike:
    return float(values) if values.ndim == 0 else values


def _check_probabilities(p: np.ndarray) -> None:
    if np.any(~np.isfinite(p)) or np.any(p <= 0.0) or np.any(p >= 1.0):
        raise ValueError("Probability must be strictly between 0 and 1")


# ======================================================================
# Closed-form approximations
# ======================================================================

# Abramowitz & Stegun 7.1.26
_AS_A1 = 0.254829592
_AS_A2 = -0.284496736
_AS_A3 = 1.421413741
_AS_A4 = -1.453152027
_AS_A5 = 1.061405429
_AS_P = 0.3275911

# Beasley-Springer-Moro
_BSM_A = (
    -39.69683028665376,
    220.9460984245205,
    -275.9285104469687,
    138.357751867269,
    -30.66479806614716,
    2.506628277459239,
)
_BSM_B = (
    -54.47609879822406,
    161.5858368580409,
    -155.6989798598866,
    66.80131188771972,
    -13.28068155288572,
)
_BSM_C = (
    -7.784894002430293e-3,
    -3.223964580411365e-1,
    -2.400758277161838,
    -2.549732539343734,
    4.374664141464968,
    2.938163982698783,
)
_BSM_D = (
    7.784695709041462e-3,
    3.224671290700398e-1,
    2.445134137142996,
    3.754408661907416,
)
_BSM_P_LOW = 0.02425
_BSM_P_HIGH = 1.0 - _BSM_P_LOW


def _tail(q: np.ndarray) -> np.ndarray:
    c, d = _BSM_C, _BSM_D
    numerator = ((((c[0] * q + c[1]) * q + c[2]) * q + c[3]) * q + c[4]) * q + c[5]
    denominator = (((d[0] * q + d[1]) * q + d[2]) * q + d[3]) * q + 1.0
    return numerator / denominator


class ApproximateNormal:
    name = "approximate"

    def cdf(self, x: ArrayLike) -> ArrayLike:
        values = np.asarray(x, dtype=float)
        sign = np.where(values < 0, -1.0, 1.0)
        z = np.abs(values) / math.sqrt(2.0)
        t = 1.0 / (1.0 + _AS_P * z)
        poly = ((((_AS_A5 * t + _AS_A4) * t + _AS_A3) * t + _AS_A2) * t + _AS_A1) * t
        y = 1.0 - poly * np.exp(-z * z)
        return _unwrap(0.5 * (1.0 + sign * y))

    def inverse_cdf(self, p: ArrayLike) -> ArrayLike:
        """Acklam's rational approximation, Horner-evaluated from the leading coefficient.

        The coefficient tuples are in published order (``a[0]`` multiplies the
        highest power); do not reverse the evaluation order.
        """
        probs = np.asarray(p, dtype=float)
        _check_probabilities(probs)

        lower = probs < _BSM_P_LOW
        upper = probs > _BSM_P_HIGH
        central = ~(lower | upper)

        # Substitute a harmless value outside each region so no branch logs 0
        q_low = np.sqrt(-2.0 * np.log(np.where(lower, probs, 0.5)))
        q_high = np.sqrt(-2.0 * np.log(np.where(upper, 1.0 - probs, 0.5)))

        q = probs - 0.5
        r = q * q
        a, b = _BSM_A, _BSM_B
        central_values = (
            (((((a[0] * r + a[1]) * r + a[2]) * r + a[3]) * r + a[4]) * r + a[5]) * q
            / (((((b[0] * r + b[1]) * r + b[2]) * r + b[3]) * r + b[4]) * r + 1.0)
        )

        result = np.where(central, central_values, 0.0)
        result = np.where(lower, _tail(q_low), result)
        result = np.where(upper, -_tail(q_high), result)
        return _unwrap(result)


# ======================================================================
# Exact backend
# ======================================================================

class ScipyNormal:
    name = "scipy"

    def cdf(self, x: ArrayLike) -> ArrayLike:
        return _unwrap(np.asarray(sp_stats.norm.cdf(np.asarray(x, dtype=float))))

    def inverse_cdf(self, p: ArrayLike) -> ArrayLike:
        probs = np.asarray(p, dtype=float)
        _check_probabilities(probs)
        return _unwrap(np.asarray(sp_stats.norm.ppf(probs)))


_BACKENDS: dict[str, type] = {
    ApproximateNormal.name: ApproximateNormal,
    ScipyNormal.name: ScipyNormal,
}


def get_distribution(name: str = "approximate") -> NormalDistribution:
    """Look up a normal backend by name ("approximate" or "scipy")."""
    try:
        return _BACKENDS[name]()
    except KeyError:
        raise ValueError(f"Unknown normal backend {name!r}; expected one of {sorted(_BACKENDS)}") from None


_default = ApproximateNormal()


def normal_cdf(x: ArrayLike) -> ArrayLike:
    return _default.cdf(x)


def inverse_normal_cdf(p: ArrayLike) -> ArrayLike:
    return _default.inverse_cdf(p)
