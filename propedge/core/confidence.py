"""Multi-factor confidence scoring for hit-rate estimates.

Every function here is **pure**: no I/O, no logging, no side effects.  The
scorer is safe to call from any number of threads without locking.

Two different "confidence" notions exist in the engine and they are kept
apart on purpose:

1. The **coarse storage tag** (``HitRateEstimate.confidence_level``) is a
   three-way label by sample size, assigned by the aggregator when an estimate
   is persisted.
2. The **runtime score** produced by :func:`score_confidence` blends sample
   size, date span, data quality, consistency and recency into a single
   number in ``[0, 1]`` plus a five-level rating.  It is recomputed on every
   evaluation and never persisted.

Scoring model
-------------
::

    overall = 0.3·f_n(n) + 0.2·f_t(days) + 0.2·f_q(quality)
            + 0.2·consistency + 0.1·recency                          (1)

``f_n``, ``f_t`` and ``f_q`` are monotone step functions (see the band tables
below).  Because every term is non-decreasing in its input, ``overall`` is
non-decreasing in sample size with the other inputs held fixed.

The 95% margin of error uses the normal approximation to the binomial::

    MoE = 1.96 · sqrt(p(1 − p) / n)                                   (2)

and is defined as 1.0 when ``n = 0``.

Run tests with::

    pytest tests/test_confidence.py -v
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Final, List, Sequence, Tuple

import numpy as np
from scipy.stats import norm

from propedge.core.errors import InvalidInput

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

#: Blend weights for equation (1).  They sum to 1.0.
WEIGHT_SAMPLE_SIZE: Final[float] = 0.3
WEIGHT_TIME_RANGE: Final[float] = 0.2
WEIGHT_DATA_QUALITY: Final[float] = 0.2
WEIGHT_CONSISTENCY: Final[float] = 0.2
WEIGHT_RECENCY: Final[float] = 0.1

Z_95: Final[float] = 1.96
Z_99: Final[float] = 2.576
Z_90: Final[float] = 1.645

#: (minimum sample size, factor), checked top to bottom.
_SAMPLE_SIZE_BANDS: Final[Tuple[Tuple[int, float], ...]] = (
    (1000, 1.0),
    (500, 0.9),
    (200, 0.8),
    (100, 0.7),
    (50, 0.6),
    (30, 0.5),
    (20, 0.4),
    (10, 0.3),
    (5, 0.2),
)
_SAMPLE_SIZE_FLOOR: Final[float] = 0.1

#: (minimum days of history, factor), checked top to bottom.
_TIME_RANGE_BANDS: Final[Tuple[Tuple[int, float], ...]] = (
    (365, 1.0),
    (180, 0.9),
    (90, 0.8),
    (60, 0.7),
    (30, 0.6),
    (14, 0.5),
    (7, 0.4),
)
_TIME_RANGE_FLOOR: Final[float] = 0.3

_DATA_QUALITY_FACTORS: Final[dict] = {"high": 1.0, "medium": 0.7, "low": 0.4}

#: (maximum age in days, recency score), checked top to bottom.
_RECENCY_BANDS: Final[Tuple[Tuple[int, float], ...]] = (
    (7, 1.0),
    (30, 0.9),
    (90, 0.7),
    (180, 0.5),
    (365, 0.3),
)
_RECENCY_FLOOR: Final[float] = 0.1

#: Maximum standard deviation of a proportion; normalises consistency.
_MAX_PROPORTION_STD: Final[float] = 0.5


class ConfidenceRating(str, Enum):
    VERY_HIGH = "VERY_HIGH"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    VERY_LOW = "VERY_LOW"


# ---------------------------------------------------------------------------
# DTOs
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ConfidenceInput:
    """Sample metadata scored by :func:`score_confidence`.

    Attributes:
        sample_size: Number of graded outcomes, ``>= 0``.
        hit_rate: Observed hit rate in ``[0, 1]``.
        time_range_days: Days between the first and last game, ``>= 0``.
        data_quality: ``"high"``, ``"medium"`` or ``"low"``.
        consistency: Stability of the hit rate over time, in ``[0, 1]``.
        recency: Freshness of the most recent game, in ``[0, 1]``.
    """

    sample_size: int
    hit_rate: float
    time_range_days: int
    data_quality: str
    consistency: float
    recency: float


@dataclass(frozen=True)
class ConfidenceResult:
    overall: float
    sample_size_factor: float
    time_range_factor: float
    data_quality_factor: float
    consistency_factor: float
    recency_factor: float
    level: ConfidenceRating
    margin_of_error: float
    recommendation: str
    warnings: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class StatisticalMetrics:
    """Proportion statistics for a hit rate, tested against a coin flip."""

    standard_error: float
    confidence_interval_95: Tuple[float, float]
    confidence_interval_99: Tuple[float, float]
    z_score: float
    p_value: float
    is_statistically_significant: bool


# ---------------------------------------------------------------------------
# Factor functions
# ---------------------------------------------------------------------------


def sample_size_factor(sample_size: int) -> float:
    """Step function ``f_n``: 1.0 at ≥ 1000 samples down to 0.1 below 5."""
    for minimum, factor in _SAMPLE_SIZE_BANDS:
        if sample_size >= minimum:
            return factor
    return _SAMPLE_SIZE_FLOOR


def time_range_factor(time_range_days: int) -> float:
    """Step function ``f_t``: 1.0 at ≥ 365 days down to 0.3 below a week."""
    for minimum, factor in _TIME_RANGE_BANDS:
        if time_range_days >= minimum:
            return factor
    return _TIME_RANGE_FLOOR


def data_quality_factor(data_quality: str) -> float:
    try:
        return _DATA_QUALITY_FACTORS[data_quality.lower()]
    except (KeyError, AttributeError) as exc:
        raise InvalidInput(
            f"data_quality must be one of high/medium/low, got {data_quality!r}"
        ) from exc


def margin_of_error(hit_rate: float, sample_size: int) -> float:
    """95% margin of error, equation (2).  Returns 1.0 when ``sample_size <= 0``."""
    if sample_size <= 0:
        return 1.0
    return Z_95 * math.sqrt(hit_rate * (1.0 - hit_rate) / sample_size)


def confidence_level_for(overall: float) -> ConfidenceRating:
    if overall >= 0.9:
        return ConfidenceRating.VERY_HIGH
    if overall >= 0.75:
        return ConfidenceRating.HIGH
    if overall >= 0.6:
        return ConfidenceRating.MEDIUM
    if overall >= 0.4:
        return ConfidenceRating.LOW
    return ConfidenceRating.VERY_LOW


_RECOMMENDATIONS: Final[dict] = {
    ConfidenceRating.VERY_HIGH: ("Very high", "Reliable for betting decisions."),
    ConfidenceRating.HIGH: ("High", "Good for betting decisions."),
    ConfidenceRating.MEDIUM: ("Medium", "Use with caution."),
    ConfidenceRating.LOW: ("Low", "Consider gathering more data."),
    ConfidenceRating.VERY_LOW: ("Very low", "Not recommended for betting decisions."),
}


def _recommendation(level: ConfidenceRating, overall: float, sample_size: int, moe: float) -> str:
    label, advice = _RECOMMENDATIONS[level]
    return (
        f"{label} confidence ({round(overall * 100)}%) with {sample_size} samples. "
        f"Margin of error: ±{round(moe * 100)}%. {advice}"
    )


def _warnings(inp: ConfidenceInput) -> List[str]:
    warnings: List[str] = []
    if inp.sample_size < 30:
        warnings.append("Small sample size (< 30). Results may not be reliable.")
    if inp.time_range_days < 30:
        warnings.append("Short time range (< 30 days). May not capture seasonal variations.")
    if inp.data_quality.lower() == "low":
        warnings.append("Low data quality. Results should be interpreted with caution.")
    if inp.consistency < 0.5:
        warnings.append("Low consistency in historical performance. High variance detected.")
    if inp.recency < 0.5:
        warnings.append("Data is not recent. Performance may have changed.")
    if inp.sample_size < 10:
        warnings.append("Extremely small sample size. Statistical analysis not reliable.")
    return warnings


def _validate(inp: ConfidenceInput) -> None:
    if isinstance(inp.sample_size, bool) or not isinstance(inp.sample_size, int):
        raise InvalidInput(f"sample_size must be an int, got {inp.sample_size!r}")
    if inp.sample_size < 0:
        raise InvalidInput(f"sample_size must be >= 0, got {inp.sample_size!r}")
    if not (0.0 <= inp.hit_rate <= 1.0):
        raise InvalidInput(f"hit_rate must be in [0, 1], got {inp.hit_rate!r}")
    if inp.time_range_days < 0:
        raise InvalidInput(f"time_range_days must be >= 0, got {inp.time_range_days!r}")
    if not (0.0 <= inp.consistency <= 1.0):
        raise InvalidInput(f"consistency must be in [0, 1], got {inp.consistency!r}")
    if not (0.0 <= inp.recency <= 1.0):
        raise InvalidInput(f"recency must be in [0, 1], got {inp.recency!r}")


# ---------------------------------------------------------------------------
# Scorer
# ---------------------------------------------------------------------------


def score_confidence(inp: ConfidenceInput) -> ConfidenceResult:
    """Blend sample metadata into a runtime confidence score.

    Args:
        inp: Sample metadata.  See :class:`ConfidenceInput` for ranges.

    Returns:
        :class:`ConfidenceResult` with each component and ``overall`` rounded
        to three decimals, the qualitative level, the 95% margin of error, a
        one-sentence recommendation and any data warnings.

    Raises:
        InvalidInput: If any field is outside its declared range.

    Examples::

        score_confidence(ConfidenceInput(100, 0.6, 120, "high", 0.8, 0.9))
            → overall 0.82, level HIGH
            # 0.3·0.7 + 0.2·0.8 + 0.2·1.0 + 0.2·0.8 + 0.1·0.9
    """
    _validate(inp)

    f_n = sample_size_factor(inp.sample_size)
    f_t = time_range_factor(inp.time_range_days)
    f_q = data_quality_factor(inp.data_quality)

    overall = (
        WEIGHT_SAMPLE_SIZE * f_n
        + WEIGHT_TIME_RANGE * f_t
        + WEIGHT_DATA_QUALITY * f_q
        + WEIGHT_CONSISTENCY * inp.consistency
        + WEIGHT_RECENCY * inp.recency
    )
    level = confidence_level_for(overall)
    moe = margin_of_error(inp.hit_rate, inp.sample_size)

    return ConfidenceResult(
        overall=round(overall, 3),
        sample_size_factor=round(f_n, 3),
        time_range_factor=round(f_t, 3),
        data_quality_factor=round(f_q, 3),
        consistency_factor=round(inp.consistency, 3),
        recency_factor=round(inp.recency, 3),
        level=level,
        margin_of_error=round(moe, 3),
        recommendation=_recommendation(level, overall, inp.sample_size, moe),
        warnings=_warnings(inp),
    )


# ---------------------------------------------------------------------------
# Proportion statistics
# ---------------------------------------------------------------------------


def _clamped_interval(p: float, margin: float) -> Tuple[float, float]:
    return max(0.0, p - margin), min(1.0, p + margin)


def statistical_metrics(hit_rate: float, sample_size: int) -> StatisticalMetrics:
    """Standard error, 95%/99% intervals and a two-tailed test against 0.5.

    Args:
        hit_rate: Observed proportion in ``[0, 1]``.
        sample_size: Number of trials, ``> 0``.

    Returns:
        :class:`StatisticalMetrics`.  When the standard error is zero (an
        all-hit or all-miss sample) the z-score is ``±inf`` or 0 and the
        p-value follows from it.

    Raises:
        InvalidInput: If ``sample_size <= 0`` or ``hit_rate`` is outside ``[0, 1]``.
    """
    if sample_size <= 0:
        raise InvalidInput(f"sample_size must be positive, got {sample_size!r}")
    if not (0.0 <= hit_rate <= 1.0):
        raise InvalidInput(f"hit_rate must be in [0, 1], got {hit_rate!r}")

    se = math.sqrt(hit_rate * (1.0 - hit_rate) / sample_size)
    delta = hit_rate - 0.5
    if se > 0.0:
        z = delta / se
    elif delta == 0.0:
        z = 0.0
    else:
        z = math.copysign(math.inf, delta)

    p_value = float(2.0 * norm.sf(abs(z)))

    return StatisticalMetrics(
        standard_error=round(se, 4),
        confidence_interval_95=_clamped_interval(hit_rate, Z_95 * se),
        confidence_interval_99=_clamped_interval(hit_rate, Z_99 * se),
        z_score=round(z, 3) if math.isfinite(z) else z,
        p_value=round(p_value, 4),
        is_statistically_significant=p_value < 0.05,
    )


def minimum_sample_size(
    desired_margin: float,
    confidence: float = 0.95,
    estimated_hit_rate: float = 0.5,
) -> int:
    """Samples needed so the margin of error is at most ``desired_margin``.

    ``n = ceil(z² · p(1 − p) / MoE²)`` with ``z`` = 1.96 (95%), 2.576 (99%),
    otherwise 1.645.

    Examples::

        minimum_sample_size(0.05)        → 385
        minimum_sample_size(0.10, 0.99)  → 166
    """
    if desired_margin <= 0.0:
        raise InvalidInput(f"desired_margin must be > 0, got {desired_margin!r}")
    if confidence == 0.95:
        z = Z_95
    elif confidence == 0.99:
        z = Z_99
    else:
        z = Z_90
    p = estimated_hit_rate
    return math.ceil(z * z * p * (1.0 - p) / (desired_margin * desired_margin))


def consistency_score(hit_rates: Sequence[float]) -> float:
    """``1 − std/0.5`` over a series of per-period hit rates, clamped to ``[0, 1]``.

    Fewer than two periods carries no information about stability and
    scores 0.
    """
    if len(hit_rates) < 2:
        return 0.0
    std = float(np.std(np.asarray(hit_rates, dtype=float)))
    return float(np.clip(1.0 - std / _MAX_PROPORTION_STD, 0.0, 1.0))


def recency_score(age_days: float) -> float:
    """Freshness of the most recent data point by age in days."""
    for maximum, score in _RECENCY_BANDS:
        if age_days <= maximum:
            return score
    return _RECENCY_FLOOR
