from __future__ import annotations

import math
import statistics
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

from ..config import RobustConfig

# Floors applied to the dynamic high threshold, as a fraction of the static high.
DRIFT_UP_FLOOR = 0.7
STABLE_FLOOR = 0.85
DRIFT_LOOKBACK = 5


@dataclass(frozen=True)
class DynamicThresholds:
    high: float
    low: float
    median: float
    mad: float

    def as_dict(self) -> dict:
        return {"high": self.high, "low": self.low, "median": self.median, "mad": self.mad}


def clamp01(x: float) -> float:
    return max(0.0, min(1.0, x))


def median(values: Iterable[float]) -> float:
    vals = list(values)
    if not vals:
        return 0.0
    return float(statistics.median(vals))


def mad(values: Iterable[float]) -> float:
    """Median absolute deviation around the median (unscaled)."""
    vals = list(values)
    if not vals:
        return 0.0
    m = statistics.median(vals)
    return float(statistics.median(abs(v - m) for v in vals))


def median_mad(values: Iterable[float]) -> Tuple[float, float]:
    vals = list(values)
    return median(vals), mad(vals)


def percentile(values: Iterable[float], p: float) -> float:
    """Nearest-rank percentile: the ceil(p*n)-th smallest value."""
    vals = sorted(values)
    if not vals:
        return 0.0
    idx = min(len(vals) - 1, max(0, math.ceil(p * len(vals)) - 1))
    return float(vals[idx])


def is_non_decreasing(values: Sequence[float]) -> bool:
    return all(b >= a for a, b in zip(values, values[1:]))


def compute_dynamic_thresholds(
    history: Sequence[float],
    static_high: float,
    cfg: RobustConfig,
) -> Optional[DynamicThresholds]:
    """
    Derive hysteresis thresholds from a group's raw noise-score history.

    Steps:
      1) Require robust mode and at least ``min_samples_for_robust`` samples,
         otherwise return None so the caller keeps the static pair
      2) median and MAD of the history, MAD floored at ``epsilon_mad``
      3) candidate high/low = median + k*MAD, clamped to [0, 1]
      4) floor high at a fraction of the static high: 0.7 when the last five
         scores never decrease (upward drift), 0.85 otherwise
    """
    if not cfg.enabled or len(history) < cfg.min_samples_for_robust:
        return None
    med, raw_mad = median_mad(history)
    m = max(raw_mad, cfg.epsilon_mad)
    high_c = clamp01(med + cfg.k_high * m)
    low_c = clamp01(med + cfg.k_low * m)

    recent: List[float] = list(history)[-DRIFT_LOOKBACK:]
    drift_up = len(recent) >= DRIFT_LOOKBACK and is_non_decreasing(recent)
    floor = static_high * (DRIFT_UP_FLOOR if drift_up else STABLE_FLOOR)
    high = max(high_c, floor)
    return DynamicThresholds(high=high, low=low_c, median=med, mad=m)
