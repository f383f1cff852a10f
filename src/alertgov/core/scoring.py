from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Dict, List, Mapping, Optional

from ..config import DEFAULT_WEIGHTS, WEIGHT_KEYS

# Bounds used when no tighter controller bounds apply.
ENGINE_W_MIN = 0.0001
ENGINE_W_MAX = 1.0


@dataclass(frozen=True)
class Weights:
    """Immutable noise-score weight vector. Replace, never mutate."""

    w1: float
    w2: float
    w3: float
    w4: float
    w5: float

    @classmethod
    def from_mapping(cls, data: Mapping[str, float]) -> "Weights":
        return cls(**{k: float(data[k]) for k in WEIGHT_KEYS})

    def as_dict(self) -> Dict[str, float]:
        return asdict(self)

    def merged(self, partial: Mapping[str, float]) -> Dict[str, float]:
        out = self.as_dict()
        for k, v in partial.items():
            if k not in out:
                raise KeyError(f"unknown weight component: {k}")
            out[k] = float(v)
        return out

    def total(self) -> float:
        return self.w1 + self.w2 + self.w3 + self.w4 + self.w5

    def l1_distance(self, other: "Weights") -> float:
        a, b = self.as_dict(), other.as_dict()
        return sum(abs(a[k] - b[k]) for k in WEIGHT_KEYS)


def project_weights(raw: Mapping[str, float], w_min: float, w_max: float) -> Weights:
    """
    Project a raw weight mapping onto {w : w_min <= wi <= w_max, sum(w) = 1}.

    Water-filling: find the level t with sum(clamp(raw_i + t)) == 1 by bisection
    (the sum is monotone in t), then push the floating-point residual onto a
    component that is strictly inside its bounds. A vector that already lies
    in the set is returned unchanged.
    """
    vals: List[float] = [float(raw[k]) for k in WEIGHT_KEYS]

    def clamped(t: float) -> List[float]:
        return [min(w_max, max(w_min, v + t)) for v in vals]

    lo_t = w_min - max(vals)
    hi_t = w_max - min(vals)
    if abs(sum(clamped(0.0)) - 1.0) < 1e-12:
        lo_t = hi_t = 0.0
    for _ in range(200):
        if hi_t - lo_t < 1e-15:
            break
        mid = (lo_t + hi_t) / 2.0
        if sum(clamped(mid)) < 1.0:
            lo_t = mid
        else:
            hi_t = mid
    out = clamped((lo_t + hi_t) / 2.0)

    residual = 1.0 - sum(out)
    if residual:
        for i, w in enumerate(out):
            if w_min <= w + residual <= w_max:
                out[i] = w + residual
                break
    return Weights(*out)


def volume_norm(volume: float, min_volume: float) -> float:
    v = max(0.0, float(volume))
    denom = max(v, min_volume * 5, 1.0)
    return min(1.0, v / denom)


def noise_score(
    ack_rate: float,
    suspected_false_rate: float,
    volume: float,
    dedup_ratio: float,
    escalation_effectiveness: float,
    weights: Weights,
    min_volume: float,
) -> float:
    """Composite noise score in [0, 1], rounded to 4 decimals."""
    raw = (
        weights.w1 * (1 - ack_rate)
        + weights.w2 * suspected_false_rate
        + weights.w3 * volume_norm(volume, min_volume)
        + weights.w4 * (1 - dedup_ratio)
        + weights.w5 * (1 - escalation_effectiveness)
    )
    return round(max(0.0, min(1.0, raw)), 4)


def initial_weights(data: Optional[Mapping[str, float]], w_min: float = ENGINE_W_MIN,
                    w_max: float = ENGINE_W_MAX) -> Weights:
    return project_weights(data or DEFAULT_WEIGHTS, w_min, w_max)
