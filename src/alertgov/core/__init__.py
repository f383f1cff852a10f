"""Core algorithms for alertgov: robust thresholds and noise scoring."""

from .robust import DynamicThresholds, compute_dynamic_thresholds, mad, median, median_mad, percentile
from .scoring import Weights, noise_score, project_weights, volume_norm

__all__ = [
    "DynamicThresholds",
    "compute_dynamic_thresholds",
    "mad",
    "median",
    "median_mad",
    "percentile",
    "Weights",
    "noise_score",
    "project_weights",
    "volume_norm",
]
