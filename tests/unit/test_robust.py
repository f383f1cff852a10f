from __future__ import annotations

import pytest

from alertgov.config import RobustConfig
from alertgov.core import compute_dynamic_thresholds, mad, median, median_mad, percentile
from alertgov.core.robust import is_non_decreasing


def test_median_and_mad_basic():
    vals = [1.0, 2.0, 3.0, 4.0, 100.0]
    assert median(vals) == 3.0
    # deviations: 2,1,0,1,97 -> median 1
    assert mad(vals) == 1.0
    assert median_mad([]) == (0.0, 0.0)


def test_percentile_nearest_rank():
    vals = list(range(1, 21))
    assert percentile(vals, 0.95) == 19
    assert percentile(vals, 1.0) == 20
    assert percentile([], 0.95) == 0.0


def test_non_decreasing_counts_equal_values():
    assert is_non_decreasing([0.1, 0.1, 0.2, 0.2, 0.3])
    assert not is_non_decreasing([0.1, 0.3, 0.2])


def test_under_sampled_history_falls_back_to_static():
    cfg = RobustConfig(min_samples_for_robust=8)
    assert compute_dynamic_thresholds([0.5] * 7, 0.65, cfg) is None


def test_disabled_robust_mode_returns_none():
    cfg = RobustConfig(enabled=False)
    assert compute_dynamic_thresholds([0.5] * 20, 0.65, cfg) is None


def test_zero_mad_is_floored_at_epsilon():
    cfg = RobustConfig()
    dyn = compute_dynamic_thresholds([0.5] * 10, 0.65, cfg)
    assert dyn is not None
    assert dyn.mad == pytest.approx(cfg.epsilon_mad)
    assert dyn.high == pytest.approx(0.5 + 1.2 * 0.01)
    assert dyn.low == pytest.approx(0.5 + 0.4 * 0.01)


def test_drift_up_uses_lower_floor():
    cfg = RobustConfig()
    # Rising tail: floor is 0.65 * 0.7 = 0.455
    rising = [0.1, 0.1, 0.1, 0.1, 0.1, 0.11, 0.12, 0.13, 0.14, 0.15]
    dyn = compute_dynamic_thresholds(rising, 0.65, cfg)
    assert dyn is not None
    assert dyn.high == pytest.approx(0.65 * 0.7)


def test_dip_in_tail_uses_stable_floor():
    cfg = RobustConfig()
    dipping = [0.1, 0.1, 0.1, 0.1, 0.1, 0.15, 0.14, 0.13, 0.12, 0.11]
    dyn = compute_dynamic_thresholds(dipping, 0.65, cfg)
    assert dyn is not None
    assert dyn.high == pytest.approx(0.65 * 0.85)


def test_thresholds_are_clamped_to_unit_interval():
    cfg = RobustConfig(k_high=50.0, k_low=40.0)
    dyn = compute_dynamic_thresholds([0.0, 1.0] * 5, 0.65, cfg)
    assert dyn is not None
    assert 0.0 <= dyn.low <= 1.0
    assert dyn.high == 1.0
