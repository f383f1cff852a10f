from __future__ import annotations

from hypothesis import given, settings
from hypothesis import strategies as st

from alertgov.config import WEIGHT_KEYS, AdaptiveWeightConfig
from alertgov.core import Weights, noise_score, project_weights
from alertgov.tuning.controller import METRIC_KEYS, AdaptiveWeightController

rate = st.floats(min_value=0.0, max_value=1.0, allow_nan=False)
raw_weight = st.floats(min_value=-2.0, max_value=5.0, allow_nan=False)


@settings(max_examples=50, deadline=None)
@given(st.lists(raw_weight, min_size=5, max_size=5))
def test_projection_lands_in_bounded_simplex(vals):
    w = project_weights(dict(zip(WEIGHT_KEYS, vals)), 0.05, 0.6)
    out = list(w.as_dict().values())
    assert abs(sum(out) - 1.0) < 1e-9
    assert all(0.05 - 1e-9 <= v <= 0.6 + 1e-9 for v in out)


@settings(max_examples=50, deadline=None)
@given(rate, rate, st.floats(min_value=0.0, max_value=1e6, allow_nan=False), rate, rate)
def test_noise_score_in_unit_interval(ack, sfr, volume, dedup, eff):
    w = Weights(0.30, 0.25, 0.15, 0.15, 0.15)
    s = noise_score(ack, sfr, volume, dedup, eff, w, 5)
    assert 0.0 <= s <= 1.0


@settings(max_examples=50, deadline=None)
@given(st.lists(st.fixed_dictionaries({k: rate for k in METRIC_KEYS}), min_size=1, max_size=25))
def test_controller_weights_stay_valid(cycles):
    cfg = AdaptiveWeightConfig()
    ctrl = AdaptiveWeightController(cfg)
    for metrics in cycles:
        result = ctrl.compute_adjustment(metrics)
        out = list(result.weights.as_dict().values())
        assert abs(sum(out) - 1.0) < 1e-9
        assert all(cfg.w_min - 1e-9 <= v <= cfg.w_max + 1e-9 for v in out)
        assert sum(abs(d) for d in result.deltas.values()) <= cfg.max_cycle_drift + 1e-5
        if result.reason != "applied":
            assert result.weights == result.previous_weights
