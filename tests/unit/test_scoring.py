from __future__ import annotations

import pytest

from alertgov.core import Weights, noise_score, project_weights, volume_norm

DEFAULT = Weights(0.30, 0.25, 0.15, 0.15, 0.15)


def test_volume_norm_uses_min_volume_floor():
    assert volume_norm(15, 5) == pytest.approx(15 / 25)
    assert volume_norm(100, 5) == 1.0
    assert volume_norm(0, 5) == 0.0
    assert volume_norm(0.5, 0) == pytest.approx(0.5)


def test_noise_score_reference_value():
    score = noise_score(0.05, 0.6, 15, 0.6, 0.2, DEFAULT, 5)
    assert score == pytest.approx(0.705)


def test_noise_score_is_rounded_to_four_places():
    score = noise_score(0.123456, 0.0, 0, 1.0, 1.0, DEFAULT, 5)
    assert score == round(score, 4)


def test_projection_keeps_vector_already_in_bounds():
    w = project_weights(DEFAULT.as_dict(), 0.05, 0.6)
    for k, v in DEFAULT.as_dict().items():
        assert getattr(w, k) == pytest.approx(v)


def test_projection_respects_bounds_and_sum():
    w = project_weights({"w1": 5.0, "w2": 0.0, "w3": 0.0, "w4": 0.0, "w5": 0.0}, 0.05, 0.6)
    vals = list(w.as_dict().values())
    assert sum(vals) == pytest.approx(1.0, abs=1e-9)
    assert all(0.05 - 1e-9 <= v <= 0.6 + 1e-9 for v in vals)
    assert w.w1 == pytest.approx(0.6)


def test_merged_rejects_unknown_component():
    with pytest.raises(KeyError):
        DEFAULT.merged({"w9": 0.1})


def test_l1_distance():
    other = Weights(0.35, 0.20, 0.15, 0.15, 0.15)
    assert DEFAULT.l1_distance(other) == pytest.approx(0.10)
