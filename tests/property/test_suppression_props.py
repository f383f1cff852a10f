from __future__ import annotations

from datetime import UTC, datetime, timedelta

from hypothesis import given, settings
from hypothesis import strategies as st

from alertgov.config import SuppressionConfig
from alertgov.suppression.engine import SuppressionEngine
from alertgov.suppression.signals import QueueSignalSource
from alertgov.suppression.state import SuppressionState

rate = st.floats(min_value=0.0, max_value=1.0, allow_nan=False)
signals = st.fixed_dictionaries({
    "ack_rate": rate,
    "suspected_false_rate": rate,
    "volume": st.floats(min_value=0.0, max_value=100.0, allow_nan=False),
    "dedup_ratio": rate,
    "escalation_effectiveness": rate,
})

ALLOWED = {
    (SuppressionState.ACTIVE, SuppressionState.CANDIDATE),
    (SuppressionState.CANDIDATE, SuppressionState.ACTIVE),
    (SuppressionState.CANDIDATE, SuppressionState.SUPPRESSED),
    (SuppressionState.SUPPRESSED, SuppressionState.MONITORING),
    (SuppressionState.MONITORING, SuppressionState.SUPPRESSED),
    (SuppressionState.MONITORING, SuppressionState.ACTIVE),
}


@settings(max_examples=50, deadline=None)
@given(st.lists(signals, min_size=1, max_size=40))
def test_only_allowed_transitions_occur(sequence):
    src = QueueSignalSource()
    src.extend("g", sequence)
    engine = SuppressionEngine(SuppressionConfig(), src)
    try:
        now = datetime(2024, 1, 1, tzinfo=UTC)
        for _ in sequence:
            now += timedelta(minutes=1)
            result = engine.evaluate_window(["g"], now).get("g")
            assert 0.0 <= result.noise_score <= 1.0
            assert 0.0 <= result.low <= 1.0 and 0.0 <= result.high <= 1.0
        for t in engine.recent_transitions(limit=1000):
            assert (t.previous, t.new) in ALLOWED
    finally:
        engine.close()
