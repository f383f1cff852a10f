from __future__ import annotations

import time

import pytest

from alertgov.config import RobustConfig, SuppressionConfig
from alertgov.core.scoring import project_weights
from alertgov.events import SUPPRESSION_TRANSITION, EventBus
from alertgov.suppression.engine import SuppressionEngine
from alertgov.suppression.signals import CallableSignalSource, QueueSignalSource, StaticSignalSource
from alertgov.suppression.state import SuppressionState

NOISY = {"ack_rate": 0.05, "suspected_false_rate": 0.6, "volume": 15, "dedup_ratio": 0.6,
         "escalation_effectiveness": 0.2}
QUIET = {"ack_rate": 0.9, "suspected_false_rate": 0.05, "volume": 15, "dedup_ratio": 0.95,
         "escalation_effectiveness": 0.2}
STABLE = {"ack_rate": 0.3, "suspected_false_rate": 0.3, "volume": 10, "dedup_ratio": 0.7,
          "escalation_effectiveness": 0.3}
SPIKE = {"ack_rate": 0.05, "suspected_false_rate": 0.9, "volume": 10, "dedup_ratio": 0.7,
         "escalation_effectiveness": 0.3}


@pytest.fixture
def make_engine(clock):
    engines = []

    def _make(source, **overrides):
        engine = SuppressionEngine(SuppressionConfig(**overrides), source, events=EventBus(), clock=clock)
        engines.append(engine)
        return engine

    yield _make
    for engine in engines:
        engine.close()


def run(engine, clock, group="g1"):
    batch = engine.evaluate_window([group], clock.advance(minutes=1))
    return batch.get(group)


def test_noisy_group_passes_through_candidate_before_suppression(make_engine, clock):
    src = QueueSignalSource()
    src.extend("g1", [NOISY, NOISY, NOISY, QUIET, QUIET, QUIET, QUIET])
    engine = make_engine(src)

    states = [run(engine, clock).state for _ in range(7)]
    assert states == [
        SuppressionState.CANDIDATE,
        SuppressionState.SUPPRESSED,
        SuppressionState.SUPPRESSED,
        SuppressionState.MONITORING,
        SuppressionState.MONITORING,
        SuppressionState.ACTIVE,
        SuppressionState.ACTIVE,
    ]
    reasons = [t.reason for t in engine.recent_transitions()]
    assert reasons == ["noise_above_high", "confirmed_noise", "noise_below_low", "stable_recovery"]
    for t in engine.recent_transitions():
        assert not (t.previous is SuppressionState.ACTIVE and t.new is SuppressionState.SUPPRESSED)


def test_suppressed_state_is_published(make_engine, clock):
    engine = make_engine(StaticSignalSource({"g1": NOISY}))
    run(engine, clock)
    first = engine.get_status("g1")
    run(engine, clock)
    state = engine.get_suppression_state("g1")
    assert state["suppressed"] is True
    assert state["mode"] == "MUTE"
    assert state["noise_score"] == pytest.approx(0.705)
    # earlier snapshot is unchanged by later evaluations
    assert first.state is SuppressionState.CANDIDATE


def test_unknown_group_reports_active_default(make_engine):
    engine = make_engine(StaticSignalSource())
    state = engine.get_suppression_state("nope")
    assert state["suppressed"] is False
    assert state["state"] == "ACTIVE"
    assert state["mode"] == "NONE"


def test_effective_escalation_blocks_candidate(make_engine, clock):
    effective = {"ack_rate": 0.0, "suspected_false_rate": 1.0, "volume": 15, "dedup_ratio": 0.0,
                 "escalation_effectiveness": 0.6}
    engine = make_engine(StaticSignalSource({"g1": effective}))
    result = run(engine, clock)
    assert result.noise_score >= 0.65
    assert result.state is SuppressionState.ACTIVE


def test_critical_group_blocked_unless_allowed(make_engine, clock):
    critical = dict(NOISY, severity="critical")
    blocked = make_engine(StaticSignalSource({"g1": critical}))
    assert run(blocked, clock).state is SuppressionState.ACTIVE

    allowed = make_engine(StaticSignalSource({"g1": critical}), allow_suppress_critical=True)
    assert run(allowed, clock).state is SuppressionState.CANDIDATE


def test_low_volume_demotes_candidate(make_engine, clock):
    loud_but_rare = {"ack_rate": 0.0, "suspected_false_rate": 1.0, "volume": 3, "dedup_ratio": 0.0,
                     "escalation_effectiveness": 0.0}
    src = QueueSignalSource()
    src.extend("g1", [NOISY, loud_but_rare])
    engine = make_engine(src)
    assert run(engine, clock).state is SuppressionState.CANDIDATE
    result = run(engine, clock)
    assert result.state is SuppressionState.ACTIVE
    assert result.reason == "low_volume"


def test_low_volume_never_enters_candidate(make_engine, clock):
    loud_but_rare = {"ack_rate": 0.0, "suspected_false_rate": 1.0, "volume": 3, "dedup_ratio": 0.0,
                     "escalation_effectiveness": 0.0}
    engine = make_engine(StaticSignalSource({"g1": loud_but_rare}))
    result = run(engine, clock)
    assert result.noise_score >= 0.65
    assert result.state is SuppressionState.ACTIVE


def test_ack_rate_jump_after_exit_counts_as_false_suppression(make_engine, clock):
    src = QueueSignalSource()
    src.extend("g1", [NOISY, NOISY, NOISY, QUIET, QUIET, QUIET, QUIET])
    engine = make_engine(src)
    for _ in range(7):
        run(engine, clock)
    metrics = engine.get_metrics(clock())
    assert metrics["suppression_exits"] == 1
    assert metrics["false_suppressions"] == 1
    assert engine.false_suppression_rate() == 1.0


def test_small_ack_change_is_not_false_suppression(make_engine, clock):
    calm = {"ack_rate": 0.3, "suspected_false_rate": 0.05, "volume": 15, "dedup_ratio": 0.95,
            "escalation_effectiveness": 0.2}
    src = QueueSignalSource()
    src.extend("g1", [NOISY, NOISY, NOISY, calm, calm, calm, calm])
    engine = make_engine(src)
    for _ in range(7):
        run(engine, clock)
    assert engine.get_suppression_state("g1")["state"] == "ACTIVE"
    assert engine.false_suppression_rate() == 0.0


def test_re_spike_in_monitoring_resuppresses(make_engine, clock):
    src = QueueSignalSource()
    src.extend("g1", [NOISY, NOISY, QUIET, NOISY])
    engine = make_engine(src)
    for _ in range(3):
        run(engine, clock)
    assert engine.get_suppression_state("g1")["state"] == "MONITORING"
    result = run(engine, clock)
    assert result.state is SuppressionState.SUPPRESSED
    assert result.reason == "re_spike"
    assert engine.re_noise_rate(clock()) == 1.0


MID = {"ack_rate": 0.5, "suspected_false_rate": 0.3, "volume": 15, "dedup_ratio": 0.7,
       "escalation_effectiveness": 0.2}
EFFECTIVE = {"ack_rate": 0.0, "suspected_false_rate": 1.0, "volume": 15, "dedup_ratio": 0.0,
             "escalation_effectiveness": 0.6}
STATIC = RobustConfig(enabled=False)


@pytest.mark.parametrize("windows, cycles_to_active", [(1, 4), (2, 4), (3, 5)])
def test_exit_cycle_counts_as_first_stable_window(make_engine, clock, windows, cycles_to_active):
    src = QueueSignalSource()
    src.extend("g1", [NOISY, NOISY] + [QUIET] * 4)
    engine = make_engine(src, stable_recovery_windows=windows)
    states = [run(engine, clock).state for _ in range(cycles_to_active)]
    assert states[2] is SuppressionState.MONITORING
    assert states[-2] is SuppressionState.MONITORING
    assert states[-1] is SuppressionState.ACTIVE
    assert engine.recent_transitions()[-1].reason == "stable_recovery"


def test_mid_band_score_resets_quiet_streak(make_engine, clock):
    src = QueueSignalSource()
    src.extend("g1", [NOISY, NOISY, QUIET, QUIET, MID, QUIET, QUIET, QUIET])
    engine = make_engine(src, robust=STATIC)

    states = []
    for _ in range(4):
        states.append(run(engine, clock).state)
    assert engine.get_status("g1").consecutive_stable == 2
    mid = run(engine, clock)
    assert mid.noise_score == pytest.approx(0.48)
    assert mid.state is SuppressionState.MONITORING
    assert engine.get_status("g1").consecutive_stable == 0
    states.append(mid.state)
    for _ in range(3):
        states.append(run(engine, clock).state)
    assert states[-3:] == [
        SuppressionState.MONITORING,
        SuppressionState.MONITORING,
        SuppressionState.ACTIVE,
    ]


@pytest.mark.parametrize("spike", [EFFECTIVE, dict(NOISY, severity="critical")])
def test_blocked_re_spike_stays_monitoring(make_engine, clock, spike):
    src = QueueSignalSource()
    src.extend("g1", [NOISY, NOISY, QUIET, spike])
    engine = make_engine(src, robust=STATIC)
    for _ in range(3):
        run(engine, clock)
    result = run(engine, clock)
    assert result.noise_score >= 0.65
    assert result.state is SuppressionState.MONITORING
    assert not result.transitioned
    assert engine.get_status("g1").consecutive_stable == 0
    assert [t.reason for t in engine.recent_transitions()][-1] == "noise_below_low"


def test_first_reported_severity_sticks(make_engine, clock):
    src = QueueSignalSource()
    src.extend("g1", [dict(NOISY, severity="high"), dict(NOISY, severity="critical")])
    engine = make_engine(src)
    run(engine, clock)
    assert run(engine, clock).state is SuppressionState.SUPPRESSED
    assert engine.get_status("g1").severity_scope == "high"

    engine.set_group_meta("g1", severity_scope="critical")
    assert engine.get_status("g1").severity_scope == "critical"


def test_re_noise_rate_none_without_exits(make_engine, clock):
    engine = make_engine(StaticSignalSource({"g1": NOISY}))
    run(engine, clock)
    assert engine.re_noise_rate(clock()) is None
    assert engine.get_metrics(clock())["re_noise_rate"] is None


def test_failed_fetch_skips_only_that_group(make_engine, clock):
    engine = make_engine(StaticSignalSource({"g1": NOISY}))
    batch = engine.evaluate_window(["g1", "missing"], clock())
    assert batch.skipped == ["missing"]
    assert batch.get("missing").reason == "error"
    assert batch.get("g1").state is SuppressionState.CANDIDATE


def test_slow_source_times_out(make_engine, clock):
    def slow(group_id):
        if group_id == "slow":
            time.sleep(0.5)
        return NOISY

    engine = make_engine(CallableSignalSource(slow), signal_timeout_s=0.05)
    batch = engine.evaluate_window(["slow", "fast"], clock())
    assert batch.get("slow").skipped
    assert batch.get("slow").reason == "timeout"
    assert batch.get("fast").state is SuppressionState.CANDIDATE


def test_duplicate_group_ids_evaluated_once(make_engine, clock):
    engine = make_engine(StaticSignalSource({"g1": NOISY}))
    batch = engine.evaluate_window(["g1", "g1"], clock())
    assert len(batch.results) == 1
    assert batch.get("g1").state is SuppressionState.CANDIDATE


def _stable_history(engine, clock, n=8):
    for _ in range(n):
        assert run(engine, clock).state is SuppressionState.ACTIVE


def test_dynamic_high_requires_consecutive_confirmation(make_engine, clock):
    src = QueueSignalSource()
    src.extend("g1", [STABLE] * 8 + [SPIKE, SPIKE])
    engine = make_engine(src)
    _stable_history(engine, clock)

    first = run(engine, clock)
    assert first.noise_score == pytest.approx(0.72)
    assert first.high == pytest.approx(0.507)
    assert first.state is SuppressionState.ACTIVE
    assert run(engine, clock).state is SuppressionState.CANDIDATE


def test_single_confirmation_promotes_immediately(make_engine, clock):
    src = QueueSignalSource()
    src.extend("g1", [STABLE] * 8 + [SPIKE])
    engine = make_engine(src, robust=RobustConfig(min_consecutive_above_high=1))
    _stable_history(engine, clock)
    assert run(engine, clock).state is SuppressionState.CANDIDATE


def test_transitions_are_published_on_the_bus(clock):
    bus = EventBus()
    seen = []
    bus.subscribe(SUPPRESSION_TRANSITION, lambda _topic, rec: seen.append(rec.new))
    engine = SuppressionEngine(SuppressionConfig(), StaticSignalSource({"g1": NOISY}), events=bus, clock=clock)
    try:
        run(engine, clock)
        run(engine, clock)
    finally:
        engine.close()
    assert seen == [SuppressionState.CANDIDATE, SuppressionState.SUPPRESSED]


def test_apply_weights_swaps_vector(make_engine):
    engine = make_engine(StaticSignalSource())
    w = project_weights({"w1": 0.6, "w2": 0.1, "w3": 0.1, "w4": 0.1, "w5": 0.1}, 0.05, 0.6)
    assert engine.apply_weights(w) is w
    assert engine.weights is w
    sample = engine.metrics.registry.get_sample_value("alertgov_weight", {"component": "w1"})
    assert sample == pytest.approx(0.6)


def test_snapshots_hydrate_new_engine(make_engine, clock):
    engine = make_engine(StaticSignalSource({"g1": NOISY}))
    run(engine, clock)
    run(engine, clock)
    snaps = engine.snapshots()

    fresh = make_engine(StaticSignalSource({"g1": NOISY}))
    restored = fresh.hydrate(snaps + [{"state": "ACTIVE"}])
    assert restored == 1
    assert fresh.get_suppression_state("g1")["state"] == "SUPPRESSED"


def test_reset_all_clears_groups(make_engine, clock):
    engine = make_engine(StaticSignalSource({"g1": NOISY}))
    run(engine, clock)
    engine.reset_all()
    assert engine.group_ids() == []
    assert engine.recent_transitions() == []
    assert engine.get_suppression_state("g1")["state"] == "ACTIVE"
