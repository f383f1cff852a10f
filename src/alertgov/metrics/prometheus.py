"""
Prometheus metrics for the governance engine.

Each service owns one ``GovernanceMetrics`` bound to its own registry, so
several engines (tests, simulations) can live in one process.
"""
from __future__ import annotations

from typing import Mapping, Optional

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

__all__ = ["GovernanceMetrics", "CONTENT_TYPE_LATEST"]


class GovernanceMetrics:
    def __init__(self, registry: Optional[CollectorRegistry] = None) -> None:
        self.registry = registry or CollectorRegistry()
        r = self.registry

        # Suppression
        self.transitions_total = Counter(
            "alertgov_suppression_transitions_total",
            "Suppression state transitions",
            ["from_state", "to_state"],
            registry=r,
        )
        self.groups_skipped_total = Counter(
            "alertgov_suppression_groups_skipped_total",
            "Groups skipped because signals could not be fetched",
            ["reason"],
            registry=r,
        )
        self.false_suppressions_total = Counter(
            "alertgov_false_suppressions_total",
            "Suppressions judged false after the post-exit window",
            registry=r,
        )
        self.evaluation_seconds = Histogram(
            "alertgov_suppression_evaluation_seconds",
            "Duration of one suppression batch evaluation",
            buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 5.0],
            registry=r,
        )
        self.noise_score = Histogram(
            "alertgov_noise_score",
            "Noise score distribution",
            buckets=[0.0, 0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8, 0.9, 1.0],
            registry=r,
        )
        self.groups_by_state = Gauge(
            "alertgov_suppression_groups",
            "Groups currently in each suppression state",
            ["state"],
            registry=r,
        )

        # Weight tuning
        self.weight = Gauge(
            "alertgov_weight",
            "Current noise-score weight per component",
            ["component"],
            registry=r,
        )
        self.controller_decisions_total = Counter(
            "alertgov_controller_decisions_total",
            "Weight controller decisions",
            ["reason"],
            registry=r,
        )

        # Escalation and acknowledgement
        self.escalations_total = Counter(
            "alertgov_escalations_total",
            "Escalations created or repeated",
            ["severity", "reason"],
            registry=r,
        )
        self.acks_total = Counter(
            "alertgov_acknowledgements_total",
            "Acknowledgement requests",
            ["outcome"],
            registry=r,
        )
        self.ack_latency_seconds = Histogram(
            "alertgov_ack_latency_seconds",
            "Time from alert to first acknowledgement",
            buckets=[10, 30, 60, 120, 300, 600, 900, 1800, 3600, 7200],
            registry=r,
        )

        # HTTP
        self.requests_total = Counter(
            "alertgov_requests_total", "Total API requests", ["path"], registry=r
        )
        self.http_request_duration_seconds = Histogram(
            "alertgov_http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["path"],
            registry=r,
        )

        # Infrastructure
        self.persistence_failures_total = Counter(
            "alertgov_persistence_failures_total",
            "Failed persistence gateway calls",
            ["action"],
            registry=r,
        )
        self.persistence_timeouts_total = Counter(
            "alertgov_persistence_timeouts_total",
            "Persistence gateway calls that did not finish within the timeout",
            ["action"],
            registry=r,
        )
        self.persistence_dropped_total = Counter(
            "alertgov_persistence_dropped_total",
            "Persistence calls dropped because the write backlog was full",
            ["action"],
            registry=r,
        )
        self.history_pruned_total = Counter(
            "alertgov_history_pruned_total",
            "Rows deleted by retention pruning",
            ["table"],
            registry=r,
        )
        self.ticks_dropped_total = Counter(
            "alertgov_ticks_dropped_total",
            "Scheduler ticks dropped because the previous run was still in flight",
            ["task"],
            registry=r,
        )

    def set_weights(self, weights: Mapping[str, float]) -> None:
        for component, value in weights.items():
            self.weight.labels(component=component).set(value)

    def set_state_counts(self, counts: Mapping[str, int]) -> None:
        for state, count in counts.items():
            self.groups_by_state.labels(state=state).set(count)

    def render(self) -> bytes:
        return generate_latest(self.registry)

