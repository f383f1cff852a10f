"""Adaptive alert governance: noise suppression, SLA escalation and weight tuning."""

__version__ = "0.4.0"
