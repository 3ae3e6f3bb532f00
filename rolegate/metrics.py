"""Prometheus instruments exported on ``/metrics``."""

from __future__ import annotations

from prometheus_client import Counter

LIFECYCLE_ACTIONS = Counter(
    "rolegate_lifecycle_actions_total",
    "Administrative lifecycle operations by action and outcome.",
    ["action", "outcome"],
)

GATE_DECISIONS = Counter(
    "rolegate_gate_decisions_total",
    "Authorization gate decisions by path class and action.",
    ["path_class", "action"],
)

SIGN_INS = Counter(
    "rolegate_sign_ins_total",
    "Sign-in attempts by method and outcome.",
    ["method", "outcome"],
)
