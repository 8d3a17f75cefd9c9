# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Prometheus metrics for admission decisions.

Label Best Practices:
    Labels are limited to categorical values (service, limiter, algorithm,
    decision, outcome). User ids are never used as labels: they are
    unbounded and would explode label cardinality.

Usage:
    >>> from prometheus_client import CollectorRegistry
    >>> metrics = AdmissionMetrics(registry=CollectorRegistry())
    >>> controller = AdmissionController(redis, redlock, metrics=metrics)
"""

from __future__ import annotations

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Histogram

METRIC_PREFIX = "distributed_rl"

ADMISSION_DECISIONS_TOTAL = f"{METRIC_PREFIX}_admission_decisions_total"
"""Admission checks by outcome (allowed, denied, unavailable)."""

LOCK_ACQUIRE_SECONDS = f"{METRIC_PREFIX}_lock_acquire_seconds"
"""Time spent acquiring the per-user lock, by outcome."""

RECONCILIATIONS_TOTAL = f"{METRIC_PREFIX}_reconciliations_total"
"""Token usage reconciliations by result (released, charged, noop, failed)."""

LOCK_LATENCY_BUCKETS = (0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0)


class AdmissionMetrics:
    """
    Counters and histograms registered on one Prometheus registry.

    Pass a dedicated CollectorRegistry in tests or when several controllers
    live in one process; metric names may only be registered once per registry.
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry if registry is not None else REGISTRY

        self.decisions = Counter(
            ADMISSION_DECISIONS_TOTAL,
            "Admission decisions made by the rate limiter",
            ["service", "limiter", "algorithm", "decision"],
            registry=self.registry,
        )
        self.lock_acquire = Histogram(
            LOCK_ACQUIRE_SECONDS,
            "Time spent acquiring the distributed lock",
            ["outcome"],
            buckets=LOCK_LATENCY_BUCKETS,
            registry=self.registry,
        )
        self.reconciliations = Counter(
            RECONCILIATIONS_TOTAL,
            "Token usage reconciliations",
            ["service", "limiter", "result"],
            registry=self.registry,
        )

    def record_decision(
        self, service: str, limiter: str, algorithm: str, decision: str
    ) -> None:
        self.decisions.labels(
            service=service, limiter=limiter, algorithm=algorithm, decision=decision
        ).inc()

    def observe_lock_acquire(self, outcome: str, seconds: float) -> None:
        self.lock_acquire.labels(outcome=outcome).observe(seconds)

    def record_reconciliation(self, service: str, limiter: str, result: str) -> None:
        self.reconciliations.labels(service=service, limiter=limiter, result=result).inc()


__all__ = [
    "ADMISSION_DECISIONS_TOTAL",
    "LOCK_ACQUIRE_SECONDS",
    "METRIC_PREFIX",
    "RECONCILIATIONS_TOTAL",
    "AdmissionMetrics",
]
