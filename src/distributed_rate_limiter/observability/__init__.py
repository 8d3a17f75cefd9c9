# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Observability hooks for the distributed rate limiter."""

from .metrics import (
    ADMISSION_DECISIONS_TOTAL,
    LOCK_ACQUIRE_SECONDS,
    METRIC_PREFIX,
    RECONCILIATIONS_TOTAL,
    AdmissionMetrics,
)

__all__ = [
    "ADMISSION_DECISIONS_TOTAL",
    "LOCK_ACQUIRE_SECONDS",
    "METRIC_PREFIX",
    "RECONCILIATIONS_TOTAL",
    "AdmissionMetrics",
]
