# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Wall-clock source shared by every instance (epoch milliseconds)."""

import time
from collections.abc import Callable

Clock = Callable[[], int]

MS_PER_SECOND = 1000


def current_time_ms() -> int:
    return time.time_ns() // 1_000_000
