"""
Loan Harness - Settling Waits

Between steps the external systems need time to catch up. A wait has a
ceiling (the longest the harness is willing to give a step) and an
optional readiness probe:

  - with a probe: poll until it returns True; SettleTimeout once the
    ceiling passes
  - without a probe: wait out the ceiling

Every wait is interruptible through the run's cancel event.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable

logger = logging.getLogger("loan_harness.settle")

Probe = Callable[[], bool]


class SettleTimeout(Exception):
    """A probe did not report ready within its ceiling."""


class RunCancelled(Exception):
    """The run's cancel event was set."""


class Settler:

    def __init__(
        self,
        cancel_event: threading.Event | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.cancel_event = cancel_event or threading.Event()
        self._clock = clock

    def check_cancelled(self):
        if self.cancel_event.is_set():
            raise RunCancelled("run cancelled")

    def wait(
        self,
        label: str,
        ceiling: float,
        probe: Probe | None = None,
        interval: float = 0.5,
    ) -> float:
        """Block until settled. Returns the seconds waited."""
        self.check_cancelled()
        start = self._clock()
        deadline = start + max(ceiling, 0.0)

        if probe is None:
            logger.info("Waiting %.1fs for %s", ceiling, label)
            if ceiling > 0 and self.cancel_event.wait(ceiling):
                raise RunCancelled("run cancelled")
            return self._clock() - start

        logger.info("Waiting up to %.1fs for %s", ceiling, label)
        while True:
            if probe():
                waited = self._clock() - start
                logger.debug("%s settled after %.2fs", label, waited)
                return waited
            remaining = deadline - self._clock()
            if remaining <= 0:
                raise SettleTimeout(f"{label} not ready after {ceiling:.1f}s")
            if self.cancel_event.wait(min(interval, remaining)):
                raise RunCancelled("run cancelled")
