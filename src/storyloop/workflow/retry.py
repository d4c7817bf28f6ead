"""Bounded re-execution of a story after a rate-limited failure."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

from storyloop.agent.executor import EXIT_CANCELLED
from storyloop.output.printer import Printer
from storyloop.workflow.ratelimit import RateLimitDetector, RateLimitState

logger = logging.getLogger(__name__)


def run_with_rate_limit_retry(  # noqa: PLR0913
    operation: Callable[[], int],
    *,
    rate_limit_state: RateLimitState,
    detector: RateLimitDetector,
    max_retries: int,
    sleep: Callable[[float], None],
    printer: Printer | None = None,
    cancel_event: threading.Event | None = None,
) -> int:
    """Run ``operation`` and re-run it while its failures come from rate limits.

    ``operation`` returns an exit code. A failed attempt is retried only when
    ``rate_limit_state`` shows a detected rate limit for it; any other failure
    is returned unchanged. At most ``max_retries`` retries follow the first
    attempt, each after waiting for the reported reset time.
    """

    retries = 0
    while True:
        exit_code = operation()
        if exit_code in (0, EXIT_CANCELLED):
            return exit_code
        if not rate_limit_state.is_detected():
            return exit_code
        if retries >= max_retries:
            logger.error("Max retries (%d) exceeded; last exit code %d", max_retries, exit_code)
            return exit_code

        info = rate_limit_state.snapshot()
        wait = detector.wait_time(info).total_seconds()
        retries += 1
        logger.warning(
            "Rate limited (exit code %d); retry %d/%d in %.0fs",
            exit_code,
            retries,
            max_retries,
            wait,
        )
        if printer is not None:
            printer.rate_limit_wait(wait, info.reset_time)
        rate_limit_state.clear()
        sleep(wait)
        if cancel_event is not None and cancel_event.is_set():
            return EXIT_CANCELLED
