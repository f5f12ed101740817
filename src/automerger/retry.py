from __future__ import annotations

from collections.abc import Callable
import logging
from threading import Event
import time

from automerger.models import RetryOutcome
from automerger.observability import log_event


LOGGER = logging.getLogger("automerger.retry")


class MergeCancelledError(RuntimeError):
    """The stop signal fired before a remote call or while a retry loop was waiting."""


def run_with_retries(
    max_attempts: int,
    sleep_seconds: float,
    immediate_attempt: Callable[[], RetryOutcome],
    retry_attempt: Callable[[], RetryOutcome],
    on_exhausted: Callable[[], None],
    *,
    stop_event: Event | None = None,
    logger: logging.Logger = LOGGER,
) -> bool:
    """Run ``immediate_attempt``, then ``retry_attempt`` after each sleep, up to ``max_attempts``.

    ``success`` ends the loop with True and ``failure`` ends it with False. Only ``retry``
    keeps going; when every attempt says ``retry`` the exhaustion callback fires once.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    outcome = immediate_attempt()
    attempt = 1
    while True:
        if outcome == "success":
            return True
        if outcome == "failure":
            return False
        if attempt >= max_attempts:
            break
        _sleep(sleep_seconds, stop_event=stop_event)
        attempt += 1
        log_event(logger, "retry_attempt", attempt=attempt, max_attempts=max_attempts)
        outcome = retry_attempt()

    on_exhausted()
    return False


def raise_if_stopped(stop_event: Event | None, *, before: str) -> None:
    if stop_event is not None and stop_event.is_set():
        raise MergeCancelledError(f"Stop requested before {before}")


def _sleep(seconds: float, *, stop_event: Event | None) -> None:
    if stop_event is None:
        time.sleep(seconds)
        return
    if stop_event.is_set() or stop_event.wait(seconds):
        raise MergeCancelledError("Stop requested while waiting to retry")
