"""Backoff policy between retryable upload failures.

Exponential growth (``tenacity.wait_exponential``) clamped to
``[min_backoff, max_backoff]``, raised to the server's suggested delay when a
rate-limit response carried one.  Every retry therefore waits at least
``min_backoff`` seconds.
"""

from __future__ import annotations

from tenacity import RetryCallState, wait_exponential
from tenacity.wait import wait_base

from drivelib.models import UploadConfig


class wait_for_server_or_exponential(wait_base):
    """Wait the larger of the exponential delay and the error's ``retry_after``."""

    def __init__(self, multiplier: float = 1.0, min: float = 1.0, max: float = 64.0) -> None:  # noqa: A002
        self._exponential = wait_exponential(multiplier=multiplier, min=min, max=max)

    def __call__(self, retry_state: RetryCallState) -> float:
        delay = self._exponential(retry_state)
        outcome = retry_state.outcome
        if outcome is not None and outcome.failed:
            suggested = getattr(outcome.exception(), "retry_after", None)
            if suggested is not None:
                delay = max(delay, float(suggested))
        return delay


def backoff_from_config(config: UploadConfig) -> wait_for_server_or_exponential:
    return wait_for_server_or_exponential(
        multiplier=config.backoff_multiplier,
        min=config.min_backoff,
        max=config.max_backoff,
    )
