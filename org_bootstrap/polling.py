# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: MIT-0

"""
Polling Module

Bounded wait-for-state helper used for account creation, account
activation and table removal. Every loop has a fixed attempt limit and a
typed terminal result; nothing falls through silently.
"""

import logging
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Tuple

from .exceptions import WaitTimeoutError

logger = logging.getLogger(__name__)

INITIAL_BACKOFF = 2.0
MAX_BACKOFF = 30.0


class PollStatus(str, Enum):
    """Result of a single check, and terminal result of a poll"""

    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    TIMED_OUT = "TIMED_OUT"


@dataclass
class PollResult:
    status: PollStatus
    value: Any = None
    attempts: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status == PollStatus.SUCCESS

    def raise_on_timeout(self, description: str) -> "PollResult":
        """Raise WaitTimeoutError when the poll ran out of attempts."""
        if self.status == PollStatus.TIMED_OUT:
            raise WaitTimeoutError(
                f"Timed out waiting for {description} after {self.attempts} attempts"
            )
        return self


def calculate_backoff(
    attempt: int,
    initial_backoff: float = INITIAL_BACKOFF,
    max_backoff: float = MAX_BACKOFF,
) -> float:
    """
    Calculate exponential backoff with jitter

    Args:
        attempt: The current retry attempt number (0-based)
        initial_backoff: Starting backoff in seconds
        max_backoff: Maximum backoff cap in seconds

    Returns:
        Backoff time in seconds
    """
    backoff = min(max_backoff, initial_backoff * (2**attempt))
    jitter = random.uniform(0, 0.1 * backoff)  # 10% jitter
    return backoff + jitter


def poll_until(
    check: Callable[[], Tuple[PollStatus, Any]],
    max_attempts: int,
    interval: float,
    description: str = "resource",
    sleep: Callable[[float], None] = time.sleep,
    backoff: bool = False,
) -> PollResult:
    """
    Call check until it reports a terminal status or attempts run out

    Args:
        check: Callable returning (status, value); PENDING keeps polling
        max_attempts: Maximum number of checks
        interval: Seconds between checks (initial backoff when backoff=True)
        description: Used in log messages
        sleep: Sleep function, replaceable in tests
        backoff: Use exponential backoff instead of a fixed interval

    Returns:
        PollResult with SUCCESS, FAILED or TIMED_OUT
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    value = None
    for attempt in range(1, max_attempts + 1):
        status, value = check()
        if status in (PollStatus.SUCCESS, PollStatus.FAILED):
            logger.debug(f"{description}: {status.value} after {attempt} attempt(s)")
            return PollResult(status=status, value=value, attempts=attempt)

        logger.debug(f"Waiting for {description} ({attempt}/{max_attempts})")
        if attempt < max_attempts:
            if backoff:
                sleep(calculate_backoff(attempt - 1, interval))
            else:
                sleep(interval)

    logger.warning(f"Gave up waiting for {description} after {max_attempts} attempts")
    return PollResult(status=PollStatus.TIMED_OUT, value=value, attempts=max_attempts)
