"""
Retry back-off policies for the connection supervisor.

The wait computation is a pure function so it can be tested without any I/O.
"""
import logging
import random
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)


class RetryError(Exception):
    """
    A failure that is expected in normal operation and should be retried.

    Raised by discovery, registration and transport code. Only the
    connection supervisor decides whether to back off or give up.
    """
    pass


class BackOffPolicy(Enum):
    """How the wait between connection attempts grows."""
    NONE = "none"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"

    @classmethod
    def parse(cls, value: str) -> "BackOffPolicy":
        """
        Parse a policy name, case-insensitively.

        Raises:
            ValueError: If the name is not a known policy
        """
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            valid = ", ".join(p.value for p in cls)
            raise ValueError(f"Invalid back-off policy: {value}. Must be one of: {valid}")


def compute_wait(
    policy: BackOffPolicy,
    attempt: int,
    interval: int,
    max_interval: int,
    jitter: bool = False,
    rng: Optional[random.Random] = None
) -> int:
    """
    Compute how many seconds to wait before the next attempt.

    Args:
        policy: Back-off policy
        attempt: Zero-based number of attempts made so far
        interval: Base interval in seconds
        max_interval: Upper bound for the wait in seconds
        jitter: Replace the wait with a uniform random value in [0, wait]
        rng: Random source for jitter (default: module-level random)

    Returns:
        Wait time in seconds, always within [0, max_interval]

    Example:
        >>> compute_wait(BackOffPolicy.EXPONENTIAL, 3, 10, 100)
        80
    """
    if attempt < 0:
        raise ValueError(f"attempt must be >= 0, got {attempt}")

    if policy is BackOffPolicy.NONE:
        wait = interval
    elif policy is BackOffPolicy.LINEAR:
        wait = interval * (attempt + 1)
    elif policy is BackOffPolicy.EXPONENTIAL:
        wait = interval * (2 ** attempt)
    else:
        raise ValueError(f"Unknown back-off policy: {policy}")

    wait = max(0, min(max_interval, wait))

    if jitter and wait > 0:
        rng = rng or random
        wait = rng.randint(0, wait)

    return wait
