"""Retry strategies for transient node failures.

Provides configurable retry policies for workflow executions:
- Fixed delay
- Exponential backoff (with optional jitter)
- Linear backoff
- Failure classification (transient vs. permanent) for untyped errors

The engine never sleeps on a retry. It parks the execution in
``waiting_retry`` with ``next_retry_at = now + strategy.backoff(retry_count)``
and the retry handler resumes it on a later tick.

Usage:
    strategy = RetryStrategy.exponential(max_retries=3, base_delay=30.0, max_delay=3600.0)
    if strategy.should_retry(retry_count, error):
        next_retry_at = now + timedelta(seconds=strategy.backoff(retry_count))

A workflow can override the default via ``settings["retry"]``, either a
preset name (``"messaging"``) or a dict accepted by ``RetryStrategy.from_dict``.
A dict may list ``retryable_errors`` (exception class names); other errors
then fail the execution without a retry.
"""

import random
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Union


class RetryPolicy(str, Enum):
    """Available retry policies."""
    FIXED = "fixed"
    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    NONE = "none"


TIMEOUT_ERRORS = {"TimeoutError", "ConnectTimeout", "ReadTimeout", "WriteTimeout", "PoolTimeout", "TimeoutException"}
CONNECTION_ERRORS = {"ConnectionError", "ConnectionRefusedError", "ConnectionResetError", "ConnectError", "RemoteProtocolError"}
TRANSIENT_INDICATORS = ["timeout", "timed out", "connection", "temporary", "rate limit", "429", "502", "503", "504"]


def is_transient_error(error: BaseException) -> bool:
    """Classify an untyped collaborator error.

    Errors that carry their own classification (a ``transient`` attribute,
    as ``ChannelError`` does) are trusted. Otherwise timeouts, connection
    errors and rate-limit / gateway markers are transient and everything
    else is permanent.
    """
    flagged = getattr(error, "transient", None)
    if isinstance(flagged, bool):
        return flagged

    error_name = type(error).__name__
    if error_name in TIMEOUT_ERRORS or error_name in CONNECTION_ERRORS:
        return True
    if isinstance(error, (TimeoutError, ConnectionError)):
        return True

    error_str = str(error).lower()
    return any(ind in error_str for ind in TRANSIENT_INDICATORS)


@dataclass
class RetryStrategy:
    """Configurable retry strategy for transient node failures."""
    policy: RetryPolicy
    max_retries: int = 3
    base_delay: float = 30.0
    max_delay: float = 3600.0
    jitter: bool = True
    jitter_range: float = 0.25
    retryable_errors: list[str] = field(default_factory=list)

    @classmethod
    def none(cls) -> 'RetryStrategy':
        """No retries: the first transient failure is final."""
        return cls(policy=RetryPolicy.NONE, max_retries=0)

    @classmethod
    def fixed(cls, max_retries: int = 3, delay: float = 60.0) -> 'RetryStrategy':
        """Fixed delay between retries."""
        return cls(
            policy=RetryPolicy.FIXED,
            max_retries=max_retries,
            base_delay=delay,
            jitter=False,
        )

    @classmethod
    def exponential(
        cls,
        max_retries: int = 3,
        base_delay: float = 30.0,
        max_delay: float = 3600.0,
        jitter: bool = True,
        jitter_range: float = 0.25,
    ) -> 'RetryStrategy':
        """Exponential backoff with optional jitter."""
        return cls(
            policy=RetryPolicy.EXPONENTIAL,
            max_retries=max_retries,
            base_delay=base_delay,
            max_delay=max_delay,
            jitter=jitter,
            jitter_range=jitter_range,
        )

    @classmethod
    def linear(
        cls,
        max_retries: int = 3,
        base_delay: float = 60.0,
        max_delay: float = 1800.0,
    ) -> 'RetryStrategy':
        """Linear backoff: delay = base_delay * attempt_number."""
        return cls(
            policy=RetryPolicy.LINEAR,
            max_retries=max_retries,
            base_delay=base_delay,
            max_delay=max_delay,
            jitter=False,
        )

    @classmethod
    def from_settings(cls, settings) -> 'RetryStrategy':
        """Default exponential strategy from application settings."""
        return cls.exponential(
            max_retries=settings.RETRY_MAX_RETRIES,
            base_delay=settings.RETRY_BASE_DELAY,
            max_delay=settings.RETRY_MAX_DELAY,
            jitter=settings.RETRY_JITTER,
            jitter_range=settings.RETRY_JITTER_RANGE,
        )

    @classmethod
    def from_dict(cls, config: dict) -> 'RetryStrategy':
        """Create strategy from a workflow settings dict."""
        policy = config.get('policy', 'exponential')
        return cls(
            policy=RetryPolicy(policy),
            max_retries=config.get('max_retries', 3),
            base_delay=config.get('base_delay', 30.0),
            max_delay=config.get('max_delay', 3600.0),
            jitter=config.get('jitter', True),
            jitter_range=config.get('jitter_range', 0.25),
            retryable_errors=config.get('retryable_errors', []),
        )

    @classmethod
    def resolve(
        cls,
        override: Union[str, dict, None],
        default: 'RetryStrategy',
    ) -> 'RetryStrategy':
        """Pick the strategy for a workflow: preset name, dict, or the default."""
        if not override:
            return default
        if isinstance(override, str):
            return RETRY_PRESETS.get(override, default)
        return cls.from_dict(override)

    def compute_delay(self, attempt: int) -> float:
        """Compute the delay for a given attempt number (1-based)."""
        if self.policy == RetryPolicy.NONE:
            return 0.0

        if self.policy == RetryPolicy.FIXED:
            delay = self.base_delay
        elif self.policy == RetryPolicy.EXPONENTIAL:
            delay = self.base_delay * (2 ** (attempt - 1))
        elif self.policy == RetryPolicy.LINEAR:
            delay = self.base_delay * attempt
        else:
            delay = self.base_delay

        # Apply max cap
        delay = min(delay, self.max_delay)

        # Apply jitter
        if self.jitter and delay > 0:
            jitter_amount = delay * self.jitter_range
            delay = delay + random.uniform(-jitter_amount, jitter_amount)
            delay = max(0.0, delay)

        return round(delay, 3)

    def backoff(self, retry_count: int) -> float:
        """Delay before retry number ``retry_count`` (``base * 2**retry_count`` when exponential)."""
        return self.compute_delay(retry_count + 1)

    def should_retry(self, retry_count: int, error: Optional[BaseException] = None) -> bool:
        """Whether a failure that brought the count to ``retry_count`` may be retried."""
        if self.policy == RetryPolicy.NONE:
            return False

        if retry_count > self.max_retries:
            return False

        if error is None:
            return True

        if self.retryable_errors:
            return type(error).__name__ in self.retryable_errors

        return is_transient_error(error)


# ─── Preset strategies ───

RETRY_PRESETS: dict[str, RetryStrategy] = {
    'none': RetryStrategy.none(),
    'conservative': RetryStrategy.exponential(max_retries=2, base_delay=300.0, max_delay=7200.0),
    'messaging': RetryStrategy.exponential(max_retries=3, base_delay=30.0, max_delay=3600.0),
    'aggressive': RetryStrategy.exponential(max_retries=6, base_delay=10.0, max_delay=900.0),
    'steady': RetryStrategy.fixed(max_retries=3, delay=120.0),
    'linear': RetryStrategy.linear(max_retries=4, base_delay=60.0, max_delay=600.0),
}
