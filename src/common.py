"""Common utilities and types for infrastructure automation."""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from config import RetryPolicy
from errors import OperationCanceled, ProviderError

logger = logging.getLogger(__name__)


@dataclass
class CallResult:
    """Result of a provider call made through call_with_retry()."""
    value: Any = None
    attempts: int = 1
    duration: float = 0.0
    errors: list[str] = field(default_factory=list)


def call_with_retry(
    func: Callable[[], Any],
    policy: RetryPolicy,
    description: str,
    cancel_event: Optional[threading.Event] = None,
) -> CallResult:
    """Call func, retrying transient ProviderErrors with exponential backoff.

    Non-transient errors propagate immediately. The last transient error
    propagates once policy.attempts is exhausted. Setting cancel_event
    interrupts the backoff wait and raises OperationCanceled.
    """
    start = time.time()
    result = CallResult()
    for attempt in range(1, policy.attempts + 1):
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCanceled(f"{description} canceled")
        result.attempts = attempt
        try:
            result.value = func()
            result.duration = time.time() - start
            return result
        except ProviderError as e:
            result.errors.append(str(e))
            e.attempts = attempt
            if not e.transient or attempt == policy.attempts:
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                f"{description} failed (attempt {attempt}/{policy.attempts}): {e}; "
                f"retrying in {delay:.1f}s"
            )
            if cancel_event is not None:
                if cancel_event.wait(delay):
                    raise OperationCanceled(f"{description} canceled during retry backoff")
            else:
                time.sleep(delay)
    # policy.attempts >= 1, so the loop always returns or raises
    raise AssertionError("unreachable")
