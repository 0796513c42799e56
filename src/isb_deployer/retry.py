# Copyright Amazon.com Inc. or its affiliates.
# SPDX-License-Identifier: MIT-0

"""
Retry and polling primitives shared by the deployer modules.

with_retry retries an operation with exponential backoff and jitter while
the raised error is classified as retryable. poll_until repeats a status
check on a fixed interval until it reports a terminal state or a wall-clock
ceiling is reached. Deadline caps both at the time left in the invocation.
"""

import random
import time
from dataclasses import dataclass

import tenacity

from isb_deployer.errors import DeployerError
from isb_deployer.logger import configure_logger

LOGGER = configure_logger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter_factor: float = 0.1


DEFAULT_RETRY_POLICY = RetryPolicy()
# Lambda hard limit, and the time kept back to report a failure once the
# deadline has passed.
MAX_INVOCATION_SECONDS = 900
DEADLINE_MARGIN_SECONDS = 30


def is_retryable_error(error):
    return isinstance(error, DeployerError) and error.retryable


def calculate_backoff(attempt, policy=DEFAULT_RETRY_POLICY):
    """
    Returns the delay in seconds to sleep before the given attempt
    (0-indexed, so the first retry is attempt 1).
    """
    delay = min(policy.base_delay * 2 ** (attempt - 1), policy.max_delay)
    jitter = delay * policy.jitter_factor * random.uniform(-1, 1)
    return max(0.0, delay + jitter)


class wait_exponential_jitter_policy(tenacity.wait.wait_base):  # pylint: disable=invalid-name
    def __init__(self, policy):
        self.policy = policy

    def __call__(self, retry_state):
        # attempt_number counts the attempts made so far, which is the
        # 0-indexed number of the attempt about to be made.
        return calculate_backoff(retry_state.attempt_number, self.policy)


def _log_before_sleep(retry_state):
    LOGGER.warning(
        "Attempt %d failed with %s, retrying in %.2f seconds",
        retry_state.attempt_number,
        retry_state.outcome.exception(),
        retry_state.next_action.sleep,
    )


def with_retry(operation, policy=DEFAULT_RETRY_POLICY, is_retryable=None,
               sleep=time.sleep):
    """
    Executes operation up to policy.max_attempts times.

    Errors for which is_retryable returns False surface immediately. Once
    the attempts are exhausted the original error is raised, never a
    wrapper.
    """
    retrying = tenacity.Retrying(
        retry=tenacity.retry_if_exception(is_retryable or is_retryable_error),
        stop=tenacity.stop_after_attempt(policy.max_attempts),
        wait=wait_exponential_jitter_policy(policy),
        before_sleep=_log_before_sleep,
        sleep=sleep,
        reraise=True,
    )
    return retrying(operation)


def poll_until(check, is_terminal, interval, ceiling, on_timeout,
               sleep=time.sleep):
    """
    Calls check every interval seconds until is_terminal(result) holds.

    Gives up once ceiling seconds have elapsed or ceiling / interval polls
    were made, raising the exception returned by on_timeout(last_result).
    Exceptions raised by check propagate unchanged.
    """
    max_polls = int(ceiling // interval) + 1 if interval > 0 else 1
    retrying = tenacity.Retrying(
        retry=tenacity.retry_if_result(lambda result: not is_terminal(result)),
        stop=(
            tenacity.stop_after_delay(ceiling)
            | tenacity.stop_after_attempt(max_polls)
        ),
        wait=tenacity.wait_fixed(interval),
        sleep=sleep,
    )
    try:
        return retrying(check)
    except tenacity.RetryError as error:
        raise on_timeout(error.last_attempt.result()) from None


class Deadline:
    """
    The wall-clock budget of one invocation.

    Subprocess timeouts and polling ceilings are capped at the time left,
    so a step that overruns fails with a timeout error while there is
    still time to publish the failure.
    """

    def __init__(self, seconds, clock=time.monotonic):
        self.clock = clock
        self.expires_at = clock() + max(0.0, seconds)

    @classmethod
    def from_context(cls, context, margin=DEADLINE_MARGIN_SECONDS,
                     clock=time.monotonic):
        remaining_ms = context.get_remaining_time_in_millis()
        return cls(remaining_ms / 1000.0 - margin, clock=clock)

    @classmethod
    def default(cls, clock=time.monotonic):
        return cls(MAX_INVOCATION_SECONDS - DEADLINE_MARGIN_SECONDS, clock=clock)

    def remaining(self):
        return max(0.0, self.expires_at - self.clock())

    def cap(self, seconds):
        return min(seconds, self.remaining())


def cap_to_deadline(seconds, deadline=None):
    return deadline.cap(seconds) if deadline is not None else seconds
