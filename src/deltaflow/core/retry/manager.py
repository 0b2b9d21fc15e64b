"""
Retry manager for executing actions with exponential backoff.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from typing import Any

from deltaflow.core.engine import ExecutionOutcome, Success, classify_exception
from deltaflow.core.retry.policy import DEFAULT_RETRY_POLICY, RetryPolicy, RetryState
from deltaflow.utils.logging import get_logger

logger = get_logger("deltaflow.retry.manager")


class RetryManager:
    """
    Runs one action's attempts until success, a permanent failure, or the
    policy gives up.

    An attempt is an async callable taking the 0-indexed attempt number and
    returning an ExecutionOutcome. Exceptions it raises are classified with
    ``classify_exception`` using the policy's ``retryable_exceptions``.

    Examples:
        >>> manager = RetryManager()
        >>> async def attempt(n):
        ...     return await engine.execute(request)
        >>> outcome, state = await manager.execute(attempt, policy=FAST_RETRY_POLICY, action_name="staged")
    """

    def __init__(self, sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        """
        Initialize RetryManager.

        Args:
            sleep: Coroutine used to wait between attempts
        """
        self._sleep = sleep

    async def execute(
        self,
        attempt_fn: Callable[[int], Awaitable[ExecutionOutcome]],
        *,
        policy: RetryPolicy | None = None,
        action_name: str = "action",
        on_retry: Callable[[int], Any] | None = None,
    ) -> tuple[ExecutionOutcome, RetryState]:
        """
        Execute attempts with retry logic.

        Args:
            attempt_fn: Async callable running one attempt
            policy: Retry policy (defaults to DEFAULT_RETRY_POLICY)
            action_name: Name used in log messages
            on_retry: Called (and awaited if async) with the next attempt
                number before each retry

        Returns:
            Final outcome and the retry history
        """
        policy = policy or DEFAULT_RETRY_POLICY
        state = RetryState(action_name=action_name)

        for attempt in range(policy.max_attempts + 1):
            state.attempt = attempt
            logger.debug(f"Executing {action_name} (attempt {attempt + 1}/{policy.max_attempts + 1})")

            try:
                outcome = await attempt_fn(attempt)
            except Exception as e:
                outcome = classify_exception(e, policy.retryable_exceptions)

            if isinstance(outcome, Success):
                state.record_attempt()
                state.succeeded = True
                if attempt > 0:
                    logger.info(f"{action_name} succeeded after {attempt + 1} attempts")
                return outcome, state

            state.record_attempt(failure=outcome.message, kind=str(outcome.kind))

            if not policy.should_retry(outcome.is_transient, attempt, outcome.message):
                logger.error(f"{action_name} failed after {attempt + 1} attempt(s) ({outcome.kind}): {outcome.message}")
                return outcome, state

            delay = policy.get_delay(attempt)
            state.record_delay(delay)
            logger.warning(f"{action_name} attempt {attempt + 1} failed: {outcome.message}. Retrying in {delay:.2f}s...")

            if on_retry is not None:
                result = on_retry(attempt + 1)
                if inspect.isawaitable(result):
                    await result

            await self._sleep(delay)

        # Should not reach here, but just in case
        raise RuntimeError(f"Retry logic error for {action_name}")
