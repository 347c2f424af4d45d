"""Bounded readiness polling.

A readiness condition is an async callable returning ``True`` once the
thing it observes is ready (an instance reports Running, a node record
reports Down, a service answers over HTTP). The poller evaluates it a
fixed number of times with a fixed pause in between and never blocks
past that bound.

Example:
    await wait_until(
        lambda: provider_is_running("worker3"),
        what="worker3 to be running",
        attempts=60,
        interval=1.0,
    )
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable

from loguru import logger
from tenacity import (
    RetryCallState,
    RetryError,
    retry,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    wait_fixed,
)

from flotilla.constants import DEFAULT_POLL_ATTEMPTS, DEFAULT_POLL_INTERVAL
from flotilla.core.exceptions import CommandError, ReadinessTimeoutError

type Condition = Callable[[], Awaitable[bool]]

log = logger.bind(component="readiness")


def _is_false(ready: bool) -> bool:
    return not ready


async def wait_until(
    condition: Condition,
    *,
    what: str,
    attempts: int = DEFAULT_POLL_ATTEMPTS,
    interval: float = DEFAULT_POLL_INTERVAL,
) -> None:
    """Wait until ``condition`` returns True.

    Args:
        condition: Async predicate evaluated once per attempt.
        what: Human readable description used in logs and the timeout error.
        attempts: Maximum number of evaluations.
        interval: Seconds to sleep between evaluations.

    Raises:
        ReadinessTimeoutError: The condition never held within ``attempts``.
            A ``CommandError`` raised by the condition counts as "not yet".
    """
    if attempts < 1:
        raise ValueError(f"attempts must be at least 1, got {attempts}")

    def _before_sleep(state: RetryCallState) -> None:
        log.debug(
            "Waiting for {what} (attempt {n}/{total})",
            what=what, n=state.attempt_number, total=attempts,
        )

    @retry(
        stop=stop_after_attempt(attempts),
        wait=wait_fixed(interval),
        retry=retry_if_result(_is_false) | retry_if_exception_type(CommandError),
        before_sleep=_before_sleep,
    )
    async def _poll() -> bool:
        return await condition()

    try:
        await _poll()
    except RetryError as e:
        log.warning("Gave up waiting for {what} after {n} attempts", what=what, n=attempts)
        raise ReadinessTimeoutError(what, attempts) from e

    log.debug("{what}: ready", what=what)
