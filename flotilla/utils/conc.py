"""Concurrent utilities - fan-out barriers for reconciliation phases.

Every phase (create, delete, start, join) fans out one task per instance
and blocks until all of them are done. A failing sibling never cancels
the others: results and failures are collected per name and failures
are raised together once the barrier releases.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterable, Mapping

from loguru import logger

from flotilla.core.exceptions import PhaseError

log = logger.bind(component="conc")


async def join_all[T](
    phase: str,
    tasks: Mapping[str, Awaitable[T]],
) -> dict[str, T]:
    """Run ``tasks`` concurrently and wait for every one of them.

    Args:
        phase: Phase label used in logs and in the aggregated error.
        tasks: Awaitables keyed by instance name.

    Returns:
        Results keyed by instance name.

    Raises:
        PhaseError: After all tasks finished, if at least one raised.

    Example:
        >>> await join_all("start", {n: provider.start(n) for n in names})
    """
    if not tasks:
        return {}

    names = list(tasks)
    outcomes = await asyncio.gather(*(tasks[n] for n in names), return_exceptions=True)

    results: dict[str, T] = {}
    failures: dict[str, BaseException] = {}
    for name, outcome in zip(names, outcomes, strict=True):
        if isinstance(outcome, BaseException):
            if not isinstance(outcome, Exception):
                raise outcome
            log.error("{phase}: {name} failed: {err}", phase=phase, name=name, err=outcome)
            failures[name] = outcome
        else:
            results[name] = outcome

    if failures:
        raise PhaseError(phase, failures)
    return results


async def for_each[I](
    phase: str,
    fn: Callable[[str], Awaitable[I]],
    names: Iterable[str],
) -> dict[str, I]:
    """Apply ``fn`` to every name concurrently behind a single barrier."""
    return await join_all(phase, {name: fn(name) for name in names})


async def staggered[I](
    fn: Callable[[str], Awaitable[I]],
    name: str,
    position: int,
    delay: float,
) -> I:
    """Start ``fn(name)`` only after ``position * delay`` seconds."""
    if position and delay:
        await asyncio.sleep(position * delay)
    return await fn(name)
