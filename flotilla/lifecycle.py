"""Instance lifecycle driver: create, delete, start and stop instances.

Every operation fans out one task per instance behind a barrier
(``flotilla.utils.conc``) and is safe to re-run: creating what exists,
deleting what is gone or starting what runs is never attempted because
the inputs always come from a fresh provider listing.
"""

from __future__ import annotations

from collections.abc import Collection, Sequence

from loguru import logger

from flotilla.config import TimingConfig
from flotilla.core.exceptions import PhaseError
from flotilla.membership import Membership
from flotilla.model import Naming, PowerState
from flotilla.providers.provider import InstanceProvider
from flotilla.readiness import wait_until
from flotilla.topology import creation_order, teardown_order
from flotilla.utils.conc import for_each, join_all, staggered

log = logger.bind(component="lifecycle")


class FirstCreationGuard:
    """One-time switch: the first creation of the process runs alone.

    Cold providers build shared artifacts (base images, ISO caches) during
    their first creation and break when several creations race for them.
    Once one creation succeeded in this process the guard opens and later
    creations run concurrently.
    """

    __slots__ = ("_done",)

    def __init__(self) -> None:
        self._done = False

    @property
    def done(self) -> bool:
        return self._done

    def mark(self) -> None:
        self._done = True


_process_guard = FirstCreationGuard()


class LifecycleDriver:

    def __init__(
        self,
        provider: InstanceProvider,
        membership: Membership,
        naming: Naming,
        timing: TimingConfig | None = None,
        guard: FirstCreationGuard | None = None,
    ) -> None:
        self._provider = provider
        self._membership = membership
        self._naming = naming
        self._timing = timing or TimingConfig()
        self._guard = guard or _process_guard

    # -------------------------------------------------------------------------
    # Create
    # -------------------------------------------------------------------------

    async def create_missing(self, names: Collection[str]) -> list[str]:
        """Create every instance in ``names``, leader first.

        Until the first successful creation of the process, creations run
        one at a time. The rest run concurrently, each started
        ``stagger_delay`` seconds after the previous one. Failures do not
        stop siblings; they are raised together at the end.

        Returns:
            Names of the created instances.

        Raises:
            PhaseError: If any creation failed.
        """
        pending = creation_order(names, self._naming)
        if not pending:
            return []

        log.info("Creating {n} instance(s): {names}", n=len(pending), names=", ".join(pending))
        created: list[str] = []
        failures: dict[str, BaseException] = {}

        while pending and not self._guard.done:
            name = pending.pop(0)
            try:
                await self._provider.create(name)
            except Exception as e:
                log.error("create: {name} failed: {err}", name=name, err=e)
                failures[name] = e
            else:
                created.append(name)
                self._guard.mark()

        delay = self._timing.stagger_delay
        try:
            results = await join_all(
                "create",
                {
                    name: staggered(self._provider.create, name, position, delay)
                    for position, name in enumerate(pending)
                },
            )
            created.extend(results.keys())
        except PhaseError as e:
            failures.update(e.failures)
            created.extend(n for n in pending if n not in e.failures)

        if failures:
            raise PhaseError("create", failures)
        return created

    # -------------------------------------------------------------------------
    # Delete
    # -------------------------------------------------------------------------

    async def delete_extra(self, names: Collection[str], graceful: bool = True) -> list[str]:
        """Destroy every instance in ``names`` in one batch call.

        With ``graceful`` each instance first leaves the swarm: all
        non-leaders concurrently, then the leader. Forced deletion skips
        membership entirely and is meant for discarding the whole cluster.

        Returns:
            Names of the destroyed instances, in teardown order.
        """
        ordered = teardown_order(names, self._naming)
        if not ordered:
            return []

        if graceful:
            leader = self._naming.leader
            others = [n for n in ordered if n != leader]
            await for_each("leave", self._membership.leave, others)
            if leader in ordered:
                await self._membership.leave(leader)
        else:
            log.info("Forced deletion: skipping swarm leave for {names}", names=", ".join(ordered))

        await self._provider.destroy(ordered)
        log.info("Destroyed {n} instance(s)", n=len(ordered))
        return ordered

    # -------------------------------------------------------------------------
    # Start / stop
    # -------------------------------------------------------------------------

    async def start_stopped(self) -> list[str]:
        """Start every stopped cluster instance, the leader before the others.

        Each start waits for the instance to report Running and then
        regenerates its certificates, since the address changed.

        Returns:
            Names of the started instances.
        """
        listing = await self._provider.list(self._naming.pattern(), PowerState.STOPPED)
        stopped = creation_order(names_of(listing), self._naming)
        if not stopped:
            return []

        log.info("Starting {n} stopped instance(s): {names}", n=len(stopped), names=", ".join(stopped))
        leader = self._naming.leader
        failures: dict[str, BaseException] = {}
        if leader in stopped:
            try:
                await join_all("start", {leader: self._start_one(leader)})
            except PhaseError as e:
                failures.update(e.failures)

        try:
            await for_each("start", self._start_one, [n for n in stopped if n != leader])
        except PhaseError as e:
            failures.update(e.failures)

        if failures:
            raise PhaseError("start", failures)
        return stopped

    async def _start_one(self, name: str) -> None:
        await self._provider.start(name)

        async def _running() -> bool:
            return await self._provider.state(name) is PowerState.RUNNING

        await wait_until(
            _running,
            what=f"{name} to be running",
            attempts=self._timing.poll_attempts,
            interval=self._timing.poll_interval,
        )
        await self._provider.regenerate_credentials(name)

    async def stop_all(self) -> list[str]:
        """Take every running instance out of the swarm and power it off.

        Non-leaders go concurrently; the leader leaves and stops last.
        Instances stay provisioned and come back with ``start``.

        Returns:
            Names of the stopped instances, leader last.
        """
        listing = await self._provider.list(self._naming.pattern(), PowerState.RUNNING)
        running = teardown_order(names_of(listing), self._naming)
        if not running:
            return []

        leader = self._naming.leader
        others = [n for n in running if n != leader]
        await for_each("stop", self._leave_and_stop, others)
        if leader in running:
            await self._leave_and_stop(leader)
        return others + ([leader] if leader in running else [])

    async def _leave_and_stop(self, name: str) -> None:
        await self._membership.leave(name)
        await self._provider.stop(name)


def names_of(listing: Sequence[tuple[str, PowerState]]) -> list[str]:
    return [name for name, _ in listing]
