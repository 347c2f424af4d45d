from collections.abc import Sequence
from typing import Protocol, runtime_checkable

from flotilla.model import PowerState


@runtime_checkable
class InstanceProvider(Protocol):
    """Interface to whatever creates and runs the cluster's virtual machines.

    Implementations hold only immutable config (binary path, driver,
    options). Instance state is never cached: every call asks the
    provider, because addresses and power state change behind our back.
    """

    async def create(self, name: str) -> None:
        """Create and boot a new instance called ``name``.

        Parameters
        ----------
        name
            Instance name, following the cluster naming convention.
        """
        ...

    async def destroy(self, names: Sequence[str]) -> None:
        """Destroy all ``names`` in a single batch call."""
        ...

    async def start(self, name: str) -> None:
        ...

    async def stop(self, name: str) -> None:
        ...

    async def list(
        self, pattern: str, state: PowerState | None = None,
    ) -> Sequence[tuple[str, PowerState]]:
        """List provisioned instances whose name matches ``pattern``.

        Parameters
        ----------
        pattern
            Anchored regular expression applied to instance names.
        state
            Only return instances in this power state.

        Returns
        -------
        Sequence[tuple[str, PowerState]]
            ``(name, power state)`` pairs, sorted by name.
        """
        ...

    async def state(self, name: str) -> PowerState:
        """Current power state; ``ABSENT`` if the instance does not exist."""
        ...

    async def address(self, name: str) -> str:
        """Current network address. Must be re-read after every start."""
        ...

    async def regenerate_credentials(self, name: str) -> None:
        """Regenerate access certificates (required after an address change)."""
        ...

    async def exec(self, name: str, command: str) -> str:
        """Run a shell command on the instance and return its stdout.

        Raises ``CommandError`` on a non-zero exit.
        """
        ...

    def env_hint(self, name: str) -> str:
        """Shell snippet that points a local docker client at ``name``."""
        ...
