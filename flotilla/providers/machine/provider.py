from __future__ import annotations

import re
from collections.abc import Sequence
from pathlib import Path

from loguru import logger

from flotilla.core.exceptions import CommandError, ProvisioningError
from flotilla.infra.ssh import SSHTransport
from flotilla.model import PowerState
from flotilla.providers.machine.cli import run, run_json
from flotilla.providers.machine.config import DockerMachine

log = logger.bind(component="machine")

_LS_FORMAT = "{{.Name}}\t{{.State}}"
_MISSING_MARKERS = ("does not exist", "not found")
_LOOPBACK_SSH_DRIVERS = frozenset({"virtualbox"})


def _power_state(raw: str) -> PowerState:
    # docker-machine also reports Starting/Stopping/Saved/Paused/Error/Timeout;
    # anything that is not Running needs a start.
    return PowerState.RUNNING if raw.strip() == "Running" else PowerState.STOPPED


def _is_missing(err: CommandError) -> bool:
    message = err.stderr.lower()
    return any(marker in message for marker in _MISSING_MARKERS)


class DockerMachineProvider:

    def __init__(self, config: DockerMachine) -> None:
        self._config = config
        self._bin = config.binary

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def create(self, name: str) -> None:
        cmd: list[str] = ["create", "--driver", self._config.driver]
        for key, value in self._config.options.items():
            cmd.extend([f"--{key}", str(value)])
        cmd.append(name)

        log.info("Creating machine {name} ({driver})", name=name, driver=self._config.driver)
        try:
            await run(self._bin, *cmd)
        except CommandError as e:
            raise ProvisioningError(f"Failed to create {name}: {e.stderr.strip()}") from e
        log.info("Machine {name} created", name=name)

    async def destroy(self, names: Sequence[str]) -> None:
        if not names:
            return
        log.info("Removing machines {names}", names=", ".join(names))
        try:
            await run(self._bin, "rm", "-y", *names)
        except CommandError as e:
            raise ProvisioningError(f"Failed to remove {', '.join(names)}: {e.stderr.strip()}") from e

    async def start(self, name: str) -> None:
        log.info("Starting machine {name}", name=name)
        try:
            await run(self._bin, "start", name)
        except CommandError as e:
            raise ProvisioningError(f"Failed to start {name}: {e.stderr.strip()}") from e

    async def stop(self, name: str) -> None:
        log.info("Stopping machine {name}", name=name)
        try:
            await run(self._bin, "stop", name)
        except CommandError as e:
            raise ProvisioningError(f"Failed to stop {name}: {e.stderr.strip()}") from e

    # -------------------------------------------------------------------------
    # Discovery
    # -------------------------------------------------------------------------

    async def list(
        self, pattern: str, state: PowerState | None = None,
    ) -> Sequence[tuple[str, PowerState]]:
        raw = await run(self._bin, "ls", "--format", _LS_FORMAT)
        regex = re.compile(pattern)

        machines: list[tuple[str, PowerState]] = []
        for line in raw.splitlines():
            if not line.strip():
                continue
            name, _, raw_state = line.partition("\t")
            name = name.strip()
            if not regex.match(name):
                continue
            power = _power_state(raw_state)
            if state is None or power is state:
                machines.append((name, power))
        return sorted(machines)

    async def state(self, name: str) -> PowerState:
        try:
            raw = await run(self._bin, "status", name)
        except CommandError as e:
            if _is_missing(e):
                return PowerState.ABSENT
            raise
        return _power_state(raw)

    async def address(self, name: str) -> str:
        return await run(self._bin, "ip", name)

    async def regenerate_credentials(self, name: str) -> None:
        log.info("Regenerating certificates for {name}", name=name)
        await run(self._bin, "regenerate-certs", "--force", name)

    def env_hint(self, name: str) -> str:
        return f'eval "$({self._bin} env {name})"'

    # -------------------------------------------------------------------------
    # Remote execution
    # -------------------------------------------------------------------------

    async def exec(self, name: str, command: str) -> str:
        if self._config.ssh == "machine":
            return await run(self._bin, "ssh", name, command)

        async with await self._transport(name) as transport:
            return await transport.run(command)

    async def _transport(self, name: str) -> SSHTransport:
        info = await run_json(self._bin, "inspect", name)
        if not isinstance(info, dict):
            raise CommandError(f"{self._bin} inspect {name}", 0, "unexpected inspect output")

        driver = info.get("Driver", {})
        key_path = driver.get("SSHKeyPath") or str(
            Path(driver.get("StorePath", "")) / "machines" / name / "id_rsa"
        )
        port = int(driver.get("SSHPort") or 22)
        # virtualbox forwards SSHPort on the host's loopback only
        if info.get("DriverName") in _LOOPBACK_SSH_DRIVERS:
            host = "127.0.0.1"
        else:
            host = await self.address(name)
        return SSHTransport(
            host=host,
            user=driver.get("SSHUser") or "docker",
            key_path=key_path,
            port=port,
        )
