"""TOML-based cluster and provider configuration.

Loads ~/.flotilla/defaults.toml (global) and flotilla.toml (project),
merges them, and resolves the result into frozen settings objects.

Example flotilla.toml:

    [cluster]
    manager_prefix = "manager"
    worker_prefix = "worker"

    [provider]
    type = "docker-machine"
    driver = "virtualbox"
    options = { virtualbox-memory = "2048" }

    [timing]
    settle_delay = 15
"""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from flotilla.constants import (
    DEFAULT_DOCKER_COMMAND,
    DEFAULT_MANAGER_PREFIX,
    DEFAULT_POLL_ATTEMPTS,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_SETTLE_DELAY,
    DEFAULT_STAGGER_DELAY,
    DEFAULT_VISUALIZER_IMAGE,
    DEFAULT_VISUALIZER_PORT,
    DEFAULT_WORKER_PREFIX,
    GLOBAL_CONFIG_PATH,
    PROJECT_CONFIG_NAME,
    SWARM_PORT,
)
from flotilla.core.exceptions import ConfigurationError
from flotilla.model import Naming
from flotilla.providers.machine.config import DockerMachine

type RawConfig = dict[str, Any]
type ProviderConfig = DockerMachine


@dataclass(frozen=True, slots=True)
class TimingConfig:
    """Delays and polling bounds used by the reconciliation engine.

    Attributes:
        stagger_delay: Seconds between two concurrent instance creations.
        settle_delay: Seconds to wait after draining a node before it leaves.
            Swarm exposes no drain-complete signal, so this is a fixed,
            best-effort approximation.
        poll_attempts: Attempts for every readiness wait.
        poll_interval: Seconds between two readiness attempts.
    """

    stagger_delay: float = DEFAULT_STAGGER_DELAY
    settle_delay: float = DEFAULT_SETTLE_DELAY
    poll_attempts: int = DEFAULT_POLL_ATTEMPTS
    poll_interval: float = DEFAULT_POLL_INTERVAL

    def __post_init__(self) -> None:
        if self.poll_attempts < 1:
            raise ConfigurationError(f"poll_attempts must be at least 1, got {self.poll_attempts}")
        for name in ("stagger_delay", "settle_delay", "poll_interval"):
            if getattr(self, name) < 0:
                raise ConfigurationError(f"{name} must not be negative")


@dataclass(frozen=True, slots=True)
class SwarmConfig:
    docker: str = DEFAULT_DOCKER_COMMAND
    port: int = SWARM_PORT


@dataclass(frozen=True, slots=True)
class VisualizerConfig:
    image: str = DEFAULT_VISUALIZER_IMAGE
    port: int = DEFAULT_VISUALIZER_PORT


@dataclass(frozen=True, slots=True)
class Settings:
    naming: Naming = field(default_factory=Naming)
    provider: ProviderConfig = field(default_factory=DockerMachine)
    swarm: SwarmConfig = field(default_factory=SwarmConfig)
    timing: TimingConfig = field(default_factory=TimingConfig)
    visualizer: VisualizerConfig = field(default_factory=VisualizerConfig)


def _deep_merge(base: RawConfig, override: RawConfig) -> RawConfig:
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _read_toml(path: Path) -> RawConfig:
    if not path.is_file():
        return {}
    try:
        with path.open("rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Invalid TOML in {path}: {e}") from e


def load_config(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
    path: Path | None = None,
) -> RawConfig:
    """Merge global and project configuration.

    An explicit ``path`` replaces the project file lookup and must exist.
    """
    global_cfg = _read_toml(global_path or GLOBAL_CONFIG_PATH)
    if path is not None:
        if not path.is_file():
            raise ConfigurationError(f"Config file not found: {path}")
        project_cfg = _read_toml(path)
    else:
        project_cfg = _read_toml((project_dir or Path.cwd()) / PROJECT_CONFIG_NAME)

    return _deep_merge(global_cfg, project_cfg)


def _section[T](cls: type[T], raw: Any, section: str) -> T:
    if raw is None:
        return cls()
    if not isinstance(raw, dict):
        raise ConfigurationError(f"[{section}] must be a table")
    known = {f.name for f in fields(cls)}  # type: ignore[arg-type]
    unknown = set(raw) - known
    if unknown:
        raise ConfigurationError(
            f"Unknown key(s) in [{section}]: {', '.join(sorted(unknown))}. "
            f"Valid: {', '.join(sorted(known))}"
        )
    try:
        return cls(**raw)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid [{section}] section: {e}") from e


def _get_provider_map() -> dict[str, type]:
    return {
        "docker-machine": DockerMachine,
    }


def _build_provider(raw: RawConfig | None) -> ProviderConfig:
    if raw is None:
        return DockerMachine()
    if not isinstance(raw, dict):
        raise ConfigurationError("[provider] must be a table")

    raw = dict(raw)
    provider_type = raw.pop("type", "docker-machine")
    provider_map = _get_provider_map()
    cls = provider_map.get(provider_type)
    if cls is None:
        raise ConfigurationError(
            f"Unknown provider type '{provider_type}'. "
            f"Valid: {', '.join(provider_map)}"
        )
    if raw.get("ssh", "native") not in ("native", "machine"):
        raise ConfigurationError(f"provider.ssh must be 'native' or 'machine', got {raw['ssh']!r}")
    return _section(cls, raw, "provider")


def _build_naming(raw: RawConfig | None) -> Naming:
    raw = dict(raw or {})
    return _section(
        Naming,
        {
            "manager_prefix": raw.pop("manager_prefix", DEFAULT_MANAGER_PREFIX),
            "worker_prefix": raw.pop("worker_prefix", DEFAULT_WORKER_PREFIX),
            **raw,
        },
        "cluster",
    )


def resolve_settings(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
    path: Path | None = None,
) -> Settings:
    config = load_config(project_dir=project_dir, global_path=global_path, path=path)

    return Settings(
        naming=_build_naming(config.get("cluster")),
        provider=_build_provider(config.get("provider")),
        swarm=_section(SwarmConfig, config.get("swarm"), "swarm"),
        timing=_section(TimingConfig, config.get("timing"), "timing"),
        visualizer=_section(VisualizerConfig, config.get("visualizer"), "visualizer"),
    )
