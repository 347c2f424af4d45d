"""Centralized defaults for Flotilla.

All magic numbers, paths and default names live here so the config
layer, the CLI and the engine agree on them.
"""

from __future__ import annotations

from pathlib import Path
from typing import Final

# =============================================================================
# Naming
# =============================================================================

DEFAULT_MANAGER_PREFIX: Final = "manager"
DEFAULT_WORKER_PREFIX: Final = "worker"

# =============================================================================
# Timing
# =============================================================================

# Delay between two concurrent instance creations.
DEFAULT_STAGGER_DELAY: Final = 3.0

# Best-effort wait after draining a node; swarm has no drain-complete signal.
DEFAULT_SETTLE_DELAY: Final = 10.0

DEFAULT_POLL_ATTEMPTS: Final = 60
DEFAULT_POLL_INTERVAL: Final = 1.0

# =============================================================================
# Provider / swarm
# =============================================================================

DEFAULT_MACHINE_BINARY: Final = "docker-machine"
DEFAULT_MACHINE_DRIVER: Final = "virtualbox"
DEFAULT_DOCKER_COMMAND: Final = "docker"
SWARM_PORT: Final = 2377

VISUALIZER_SERVICE: Final = "visualizer"
DEFAULT_VISUALIZER_IMAGE: Final = "dockersamples/visualizer:stable"
DEFAULT_VISUALIZER_PORT: Final = 8080

# =============================================================================
# Paths
# =============================================================================

GLOBAL_CONFIG_PATH: Final = Path.home() / ".flotilla" / "defaults.toml"
PROJECT_CONFIG_NAME: Final = "flotilla.toml"
