from flotilla.core.exceptions import (
    CommandError,
    ConfigurationError,
    ControlPlaneError,
    FlotillaError,
    InvalidTransitionError,
    PhaseError,
    PreconditionError,
    ProvisioningError,
    ReadinessTimeoutError,
)

__all__ = [
    "CommandError",
    "ConfigurationError",
    "ControlPlaneError",
    "FlotillaError",
    "InvalidTransitionError",
    "PhaseError",
    "PreconditionError",
    "ProvisioningError",
    "ReadinessTimeoutError",
]
