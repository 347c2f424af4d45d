"""Internal machinery - SSH transport."""

from .ssh import SSHTransport

__all__ = [
    "SSHTransport",
]
