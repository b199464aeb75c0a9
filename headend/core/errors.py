"""Exception hierarchy shared by the deployment services."""
from __future__ import annotations

from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:  # pragma: no cover - only for type hints
    from .models import DeploymentResult, VMResult


class DeploymentError(Exception):
    """Base exception for deployment failures.

    ``result`` is attached by the deployer when a run is aborted so callers can
    still inspect whatever was produced before the failure.
    """

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message
        self.result: Optional["DeploymentResult"] = None


class ConfigurationError(DeploymentError):
    """Missing or contradictory input. Never retried."""


class ResourceError(DeploymentError):
    """Insufficient capacity discovered during validation."""


class AcquisitionError(DeploymentError):
    """Every fallback of the image acquisition chain was exhausted."""


class CreationError(DeploymentError):
    """A remote create or start command failed."""

    def __init__(self, message: str, partial_results: Optional[List["VMResult"]] = None):
        super().__init__(message)
        self.partial_results: List["VMResult"] = list(partial_results or [])


class TransportError(DeploymentError):
    """Remote command execution itself failed."""


class RemoteCommandError(DeploymentError):
    """A remote command ran and exited with a non-zero status."""

    def __init__(self, command: str, exit_code: int, stdout: str = "", stderr: str = ""):
        self.command = command
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        preview = (stderr.strip() or stdout.strip())[:500]
        message = f"command exited with status {exit_code}"
        if preview:
            message = f"{message}: {preview}"
        super().__init__(message)


__all__ = [
    "AcquisitionError",
    "ConfigurationError",
    "CreationError",
    "DeploymentError",
    "RemoteCommandError",
    "ResourceError",
    "TransportError",
]
