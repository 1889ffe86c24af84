"""
Deployment mode gate.

The deployment mode is fixed when the process starts and injected into
every component that branches on it. Nothing reads a global flag.
"""

from __future__ import annotations

from enum import Enum

from orgguard.config.schema import DeploymentMode
from orgguard.exceptions import ModeNotSupported


class Availability(str, Enum):
    """Deployment modes in which a command exists."""
    HOSTED_ONLY = "hosted_only"
    SELF_HOSTED_ONLY = "self_hosted_only"
    ANY = "any"


class DeploymentModeGate:
    """Immutable view of the deployment mode."""

    __slots__ = ("_mode",)

    def __init__(self, mode: DeploymentMode):
        object.__setattr__(self, "_mode", DeploymentMode(mode))

    def __setattr__(self, name, value):
        raise AttributeError("DeploymentModeGate is immutable")

    def __repr__(self) -> str:
        return f"DeploymentModeGate(mode={self._mode.value!r})"

    @property
    def mode(self) -> DeploymentMode:
        return self._mode

    @property
    def self_hosted(self) -> bool:
        return self._mode == DeploymentMode.SELF_HOSTED

    @property
    def hosted(self) -> bool:
        return self._mode == DeploymentMode.HOSTED

    def permits(self, availability: Availability) -> bool:
        if availability == Availability.HOSTED_ONLY:
            return self.hosted
        if availability == Availability.SELF_HOSTED_ONLY:
            return self.self_hosted
        return True

    def require(self, availability: Availability, command: str = "") -> None:
        """Raise ModeNotSupported if the command does not exist in this mode."""
        if not self.permits(availability):
            raise ModeNotSupported(command=command, mode=self._mode.value)

    def require_hosted(self, command: str = "") -> None:
        self.require(Availability.HOSTED_ONLY, command)
