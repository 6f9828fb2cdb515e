"""Exception hierarchy for the plotdrive toolkit.

Geometry and planning errors are raised before any device interaction.
Driver errors carry the command text and connection state that were current
when the failure happened, so callers can decide whether to retry the job,
abort, or re-home and resume.
"""
from __future__ import annotations

from typing import Any, Optional


class PlotDriveError(Exception):
    """Base class for every error raised by plotdrive."""

    def __init__(
        self,
        message: str,
        *args: Any,
        command: Optional[str] = None,
        error_code: Optional[int] = None,
        state: Optional[str] = None,
    ) -> None:
        super().__init__(message, *args)
        self.message = message
        self.command = command
        self.error_code = error_code
        self.state = state

    def __str__(self) -> str:
        base = super().__str__()
        details = []
        if self.command is not None:
            details.append(f"command: {self.command!r}")
        if self.error_code is not None:
            details.append(f"error code: {self.error_code}")
        if self.state is not None:
            details.append(f"state: {self.state}")
        if details:
            return f"{base} ({', '.join(details)})"
        return base

    @property
    def kind(self) -> str:
        return type(self).__name__


# ---------------------------------------------------------------------------
# Geometry / planning
# ---------------------------------------------------------------------------


class MalformedInput(PlotDriveError):
    """The drawing cannot be parsed into geometric primitives."""


class UnreachableGeometry(PlotDriveError):
    """A planned coordinate lies outside the machine travel bounds."""

    def __init__(self, message: str, *, point=None, polyline_index: Optional[int] = None) -> None:
        super().__init__(message)
        self.point = point
        self.polyline_index = polyline_index


class InvalidCommand(PlotDriveError, ValueError):
    """A device command was built with out-of-range parameters."""


class SessionError(PlotDriveError):
    """Raised for misuse of the session controller (e.g. double start)."""


# ---------------------------------------------------------------------------
# Driver
# ---------------------------------------------------------------------------


class DriverError(PlotDriveError):
    """Base class for failures of the device protocol driver."""


class DriverStateError(DriverError):
    """A command was issued in a connection state that forbids it."""


class LinkLost(DriverError):
    """The physical link errored or closed underneath the driver."""


class ConnectError(DriverError):
    """The connect handshake failed."""


class ConnectTimeout(ConnectError):
    """The device did not answer the identity query in time."""


class ConnectProtocolError(ConnectError):
    """The device answered the identity query with something unexpected."""


class PortNotFound(ConnectError):
    """No serial port with an attached EiBotBoard could be found."""


class CommandError(DriverError):
    """An issued command did not complete successfully."""


class CommandTimeout(CommandError):
    """No response arrived within the command deadline."""


class CommandProtocolError(CommandError):
    """The response failed format validation or reported a device error."""


class CommandAbandoned(CommandError):
    """The command was abandoned by a stop or disconnect; its outcome is unknown."""


__all__ = [
    "PlotDriveError",
    "MalformedInput",
    "UnreachableGeometry",
    "InvalidCommand",
    "SessionError",
    "DriverError",
    "DriverStateError",
    "LinkLost",
    "ConnectError",
    "ConnectTimeout",
    "ConnectProtocolError",
    "PortNotFound",
    "CommandError",
    "CommandTimeout",
    "CommandProtocolError",
    "CommandAbandoned",
]
