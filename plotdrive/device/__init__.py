"""Device abstractions used by the plotdrive toolkit."""

from . import commands
from .ebb import ConnectionState, EBBDriver, MotorStatus, Reply
from .mock import MockEBB
from .protocol import CommandClass, CommandFrame, CommandKind, ResponseShape

__all__ = [
    "commands",
    "ConnectionState",
    "EBBDriver",
    "MotorStatus",
    "Reply",
    "MockEBB",
    "CommandClass",
    "CommandFrame",
    "CommandKind",
    "ResponseShape",
]
