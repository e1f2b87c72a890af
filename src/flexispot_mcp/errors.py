"""Exception hierarchy for the desk controller."""

from __future__ import annotations


class DeskError(Exception):
    """Base class for every error raised by the controller."""


class CapabilityUnavailableError(DeskError):
    """The host has no serial port support."""


class InsecureContextError(DeskError):
    """The port would be reached over an unencrypted network link."""


class DeviceError(DeskError):
    """The serial device could not be opened."""


class NotConnectedError(DeskError):
    """An operation needs an open connection and there is none."""


class UnknownCommandError(DeskError, ValueError):
    """A command name is not in the command table."""


class DeskIOError(DeskError):
    """A read or write on an open port failed."""
