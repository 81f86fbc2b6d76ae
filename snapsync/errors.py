"""Exception types raised by snapsync."""

from typing import List


class SnapsyncError(Exception):
    """Base error which keeps track of related components (command, status, path)."""

    def __init__(self, reason: str, **components):
        super().__init__(reason)
        self.reason = reason
        self.components = components

    def __str__(self) -> str:
        return self.reason


class ConfigurationError(SnapsyncError, ValueError):
    """Invalid configuration: config file, connection command or retention policy."""


class CommandFailure(SnapsyncError):
    """An external command exited with a non-zero status."""

    def __init__(self, command: List[str], status: int):
        super().__init__(
            f"Command {command!r} failed with exit status {status}",
            command=command,
            status=status,
        )
        self.command = command
        self.status = status


class RotationError(SnapsyncError):
    """A snapshot could not be rotated into place."""
