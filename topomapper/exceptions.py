"""Exception hierarchy for topology discovery."""

from __future__ import annotations


class TopologyError(Exception):
    """Base exception for all topology discovery errors."""


class SessionError(TopologyError):
    """Terminal session to a single device failed."""


class ConnectTimeout(SessionError):
    """No session could be established within the connect timeout."""


class TransportError(SessionError):
    """SSH transport failed (connection refused, reset, protocol error)."""


class CommandTimeout(SessionError):
    """No completion prompt was seen within the per-command timeout."""

    def __init__(self, message: str, completed: int = 0):
        self.completed = completed
        super().__init__(message)


class AuthenticationFailed(TopologyError):
    """The device rejected the credential, or all candidates were exhausted."""


class ParseIncomplete(TopologyError):
    """A driver returned DeviceInfo with descriptive fields left empty."""

    def __init__(self, missing: list[str]):
        self.missing = missing
        super().__init__(f"Incomplete device info, missing: {', '.join(missing)}")


class ScanAlreadyRunning(TopologyError):
    """A scan for this network is already in progress."""

    def __init__(self, network_id: str):
        self.network_id = network_id
        super().__init__(f"Scan already running for network {network_id}")


class InternalFailure(TopologyError):
    """Unexpected failure outside device-specific logic; aborts the scan."""


class StoreError(TopologyError):
    """The record store could not complete an operation."""


class NotFound(TopologyError, KeyError):
    """A referenced record does not exist."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""
