from __future__ import annotations


class BridgeError(Exception):
    """Base exception for the portal bridge."""


class AuthError(BridgeError):
    """Login failed: bad credentials, portal unreachable or automation timeout."""


class SessionExpired(BridgeError):
    """The portal rejected the current session (401-class response)."""


class PortalError(BridgeError):
    """Portal transport failure that is not an authorization problem."""


class DiscoveryError(BridgeError):
    """A discovery pass failed; partial results were discarded."""


class NotFound(BridgeError):
    """No device is registered under the given key."""

    def __init__(self, key: str):
        super().__init__(f"Device not found: {key}")
        self.key = key


class TypeMismatch(BridgeError):
    """State variant or operation does not fit the device type."""


class UnsupportedDevice(TypeMismatch):
    """Device is Unknown or stale and cannot receive commands."""


class UnsupportedOperation(TypeMismatch):
    """The device type has no such command."""


class ValidationError(BridgeError):
    """Caller supplied an invalid argument."""


class CommandMissing(ValidationError):
    """The device has no stored command descriptor for the requested action."""


class DispatchError(BridgeError):
    """Sending a command to the portal failed; cached state is unchanged."""


class OperationTimeout(BridgeError):
    """Discovery pass or command dispatch exceeded its time budget."""
