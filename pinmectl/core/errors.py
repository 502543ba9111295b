"""Domain-specific errors for pinmectl."""

from __future__ import annotations

from enum import Enum


class PinmeError(Exception):
    """Base error for pinmectl."""


class ConfigValidationError(PinmeError):
    """Raised when a configuration file does not conform to schema or semantics."""


class ConfigLoadError(PinmeError):
    """Raised when reading configuration sources fails."""


class DeviceSelectionError(PinmeError):
    """Raised when a target reader cannot be resolved."""


class DeviceDiscoveryError(PinmeError):
    """Raised when the BLE scan itself fails."""


class TransportError(PinmeError):
    """Base transport error."""


class TransportConnectError(TransportError):
    """Raised on BLE connect/subscribe failures."""


class TransportSendError(TransportError):
    """Raised when a command write fails."""


class TransportTimeoutError(TransportError):
    """Raised when the device does not answer in time."""


class SessionStateError(PinmeError):
    """Raised when a provisioning operation is invalid for the current session state."""


class UnsupportedCommandError(PinmeError):
    """Raised when a raw command is not one of the direct commands the firmware accepts."""


class FailureKind(str, Enum):
    AUTH = "auth"
    NETWORK = "network"
    BUSY = "busy"
    TIMEOUT = "timeout"


FAILURE_MESSAGES = {
    FailureKind.AUTH: "Wi-Fi authentication failed (wrong password?)",
    FailureKind.NETWORK: "Device failed to connect to Wi-Fi (network not found or unreachable)",
    FailureKind.BUSY: "Device stayed busy and did not accept the Wi-Fi settings",
    FailureKind.TIMEOUT: "Device did not respond with a Wi-Fi result in time",
}


class ProvisioningError(PinmeError):
    """Terminal failure of one Wi-Fi join attempt."""

    kind = FailureKind.NETWORK

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or FAILURE_MESSAGES[self.kind])


class WifiAuthError(ProvisioningError):
    kind = FailureKind.AUTH


class WifiNetworkError(ProvisioningError):
    kind = FailureKind.NETWORK


class DeviceBusyError(ProvisioningError):
    kind = FailureKind.BUSY


class DeviceTimeoutError(ProvisioningError):
    kind = FailureKind.TIMEOUT


_PROVISIONING_ERRORS: dict[FailureKind, type[ProvisioningError]] = {
    FailureKind.AUTH: WifiAuthError,
    FailureKind.NETWORK: WifiNetworkError,
    FailureKind.BUSY: DeviceBusyError,
    FailureKind.TIMEOUT: DeviceTimeoutError,
}


def provisioning_error_for(kind: FailureKind) -> ProvisioningError:
    return _PROVISIONING_ERRORS[kind]()


class BackendError(PinmeError):
    """Raised when a backend call fails or returns a non-success status."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TokenIssueError(BackendError):
    """Raised when no device token could be issued."""


class UploadError(PinmeError):
    """Raised when a photo upload fails."""

    def __init__(self, message: str, *, timed_out: bool = False) -> None:
        super().__init__(message)
        self.timed_out = timed_out


class UploadTimeoutError(UploadError):
    def __init__(self, message: str = "Upload timed out") -> None:
        super().__init__(message, timed_out=True)


class HedgedRequestError(PinmeError):
    """Raised when both hedged strategies fail; carries both failures."""

    def __init__(self, errors: tuple[BaseException, ...]) -> None:
        detail = "; ".join(f"{type(e).__name__}: {e}" for e in errors)
        super().__init__(f"All upload strategies failed: {detail}")
        self.errors = errors
