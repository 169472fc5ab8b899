"""Typed failures raised by the passkey client core."""
from __future__ import annotations

from typing import Optional

__all__ = [
    "Busy",
    "DeviceError",
    "DeviceIneligible",
    "EncodingError",
    "InvalidEntity",
    "InvalidOptions",
    "MalformedResponse",
    "PasskeyError",
    "PinBlocked",
    "PinError",
    "PinInvalid",
    "PinRequired",
    "Timeout",
    "TransportError",
    "UnsupportedAlgorithm",
    "UserCancelled",
    "UserVerificationUnavailable",
]


class PasskeyError(Exception):
    """Base exception for every failure surfaced to callers."""


class EncodingError(PasskeyError):
    """Client data could not be represented as UTF-8 JSON."""


class InvalidOptions(PasskeyError):
    """A creation or request description does not match the options schema."""


class InvalidEntity(InvalidOptions):
    """The relying party or user entity is missing or invalid."""


class UnsupportedAlgorithm(PasskeyError):
    """None of the proposed COSE algorithms can be used."""

    def __init__(self, message: str, *, requested=(), supported=()):
        super().__init__(message)
        self.requested = tuple(requested)
        self.supported = tuple(supported)


class TransportError(PasskeyError):
    """The channel to the authenticator is unavailable or was lost."""


class PinError(PasskeyError):
    """Base class for PIN related failures."""


class PinInvalid(PinError):
    """The authenticator rejected the PIN.

    ``retries`` holds the remaining attempts when the authenticator reported them.
    """

    def __init__(self, retries: Optional[int] = None):
        message = "Incorrect PIN"
        if retries is not None:
            message += f", {retries} attempt(s) remaining"
        super().__init__(message)
        self.retries = retries


class PinBlocked(PinError):
    """The authenticator refuses further PIN attempts."""

    def __init__(self, retries: Optional[int] = 0, *, power_cycle_required: bool = False):
        if power_cycle_required:
            message = "PIN authentication blocked, re-present the authenticator"
        else:
            message = "PIN is blocked"
        super().__init__(message)
        self.retries = retries
        self.power_cycle_required = power_cycle_required


class PinRequired(PinError):
    """User verification needs a PIN but none was supplied."""

    def __init__(self, message: str = "PIN required but not provided"):
        super().__init__(message)


class UserVerificationUnavailable(PasskeyError):
    """User verification was required but the authenticator has no UV method set up."""


class UserCancelled(PasskeyError):
    """The operation was cancelled or denied by the user."""


class Timeout(PasskeyError):
    """The operation did not complete within its time budget."""


class DeviceIneligible(PasskeyError):
    """The authenticator cannot satisfy the request (algorithm, residency, credentials)."""

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code


class Busy(PasskeyError):
    """The authenticator or the channel is already in use."""


class MalformedResponse(PasskeyError):
    """The authenticator response is missing required structures or is truncated."""


class DeviceError(PasskeyError):
    """Catch-all for CTAP errors without a more specific mapping."""

    def __init__(self, code: int, message: Optional[str] = None):
        super().__init__(message or f"Authenticator error 0x{code:02x}")
        self.code = code

    def __repr__(self):
        return f"DeviceError(code=0x{self.code:02x})"
