"""
Error taxonomy shared by the swap components.

Errors are raised where they are detected and caught once, at the
lifecycle controller, which maps them to a terminal swap status.
"""

from __future__ import annotations


class SwapError(Exception):
    """Base class for all swap errors."""


class ProtocolViolation(SwapError):
    """A signing session was driven out of order, or a nonce was reused."""


class OutputNotFound(SwapError):
    """No output paying the tweaked swap key was found in the lockup transaction."""


class InsufficientFunds(SwapError):
    """The claim output would be zero or negative after fees."""


class FeeTargetError(SwapError):
    """The fee search did not converge within the iteration bound."""


class AddressError(SwapError, ValueError):
    """An address could not be decoded for the target chain."""


class UnexpectedLockupAmount(SwapError):
    """The counter-party locked less than the agreed amount."""


class RemoteRejected(SwapError):
    """The swap service rejected a request or sent invalid signing data."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class TransportError(SwapError):
    """REST or stream I/O failed after the retries were exhausted."""
