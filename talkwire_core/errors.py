"""Error types for the talkwire protocol engine.

Every failure surfaced by the core derives from ``TalkwireError``. Families
with several remediations carry a ``kind`` enum instead of a subclass per
case.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .rpc import ApplicationException


class TalkwireError(Exception):
    """Base error for talkwire client failures."""


class NotAuthenticatedError(TalkwireError):
    """The operation needs a logged-in session."""


# -----------------------------------------------------------------------------
# Codec
# -----------------------------------------------------------------------------


class DecodeError(TalkwireError):
    """Malformed wire bytes.

    Never retried automatically: it indicates protocol drift or corruption.
    """

    def __init__(self, message: str, offset: int) -> None:
        super().__init__(f"{message} (at byte {offset})")
        self.offset = offset


class EncodeError(TalkwireError):
    """A Python value has no wire representation."""


# -----------------------------------------------------------------------------
# Transport
# -----------------------------------------------------------------------------


class TransportError(TalkwireError):
    """Network request to the server failed."""


class TransportTimeout(TransportError):
    """Timeout while waiting for the transport."""


class TransportResponseError(TransportError):
    """The server answered with a non-success HTTP status."""

    def __init__(self, status: int, message: str) -> None:
        super().__init__(message)
        self.status = status


# -----------------------------------------------------------------------------
# RPC
# -----------------------------------------------------------------------------


class RpcErrorKind(Enum):
    """Why an RPC call did not produce a result."""

    TIMEOUT = "timeout"
    TRANSPORT = "transport"
    DECODE = "decode"
    APPLICATION = "application"


class RpcError(TalkwireError):
    """An RPC call failed.

    ``TIMEOUT`` and ``TRANSPORT`` are safe to retry for idempotent calls only.
    ``APPLICATION`` carries the decoded server exception in ``exception``.
    """

    def __init__(
        self,
        kind: RpcErrorKind,
        message: str,
        *,
        method: str | None = None,
        exception: ApplicationException | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.method = method
        self.exception = exception

    @property
    def is_retryable(self) -> bool:
        """Return True for failures that never reached an application verdict."""
        return self.kind in (RpcErrorKind.TIMEOUT, RpcErrorKind.TRANSPORT)


# -----------------------------------------------------------------------------
# Login
# -----------------------------------------------------------------------------


class LoginErrorKind(Enum):
    """Terminal login failure reasons."""

    INVALID_CREDENTIALS = "invalid_credentials"
    PINCODE_DENIED = "pincode_denied"
    QR_EXPIRED = "qr_expired"
    UNSUPPORTED_DEVICE = "unsupported_device"


class LoginError(TalkwireError):
    """Login flow failed. The login state machine never retries."""

    def __init__(self, kind: LoginErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind


# -----------------------------------------------------------------------------
# E2EE
# -----------------------------------------------------------------------------


class E2EEErrorKind(Enum):
    """Per-message E2EE failure reasons.

    INVALID_SIGNATURE: discard the message.
    UNKNOWN_KEY: resync keys.
    DECRYPT_FAILURE: alert the user.
    """

    INVALID_SIGNATURE = "invalid_signature"
    UNKNOWN_KEY = "unknown_key"
    DECRYPT_FAILURE = "decrypt_failure"


class E2EEError(TalkwireError):
    """An encrypted payload could not be processed."""

    def __init__(self, kind: E2EEErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind


# -----------------------------------------------------------------------------
# Configuration
# -----------------------------------------------------------------------------


class ConfigLoadError(TalkwireError):
    """Error loading client configuration."""
