"""Mirra Error Hierarchy.

Structured exception types for the synchronization engine. Every error
carries a wire ``code`` so that an Error frame received from a peer can be
re-raised locally as the same class.
"""

from __future__ import annotations


class MirraError(Exception):
    """Base error for all Mirra exceptions."""

    code = "MIRRA_ERROR"
    # Transient failures are recovered by reconnecting with backoff
    retryable = False

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
        }


# Transport errors
class HandshakeTimeout(MirraError):
    """The remote did not complete the handshake within the window."""

    code = "HANDSHAKE_TIMEOUT"
    retryable = True


class ConnectionLost(MirraError):
    """The transport connection was reset or closed."""

    code = "CONNECTION_LOST"
    retryable = True


class ProtocolError(MirraError):
    """A malformed, unexpected or unverifiable frame was received."""

    code = "PROTOCOL"
    retryable = True


# Peer relationship errors
class AuthenticationFailed(MirraError):
    """The peer presented a key that does not match the trusted one."""

    code = "AUTHENTICATION_FAILED"

    def __init__(self, message: str, endpoint: str | None = None):
        super().__init__(message, {"endpoint": endpoint})
        self.endpoint = endpoint


class ModuleNotFound(MirraError):
    """A module name is not known locally or not served by the remote."""

    code = "MODULE_NOT_FOUND"

    def __init__(self, message: str, module: str | None = None):
        super().__init__(message, {"module": module})
        self.module = module


class ContentNotFound(MirraError):
    """The root no longer has the requested file."""

    code = "CONTENT_NOT_FOUND"

    def __init__(self, message: str, path: str | None = None):
        super().__init__(message, {"path": path})
        self.path = path


# Local errors
class IdentityCorrupt(MirraError):
    """The persisted key pair is partial or unreadable."""

    code = "IDENTITY_CORRUPT"


class ConfigError(MirraError):
    """The configuration file or a module definition is invalid."""

    code = "CONFIG"


class InvalidPath(MirraError):
    """A module-relative path escapes the module root or is malformed."""

    code = "INVALID_PATH"

    def __init__(self, message: str, path: str | None = None):
        super().__init__(message, {"path": path})
        self.path = path


class ApplyError(MirraError):
    """Materializing a single change on disk failed."""

    code = "APPLY"

    def __init__(self, message: str, path: str | None = None):
        super().__init__(message, {"path": path})
        self.path = path


class ContentMismatch(ApplyError):
    """Received bytes do not hash to the announced fingerprint."""

    code = "CONTENT_MISMATCH"


class SequenceGap(MirraError):
    """Events were missed; the session must reconcile.

    Not a failure: raised inside a node session to leave the streaming loop.
    """

    code = "SEQUENCE_GAP"

    def __init__(self, expected: int, received: int):
        super().__init__(
            f"expected sequence {expected}, received {received}",
            {"expected": expected, "received": received},
        )
        self.expected = expected
        self.received = received


_BY_CODE: dict[str, type[MirraError]] = {
    cls.code: cls
    for cls in (
        MirraError,
        HandshakeTimeout,
        ConnectionLost,
        ProtocolError,
        AuthenticationFailed,
        ModuleNotFound,
        ContentNotFound,
        IdentityCorrupt,
        ConfigError,
        InvalidPath,
        ApplyError,
        ContentMismatch,
    )
}


def error_from_code(code: str, message: str) -> MirraError:
    """Rebuild a local exception from an Error frame's code and message."""
    cls = _BY_CODE.get(code, ProtocolError)
    return cls(message)
