"""Exception hierarchy for the Varnish admin client and instance orchestrator."""

from typing import Optional


class AdmError(Exception):
    """Base exception for all admin protocol and orchestration errors."""


class AdmIOError(AdmError):
    """Raised when a file or socket read/write fails."""


class AdmTimeoutError(AdmError):
    """Raised when an operation does not complete before its deadline."""


class EndpointNotFoundError(AdmError):
    """Raised when management state files or endpoint candidates are missing."""


class ParseError(AdmError):
    """Raised when data read from varnishd cannot be parsed."""


class EndpointParseError(ParseError):
    """Raised when the -T endpoint table contains an invalid line."""


class ResponseParseError(ParseError):
    """Raised when a response header or response body has an unexpected shape."""


class ProtocolError(AdmError):
    """Raised when the admin conversation breaks (framing, closed connection)."""


class CommandError(ProtocolError):
    """Raised when a command answers with a status other than 200.

    The varnishd diagnostic is kept verbatim in ``body``.
    """

    def __init__(self, status: int, command: str, body: str):
        self.status = status
        self.command = command
        self.body = body
        super().__init__(
            f"command {command!r} failed with status {status}:\n{body}"
        )


class AuthenticationError(AdmError):
    """Raised when the challenge/response handshake fails."""

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


class ProcessError(AdmError):
    """Raised when the varnishd process cannot be spawned, exits early or cannot be killed."""
