"""Client for the Varnish admin (CLI) protocol.

This module provides:
- resolve: Admin endpoint and secret discovery from a varnishd workdir
- Connection: Authenticated request/response exchange on the admin socket
- connect / connect_raw / accept: Ways to obtain a Connection
- The exception hierarchy shared with the vtest orchestrator
"""

from .endpoint import ManagementEndpoint, resolve, workdir_path, WORKDIR_BASE
from .connection import (
    Connection,
    Message,
    Status,
    accept,
    auth_digest,
    connect,
    connect_raw,
)
from .exceptions import (
    AdmError,
    AdmIOError,
    AdmTimeoutError,
    AuthenticationError,
    CommandError,
    EndpointNotFoundError,
    EndpointParseError,
    ParseError,
    ProcessError,
    ProtocolError,
    ResponseParseError,
)

__all__ = [
    'ManagementEndpoint',
    'resolve',
    'workdir_path',
    'WORKDIR_BASE',
    'Connection',
    'Message',
    'Status',
    'accept',
    'auth_digest',
    'connect',
    'connect_raw',
    'AdmError',
    'AdmIOError',
    'AdmTimeoutError',
    'AuthenticationError',
    'CommandError',
    'EndpointNotFoundError',
    'EndpointParseError',
    'ParseError',
    'ProcessError',
    'ProtocolError',
    'ResponseParseError',
]
