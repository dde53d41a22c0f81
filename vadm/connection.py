"""Varnish admin (CLI) protocol connection.

Every response on the admin socket is framed as a header line followed by
the body and a newline terminator that isn't counted in the length:

    200 19      \\n
    PONG 1700000000 1.0\\n

Requests are plain lines: arguments joined by spaces, ending in a newline.
"""

import hashlib
import logging
import socket
import sys
import time
from collections import deque
from enum import IntEnum
from pathlib import Path
from typing import List, NamedTuple, Optional, Tuple, Union

from .endpoint import DEFAULT_NAME, WORKDIR_BASE, resolve
from .exceptions import (
    AdmError,
    AdmIOError,
    AdmTimeoutError,
    AuthenticationError,
    CommandError,
    EndpointNotFoundError,
    ParseError,
    ProtocolError,
    ResponseParseError,
)

logger = logging.getLogger(__name__)

# Only the first NONCE_LEN bytes of the challenge enter the digest
NONCE_LEN = 32
# Header is "%-3d %-8u\n" on the varnishd side; leave some slack
MAX_HEADER_LEN = 64
# Messages kept for get_transcript; older ones are dropped
TRANSCRIPT_LIMIT = 200


class Status(IntEnum):
    """Response status codes used by varnishd (CLIS_* in vcli.h)."""
    SYNTAX = 100
    UNKNOWN = 101
    UNIMPL = 102
    TOOFEW = 104
    TOOMANY = 105
    PARAM = 106
    AUTH = 107
    OK = 200
    TRUNCATED = 201
    CANT = 300
    COMMS = 400
    CLOSE = 500


class Message(NamedTuple):
    """One framed response: status code and body bytes (terminator removed)."""
    status: int
    body: bytes


def auth_digest(nonce: bytes, secret: bytes) -> str:
    """Compute the hex response to an authentication challenge."""
    challenge = nonce[:NONCE_LEN]
    hasher = hashlib.sha256()
    hasher.update(challenge)
    hasher.update(b"\n")
    hasher.update(secret)
    hasher.update(challenge)
    hasher.update(b"\n")
    return hasher.hexdigest()


def format_command(args) -> str:
    """Join command arguments into a request line."""
    return ' '.join(args) + '\n'


class Connection:
    """An open connection to a varnishd admin socket.

    A connection starts unauthenticated; ``authenticate`` must succeed
    before ``ask`` is accepted. Commands are strictly sequential: the
    connection is not safe to share between threads without a lock.

    Any I/O or framing failure closes the connection.
    """

    def __init__(self, sock: socket.socket, trace: bool = False, trace_file=None,
                 transcript_limit: Optional[int] = TRANSCRIPT_LIMIT):
        """
        Wrap an already connected socket.

        Args:
            sock: Connected stream socket.
            trace: Echo protocol traffic to ``trace_file``.
            trace_file: File object for traces (stderr if None).
            transcript_limit: Number of recent messages kept in the
                transcript (None keeps all).
        """
        self._socket: Optional[socket.socket] = sock
        self._file = sock.makefile('rb')
        self._authenticated = False
        self._trace = trace
        self._trace_file = trace_file
        # (direction, timestamp, data)
        self._transcript = deque(maxlen=transcript_limit)

    # ------------------------------------------------------------------
    # Tracing
    # ------------------------------------------------------------------

    def _log_trace(self, direction: str, data: str) -> None:
        """Record protocol traffic and echo it when tracing is on.

        Args:
            direction: 'SEND' or 'RECV'
            data: The data being sent or received
        """
        timestamp = time.strftime('%H:%M:%S')
        self._transcript.append((direction, timestamp, data))

        if self._trace:
            display_data = data.replace('\n', '\\n')
            if len(display_data) > 200:
                display_data = display_data[:200] + '...'

            output = self._trace_file if self._trace_file else sys.stderr
            prefix = '>>>' if direction == 'SEND' else '<<<'
            print(f"[{timestamp}] {prefix} {display_data}", file=output, flush=True)

    def get_transcript(self) -> List[Tuple[str, str, str]]:
        """Return the recorded (direction, timestamp, data) tuples."""
        return list(self._transcript)

    def format_transcript(self) -> str:
        """Format the transcript as a human-readable string."""
        lines = []
        for direction, timestamp, data in self._transcript:
            prefix = '>>>' if direction == 'SEND' else '<<<'
            display_data = data.replace('\n', '\\n')
            lines.append(f"[{timestamp}] {prefix} {display_data}")
        return '\n'.join(lines)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def authenticated(self) -> bool:
        return self._authenticated

    @property
    def closed(self) -> bool:
        return self._socket is None

    @property
    def remote_address(self):
        """Peer address of the admin socket."""
        self._check_open()
        return self._socket.getpeername()

    def settimeout(self, timeout: Optional[float]) -> None:
        """Set the timeout for subsequent socket operations (None blocks)."""
        self._check_open()
        self._socket.settimeout(timeout)

    def close(self) -> None:
        """Close the connection. Safe to call more than once."""
        if self._socket is None:
            return
        try:
            self._file.close()
        except OSError:
            pass
        try:
            self._socket.close()
        except OSError:
            pass
        self._socket = None
        self._file = None
        self._authenticated = False

    def _check_open(self) -> None:
        if self._socket is None:
            raise ProtocolError("connection is closed")

    # ------------------------------------------------------------------
    # Wire primitives
    # ------------------------------------------------------------------

    def _io(self, func, *args):
        """Run a socket operation, mapping failures to admin errors."""
        try:
            return func(*args)
        except socket.timeout as e:
            self.close()
            raise AdmTimeoutError("timed out talking to varnishd") from e
        except OSError as e:
            self.close()
            raise AdmIOError(f"admin socket error: {e}") from e

    def _send(self, command: str) -> None:
        self._check_open()
        if command.startswith('auth '):
            self._log_trace('SEND', 'auth <redacted>\n')
        else:
            self._log_trace('SEND', command)
        self._io(self._socket.sendall, command.encode('utf-8'))

    def read_message(self) -> Message:
        """Read the next framed response.

        Only needed directly on raw connections, e.g. to read the
        authentication challenge yourself.

        Raises:
            ResponseParseError: The header line is malformed.
            ProtocolError: The body is short or not newline-terminated.
            AdmIOError: The socket failed.
        """
        self._check_open()
        try:
            header = self._io(self._file.readline, MAX_HEADER_LEN)
            if not header:
                raise ProtocolError("connection closed by varnishd")
            fields = header.split()
            if not header.endswith(b'\n') or len(fields) != 2:
                raise ResponseParseError(f"malformed response header: {header!r}")
            try:
                status, length = int(fields[0]), int(fields[1])
            except ValueError:
                raise ResponseParseError(f"malformed response header: {header!r}") from None
            if length < 0:
                raise ResponseParseError(f"negative body length in header: {header!r}")

            # The body terminator isn't included in the declared length
            body = self._io(self._file.read, length + 1)
            if len(body) != length + 1:
                raise ProtocolError(
                    f"short body: expected {length + 1} bytes, got {len(body)}"
                )
            if body[-1:] != b'\n':
                raise ProtocolError("response body is not newline-terminated")
        except (ProtocolError, ParseError):
            self.close()
            raise

        body = body[:-1]
        self._log_trace('RECV', f"{status} {length}\n{body.decode('utf-8', errors='replace')}")
        return Message(status, body)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def ask_raw(self, *args: str) -> Message:
        """Send a command and return the response without checking its status.

        Works on unauthenticated connections too.
        """
        self._send(format_command(args))
        return self.read_message()

    def ask(self, *args: str) -> str:
        """Send a command and return the response body.

        Arguments are joined with spaces and sent as one line.

        Raises:
            CommandError: The status isn't 200. Status, command and body
                are kept on the exception.
        """
        self._check_open()
        if not self._authenticated:
            raise ProtocolError("connection is not authenticated")
        command = format_command(args)
        status, body = self.ask_raw(*args)
        text = body.decode('utf-8', errors='replace')
        if status != Status.OK:
            raise CommandError(status, command.rstrip('\n'), text)
        return text

    def authenticate(self, secret_path: Union[str, Path]) -> None:
        """Answer the challenge varnishd sends right after connecting.

        The secret is read from ``secret_path`` for this handshake only.
        On any failure the connection is closed.

        Raises:
            AuthenticationError: Wrong challenge status, short nonce, or
                rejected response.
            AdmIOError: The secret file can't be read.
        """
        try:
            status, nonce = self.read_message()
            if status != Status.AUTH:
                raise AuthenticationError(
                    f"expected challenge status {int(Status.AUTH)}, got {status}",
                    status=status,
                )
            if len(nonce) < NONCE_LEN:
                raise AuthenticationError(
                    f"nonce too short: {len(nonce)} bytes, need {NONCE_LEN}",
                    status=status,
                )

            try:
                secret = Path(secret_path).read_bytes()
            except OSError as e:
                raise AdmIOError(f"cannot read secret file {secret_path}: {e}") from e

            status, _ = self.ask_raw('auth', auth_digest(nonce, secret))
            if status != Status.OK:
                raise AuthenticationError(
                    f"authentication rejected with status {status}",
                    status=status,
                )
        except AdmError:
            self.close()
            raise

        self._authenticated = True
        logger.debug("authenticated admin connection")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


def connect_raw(address: Tuple[str, int], secret_path: Union[str, Path],
                timeout: Optional[float] = None, trace: bool = False,
                trace_file=None) -> Connection:
    """Connect to an explicit admin endpoint and authenticate.

    ``address`` and ``secret_path`` correspond to varnishd's ``-T`` and
    ``-S`` arguments.
    """
    try:
        sock = socket.create_connection(address, timeout=timeout)
    except socket.timeout as e:
        raise AdmTimeoutError(f"timed out connecting to {address}") from e
    except OSError as e:
        raise AdmIOError(f"cannot connect to {address}: {e}") from e

    conn = Connection(sock, trace=trace, trace_file=trace_file)
    conn.authenticate(secret_path)
    return conn


def connect(name: str = "", base: Union[str, Path] = WORKDIR_BASE,
            timeout: Optional[float] = None, trace: bool = False,
            trace_file=None) -> Connection:
    """Open an authenticated connection using a varnishd ``-n`` name.

    Each published endpoint is tried in order; the first one that connects
    and authenticates wins.

    Raises:
        EndpointNotFoundError: No endpoint is published.
        AdmError: The last candidate's failure when every candidate failed.
    """
    endpoint = resolve(name, base)
    if not endpoint.candidates:
        raise EndpointNotFoundError(f"no available endpoint for {name or DEFAULT_NAME}")

    last_error: Optional[AdmError] = None
    for address in endpoint.candidates:
        try:
            return connect_raw(address, endpoint.secret_path, timeout=timeout,
                               trace=trace, trace_file=trace_file)
        except AdmError as e:
            logger.debug("endpoint %s:%d failed: %s", address[0], address[1], e)
            last_error = e
    raise last_error


def accept(listener: socket.socket, secret_path: Union[str, Path],
           timeout: Optional[float] = None, trace: bool = False,
           trace_file=None) -> Connection:
    """Accept varnishd's connection on a ``-M`` listener and authenticate."""
    try:
        listener.settimeout(timeout)
        sock, peer = listener.accept()
    except socket.timeout as e:
        raise AdmTimeoutError("timed out waiting for varnishd to connect") from e
    except OSError as e:
        raise AdmIOError(f"accept failed: {e}") from e

    sock.settimeout(timeout)
    logger.debug("accepted admin connection from %s", peer)
    conn = Connection(sock, trace=trace, trace_file=trace_file)
    conn.authenticate(secret_path)
    return conn
