"""One-shot varnishd instances driven through the admin protocol.

Starting an instance walks through these states:

    UNSTARTED -> SPAWNED -> CONNECTED -> CONFIGURED -> ACTIVATED -> RUNNING

varnishd is launched with ``-M`` pointing at a listener we own, so it
connects back to us instead of us looking up its ``-T`` endpoint. Any
failure on the way leaves the instance FAILED; ``stop`` tears down whatever
was set up and moves it to STOPPED.
"""

import ipaddress
import logging
import select
import shutil
import socket
import subprocess
import tempfile
import time
import uuid
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, List, Optional

from vadm import (
    AdmError,
    AdmIOError,
    AdmTimeoutError,
    Connection,
    Message,
    ProcessError,
    ProtocolError,
    ResponseParseError,
    accept,
)

from .builder import VarnishConfig

logger = logging.getLogger(__name__)

VCL_NAME = "vcl1"
# Heredoc delimiter for vcl.inline, unlikely to show up in VCL
HEREDOC_DELIMITER = "XXYYZZ"
SECRET_FILE = "_.secret"

STATUS_RUNNING = "Child in state running"
STATUS_STOPPED = "Child in state stopped"

# Bounds for teardown so a wedged varnishd can't hang stop()
STOP_COMMAND_TIMEOUT = 10.0
KILL_WAIT_TIMEOUT = 10.0

# Parameters pinned for deterministic tests; caller parameters come after
PINNED_PARAMETERS = (
    "auto_restart=off",
    "syslog_cli_traffic=off",
    "thread_pool_min=10",
    "debug=+vtc_mode",
    "vsl_mask=+Debug,+H2RxHdr,+H2RxBody",
    "h2_initial_window_size=1m",
    "h2_rx_window_low_water=64k",
)


class InstanceState(Enum):
    UNSTARTED = "unstarted"
    SPAWNED = "spawned"
    CONNECTED = "connected"
    CONFIGURED = "configured"
    ACTIVATED = "activated"
    RUNNING = "running"
    STOPPED = "stopped"
    FAILED = "failed"


class Deadline:
    """An optional point in time after which waiting stops."""

    def __init__(self, timeout: Optional[float], clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self.expires_at = None if timeout is None else clock() + timeout

    def remaining(self) -> Optional[float]:
        """Seconds left, or None when there is no deadline."""
        if self.expires_at is None:
            return None
        return max(0.0, self.expires_at - self._clock())

    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def check(self, what: str) -> None:
        """Raise AdmTimeoutError if the deadline has passed."""
        if self.expired():
            raise AdmTimeoutError(f"timed out {what}")

    def socket_timeout(self) -> Optional[float]:
        # A zero timeout would put the socket in non-blocking mode
        remaining = self.remaining()
        if remaining is None:
            return None
        return max(remaining, 0.001)

    def slice(self, interval: float) -> float:
        """The shorter of ``interval`` and the time left."""
        remaining = self.remaining()
        if remaining is None:
            return interval
        return min(interval, remaining)


def varnishd_args(config: VarnishConfig, name: str, control_address: str) -> List[str]:
    """Build the varnishd argument list (without the executable)."""
    args = [
        "-F",
        "-f", "",
        "-n", name,
        "-a", "127.0.0.1:0",
    ]
    for value in PINNED_PARAMETERS:
        args.extend(["-p", value])
    args.extend(["-M", control_address])
    for p in config.parameters:
        args.extend(["-p", f"{p.name}={p.value}"])
    return args


def format_host(address: str) -> str:
    """Bracket IPv6 literals for use in a URL."""
    try:
        if ipaddress.ip_address(address).version == 6:
            return f"[{address}]"
    except ValueError:
        pass
    return address


def listen_address_url(response: str) -> str:
    """Turn a ``debug.listen_address`` response into a base URL.

    Only the first listen address is used; each line reads
    ``<name> <address> <port>``.

    Raises:
        ResponseParseError: The first line doesn't have that shape.
    """
    lines = response.splitlines()
    fields = lines[0].split() if lines else []
    if len(fields) != 3:
        raise ResponseParseError(f"unexpected listen address response: {response!r}")
    _, address, port = fields
    if not port.isdigit() or int(port) > 0xFFFF:
        raise ResponseParseError(f"invalid port in listen address response: {response!r}")
    return f"http://{format_host(address)}:{int(port)}"


class Varnish:
    """A varnishd instance started for one test.

    Use ``vtest.new()`` to build one. The caller must call ``stop`` (or use
    the instance as a context manager) so the process and its workdir don't
    outlive the test. An instance must not be used after ``stop``.
    """

    def __init__(self, config: VarnishConfig,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep):
        """
        Args:
            config: Finalized instance options.
            clock: Monotonic clock used for deadlines.
            sleep: Called between status polls.
        """
        self.config = config
        # HTTP endpoint, discovered once the child runs
        self.url: Optional[str] = None
        self.state = InstanceState.UNSTARTED
        self._clock = clock
        self._sleep = sleep
        self._name: Optional[str] = None
        self._log_file: Optional[Path] = None
        self._listener: Optional[socket.socket] = None
        self._process: Optional[subprocess.Popen] = None
        self._conn: Optional[Connection] = None

    @property
    def name(self) -> Optional[str]:
        """The workdir path, usable as a ``vadm.connect`` name."""
        return self._name

    @property
    def process(self) -> Optional[subprocess.Popen]:
        return self._process

    @property
    def connection(self) -> Optional[Connection]:
        return self._conn

    def is_running(self) -> bool:
        """Check if the varnishd process is still alive."""
        return self._process is not None and self._process.poll() is None

    def get_log_contents(self) -> str:
        """Read what varnishd wrote to stdout/stderr."""
        if self._log_file is not None and self._log_file.exists():
            return self._log_file.read_text(errors='replace')
        return ""

    def _log_tail(self, lines: int = 20) -> str:
        log_lines = self.get_log_contents().strip().split('\n')
        return '\n'.join(log_lines[-lines:])

    # ------------------------------------------------------------------
    # Start sequence
    # ------------------------------------------------------------------

    def start(self, timeout: Optional[float] = None) -> 'Varnish':
        """Spawn, configure and start varnishd, then wait for the child.

        Args:
            timeout: Seconds allowed for the whole sequence. Defaults to the
                configured ``start_timeout``; None waits forever.

        Raises:
            ProcessError: varnishd could not be spawned or exited early.
            CommandError: varnishd refused a command (e.g. VCL errors); its
                diagnostic is in ``body``.
            AdmTimeoutError: The deadline passed.
        """
        if self.state is not InstanceState.UNSTARTED:
            raise RuntimeError(f"instance already {self.state.value}")
        if timeout is None:
            timeout = self.config.start_timeout

        deadline = Deadline(timeout, self._clock)
        try:
            self._spawn()
            self._connect(deadline)
            self._configure(deadline)
            self._command(deadline, "vcl.use", VCL_NAME)
            self.state = InstanceState.ACTIVATED
            self._command(deadline, "start")
            self._await_running(deadline)
        except BaseException:
            self.state = InstanceState.FAILED
            raise

        self._conn.settimeout(None)
        logger.info("varnishd %s running at %s", self._name, self.url)
        return self

    def _spawn(self) -> None:
        tmp_dir = Path(self.config.tmp_dir or tempfile.gettempdir())
        self._name = str(tmp_dir / f"{self.config.workdir_prefix}{uuid.uuid4()}")
        self._log_file = Path(self._name + ".log")

        try:
            self._listener = socket.create_server(("127.0.0.1", 0))
        except OSError as e:
            raise AdmIOError(f"cannot open control socket: {e}") from e
        host, port = self._listener.getsockname()[:2]

        argv = list(self.config.command) + varnishd_args(self.config, self._name, f"{host}:{port}")
        logger.debug("spawning: %s", argv)
        try:
            with open(self._log_file, "wb") as log:
                self._process = subprocess.Popen(
                    argv,
                    stdin=subprocess.DEVNULL,
                    stdout=log,
                    stderr=subprocess.STDOUT,
                )
        except OSError as e:
            raise ProcessError(f"failed to spawn {argv[0]}: {e}") from e

        self.state = InstanceState.SPAWNED
        logger.debug("spawned varnishd pid %d for %s", self._process.pid, self._name)

    def _check_process(self, when: str) -> None:
        if self._process is None:
            return
        code = self._process.poll()
        if code is not None:
            raise ProcessError(
                f"varnishd exited with status {code} {when}.\n"
                f"Log contents:\n{self._log_tail()}"
            )

    def _connect(self, deadline: Deadline) -> None:
        # Wait in slices so an early exit of varnishd is noticed
        while True:
            deadline.check("waiting for varnishd to connect")
            self._check_process("before connecting")
            readable, _, _ = select.select(
                [self._listener], [], [], deadline.slice(self.config.poll_interval)
            )
            if readable:
                break

        self._conn = accept(
            self._listener,
            Path(self._name) / SECRET_FILE,
            timeout=deadline.socket_timeout(),
            trace=self.config.trace,
        )
        self._close_listener()
        self.state = InstanceState.CONNECTED

    def _configure(self, deadline: Deadline) -> None:
        if self.config.vcl_is_file:
            self._command(deadline, "vcl.load", VCL_NAME, self.config.vcl)
        else:
            self._command(
                deadline,
                "vcl.inline",
                f"{VCL_NAME} << {HEREDOC_DELIMITER}\n",
                self.config.full_vcl(),
                f"\n{HEREDOC_DELIMITER}",
            )
        self.state = InstanceState.CONFIGURED

    def _command(self, deadline: Deadline, *args: str) -> str:
        conn = self._connection()
        deadline.check(f"before {args[0]}")
        conn.settimeout(deadline.socket_timeout())
        return conn.ask(*args)

    def _await_running(self, deadline: Deadline) -> None:
        while True:
            self._check_process("before the child started")
            status = self._command(deadline, "status").rstrip('\n')
            if status == STATUS_STOPPED:
                raise ProcessError("child stopped before running")
            if status == STATUS_RUNNING:
                break
            logger.debug("child not running yet: %r", status)
            deadline.check("waiting for the child to run")
            self._sleep(deadline.slice(self.config.poll_interval))

        self.url = listen_address_url(self._command(deadline, "debug.listen_address"))
        self.state = InstanceState.RUNNING

    def wait_running(self, timeout: Optional[float] = None) -> str:
        """Block until the child runs and return the discovered URL.

        ``start`` already does this; it's only useful after restarting the
        child by hand (``adm("stop")``, ``adm("start")``).
        """
        deadline = Deadline(timeout, self._clock)
        try:
            self._await_running(deadline)
        finally:
            if self._conn is not None and not self._conn.closed:
                self._conn.settimeout(None)
        return self.url

    # ------------------------------------------------------------------
    # Admin passthrough
    # ------------------------------------------------------------------

    def _connection(self) -> Connection:
        if self._conn is None or self._conn.closed:
            raise ProtocolError(f"instance has no open admin connection ({self.state.value})")
        return self._conn

    def adm(self, *args: str) -> str:
        """Send a command to the admin socket (see ``vadm.Connection.ask``)."""
        return self._connection().ask(*args)

    def adm_raw(self, *args: str) -> Message:
        """Send a command and get the raw status and body (see ``vadm.Connection.ask_raw``)."""
        return self._connection().ask_raw(*args)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def _close_listener(self) -> None:
        if self._listener is not None:
            try:
                self._listener.close()
            except OSError:
                pass
            self._listener = None

    def stop(self, raise_errors: bool = True) -> None:
        """Stop varnishd and clean up its files.

        Every step runs even if an earlier one failed. Only a failure to
        kill the process is reported, since it leaves an orphan behind.
        Calling this again, or on an instance that failed to start, is safe.

        Raises:
            ProcessError: The process could not be killed (unless
                ``raise_errors`` is False; it is logged either way).
        """
        if self.state is InstanceState.STOPPED:
            return

        if self._conn is not None:
            if self._conn.authenticated:
                try:
                    self._conn.settimeout(STOP_COMMAND_TIMEOUT)
                    self._conn.ask("stop")
                except AdmError as e:
                    logger.debug("stop command failed: %s", e)
            self._conn.close()

        self._close_listener()

        kill_error = None
        if self._process is not None:
            try:
                self._process.kill()
                self._process.wait(timeout=KILL_WAIT_TIMEOUT)
            except (OSError, subprocess.TimeoutExpired) as e:
                kill_error = e
                logger.warning("failed to kill varnishd pid %d: %s", self._process.pid, e)

        if self._name is not None:
            shutil.rmtree(self._name, ignore_errors=True)
        if self._log_file is not None:
            try:
                self._log_file.unlink()
            except FileNotFoundError:
                pass

        self.state = InstanceState.STOPPED
        logger.debug("stopped %s", self._name)

        if kill_error is not None and raise_errors:
            raise ProcessError(
                f"failed to kill varnishd pid {self._process.pid}: {kill_error}"
            ) from kill_error

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
        return False


def stop_all(instances: Iterable[Varnish]) -> None:
    """Stop every instance, then raise the first ProcessError if any failed."""
    errors = []
    for varnish in instances:
        try:
            varnish.stop()
        except ProcessError as e:
            errors.append(e)
    if errors:
        raise errors[0]
