"""Instance configuration for one-shot Varnish instances.

``VarnishBuilder`` collects options with chainable calls and has no side
effects; ``build`` freezes them into a ``VarnishConfig`` that
``vtest.varnish.Varnish`` consumes.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple, Union
from urllib.parse import urlsplit

from harness.config import get_config

VCL_41 = "vcl 4.1;\n\n"
VCL_40 = "vcl 4.0;\n\n"


@dataclass(frozen=True)
class Parameter:
    """A varnishd runtime parameter, passed as ``-p name=value``."""
    name: str
    value: str


@dataclass(frozen=True)
class Backend:
    """A VCL backend definition prepended to inline VCL."""
    name: str
    host: str
    port: str
    tls: bool = False


@dataclass(frozen=True)
class VarnishConfig:
    """Finalized options for one instance.

    ``vcl_is_file`` tells whether ``vcl`` is a path to load or VCL text.
    Backends and parameters keep their insertion order; duplicates are
    passed through as-is.
    """
    vcl: str = ""
    vcl_is_file: bool = False
    vcl_version: str = VCL_41
    backends: Tuple[Backend, ...] = ()
    parameters: Tuple[Parameter, ...] = ()
    command: Tuple[str, ...] = ("varnishd",)
    tmp_dir: Optional[Path] = None
    workdir_prefix: str = "vtest-py."
    poll_interval: float = 0.2
    start_timeout: Optional[float] = None
    trace: bool = False

    def backend_vcl(self) -> str:
        """Render the backend definitions as VCL."""
        blocks = []
        for b in self.backends:
            blocks.append(
                f'backend {b.name} {{\n'
                f'\t.host = "{b.host}";\n'
                f'\t.port = "{b.port}";\n'
                f'\t.host_header = "{b.host}";\n'
                f'}}\n'
            )
        return ''.join(blocks)

    def full_vcl(self) -> str:
        """The VCL text loaded in string mode: version, backends, then user VCL."""
        return f"{self.vcl_version}{self.backend_vcl()}{self.vcl}"


def parse_backend_url(url: str) -> Tuple[str, str, bool]:
    """Split a backend URL into (host, port, tls).

    ``https`` implies TLS and port 443 when none is given; anything else
    defaults to port 80.

    Raises:
        ValueError: The URL can't be parsed or has no host.
    """
    parts = urlsplit(url)
    port = parts.port
    host = parts.hostname
    if not host:
        raise ValueError(f"backend URL has no host: {url!r}")

    tls = parts.scheme == 'https'
    if port is None:
        port = 443 if tls else 80
    return host, str(port), tls


class VarnishBuilder:
    """Collects options before an instance is started.

    Every setter returns the builder so calls can be chained:

        varnish = (VarnishBuilder()
                   .backend("origin", server_url)
                   .vcl_string('sub vcl_recv { return (pass); }')
                   .start())
    """

    def __init__(self):
        self._vcl = ""
        self._vcl_is_file = False
        self._vcl_version = VCL_41
        self._backends = []
        self._parameters = []
        # None means "take the default from harness.config at build time"
        self._command: Optional[Tuple[str, ...]] = None
        self._tmp_dir: Optional[Path] = None
        self._workdir_prefix: Optional[str] = None
        self._poll_interval: Optional[float] = None
        self._start_timeout_set = False
        self._start_timeout: Optional[float] = None
        self._trace = False

    def vcl_string(self, vcl: str) -> 'VarnishBuilder':
        """Use ``vcl`` as the VCL body.

        The VCL version line and backend definitions are prepended to it.
        """
        self._vcl_is_file = False
        self._vcl = vcl
        return self

    def vcl_file(self, path: Union[str, Path]) -> 'VarnishBuilder':
        """Load the VCL from ``path`` as-is (no version or backends added)."""
        self._vcl_is_file = True
        self._vcl = str(path)
        return self

    def parameter(self, name: str, value: str) -> 'VarnishBuilder':
        """Append a varnishd parameter; later ones override the defaults."""
        self._parameters.append(Parameter(name, str(value)))
        return self

    def vcl_41(self) -> 'VarnishBuilder':
        self._vcl_version = VCL_41
        return self

    def vcl_40(self) -> 'VarnishBuilder':
        self._vcl_version = VCL_40
        return self

    def vcl_version(self, version: str) -> 'VarnishBuilder':
        """Set the raw version directive, e.g. ``"vcl 4.1;\\n"``."""
        self._vcl_version = version
        return self

    def backend(self, name: str, url: str) -> 'VarnishBuilder':
        """Add a backend definition pointing at ``url``.

        ``name`` must be a valid VCL identifier or varnishd will refuse the
        VCL. Raises ValueError right away if ``url`` can't be parsed.
        """
        host, port, tls = parse_backend_url(url)
        self._backends.append(Backend(name=name, host=host, port=port, tls=tls))
        return self

    def command(self, *argv: str) -> 'VarnishBuilder':
        """Replace the varnishd executable (plus any leading arguments)."""
        self._command = tuple(str(a) for a in argv)
        return self

    def tmp_dir(self, path: Union[str, Path]) -> 'VarnishBuilder':
        self._tmp_dir = Path(path)
        return self

    def poll_interval(self, seconds: float) -> 'VarnishBuilder':
        self._poll_interval = float(seconds)
        return self

    def start_timeout(self, seconds: Optional[float]) -> 'VarnishBuilder':
        self._start_timeout_set = True
        self._start_timeout = seconds
        return self

    def trace(self, enabled: bool = True) -> 'VarnishBuilder':
        """Echo admin traffic to stderr."""
        self._trace = enabled
        return self

    def build(self) -> VarnishConfig:
        """Freeze the collected options.

        Options that were never set are filled from ``harness.config``
        here, so the setters themselves do no I/O.
        """
        config = get_config()
        return VarnishConfig(
            vcl=self._vcl,
            vcl_is_file=self._vcl_is_file,
            vcl_version=self._vcl_version,
            backends=tuple(self._backends),
            parameters=tuple(self._parameters),
            command=self._command or (config.varnishd,),
            tmp_dir=self._tmp_dir or config.tmp_dir,
            workdir_prefix=(config.workdir_prefix if self._workdir_prefix is None
                            else self._workdir_prefix),
            poll_interval=(config.poll_interval if self._poll_interval is None
                           else self._poll_interval),
            start_timeout=(self._start_timeout if self._start_timeout_set
                           else config.start_timeout),
            trace=self._trace,
        )

    def start(self, timeout: Optional[float] = None):
        """Build the configuration and start an instance.

        If starting fails, the partial instance is stopped before the
        error propagates.
        """
        from .varnish import Varnish

        varnish = Varnish(self.build())
        try:
            varnish.start(timeout=timeout)
        except BaseException:
            varnish.stop(raise_errors=False)
            raise
        return varnish


def new() -> VarnishBuilder:
    """Create a builder with default settings (VCL 4.1, no backends)."""
    return VarnishBuilder()
