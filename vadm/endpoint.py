"""Admin endpoint discovery from a varnishd workdir.

varnishd publishes its management state under ``<workdir>/_.vsm_mgt/``.
The ``_.index`` file lists the published segments; the ``Arg`` records for
``-T`` and ``-S`` point at the files holding the admin listen addresses and
the path to the secret file, respectively:

    + _.Arg.00000000 0 57 Arg -T
    + _.Arg.00000001 0 27 Arg -S

All of these files may be padded with NUL bytes.
"""

import ipaddress
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Tuple, Union

from .exceptions import AdmIOError, EndpointNotFoundError, EndpointParseError

logger = logging.getLogger(__name__)

# Default varnishd workdir parent, used for names that aren't absolute
WORKDIR_BASE = "/var/lib/varnish"
# Name varnishd uses when started without -n
DEFAULT_NAME = "varnishd"

VSM_MGT_DIR = "_.vsm_mgt"
INDEX_FILE = "_.index"

PORT_PATTERN = re.compile(r'^[0-9]+$')


@dataclass(frozen=True)
class ManagementEndpoint:
    """Where and how to reach a varnishd admin port."""
    candidates: Tuple[Tuple[str, int], ...]
    secret_path: Path


def workdir_path(name: str = "", base: Union[str, Path] = WORKDIR_BASE) -> Path:
    """Map a varnishd ``-n`` name to its workdir path."""
    if not name:
        name = DEFAULT_NAME
    if not name.startswith('/'):
        return Path(base) / name
    return Path(name)


def _read_trimmed(path: Path) -> str:
    """Read a management file, dropping NUL padding and surrounding whitespace."""
    try:
        data = path.read_bytes()
    except FileNotFoundError as e:
        raise EndpointNotFoundError(f"management file not found: {path}") from e
    except OSError as e:
        raise AdmIOError(f"cannot read {path}: {e}") from e
    return data.strip(b'\x00').decode('utf-8', errors='replace').strip()


def _parse_index(content: str) -> Tuple[str, str]:
    """Return the (-T file, -S file) names listed in an index."""
    t_arg = ""
    s_arg = ""
    for line in content.splitlines():
        fields = line.split()
        if len(fields) < 6 or fields[0] != '+' or fields[4] != 'Arg':
            continue
        if fields[5] == '-T':
            t_arg = fields[1]
        elif fields[5] == '-S':
            s_arg = fields[1]
    return t_arg, s_arg


def parse_endpoint_table(content: str) -> Tuple[Tuple[str, int], ...]:
    """Parse ``<address> <port>`` lines into (address, port) tuples.

    Lines that don't have exactly two fields are ignored. A two-field line
    must carry an IP literal and a 16-bit port.

    Raises:
        EndpointParseError: On an invalid address or port.
    """
    candidates = []
    for line in content.splitlines():
        fields = line.split()
        if len(fields) != 2:
            continue
        address, port_str = fields
        try:
            ipaddress.ip_address(address)
        except ValueError as e:
            raise EndpointParseError(f"invalid address {address!r} in endpoint table") from e
        if not PORT_PATTERN.match(port_str) or int(port_str) > 0xFFFF:
            raise EndpointParseError(f"invalid port {port_str!r} in endpoint table")
        candidates.append((address, int(port_str)))
    return tuple(candidates)


def resolve(name: str = "", base: Union[str, Path] = WORKDIR_BASE) -> ManagementEndpoint:
    """Find the admin endpoints and secret path of the varnishd named ``name``.

    Args:
        name: The varnishd ``-n`` argument. Empty means the default instance;
            relative names are looked up under ``base``.
        base: Parent directory for relative names.

    Returns:
        ManagementEndpoint with candidates in file order.

    Raises:
        EndpointNotFoundError: A management file is missing.
        AdmIOError: A management file can't be read.
        EndpointParseError: The endpoint table is malformed.
    """
    mgt_dir = workdir_path(name, base) / VSM_MGT_DIR

    t_arg, s_arg = _parse_index(_read_trimmed(mgt_dir / INDEX_FILE))
    if not s_arg:
        raise EndpointNotFoundError(f"no -S record in {mgt_dir / INDEX_FILE}")
    if not t_arg:
        raise EndpointNotFoundError(f"no -T record in {mgt_dir / INDEX_FILE}")

    secret_path = Path(_read_trimmed(mgt_dir / s_arg))
    candidates = parse_endpoint_table(_read_trimmed(mgt_dir / t_arg))

    logger.debug("resolved %s: %d candidate(s)", mgt_dir, len(candidates))
    return ManagementEndpoint(candidates=candidates, secret_path=secret_path)
