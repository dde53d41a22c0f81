"""One-shot Varnish instances for tests.

This is the Python counterpart of varnishtest: build an instance, start it,
then exercise it with any HTTP client.

    varnish = vtest.new().vcl_string('''
        backend default none;
        sub vcl_recv { return (synth(200, "Good test")); }
    ''').start()
    try:
        httpx.get(varnish.url + "/test")
    finally:
        varnish.stop()

This module provides:
- VarnishBuilder / new: Option collection (VCL, backends, parameters)
- VarnishConfig: Frozen options consumed by Varnish
- Varnish: Instance lifecycle (start, admin passthrough, stop)
"""

from .builder import (
    Backend,
    Parameter,
    VarnishBuilder,
    VarnishConfig,
    new,
    parse_backend_url,
)
from .varnish import (
    Deadline,
    InstanceState,
    Varnish,
    listen_address_url,
    stop_all,
    varnishd_args,
)

__all__ = [
    'Backend',
    'Parameter',
    'VarnishBuilder',
    'VarnishConfig',
    'new',
    'parse_backend_url',
    'Deadline',
    'InstanceState',
    'Varnish',
    'listen_address_url',
    'stop_all',
    'varnishd_args',
]
