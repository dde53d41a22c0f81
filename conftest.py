"""Pytest configuration and fixtures for the varnish-vtest suite.

This module provides fixtures for:
- Hermetic tests against a fake varnishd (no Varnish install needed)
- End-to-end tests against a real varnishd (skipped when none is found)

Usage:
    # Everything that can run here
    pytest

    # Point end-to-end tests at a specific binary
    pytest --varnishd=/usr/local/sbin/varnishd

    # Show admin traffic for failing tests
    pytest --vtest-trace-on-failure

Binary Resolution:
    The varnishd binary is found in this order:
    1. --varnishd CLI option
    2. VTEST_VARNISHD environment variable / configuration file
    3. varnishd on PATH, then /usr/sbin/varnishd and /usr/local/sbin/varnishd
"""

import shutil
import sys
from pathlib import Path
from typing import Callable, Generator, List, Optional

import pytest

from harness.config import get_config, reset_config
from vtest import Varnish, VarnishBuilder, stop_all


# ============================================================================
# Configuration
# ============================================================================

def pytest_addoption(parser):
    """Add custom command-line options."""
    parser.addoption(
        "--varnishd",
        action="store",
        default=None,
        help="Path to the varnishd binary used by end-to-end tests"
    )
    parser.addoption(
        "--vtest-trace",
        action="store_true",
        default=False,
        help="Enable admin protocol tracing (show all CLI traffic)"
    )
    parser.addoption(
        "--vtest-trace-on-failure",
        action="store_true",
        default=False,
        help="Show admin transcript and varnishd log when a test fails"
    )


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "e2e: marks tests that need a real varnishd binary"
    )


@pytest.fixture(autouse=True)
def _fresh_config():
    """Reload configuration per test so monkeypatched env vars apply."""
    reset_config()
    yield
    reset_config()


# ============================================================================
# varnishd Binary Fixtures
# ============================================================================

def _find_varnishd() -> Optional[Path]:
    """Find a varnishd binary using the config system and common locations."""
    configured = get_config().varnishd
    found = shutil.which(configured)
    if found:
        return Path(found).resolve()

    for candidate in [Path("/usr/sbin/varnishd"), Path("/usr/local/sbin/varnishd")]:
        if candidate.exists() and candidate.is_file():
            return candidate.resolve()
    return None


@pytest.fixture(scope='session')
def project_root() -> Path:
    """Return the project root directory."""
    return Path(__file__).parent


@pytest.fixture(scope='session')
def varnishd_binary(request) -> Path:
    """Return the real varnishd binary, skipping when there is none."""
    option = request.config.getoption("--varnishd")
    binary = Path(option).resolve() if option else _find_varnishd()

    if not binary or not binary.exists():
        pytest.skip(
            "varnishd not found. Options:\n"
            "  - Specify --varnishd=<path>\n"
            "  - Set VTEST_VARNISHD environment variable\n"
            "  - Configure [varnishd] binary in ~/.config/varnish-vtest/config.toml"
        )
    return binary


@pytest.fixture(scope='session')
def fake_varnishd(project_root) -> List[str]:
    """Command line running the fake varnishd script."""
    return [sys.executable, str(project_root / "test_suites" / "fake_varnishd.py")]


# ============================================================================
# Builder and Instance Fixtures
# ============================================================================

@pytest.fixture
def vtest_builder(varnishd_binary, request, tmp_path) -> VarnishBuilder:
    """Provide a builder targeting the real varnishd."""
    return (VarnishBuilder()
            .command(str(varnishd_binary))
            .tmp_dir(tmp_path)
            .start_timeout(60.0)
            .trace(request.config.getoption("--vtest-trace")))


@pytest.fixture
def fake_builder(fake_varnishd, request, tmp_path) -> VarnishBuilder:
    """Provide a builder targeting the fake varnishd."""
    return (VarnishBuilder()
            .command(*fake_varnishd)
            .tmp_dir(tmp_path)
            .poll_interval(0.01)
            .start_timeout(30.0)
            .trace(request.config.getoption("--vtest-trace")))


@pytest.fixture
def start_varnish(request) -> Generator[Callable[[VarnishBuilder], Varnish], None, None]:
    """Start instances from builders and stop them after the test.

    Usage:
        def test_something(start_varnish, fake_builder):
            varnish = start_varnish(fake_builder.vcl_string("..."))
    """
    instances: List[Varnish] = []
    request.node._vtest_instances = instances

    def start(builder: VarnishBuilder) -> Varnish:
        varnish = Varnish(builder.build())
        instances.append(varnish)
        varnish.start()
        return varnish

    yield start

    stop_all(instances)


# ============================================================================
# Tracing and Debugging
# ============================================================================

@pytest.hookimpl(hookwrapper=True)
def pytest_runtest_makereport(item, call):
    """Hook to capture test results and display transcript on failure."""
    outcome = yield
    report = outcome.get_result()

    if report.when == "call" and report.failed:
        if not item.config.getoption("--vtest-trace-on-failure", default=False):
            return

        for varnish in getattr(item, "_vtest_instances", []):
            conn = varnish.connection
            if conn is not None:
                transcript = conn.format_transcript()
                if transcript:
                    report.longrepr = str(report.longrepr) + \
                        f"\n\n--- Admin Transcript ({varnish.name}) ---\n{transcript}\n"

            log = varnish.get_log_contents()
            if log:
                # Only show last 50 lines of log to avoid overwhelming output
                log_lines = log.strip().split('\n')
                if len(log_lines) > 50:
                    log = '\n'.join(['... (truncated) ...'] + log_lines[-50:])
                report.longrepr = str(report.longrepr) + \
                    f"\n\n--- varnishd Log (last 50 lines) ---\n{log}\n"
