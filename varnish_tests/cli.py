#!/usr/bin/env python3
"""Main CLI entry point for varnish-vtest.

This provides the `vtest` command with subcommands for all suite operations.

Usage:
    vtest adm -n /tmp/vtest-py.1234 status
    vtest serve --vcl-file ./default.vcl --backend origin=http://127.0.0.1:8080
    vtest clean --list
    vtest test --varnishd /usr/sbin/varnishd
"""

import argparse
import logging
import sys
import time
from pathlib import Path


def parse_address(value: str):
    """Parse ``host:port`` (``[v6]:port`` for IPv6) into a tuple."""
    host, sep, port = value.rpartition(':')
    if not sep or not host or not port.isdigit():
        raise argparse.ArgumentTypeError(f"expected HOST:PORT, got {value!r}")
    return host.strip('[]'), int(port)


def parse_pair(value: str):
    """Parse ``NAME=VALUE``."""
    name, sep, rest = value.partition('=')
    if not sep or not name:
        raise argparse.ArgumentTypeError(f"expected NAME=VALUE, got {value!r}")
    return name, rest


def add_adm_parser(subparsers):
    """Add the 'adm' subcommand parser."""
    parser = subparsers.add_parser(
        'adm',
        help='Send a command to a running varnishd',
        description='Send a command to a running varnishd admin socket, like varnishadm',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  vtest adm status
  vtest adm -n /tmp/vtest-py.1234 vcl.list
  vtest adm -T 127.0.0.1:6082 -S /etc/varnish/secret ping
"""
    )

    parser.add_argument(
        "-n", "--name",
        default="",
        help="varnishd workdir name (default: the default instance)"
    )
    parser.add_argument(
        "-T", "--address",
        type=parse_address,
        help="Admin endpoint HOST:PORT (skips workdir lookup, needs -S)"
    )
    parser.add_argument(
        "-S", "--secret",
        type=Path,
        help="Secret file for -T"
    )
    parser.add_argument(
        "-t", "--timeout",
        type=float,
        help="Timeout in seconds for connecting and for the command"
    )
    parser.add_argument(
        "--trace",
        action="store_true",
        help="Show admin protocol traffic on stderr"
    )
    parser.add_argument(
        "words",
        nargs="+",
        metavar="command",
        help="Command and arguments"
    )

    return parser


def add_serve_parser(subparsers):
    """Add the 'serve' subcommand parser."""
    parser = subparsers.add_parser(
        'serve',
        help='Start a throwaway varnishd and keep it running',
        description='Start a one-shot varnishd instance and keep it up until interrupted',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  vtest serve --vcl-file ./default.vcl
  vtest serve --backend origin=http://127.0.0.1:8080 --vcl ''
  vtest serve --vcl-file ./default.vcl --param default_ttl=10
"""
    )

    vcl_group = parser.add_mutually_exclusive_group()
    vcl_group.add_argument(
        "--vcl-file",
        type=Path,
        help="VCL file to load as-is"
    )
    vcl_group.add_argument(
        "--vcl",
        default="",
        help="Inline VCL (version and backends are prepended)"
    )

    parser.add_argument(
        "--backend",
        action="append",
        default=[],
        type=parse_pair,
        metavar="NAME=URL",
        help="Backend definition (can be repeated)"
    )
    parser.add_argument(
        "--param", "-p",
        action="append",
        default=[],
        type=parse_pair,
        metavar="NAME=VALUE",
        help="varnishd parameter (can be repeated)"
    )
    parser.add_argument(
        "--vcl-version",
        choices=["4.0", "4.1"],
        default="4.1",
        help="VCL version for inline VCL (default: 4.1)"
    )
    parser.add_argument(
        "--varnishd",
        help="varnishd executable (default: from configuration)"
    )
    parser.add_argument(
        "--timeout",
        type=float,
        help="Give up if the instance isn't running after this many seconds"
    )
    parser.add_argument(
        "--trace",
        action="store_true",
        help="Show admin protocol traffic on stderr"
    )

    return parser


def add_clean_parser(subparsers):
    """Add the 'clean' subcommand parser."""
    parser = subparsers.add_parser(
        'clean',
        help='Remove leaked instance workdirs',
        description='Remove instance workdirs left behind by interrupted runs. '
                    'Do not run this while tests are running.',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  vtest clean --list
  vtest clean --dry-run
  vtest clean --force
"""
    )

    parser.add_argument(
        "--list", "-l",
        action="store_true",
        help="List leaked workdirs without deleting"
    )
    parser.add_argument(
        "--dry-run", "-n",
        action="store_true",
        help="Show what would be deleted without actually deleting"
    )
    parser.add_argument(
        "--force", "-f",
        action="store_true",
        help="Skip confirmation prompt"
    )

    return parser


def add_config_parser(subparsers):
    """Add the 'config' subcommand parser."""
    parser = subparsers.add_parser(
        'config',
        help='Show configuration',
        description='Show the effective configuration or a sample config file',
    )
    parser.add_argument(
        "--sample",
        action="store_true",
        help="Print a sample configuration file"
    )
    return parser


def add_test_parser(subparsers):
    """Add the 'test' subcommand parser."""
    parser = subparsers.add_parser(
        'test',
        help='Run the test suite',
        description='Run the varnish-vtest test suite',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  vtest test
  vtest test --varnishd /usr/local/sbin/varnishd
  vtest test -k routing
  vtest test -m "not e2e"
"""
    )

    parser.add_argument(
        "--varnishd",
        type=Path,
        help="varnishd binary used by end-to-end tests"
    )
    parser.add_argument(
        "--trace-on-failure",
        action="store_true",
        help="Show admin transcript and varnishd log when a test fails"
    )
    parser.add_argument(
        "-k",
        dest="keyword",
        help="Only run tests matching the given keyword expression"
    )
    parser.add_argument(
        "-m", "--mark",
        dest="marker",
        help="Only run tests matching the given marker"
    )
    parser.add_argument(
        "pytest_args",
        nargs="*",
        help="Additional arguments to pass to pytest"
    )

    return parser


def cmd_adm(args):
    """Execute the adm command."""
    import vadm

    try:
        if args.address:
            if not args.secret:
                print("Error: -T requires -S", file=sys.stderr)
                return 1
            conn = vadm.connect_raw(args.address, args.secret,
                                    timeout=args.timeout, trace=args.trace)
        else:
            from harness.config import get_config
            conn = vadm.connect(args.name, base=get_config().workdir_base,
                                timeout=args.timeout, trace=args.trace)
    except vadm.AdmError as e:
        print(f"Error: cannot connect: {e}", file=sys.stderr)
        return 1

    with conn:
        try:
            response = conn.ask(*args.words)
        except vadm.CommandError as e:
            print(f"Error: status {e.status}", file=sys.stderr)
            print(e.body, file=sys.stderr)
            return 1
        except vadm.AdmError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1

    print(response)
    return 0


def cmd_serve(args):
    """Execute the serve command."""
    import vadm
    import vtest

    builder = vtest.new()
    if args.vcl_file:
        builder.vcl_file(args.vcl_file.resolve())
    else:
        builder.vcl_string(args.vcl)
    if args.vcl_version == "4.0":
        builder.vcl_40()
    if args.varnishd:
        builder.command(args.varnishd)
    builder.trace(args.trace)

    try:
        for name, url in args.backend:
            builder.backend(name, url)
    except ValueError as e:
        print(f"Error: invalid backend: {e}", file=sys.stderr)
        return 1
    for name, value in args.param:
        builder.parameter(name, value)

    try:
        varnish = builder.start(timeout=args.timeout)
    except vadm.CommandError as e:
        print(f"Error: varnishd refused '{e.command.split()[0]}' (status {e.status}):", file=sys.stderr)
        print(e.body, file=sys.stderr)
        return 1
    except vadm.AdmError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(f"Name: {varnish.name}")
    print(f"URL:  {varnish.url}")
    print("Press Ctrl-C to stop.", flush=True)

    try:
        while varnish.is_running():
            time.sleep(0.5)
        print("varnishd exited.", file=sys.stderr)
        status = 1
    except KeyboardInterrupt:
        print("\nStopping...")
        status = 0

    try:
        varnish.stop()
    except vadm.ProcessError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    return status


def cmd_clean(args):
    """Execute the clean command."""
    from harness.clean import clean_workdirs, find_instance_workdirs, format_size, list_workdirs
    from harness.config import get_config

    config = get_config()

    if args.list:
        list_workdirs(config)
        return 0

    items = find_instance_workdirs(config)
    if not items:
        print("Nothing to clean.")
        return 0

    total_bytes = sum(size for _, size in items)
    print("Will delete:")
    for path, size in items:
        print(f"  {path} ({format_size(size)})")
    print(f"  Total: {len(items)} items, {format_size(total_bytes)}")

    if args.dry_run:
        print("\n(Dry run - nothing deleted)")
        return 0

    # Confirm unless --force
    if not args.force:
        try:
            response = input("\nProceed? [y/N] ")
            if response.lower() not in ['y', 'yes']:
                print("Cancelled.")
                return 0
        except (EOFError, KeyboardInterrupt):
            print("\nCancelled.")
            return 0

    removed, freed = clean_workdirs(config)
    print(f"Cleaned {removed} items, {format_size(freed)}")
    return 0


def cmd_config(args):
    """Execute the config command."""
    from harness.config import generate_sample_config, get_config

    if args.sample:
        print(generate_sample_config(), end='')
        return 0

    config = get_config()
    print(f"varnishd:       {config.varnishd}")
    print(f"workdir_base:   {config.workdir_base}")
    print(f"tmp_dir:        {config.tmp_dir}")
    print(f"workdir_prefix: {config.workdir_prefix}")
    print(f"poll_interval:  {config.poll_interval}")
    print(f"start_timeout:  {config.start_timeout}")
    return 0


def cmd_test(args):
    """Execute the test command."""
    import subprocess

    pytest_cmd = [sys.executable, "-m", "pytest"]

    if args.varnishd:
        pytest_cmd.append(f"--varnishd={args.varnishd}")

    if args.trace_on_failure:
        pytest_cmd.append("--vtest-trace-on-failure")

    if args.keyword:
        pytest_cmd.extend(["-k", args.keyword])

    if args.marker:
        pytest_cmd.extend(["-m", args.marker])

    # Add any additional pytest args
    if args.pytest_args:
        pytest_cmd.extend(args.pytest_args)

    print(f"\nRunning: {' '.join(str(x) for x in pytest_cmd)}\n")
    result = subprocess.run(pytest_cmd)
    return result.returncode


def main(argv=None):
    """Main entry point for the vtest command."""
    parser = argparse.ArgumentParser(
        prog='vtest',
        description='varnish-vtest - One-shot Varnish instances and admin client',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Commands:
  adm      Send a command to a running varnishd
  serve    Start a throwaway varnishd and keep it running
  clean    Remove leaked instance workdirs
  config   Show configuration
  test     Run the test suite

For help on a specific command:
  vtest <command> --help

Environment Variables:
  VTEST_VARNISHD        varnishd executable
  VTEST_WORKDIR_BASE    Parent of named varnishd workdirs
  VTEST_TMP_DIR         Where instance workdirs are created
  VTEST_START_TIMEOUT   Default start timeout in seconds
"""
    )

    parser.add_argument(
        '--version', '-V',
        action='version',
        version='%(prog)s 0.1.0'
    )
    parser.add_argument(
        '--verbose', '-v',
        action='count',
        default=0,
        help='Log more (-v: info, -vv: debug)'
    )

    subparsers = parser.add_subparsers(dest='command', metavar='<command>')

    add_adm_parser(subparsers)
    add_serve_parser(subparsers)
    add_clean_parser(subparsers)
    add_config_parser(subparsers)
    add_test_parser(subparsers)

    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    level = logging.WARNING
    if args.verbose == 1:
        level = logging.INFO
    elif args.verbose > 1:
        level = logging.DEBUG
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    # Dispatch to command handler
    handlers = {
        'adm': cmd_adm,
        'serve': cmd_serve,
        'clean': cmd_clean,
        'config': cmd_config,
        'test': cmd_test,
    }

    handler = handlers.get(args.command)
    if handler:
        return handler(args)
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
