"""cli.py -- Command-line front end for the bulk key operations.

Purpose
    Bulk key management against a Redis-compatible deployment that is
    either a single node or a sharded cluster. The deployment mode is
    detected once per run and every key operation is routed to the
    primary owning its hash slot.

Commands
    delete-pattern   [-h host] [-p port] [-a auth] <pattern>
        Deletes every key matching a glob pattern on every primary.

    seed-values      [-h host] [-p port] [-a auth] [-n count] [-b batch] <pattern>
        Writes ``count`` JSON values under keys built from a pattern in
        which ``{num}`` is replaced by 1..count.

    populate-fields  [-h host] [-p port] [-a auth] [-f source.yaml]
        HSETs the ``values`` of every ``key`` record of a YAML file,
        merging into existing hashes.

    replicate-keys   [--source-host H] [--source-port P] [--dest-host H] [--dest-port P] [--pattern P]
        Copies matching keys from one deployment to another.

    All commands are also reachable as ``python -m keyops <command> ...``.

Configuration (env vars)
    REDIS_HOST, REDIS_PORT, REDIS_AUTH   Defaults for -h / -p / -a.
    Flags always take precedence.

Exit codes
    0     Run completed (including when nothing matched, and when some
          keys or non-seed nodes failed; see the summary).
    1     Usage error, missing dependency, or unreadable populate source.
    2     Seed node unreachable.
    3     Cluster topology reply unusable for routing.
    130   Cancelled with Ctrl-C.
"""
from __future__ import annotations

import argparse
from dataclasses import replace
import importlib
import logging
import signal
import sys
import threading
from typing import Callable, Sequence

from keyops.config import Settings
from keyops.errors import Cancelled, DependencyError, KeyOpsError, UsageError

logger = logging.getLogger(__name__)


class ArgumentParser(argparse.ArgumentParser):
    def error(self, message: str):
        raise UsageError(f"{self.prog}: {message}")


def _load(module: str):
    try:
        return importlib.import_module(module)
    except ImportError as exc:
        raise DependencyError(f"required library {exc.name!r} is not installed") from exc


def configure_logging(verbose: bool = False, quiet: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.WARNING if quiet else logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(message)s", stream=sys.stderr)


def install_cancel() -> threading.Event:
    """First Ctrl-C stops at the next batch boundary, a second one aborts."""
    cancel = threading.Event()

    def handler(signum, frame):
        logger.warning("cancelling after the current batch (Ctrl-C again to abort)")
        cancel.set()
        signal.signal(signal.SIGINT, signal.default_int_handler)

    if threading.current_thread() is threading.main_thread():
        signal.signal(signal.SIGINT, handler)
    return cancel


def _common(parser: argparse.ArgumentParser, with_target: bool = True) -> None:
    parser.add_argument("--help", action="help", help="show this help message and exit")
    if with_target:
        parser.add_argument("-h", "--host", help="node host (default: $REDIS_HOST or localhost)")
        parser.add_argument("-p", "--port", type=int, help="node port (default: $REDIS_PORT or 6379)")
        parser.add_argument("-a", "--auth", help="password (default: $REDIS_AUTH)")
    parser.add_argument("-b", "--batch-size", type=int, help="commands per pipelined batch (default: 1000)")
    parser.add_argument("--timeout", type=float, help="per-call network timeout in seconds (default: 5)")
    parser.add_argument("--workers", type=int, help="concurrent node workers (default: one per primary)")
    parser.add_argument("--retries", type=int, help="re-runs of a node whose connection dropped (default: 0)")
    parser.add_argument("-v", "--verbose", action="store_true")
    parser.add_argument("-q", "--quiet", action="store_true")


def _settings(args: argparse.Namespace, **extra) -> Settings:
    return (
        Settings.from_env()
        .override(
            host=getattr(args, "host", None),
            port=getattr(args, "port", None),
            auth=getattr(args, "auth", None),
            batch_size=args.batch_size,
            timeout=args.timeout,
            workers=args.workers,
            retries=args.retries,
            **extra,
        )
        .validate()
    )


def _seed_topology(settings: Settings):
    connection = _load("keyops.connection")
    topology = _load("keyops.topology")
    seed = connection.Endpoint(settings.host, settings.port, settings.auth)
    logger.info("using %s", seed)
    return topology.discover(seed, connect=_connector(settings))


def _connector(settings: Settings):
    connection = _load("keyops.connection")

    def connect(endpoint, decode=True):
        return connection.NodeConnection.open(endpoint, timeout=settings.timeout, decode=decode)

    return connect


def _finish(report, settings: Settings) -> int:
    report_mod = _load("keyops.report")
    for line in report_mod.format_summary(report, settings.error_sample):
        print(line)
    if report.cancelled:
        raise Cancelled("cancelled")
    return 0


def cmd_delete(args: argparse.Namespace) -> int:
    settings = _settings(args)
    drivers = _load("keyops.drivers")
    cancel = install_cancel()
    topology = _seed_topology(settings)
    logger.info("deleting keys matching %r in %s mode", args.pattern, topology.mode.value)
    report = drivers.delete_pattern(
        topology, args.pattern, settings, connect=_connector(settings), cancel=cancel
    )
    return _finish(report, settings)


def cmd_seed(args: argparse.Namespace) -> int:
    settings = _settings(args, count=args.count)
    payload = _load("keyops.payload")
    drivers = _load("keyops.drivers")
    payload.check_pattern(args.pattern)
    cancel = install_cancel()
    topology = _seed_topology(settings)
    logger.info(
        "creating %d values matching %r in %s mode", settings.count, args.pattern, topology.mode.value
    )
    report = drivers.seed_values(
        topology, args.pattern, settings, connect=_connector(settings), cancel=cancel
    )
    return _finish(report, settings)


def cmd_populate(args: argparse.Namespace) -> int:
    settings = _settings(args)
    records_mod = _load("keyops.records")
    drivers = _load("keyops.drivers")
    records = records_mod.load_records(args.source)
    logger.info("loaded %d records from %s", len(records), args.source)
    cancel = install_cancel()
    topology = _seed_topology(settings)
    report = drivers.populate_fields(
        topology, records, settings, connect=_connector(settings), cancel=cancel
    )
    return _finish(report, settings)


def cmd_replicate(args: argparse.Namespace) -> int:
    settings = _settings(args).override(
        host=args.source_host, port=args.source_port, auth=args.source_auth
    ).validate()
    dest_settings = replace(settings, host=args.dest_host, port=args.dest_port, auth=args.dest_auth).validate()
    replicate_mod = _load("keyops.replicate")
    cancel = install_cancel()
    source = _seed_topology(settings)
    dest = _seed_topology(dest_settings)
    report = replicate_mod.replicate(
        source, dest, settings, args.pattern, connect=_connector(settings), cancel=cancel
    )
    return _finish(report, settings)


def delete_parser() -> ArgumentParser:
    parser = ArgumentParser(prog="delete-pattern", add_help=False, description="Delete keys matching a pattern.")
    _common(parser)
    parser.add_argument("pattern", help="glob pattern, e.g. 'user:*'")
    parser.set_defaults(handler=cmd_delete)
    return parser


def seed_parser() -> ArgumentParser:
    parser = ArgumentParser(prog="seed-values", add_help=False, description="Create generated key/value pairs.")
    _common(parser)
    parser.add_argument("-n", "--count", type=int, help="number of items to create (default: 10000)")
    parser.add_argument("pattern", help="key pattern containing {num}, e.g. 'user:{num}'")
    parser.set_defaults(handler=cmd_seed)
    return parser


def populate_parser() -> ArgumentParser:
    parser = ArgumentParser(prog="populate-fields", add_help=False, description="Set hash fields from a YAML file.")
    _common(parser)
    parser.add_argument("-f", "--source", default="params.yaml", help="YAML file (default: params.yaml)")
    parser.set_defaults(handler=cmd_populate)
    return parser


def replicate_parser() -> ArgumentParser:
    parser = ArgumentParser(prog="replicate-keys", add_help=False, description="Copy keys between deployments.")
    _common(parser, with_target=False)
    parser.add_argument("--source-host", help="source host (default: $REDIS_HOST or localhost)")
    parser.add_argument("--source-port", type=int, help="source port (default: $REDIS_PORT or 6379)")
    parser.add_argument("--source-auth", help="source password")
    parser.add_argument("--dest-host", default="localhost", help="destination host (default: localhost)")
    parser.add_argument("--dest-port", type=int, default=6380, help="destination port (default: 6380)")
    parser.add_argument("--dest-auth", help="destination password")
    parser.add_argument("--pattern", default="*", help="glob pattern of keys to copy (default: *)")
    parser.set_defaults(handler=cmd_replicate)
    return parser


COMMANDS: dict[str, Callable[[], ArgumentParser]] = {
    "delete-pattern": delete_parser,
    "seed-values": seed_parser,
    "populate-fields": populate_parser,
    "replicate-keys": replicate_parser,
}


def run(build: Callable[[], ArgumentParser], argv: Sequence[str] | None = None) -> int:
    try:
        args = build().parse_args(argv)
        configure_logging(args.verbose, args.quiet)
        return args.handler(args)
    except KeyOpsError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    except KeyboardInterrupt:
        print("aborted", file=sys.stderr)
        return Cancelled.exit_code


def delete_main(argv: Sequence[str] | None = None) -> int:
    return run(delete_parser, argv)


def seed_main(argv: Sequence[str] | None = None) -> int:
    return run(seed_parser, argv)


def populate_main(argv: Sequence[str] | None = None) -> int:
    return run(populate_parser, argv)


def replicate_main(argv: Sequence[str] | None = None) -> int:
    return run(replicate_parser, argv)


def main(argv: Sequence[str] | None = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)
    if not argv or argv[0] not in COMMANDS:
        print(f"usage: python -m keyops {{{','.join(COMMANDS)}}} ...", file=sys.stderr)
        return 1
    return run(COMMANDS[argv[0]], argv[1:])


if __name__ == "__main__":
    raise SystemExit(main())
