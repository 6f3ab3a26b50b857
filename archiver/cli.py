import argparse
import asyncio
import logging
import sys

import orjson

from archiver.runner import ArchiverService, setup_logging_from_settings
from archiver.settings import ConfigurationError, Priority, Settings

logger = logging.getLogger(__name__)


def main(argv: list[str] | None = None) -> None:
    """CLI entrypoint for `archiver`.

    Responsibilities:
        - Parse CLI arguments.
        - Build the runtime `Settings` snapshot (file < env < CLI).
        - Configure logging.
        - Run the selected command against an `ArchiverService`.

    Exits with status 2 on configuration errors, 130 on interrupt.
    """
    args = parse_args(argv)

    try:
        settings = Settings.load(
            config_file=args.settings_file, log_level=args.log_level, log_file=args.log_file
        )
        if args.setting:
            settings = settings.with_overrides(dict(args.setting), priority=Priority.CLI)
    except (OSError, ValueError, TypeError) as e:
        logging.error("Invalid settings: %s", e)
        raise SystemExit(2) from e

    setup_logging_from_settings(settings)

    try:
        code = asyncio.run(run_command(args, settings))
    except ConfigurationError as e:
        logger.error("Configuration error: %s", e)
        raise SystemExit(2) from e
    except KeyboardInterrupt:
        print("\nInterrupted, exiting...")
        raise SystemExit(130) from None
    raise SystemExit(code)


async def run_command(args: argparse.Namespace, settings: Settings) -> int:
    """Start a service, dispatch to the handler of `args.command`, close the service."""
    command = COMMANDS[args.command]
    async with ArchiverService(settings) as service:
        return await command(service, args)


# Commands; each returns the process exit status


async def cmd_run(service: ArchiverService, args: argparse.Namespace) -> int:
    await service.run()
    return 0


async def cmd_once(service: ArchiverService, args: argparse.Namespace) -> int:
    report = await service.run_once()
    if args.json:
        _print_json(report.to_dict())
    else:
        print(
            f"seen={report.seen} completed={report.completed} failed={report.failed} "
            f"faulted={report.faulted} deferred={report.deferred}"
        )
    return 0


async def cmd_enqueue(service: ArchiverService, args: argparse.Namespace) -> int:
    status = 0
    for url in args.urls:
        try:
            item = await service.store.enqueue(url)
        except ValueError as e:
            print(f"Rejected {url!r}: {e}", file=sys.stderr)
            status = 1
            continue
        print(f"{item.id}\t{item.url}")
    return status


async def cmd_queue(service: ArchiverService, args: argparse.Namespace) -> int:
    items = await service.store.list_queued()
    if args.json:
        _print_json([{"id": i.id, "url": i.url} for i in items])
    else:
        for item in items:
            print(f"{item.id}\t{item.url}")
    return 0


async def cmd_failed(service: ArchiverService, args: argparse.Namespace) -> int:
    failures = await service.store.list_failed()
    if args.json:
        _print_json([{"id": f.id, "url": f.url, "error_message": f.error_message} for f in failures])
    else:
        for f in failures:
            print(f"{f.id}\t{f.url}\t{f.error_message}")
    return 0


async def cmd_retry(service: ArchiverService, args: argparse.Namespace) -> int:
    status = 0
    for failed_id in args.ids:
        item = await service.store.retry_failed(failed_id)
        if item is None:
            print(f"No failed download with id {failed_id}", file=sys.stderr)
            status = 1
            continue
        print(f"{failed_id} -> {item.id}\t{item.url}")
    return status


async def cmd_handlers(service: ArchiverService, args: argparse.Namespace) -> int:
    mapping = service.registry.describe()
    if args.json:
        _print_json(mapping)
    else:
        for origin, handler in mapping.items():
            print(f"{origin}\t{handler}")
    return 0


async def cmd_health(service: ArchiverService, args: argparse.Namespace) -> int:
    if service.relay.url is None:
        print("relay: not configured")
        return 1
    healthy = await service.relay.is_healthy()
    print(f"relay: {'healthy' if healthy else 'unreachable'}")
    return 0 if healthy else 1


COMMANDS = {
    "run": cmd_run,
    "once": cmd_once,
    "enqueue": cmd_enqueue,
    "queue": cmd_queue,
    "failed": cmd_failed,
    "retry": cmd_retry,
    "handlers": cmd_handlers,
    "health": cmd_health,
}


def _print_json(data: object) -> None:
    print(orjson.dumps(data, option=orjson.OPT_INDENT_2).decode())


class KeyValueListAction(argparse.Action):
    """Argparse action that accumulates `KEY=VALUE` pairs into a list.

    Stores a list of `(key, value)` tuples on the destination attribute.
    """

    @staticmethod
    def _parse_kv(s: str) -> tuple[str, str]:
        """Parse a single KEY=VALUE string used by the `--setting` option.

        - KEY and VALUE are split at the first '='.
        - VALUE is kept as a string; `Settings` converts it like an environment value.

        Raises:
          argparse.ArgumentTypeError on malformed input.
        """
        if "=" not in s:
            raise argparse.ArgumentTypeError("must be KEY=VALUE")
        key, val = s.split("=", 1)
        key = key.strip()
        if not key:
            raise argparse.ArgumentTypeError("KEY cannot be empty")
        return key, val.strip()

    def __call__(self, parser, namespace, values, option_string=None):
        if getattr(namespace, self.dest, None) is None:
            setattr(namespace, self.dest, [])
        target: list[tuple[str, object]] = getattr(namespace, self.dest)
        if not isinstance(values, str):
            raise argparse.ArgumentTypeError("Invalid setting value")
        try:
            pair = self._parse_kv(values)
        except argparse.ArgumentTypeError as e:
            raise argparse.ArgumentError(self, f"Invalid setting {values!r}: {e}") from e
        target.append(pair)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="archiver",
        description="Download worker draining the archive queue",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    g_config = parser.add_argument_group("Configuration")
    g_config.add_argument("--settings-file", help="Load settings from a TOML or JSON file")
    g_config.add_argument(
        "--setting",
        "-s",
        action=KeyValueListAction,
        default=[],
        help="Override a setting: KEY=VALUE (repeatable)",
    )

    g_log = parser.add_argument_group("Logging & Debugging")
    g_log.add_argument(
        "--log-level", default=None, choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
    )
    g_log.add_argument("--log-file", help="Log to file")

    from archiver import __version__

    parser.add_argument("--version", action="version", version=f"archiver {__version__}")

    sub = parser.add_subparsers(dest="command", required=True, metavar="COMMAND")
    sub.add_parser("run", help="Run the worker until interrupted")

    p_once = sub.add_parser("once", help="Run a single pass over the queue")
    p_once.add_argument("--json", action="store_true", help="Print the report as JSON")

    p_enqueue = sub.add_parser("enqueue", help="Add URLs to the download queue")
    p_enqueue.add_argument("urls", nargs="+", metavar="URL")

    p_queue = sub.add_parser("queue", help="List queued downloads")
    p_queue.add_argument("--json", action="store_true")

    p_failed = sub.add_parser("failed", help="List failed downloads")
    p_failed.add_argument("--json", action="store_true")

    p_retry = sub.add_parser("retry", help="Re-enqueue failed downloads")
    p_retry.add_argument("ids", nargs="+", type=int, metavar="ID")

    p_handlers = sub.add_parser("handlers", help="List registered origins and handlers")
    p_handlers.add_argument("--json", action="store_true")

    sub.add_parser("health", help="Check the relay observer")

    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Construct and parse the command-line arguments for the CLI."""
    return build_parser().parse_args(argv)


if __name__ == "__main__":
    main()
