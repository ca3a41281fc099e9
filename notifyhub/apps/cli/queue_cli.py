from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
from typing import Any, Callable

from redis.exceptions import RedisError

from notifyhub.core.config import Settings, get_settings
from notifyhub.core.errors import NotifyHubError
from notifyhub.core.logging import configure_logging
from notifyhub.services.broker import BrokerClient, redis_factory_from_url
from notifyhub.services.queue_manager import QueueManager


Printer = Callable[[str], None]

# Commands that only read local configuration.
_OFFLINE_COMMANDS = frozenset({"config"})


class _Parser(argparse.ArgumentParser):
    def error(self, message: str) -> None:  # type: ignore[override]
        # Usage errors are command failures: exit 1, not argparse's 2.
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def build_parser() -> argparse.ArgumentParser:
    parser = _Parser(prog="queue-cli", description="Operate notifyhub delivery queues.")
    commands = parser.add_subparsers(dest="command")
    commands.add_parser("health", help="Check broker connectivity and queue state")
    commands.add_parser("stats", help="Show per-queue sizes, leases and dead letters")
    commands.add_parser("test", help="Inject one synthetic job per queue")
    purge = commands.add_parser("purge", help="Purge ready and leased jobs (all queues by default)")
    purge.add_argument("queue", nargs="?")
    monitor = commands.add_parser("monitor", help="Print stats periodically until interrupted")
    monitor.add_argument("interval_ms", nargs="?", type=int, default=None)
    commands.add_parser("config", help="Show the effective queue configuration")
    dlq = commands.add_parser("dlq", help="List dead-lettered jobs")
    dlq.add_argument("queue", nargs="?")
    dlq.add_argument("--limit", type=int, default=50)
    replay = commands.add_parser("replay", help="Move dead-lettered jobs back onto their queue")
    replay.add_argument("queue")
    replay.add_argument("message_ids", nargs="*")
    discard = commands.add_parser("discard", help="Permanently drop dead-lettered jobs")
    discard.add_argument("queue")
    discard.add_argument("message_ids", nargs="*")
    commands.add_parser("help", help="Show this help")
    return parser


def build_queue_manager(settings: Settings | None = None) -> QueueManager:
    settings = settings or get_settings()
    broker = BrokerClient(
        redis_factory_from_url(settings.resolved_redis_url()),
        prefix=settings.broker_key_prefix,
    )
    return QueueManager(broker, settings.queue_configs())


def _dump(payload: Any) -> str:
    return json.dumps(payload, indent=2, sort_keys=True, default=str)


async def _wait_for_interrupt(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            # Platforms without loop signal support fall back to KeyboardInterrupt.
            pass
    try:
        await stop_event.wait()
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)


async def _dispatch(
    args: argparse.Namespace,
    queue_manager: QueueManager,
    settings: Settings,
    out: Printer,
    stop_event: asyncio.Event,
) -> int:
    command = args.command
    if command == "health":
        result = await queue_manager.health_check()
        out(_dump(result))
        return 0 if result["status"] == "healthy" else 1
    if command == "stats":
        out(_dump(await queue_manager.get_detailed_stats()))
        return 0
    if command == "test":
        results = await queue_manager.add_test_messages()
        out(_dump(results))
        return 0 if all(item["status"] == "success" for item in results) else 1
    if command == "purge":
        if args.queue:
            results = [await queue_manager.purge_queue(args.queue)]
        else:
            results = await queue_manager.purge_all_queues()
        out(_dump(results))
        return 0 if all(item["status"] == "purged" for item in results) else 1
    if command == "monitor":
        interval_ms = args.interval_ms or settings.monitor_interval_ms
        if interval_ms <= 0:
            out("error=interval_ms must be positive")
            return 1
        stop = queue_manager.start_monitoring(interval_ms, sink=lambda stats: out(_dump(stats)))
        try:
            await _wait_for_interrupt(stop_event)
        finally:
            stop()
        return 0
    if command == "config":
        out(
            _dump(
                {
                    "broker": {"prefix": settings.broker_key_prefix, "host": settings.redis_host, "port": settings.redis_port},
                    "deliveryMode": settings.delivery_mode,
                    "queues": queue_manager.config_snapshot(),
                }
            )
        )
        return 0
    if command == "dlq":
        queues = [args.queue] if args.queue else queue_manager.queue_names
        out(_dump({queue: await queue_manager.list_dead_letters(queue, limit=args.limit) for queue in queues}))
        return 0
    if command == "replay":
        out(_dump(await queue_manager.replay_dead_letters(args.queue, args.message_ids or None)))
        return 0
    if command == "discard":
        out(_dump(await queue_manager.discard_dead_letters(args.queue, args.message_ids or None)))
        return 0
    out(f"error=unknown command {command}")
    return 1


async def run(
    args: argparse.Namespace,
    queue_manager: QueueManager,
    *,
    settings: Settings | None = None,
    out: Printer = print,
    err: Printer | None = None,
    stop_event: asyncio.Event | None = None,
) -> int:
    """Connect, run exactly one command, disconnect; returns the exit code."""
    settings = settings or get_settings()
    err = err or (lambda line: print(line, file=sys.stderr))
    stop_event = stop_event or asyncio.Event()
    needs_connection = args.command not in _OFFLINE_COMMANDS
    if needs_connection:
        try:
            await queue_manager.connect()
        except NotifyHubError as exc:
            if args.command == "health":
                out(_dump({"status": "unhealthy", "reason": str(exc)}))
            err(f"error=connect_failed detail={exc}")
            return 1
    try:
        return await _dispatch(args, queue_manager, settings, out, stop_event)
    except (NotifyHubError, RedisError, OSError) as exc:
        err(f"error=command_failed command={args.command} detail={exc}")
        return 1
    finally:
        if needs_connection:
            await queue_manager.disconnect()


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command in (None, "help"):
        parser.print_help()
        return 0
    configure_logging()
    settings = get_settings()
    try:
        return asyncio.run(run(args, build_queue_manager(settings), settings=settings))
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    sys.exit(main())
