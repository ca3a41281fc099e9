from __future__ import annotations

import asyncio
import logging
import signal

from notifyhub.core.logging import configure_logging
from notifyhub.services.runtime import Runtime


logger = logging.getLogger(__name__)


async def run_worker(runtime: Runtime | None = None, stop_event: asyncio.Event | None = None) -> int:
    # Consumers only; the API process can run with CONSUMERS_ENABLED=false and share the broker.
    runtime = runtime or Runtime(run_consumers=True)
    stop_event = stop_event or asyncio.Event()

    capabilities = await runtime.start()
    if not capabilities.broker:
        # Without a broker there is nothing to consume.
        logger.error("worker_exiting reason=broker_unavailable")
        await runtime.stop()
        return 1

    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            pass

    logger.info("worker_started queues=%s", ",".join(runtime.queue_configs))
    try:
        await stop_event.wait()
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)
        await runtime.stop()
        logger.info("worker_stopped")
    return 0


def main() -> int:
    configure_logging()
    try:
        return asyncio.run(run_worker())
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
