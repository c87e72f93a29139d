from __future__ import annotations

import asyncio
import logging
import signal

from sourcing_worker.bootstrap import build_services
from sourcing_worker.core.config import get_settings
from sourcing_worker.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry

logger = logging.getLogger(__name__)


async def run_worker(stop_event: asyncio.Event | None = None) -> None:
    settings = get_settings()
    configure_logging(settings)
    telemetry_runtime = setup_telemetry(settings)
    services = build_services(settings)
    stop_event = stop_event or asyncio.Event()
    _install_signal_handlers(stop_event)

    consumers = services.consumers()
    tasks = [consumer.run(stop_event) for consumer in consumers]
    if settings.scheduler_enabled:
        tasks.append(services.scheduler.run(stop_event))
    logger.info(
        "worker started queues=%s scheduler=%s",
        ",".join(consumer.queue_name for consumer in consumers),
        settings.scheduler_enabled,
    )
    try:
        await asyncio.gather(*tasks)
    finally:
        await services.close()
        shutdown_telemetry(telemetry_runtime)
        logger.info("worker stopped")


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, stop_event.set)
        except (NotImplementedError, RuntimeError):  # pragma: no cover - platform dependent
            logger.debug("signal handler unavailable signal=%s", signum)


if __name__ == "__main__":
    asyncio.run(run_worker())
