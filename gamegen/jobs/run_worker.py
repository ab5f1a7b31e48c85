#!/usr/bin/env python3
"""
Standalone generation worker process.

Runs the worker pool against a durable job store (SQLite or Redis) so
long generations happen outside the web server. Queued jobs written to
the store by other producers are picked up by intake polling.

Usage:
    GENERATION_PROVIDER=mypkg.providers:create_provider \\
    JOB_BACKEND=sqlite python -m gamegen.jobs.run_worker
"""

import asyncio
import signal
import sys

from gamegen.config import config
from gamegen.generation import build_default_registry, load_provider
from gamegen.jobs.queue import build_controller
from gamegen.utils.logging import configure_logging, worker_logger as logger


async def main() -> int:
    """Run the worker pool until SIGINT/SIGTERM."""
    configure_logging(config.LOG_LEVEL, config.LOG_BUFFER_SIZE)

    if not config.GENERATION_PROVIDER:
        logger.error("GENERATION_PROVIDER is not set; nothing can run the stages")
        return 1
    if config.JOB_BACKEND == "memory":
        logger.warning("Memory job backend: queued jobs are lost when this process exits")

    provider = load_provider(config.GENERATION_PROVIDER)
    settings = config
    if settings.INTAKE_POLL_SECONDS is None:
        settings = config.model_copy(update={"INTAKE_POLL_SECONDS": 5.0})

    controller = build_controller(
        registry=build_default_registry(provider),
        settings=settings,
        log_progress_events=True,
    )

    logger.info(
        "Starting standalone generation worker",
        backend=settings.JOB_BACKEND,
        concurrency=settings.QUEUE_MAX_CONCURRENCY,
        poll_interval=settings.INTAKE_POLL_SECONDS,
    )

    shutdown_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def handle_shutdown(signum):
        logger.info(f"Received signal {signum}, shutting down")
        shutdown_event.set()

    for signum in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(signum, handle_shutdown, signum)

    try:
        await controller.start()
        await shutdown_event.wait()
    finally:
        # Running jobs get one stage boundary to stop before we give up
        await controller.shutdown(cancel_in_flight=True, timeout=settings.STAGE_TIMEOUT_SECONDS)
        logger.info("Worker stopped")
    return 0


def cli():
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
