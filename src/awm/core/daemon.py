"""Long-running daemon: wires the store, trigger source, scheduler and pollers."""

import asyncio
import logging
import os
import signal

from awm.config import Config
from awm.core.events import EventSource
from awm.core.intake import take_queued_work
from awm.core.scheduler import Scheduler
from awm.core.state import StateStore
from awm.integrations.executor import AgentCLIExecutor
from awm.integrations.slack import SlackNotifier

logger = logging.getLogger(__name__)

HEALTH_INTERVAL = 60.0


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_scheduler(config: Config, state: StateStore) -> Scheduler:
    """Build a scheduler with the executor and notifier the config asks for."""
    executor = AgentCLIExecutor(config.executor_bin) if config.executor_bin else None
    notifier = None
    if config.slack_bot_token and config.slack_channel:
        notifier = SlackNotifier(config.slack_bot_token, config.slack_channel)
    return Scheduler(config, state, EventSource(), executor=executor, notifier=notifier)


def read_pid(config: Config) -> int | None:
    """Return the daemon PID if the PID file names a live process."""
    try:
        pid = int(config.pid_file.read_text().strip())
    except (FileNotFoundError, ValueError):
        return None
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return None
    except PermissionError:
        return pid  # Process exists but we can't signal it
    return pid


async def process_intake(scheduler: Scheduler, config: Config) -> int:
    """Submit every pending intake request. Returns how many were submitted."""
    submitted = 0
    for trigger in take_queued_work(config.intake_file):
        if not scheduler.state.get_project(trigger.project_id):
            logger.warning("Project not found: %s, dropping queued work", trigger.project_id)
            continue
        scheduler.handle_trigger(trigger)
        submitted += 1
    return submitted


async def _intake_loop(scheduler: Scheduler, config: Config) -> None:
    while True:
        try:
            await process_intake(scheduler, config)
        except Exception:
            logger.exception("Error processing intake queue")
        await asyncio.sleep(config.drain_interval)


async def health_check(scheduler: Scheduler) -> dict:
    status = scheduler.status()
    logger.info(
        "Health check: active=%d/%d queue=%d projects=%d running=%s",
        status["active_sessions"], status["max_concurrent"], status["queue_size"],
        len(scheduler.state.get_all_projects()), status["running"],
    )
    if not status["running"]:
        logger.warning("Scheduler stopped, restarting")
        await scheduler.start()
    return status


async def _health_loop(scheduler: Scheduler) -> None:
    while True:
        await asyncio.sleep(HEALTH_INTERVAL)
        try:
            await health_check(scheduler)
        except Exception:
            logger.exception("Error in health check")


def build_web_server(scheduler: Scheduler, config: Config):
    """Build (but do not start) the uvicorn server for the web app."""
    import uvicorn

    from awm.web.app import create_app

    return uvicorn.Server(
        uvicorn.Config(
            create_app(scheduler),
            host=config.webhook_host,
            port=config.webhook_port,
            log_level=config.log_level.lower(),
        )
    )


def make_stop_handler(stop_event: asyncio.Event, server=None):
    """Signal handler that stops the daemon and asks uvicorn to exit."""

    def handle_signal() -> None:
        logger.info("Stop signal received")
        stop_event.set()
        if server is not None:
            server.should_exit = True

    return handle_signal


async def run_daemon(config: Config) -> None:
    """Run until SIGINT or SIGTERM, then stop gracefully."""
    state = StateStore(config.data_dir)
    state.initialize()
    config.pid_file.write_text(str(os.getpid()))
    logger.info("Daemon PID %d (%s)", os.getpid(), config.pid_file)

    scheduler = build_scheduler(config, state)
    server = build_web_server(scheduler, config) if config.webhook_port else None
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    handle_signal = make_stop_handler(stop_event, server)
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, handle_signal)

    await scheduler.start()
    background = [
        asyncio.create_task(_intake_loop(scheduler, config), name="awm-intake"),
        asyncio.create_task(_health_loop(scheduler), name="awm-health"),
    ]
    web_task = None
    if server is not None:
        web_task = asyncio.create_task(server.serve(), name="awm-web")
        logger.info("Web API listening on %s:%d", config.webhook_host, config.webhook_port)

    logger.info("Daemon running, data directory: %s", config.data_dir)
    try:
        await stop_event.wait()
    finally:
        logger.info("Shutting down")
        for task in background:
            task.cancel()
        await asyncio.gather(*background, return_exceptions=True)
        if web_task is not None:
            server.should_exit = True
            await asyncio.gather(web_task, return_exceptions=True)
        await scheduler.stop()
        config.pid_file.unlink(missing_ok=True)
        logger.info("Daemon stopped")
