from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal

import structlog

from gateway_monitor.cycle import Monitor
from gateway_monitor.errors import ConfigError, PersistenceFailure
from gateway_monitor.notify import build_notifier
from gateway_monitor.scheduler import MonitorScheduler
from gateway_monitor.settings import DEFAULT_CONFIG_PATH, MonitorSettings, load_settings
from gateway_monitor.store import ServiceStore


logger = structlog.get_logger(__name__)


def configure_logging(level_name: str) -> None:
    level = getattr(logging, str(level_name).upper(), logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    # Avoid leaking secrets (the Telegram token is embedded in the bot API URL).
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def build_monitor(settings: MonitorSettings) -> tuple[Monitor, ServiceStore]:
    settings.validate_for_run()
    store = ServiceStore(settings.database_path)
    store.ensure_schema()
    return Monitor(settings, store, build_notifier(settings)), store


async def run_forever(settings: MonitorSettings) -> int:
    monitor, _store = build_monitor(settings)
    scheduler = MonitorScheduler(monitor, settings)
    scheduler.install_default_jobs()

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass

    await scheduler.start()
    try:
        await stop.wait()
    finally:
        await scheduler.stop()
    return 0


async def run_once(settings: MonitorSettings, *, periodic: bool) -> int:
    monitor, _store = build_monitor(settings)
    await monitor.run_cycle(periodic=periodic)
    return 0


def serve(settings: MonitorSettings) -> int:
    import uvicorn

    from gateway_monitor.app import create_app

    monitor, store = build_monitor(settings)
    scheduler = MonitorScheduler(monitor, settings)
    scheduler.install_default_jobs()
    app = create_app(monitor, store, scheduler)
    uvicorn.run(app, host=settings.api.host, port=settings.api.port, log_level=settings.log_level.lower())
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Gateway service health monitor")
    parser.add_argument(
        "--config",
        default=os.getenv("MONITOR_CONFIG", DEFAULT_CONFIG_PATH),
        help="Path to YAML config",
    )
    parser.add_argument("--once", action="store_true", help="Run one check cycle and exit")
    parser.add_argument("--periodic", action="store_true", help="With --once: send a full status digest")
    parser.add_argument("--serve", action="store_true", help="Run the status API with the scheduler")
    parser.add_argument("--log-level", default=None, help="Logging level (INFO, WARNING, ...)")
    args = parser.parse_args(argv)

    try:
        settings = load_settings(args.config)
    except ConfigError as exc:
        configure_logging(args.log_level or "INFO")
        logger.error("Invalid configuration", error=str(exc))
        return 2

    configure_logging(args.log_level or settings.log_level)

    try:
        if args.serve:
            return serve(settings)
        if args.once:
            return asyncio.run(run_once(settings, periodic=bool(args.periodic)))
        return asyncio.run(run_forever(settings))
    except ConfigError as exc:
        logger.error("Invalid configuration", error=str(exc))
        return 2
    except PersistenceFailure as exc:
        logger.error("Cannot open service store", error=str(exc))
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
