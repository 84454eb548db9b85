from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
from pathlib import Path

import httpx
import uvicorn

from checkmon.alert_filter import AlertFilter
from checkmon.check import ConfigError
from checkmon.config import MonitorSettings, build_checks, build_notifiers, load_settings
from checkmon.runner import Runner, check_label
from checkmon.sqlite_sink import SQLiteSink
from checkmon.web import create_app


LOGGER = logging.getLogger("checkmon")


def _install_stop_handlers(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            # Not available on this platform/thread; Ctrl-C still raises KeyboardInterrupt.
            pass


async def run_monitor(settings: MonitorSettings, *, once: bool) -> int:
    async with httpx.AsyncClient() as client:
        notifiers = build_notifiers(settings, client)
        checks = build_checks(settings, notifiers)
        sink = SQLiteSink(settings.sqlite_path) if settings.sqlite_path else None
        runner = Runner(
            checks,
            AlertFilter(settings.max_window_seconds),
            sink=sink,
            max_workers=settings.check_concurrency,
            cycle_timeout_seconds=settings.effective_cycle_timeout(),
        )
        LOGGER.info(
            "Monitor configured checks=%s notifiers=%s interval=%ss sqlite=%s",
            len(checks),
            [n.name for n in notifiers],
            settings.interval_seconds,
            settings.sqlite_path,
        )
        for check in checks:
            LOGGER.info(
                "Check loaded kind=%s min_failures=%s window=%ss description=%s",
                check.get_checker_name(),
                check.min_failures,
                check.failure_window,
                check_label(check),
            )

        server: uvicorn.Server | None = None
        server_task: asyncio.Task | None = None
        try:
            if once:
                outcome = await runner.run_cycle()
                for check, result in outcome.completed.items():
                    level = logging.INFO if result.ok else logging.WARNING
                    LOGGER.log(level, "Check result check=%s ok=%s reason=%s", check_label(check), result.ok, result.reason)
                return 1 if outcome.active else 0

            stop = asyncio.Event()
            _install_stop_handlers(stop)
            if settings.web.enabled:
                server = uvicorn.Server(
                    uvicorn.Config(create_app(runner), host=settings.web.host, port=settings.web.port, log_level="warning")
                )
                server_task = asyncio.create_task(server.serve())
                LOGGER.info("Status surface listening host=%s port=%s", settings.web.host, settings.web.port)
            await runner.run_forever(settings.interval_seconds, stop)
            return 0
        finally:
            if server is not None and server_task is not None:
                server.should_exit = True
                await server_task
            runner.close()
            if sink is not None:
                sink.close()


def main() -> int:
    parser = argparse.ArgumentParser(description="checkmon active monitor")
    parser.add_argument("--config", default="monitor.yaml", help="Path to YAML config")
    parser.add_argument("--once", action="store_true", help="Run one check cycle and exit")
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Logging level (INFO, WARNING, ...)",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    # Avoid leaking secrets (Telegram token is embedded in the Telegram API URL).
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    try:
        settings = load_settings(Path(args.config))
        return asyncio.run(run_monitor(settings, once=bool(args.once)))
    except FileNotFoundError as exc:
        LOGGER.error("Config file not found path=%s error=%s", args.config, exc)
        return 2
    except ConfigError as exc:
        LOGGER.error("Configuration error: %s", exc)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
