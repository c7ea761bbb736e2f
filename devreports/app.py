"""Command that runs the reporting service."""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from typing import Callable

from devreports.config import DEFAULT_CONFIG_FILE, ConfigError, load
from devreports.handler import Handler
from devreports.logger import setup
from devreports.repository import RepositoryError, connect
from devreports.scanner import Scanner
from devreports.server import Server
from devreports.service import DeviceService

VERSION = "1.0.0"


def _run_scanner(scanner: Scanner, stop: threading.Event, log: logging.Logger) -> None:
    try:
        scanner.start(stop)
    except ValueError as exc:
        log.error("scanner failed", extra={"error": str(exc)})


def _install_signal_handlers(on_signal: Callable[[], None]) -> Callable[[], None]:
    if threading.current_thread() is not threading.main_thread():
        return lambda: None

    def handle(signum: int, frame: object) -> None:
        on_signal()

    previous = {sig: signal.signal(sig, handle) for sig in (signal.SIGINT, signal.SIGTERM)}

    def restore() -> None:
        for sig, old in previous.items():
            signal.signal(sig, old)

    return restore


def main(argv: list[str] | None = None) -> int:
    """Run the scanner and the HTTP API until interrupted."""
    parser = argparse.ArgumentParser(
        prog="devreports", description="Device message reporting service."
    )
    parser.add_argument(
        "-c", "--config", default=DEFAULT_CONFIG_FILE, help="path of the YAML configuration"
    )
    args = parser.parse_args(argv)

    try:
        config = load(args.config)
    except ConfigError as exc:
        print(f"devreports: {exc}", file=sys.stderr)
        return 1

    log = setup(config)
    log.info(
        "starting reporting service",
        extra={
            "version": VERSION,
            "input_dir": config.application.input,
            "output_dir": config.application.output,
        },
    )

    try:
        repo = connect(config)
    except RepositoryError as exc:
        log.error("failed to connect to database", extra={"error": str(exc)})
        return 1

    try:
        log.info("database connected")
        service = DeviceService(repo)
        scanner = Scanner(config, repo)
        stop = threading.Event()

        threading.Thread(
            target=_run_scanner, args=(scanner, stop, log), name="scanner", daemon=True
        ).start()
        log.info(
            "scanner started",
            extra={
                "interval": str(config.application.period),
                "workers": config.application.workers,
            },
        )

        server = Server(config, Handler(service))

        def on_signal() -> None:
            log.info("shutting down gracefully...")
            stop.set()
            threading.Thread(target=server.shutdown, name="shutdown", daemon=True).start()

        restore = _install_signal_handlers(on_signal)
        try:
            server.start()
        except OSError as exc:
            log.error("server stopped", extra={"error": str(exc)})
            return 1
        finally:
            stop.set()
            restore()
    finally:
        repo.close()

    return 0