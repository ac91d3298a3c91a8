#!/usr/bin/env python3
"""Host process: wire the recorder together and run until signalled."""

from __future__ import annotations

import argparse
import logging
import os
import signal
import threading
from typing import Iterable, Optional

from .capture_driver import (
    CaptureDriver,
    CaptureError,
    DryRunCaptureDriver,
    FfmpegCaptureDriver,
    MulticastCaptureDriver,
)
from .config import CONFIG_ENV, ConfigError, ReplaysSettings, build_settings, reload_cfg
from .event_router import EventRouter
from .mqtt_monitor import MqttMonitor
from .recording_supervisor import RecordingSupervisor
from .status_bus import StatusBus, StatusCode, StatusConsole
from .web_server import ReplaysRuntime, WebServerHandle, start_web_server_in_thread

EXIT_OK = 0
EXIT_CONFIG = 2
EXIT_PORT_BOUND = 3

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

log = logging.getLogger("replays")


def build_driver(settings: ReplaysSettings) -> CaptureDriver:
    """Pick the capture driver for these settings; raises ``CaptureError(CONFIG)``."""
    if settings.no_video:
        log.info("no-video mode: ffmpeg commands are logged, not run")
        return DryRunCaptureDriver(settings.ffmpeg_path)
    driver_cls = MulticastCaptureDriver if settings.multicast else FfmpegCaptureDriver
    return driver_cls(
        settings.ffmpeg_path,
        log_ffmpeg=settings.log_ffmpeg,
        logs_dir=settings.logs_dir,
        trim_attempts=settings.trim_attempts,
        trim_backoff_sec=settings.trim_backoff_sec,
    )


class ReplaysDaemon:
    def __init__(self, settings: ReplaysSettings, driver: CaptureDriver, *, use_broker: bool = True) -> None:
        self.settings = settings
        self.driver = driver
        self.bus = StatusBus(ui_queue_size=settings.ui_queue_size, client_queue_size=settings.client_queue_size)
        self.console = StatusConsole(self.bus, clear_after=settings.clear_after_sec)
        self.supervisor = RecordingSupervisor(driver, self.bus, settings.supervisor_settings())
        self.router = EventRouter(self.supervisor, decision_delay_sec=settings.decision_delay_sec)
        self.monitor: Optional[MqttMonitor] = None
        if use_broker and settings.broker_enabled and settings.broker_host:
            self.monitor = MqttMonitor(
                self.router,
                host=settings.broker_host,
                port=settings.broker_port,
                platform=settings.platform,
                topic_root=settings.topic_root,
            )
        elif use_broker and settings.broker_enabled:
            log.warning("no broker host configured; listening for HTTP callbacks only")
        self.web: Optional[WebServerHandle] = None
        self.stop_event = threading.Event()
        self._stopped = False

    def _handle_signal(self, signum: int, _: object) -> None:
        log.info("received signal %d; shutting down", signum)
        self.stop_event.set()

    def start(self) -> None:
        """Start the web server first so a bound port fails before anything else runs."""
        runtime = ReplaysRuntime(
            video_dir=self.settings.video_dir,
            router=self.router,
            supervisor=self.supervisor,
            bus=self.bus,
            platform=self.settings.platform,
            verbose=self.settings.dev_mode,
            client_send_timeout_sec=self.settings.client_send_timeout_sec,
        )
        self.web = start_web_server_in_thread(
            runtime,
            self.settings.host,
            self.settings.port,
            access_log=self.settings.access_log,
        )
        self.console.start()
        if self.monitor is not None:
            self.monitor.start()
        self.bus.publish(StatusCode.READY, "Ready")

    def run(self) -> int:
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                signal.signal(sig, self._handle_signal)
            except ValueError:
                # Only the main thread may install handlers.
                log.debug("cannot install handler for signal %d outside the main thread", sig)
        try:
            self.stop_event.wait()
        finally:
            self.shutdown()
        return EXIT_OK

    def shutdown(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        log.info("shutting down")
        self.router.close()
        self.supervisor.abort("shutdown", shutdown=True)
        self.driver.shutdown()
        if self.monitor is not None:
            self.monitor.stop()
        if self.web is not None:
            self.web.stop()
        self.bus.close()
        self.console.stop()
        log.info("replays stopped")


def parse_args(argv: Iterable[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Jury replays recorder for owlcms.")
    parser.add_argument("--config", help=f"Path to config.yaml (overrides {CONFIG_ENV}).")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging and full request payloads.")
    parser.add_argument("--no-video", action="store_true", help="Log ffmpeg commands instead of running them.")
    parser.add_argument("--port", type=int, help="Override the HTTP port.")
    parser.add_argument("--no-broker", action="store_true", help="Do not connect to the MQTT broker.")
    return parser.parse_args(None if argv is None else list(argv))


def main(argv: Iterable[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format=LOG_FORMAT,
    )
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)

    if args.config:
        os.environ[CONFIG_ENV] = args.config
    if args.no_video:
        os.environ["NO_VIDEO"] = "1"
    if args.port:
        os.environ["REPLAYS_PORT"] = str(args.port)
    if args.verbose:
        os.environ["DEV"] = "1"

    try:
        settings = build_settings(reload_cfg())
    except ConfigError as e:
        log.error("configuration error: %s", e)
        return EXIT_CONFIG
    logging.getLogger().setLevel(settings.log_level)

    try:
        driver = build_driver(settings)
    except CaptureError as e:
        log.error("capture driver unavailable: %s", e)
        return EXIT_CONFIG

    daemon = ReplaysDaemon(settings, driver, use_broker=not args.no_broker)
    try:
        daemon.start()
    except OSError as e:
        log.error("cannot listen on %s:%d: %s", settings.host, settings.port, e)
        daemon.shutdown()
        return EXIT_PORT_BOUND
    log.info(
        "recording %d camera(s) into %s; listening on %s:%d",
        len(settings.cameras),
        settings.video_dir,
        settings.host,
        settings.port,
    )
    return daemon.run()


if __name__ == "__main__":
    raise SystemExit(main())
