from __future__ import annotations

import argparse
import logging
import signal
import sqlite3
import sys
import threading
from typing import Sequence

from .config import AppConfig, ConfigurationError, load_config, validate_config
from .docker_runtime import DockerRuntimeError, ensure_image, list_volumes, load_docker_client
from .metadata import OperationHistoryStore
from .metrics import LogMetricsSink, MetricsSink, PushgatewaySink
from .models import RunReport
from .orchestrator import VolumeBackupOrchestrator
from .worker import WorkerLauncher

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_PARTIAL_FAILURE = 2
EXIT_CANCELLED = 130


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Back up Docker volumes with an external backup tool")
    parser.add_argument(
        "-c", "--config",
        default=None,
        help="Optional YAML file overriding environment configuration",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Logging level (default: CONPLICITY_LOG_LEVEL or INFO)",
    )
    return parser.parse_args(argv)


def setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="[%(levelname)s] %(message)s",
        stream=sys.stdout,
    )


def install_signal_handlers(cancel_event: threading.Event) -> None:
    def handle_shutdown(signum, frame):
        logger.info("Received signal %s, cancelling the running worker...", signum)
        cancel_event.set()

    signal.signal(signal.SIGTERM, handle_shutdown)
    signal.signal(signal.SIGINT, handle_shutdown)


def build_sink(config: AppConfig) -> MetricsSink:
    if config.pushgateway_url:
        return PushgatewaySink(config.pushgateway_url, instance=config.hostname)
    return LogMetricsSink()


def run(config: AppConfig, *, cancel_event: threading.Event, client=None) -> int:
    client = client or load_docker_client(config.docker_host)
    volumes = list_volumes(client)
    ensure_image(client, config.image_for(config.engine))

    history = OperationHistoryStore(config.metadata_db_path)
    history.initialize()

    launcher = WorkerLauncher(
        client,
        poll_interval_seconds=config.poll_interval_seconds,
        timeout_seconds=config.worker_timeout_seconds or None,
        cancel_event=cancel_event,
    )
    orchestrator = VolumeBackupOrchestrator(
        config=config,
        launcher=launcher,
        history=history,
        cancel_event=cancel_event,
    )

    logger.info("Starting backup of %d volume(s) with %s...", len(volumes), config.engine)
    report = orchestrator.run(volumes)

    try:
        build_sink(config).push(report.metrics)
    except Exception as error:  # pylint: disable=broad-except
        logger.error("Failed to push metrics: %s", error)

    return _exit_code(report)


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    try:
        config = load_config(config_path=args.config)
    except ConfigurationError as error:
        setup_logging(args.log_level or "INFO")
        logger.error("%s", error)
        return EXIT_FATAL

    setup_logging(args.log_level or config.log_level)

    try:
        validate_config(config)
    except ConfigurationError as error:
        logger.error("%s", error)
        return EXIT_FATAL

    cancel_event = threading.Event()
    install_signal_handlers(cancel_event)

    try:
        return run(config, cancel_event=cancel_event)
    except DockerRuntimeError as error:
        logger.error("%s", error)
        return EXIT_FATAL
    except (OSError, sqlite3.Error) as error:
        logger.error("Unable to open operation history at %s: %s", config.metadata_db_path, error)
        return EXIT_FATAL


def _exit_code(report: RunReport) -> int:
    for volume_name, operation, error in report.errors:
        logger.error("Volume %s: %s failed: %s", volume_name, operation, error)

    skipped = sum(1 for outcome in report.outcomes if outcome.skipped)
    failed = report.failed_volumes
    logger.info(
        "End backup: %d volume(s) processed, %d skipped, %d failed",
        len(report.outcomes) - skipped,
        skipped,
        len(failed),
    )

    if report.cancelled:
        return EXIT_CANCELLED
    if failed:
        return EXIT_PARTIAL_FAILURE
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
