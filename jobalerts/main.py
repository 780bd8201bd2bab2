"""Main entry point for the job alert worker service."""

from dotenv import load_dotenv
load_dotenv()

import argparse
import json
import signal
import sys
import threading
import time
from pathlib import Path
from typing import Optional, Tuple

from jobalerts.config.environment import EnvironmentConfig
from jobalerts.config.exceptions import ConfigurationError
from jobalerts.config.loader import load_config, validate_config_file
from jobalerts.config.models import AppConfig
from jobalerts.logging import get_logger
from jobalerts.logging.config import configure_logging
from jobalerts.matching import AlertMatchingOrchestrator
from jobalerts.persistence.database import close_database, init_database
from jobalerts.pipelines import register_all
from jobalerts.queue import DurableQueueRuntime, QueueMonitor
from jobalerts.search import TypesenseClient

logger = get_logger(__name__, component="cli")

FREQUENCIES = ("daily", "weekly", "monthly")


def load_runtime_config(
    config_path: Optional[Path], log_level_override: Optional[str]
) -> Tuple[AppConfig, EnvironmentConfig]:
    """
    Load configuration and resolve the effective log level.

    Args:
        config_path: Path to configuration file (None searches default locations)
        log_level_override: Log level from CLI (takes precedence)

    Returns:
        Tuple of (AppConfig, EnvironmentConfig)

    Raises:
        ConfigurationError: If configuration is invalid
    """
    app_config, env_config = load_config(config_path)

    # Log level priority: CLI > Environment > Config
    if log_level_override:
        env_config.log_level = log_level_override
    elif not env_config.log_level:
        env_config.log_level = app_config.logging.level or "INFO"

    return app_config, env_config


def build_runtime(
    app_config: AppConfig, env_config: EnvironmentConfig
) -> Tuple[DurableQueueRuntime, AlertMatchingOrchestrator]:
    """Create the durable runtime and register every pipeline on it."""
    queue_config = app_config.queue
    runtime = DurableQueueRuntime(
        broker_url=env_config.broker_url,
        result_backend=env_config.result_backend,
        worker_id=env_config.worker_id,
        poll_interval_seconds=queue_config.poll_interval_seconds,
        stalled_timeout_seconds=queue_config.stalled_timeout_seconds,
        misfire_grace_seconds=queue_config.misfire_grace_seconds,
        shutdown_timeout_seconds=queue_config.shutdown_timeout_seconds,
        job_key_retention_seconds=queue_config.job_key_retention_seconds,
        default_attempts=queue_config.default_attempts,
        backoff_delay_ms=queue_config.backoff_delay_ms,
    )

    search_client = TypesenseClient(
        base_url=env_config.typesense_url,
        api_key=env_config.typesense_api_key,
        timeout=app_config.search.timeout,
        query_by=app_config.search.query_by,
        query_by_weights=app_config.search.query_by_weights,
    )
    orchestrator = AlertMatchingOrchestrator(
        search_client=search_client,
        queue=runtime,
        settings=app_config.matching,
        search_settings=app_config.search,
    )

    register_all(runtime, app_config, search_client, orchestrator)
    return runtime, orchestrator


def print_schedules(runtime: DurableQueueRuntime) -> None:
    schedules = runtime.get_schedules()
    if not schedules:
        print("No schedules registered")
        return
    for schedule in schedules:
        last_run = schedule.last_run_at.isoformat() if schedule.last_run_at else "never"
        print(
            f"{schedule.id:<28} {schedule.queue_name:<22} {schedule.pattern:<12} "
            f"next={schedule.next_run_at.isoformat()} last={last_run}"
        )


def main(argv=None) -> int:
    """
    Main entry point for the job alert worker.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    start_time = time.time()
    parser = argparse.ArgumentParser(
        description="Job alerts - recurring alert matching and background job workers"
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to configuration file (default: config.yaml if present, else built-in defaults)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Log level (overrides config and environment)",
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--run-once",
        choices=FREQUENCIES,
        default=None,
        help="Run alert matching for one frequency tier immediately and exit",
    )
    mode.add_argument(
        "--list-schedules",
        action="store_true",
        help="Register schedules, print them and exit",
    )
    mode.add_argument(
        "--check-config",
        action="store_true",
        help="Validate the configuration file and exit",
    )

    args = parser.parse_args(argv)

    if args.check_config:
        config_path = args.config or Path("config.yaml")
        is_valid, report = validate_config_file(config_path)
        print(report, file=sys.stdout if is_valid else sys.stderr)
        return 0 if is_valid else 1

    runtime: Optional[DurableQueueRuntime] = None
    try:
        # Step 1: Load configuration before logging so the format is known
        app_config, env_config = load_runtime_config(args.config, args.log_level)

        # Step 2: Configure logging
        configure_logging(
            level=env_config.log_level,
            format_type=app_config.logging.format,
            environment=env_config.environment,
        )

        logger.info(
            "Job alerts service starting",
            extra={
                "event": "service.starting",
                "config_path": str(args.config) if args.config else None,
                "log_level": env_config.log_level,
                "worker_id": env_config.worker_id,
            },
        )

        # Step 3: Initialize database
        init_database(env_config.database_url)

        # Step 4: Build the runtime and register pipelines and schedules
        runtime, orchestrator = build_runtime(app_config, env_config)
        monitor = QueueMonitor().attach(runtime.events)

        if args.list_schedules:
            print_schedules(runtime)
            return 0

        if args.run_once:
            logger.info(
                f"Executing one {args.run_once} alert run",
                extra={"event": "service.run_once.starting", "frequency": args.run_once},
            )
            result = orchestrator.run(args.run_once)
            print(json.dumps(result.to_dict()))
            return 1 if result.failed else 0

        # Daemon mode
        shutdown_event = threading.Event()

        def signal_handler(signum, frame):
            logger.info(
                f"Received signal {signum}, shutting down",
                extra={"event": "service.signal_received", "signal": signum},
            )
            shutdown_event.set()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

        runtime.start()
        logger.info(
            "Workers started. Press Ctrl+C to stop",
            extra={"event": "service.daemon_mode.started", "queues": runtime.queue_names},
        )

        try:
            shutdown_event.wait()
        except KeyboardInterrupt:
            logger.info(
                "Keyboard interrupt received, shutting down",
                extra={"event": "service.keyboard_interrupt"},
            )

        logger.info(
            "Job alerts service stopping",
            extra={
                "event": "service.stopping",
                "uptime_seconds": round(time.time() - start_time, 2),
                "job_counts": monitor.snapshot(),
            },
        )
        return 0

    except ConfigurationError as e:
        print(f"Configuration Error: {e}", file=sys.stderr)
        logger.error(
            f"Configuration error: {e}",
            extra={"event": "config.error", "error_type": "ConfigurationError"},
        )
        return 1
    except KeyboardInterrupt:
        print("\nShutdown requested by user", file=sys.stderr)
        return 0
    except Exception as e:
        print(f"Fatal error: {e}", file=sys.stderr)
        logger.critical(
            "Fatal error during startup",
            extra={
                "event": "service.startup.failed",
                "error_type": type(e).__name__,
                "error": str(e),
            },
            exc_info=True,
        )
        return 1
    finally:
        if runtime is not None:
            runtime.shutdown(wait=True)
        close_database()


def cli() -> None:
    """Console script entry point."""
    sys.exit(main())


if __name__ == "__main__":
    cli()
