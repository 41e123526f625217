"""Main entry point for the studio ingestion pipeline service."""

from dotenv import load_dotenv
load_dotenv()

import argparse
import signal
import sys
import time
from pathlib import Path
from typing import List, Optional, Tuple

import uvicorn

from studio_pipeline.api import create_app
from studio_pipeline.config.environment import EnvironmentConfig
from studio_pipeline.config.exceptions import ConfigurationError
from studio_pipeline.config.loader import load_config
from studio_pipeline.config.models import AppConfig
from studio_pipeline.domain.models import CategoryState, RunState
from studio_pipeline.fetchers import build_fetchers
from studio_pipeline.logging import get_logger
from studio_pipeline.logging.config import configure_logging
from studio_pipeline.persistence.database import close_database, init_database
from studio_pipeline.persistence.watermarks import WatermarkStore
from studio_pipeline.pipeline import FreshnessReporter, PipelineOrchestrator, ProgressStreamer
from studio_pipeline.scheduler import SchedulerService

logger = get_logger(__name__, component="cli")


def load_runtime_config(
    config_path: Optional[Path], log_level_override: Optional[str]
) -> Tuple[AppConfig, EnvironmentConfig]:
    """
    Load configuration and settle the effective log level.

    Priority: CLI flag > LOG_LEVEL environment variable > config file.

    Raises:
        ConfigurationError: If configuration is invalid
    """
    app_config, env_config = load_config(config_path)

    if log_level_override:
        env_config.log_level = log_level_override
    elif not env_config.log_level:
        env_config.log_level = app_config.logging.level or "INFO"

    return app_config, env_config


def build_orchestrator(app_config: AppConfig, env_config: EnvironmentConfig) -> PipelineOrchestrator:
    """Wire fetchers, watermark store and progress streamer into an orchestrator."""
    return PipelineOrchestrator(
        app_config,
        fetchers=build_fetchers(app_config, env_config),
        watermarks=WatermarkStore(app_config.watermarks),
        streamer=ProgressStreamer(app_config.orchestrator.progress_queue_size),
    )


def run_once(orchestrator: PipelineOrchestrator) -> int:
    """Run the pipeline in the foreground. Returns 0 on complete, 1 on error."""
    run_id = orchestrator.start()
    orchestrator.join()
    run = orchestrator.status(run_id)

    logger.info(
        f"Run {run_id} finished: {run.state.value}",
        extra={
            "event": "service.run_once.completed",
            "run_id": run_id,
            "state": run.state.value,
            "duration_ms": run.duration_ms,
            "record_counts": run.record_counts,
            "failed_categories": [
                c.value for c, s in run.categories.items() if s.state is CategoryState.FAILED
            ],
        },
    )
    return 0 if run.state is RunState.COMPLETE else 1


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point.

    Returns:
        Exit code (0 for success, non-zero for failure).
    """
    start_time = time.time()
    parser = argparse.ArgumentParser(
        description="Studio Pipeline - ingestion orchestrator for the studio analytics dashboard"
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to configuration file (default: config.yaml)",
    )
    parser.add_argument(
        "--run-once",
        action="store_true",
        help="Execute a single pipeline run in the foreground and exit",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Log level (overrides config and environment)",
    )
    args = parser.parse_args(argv)

    try:
        app_config, env_config = load_runtime_config(args.config, args.log_level)
        configure_logging(
            level=env_config.log_level,
            format_type=app_config.logging.format,
            environment=env_config.environment,
        )

        logger.info(
            "Studio Pipeline starting",
            extra={
                "event": "service.starting",
                "config_path": str(args.config) if args.config else None,
                "log_level": env_config.log_level,
                "run_once": args.run_once,
            },
        )

        init_database(env_config.database_url)
        orchestrator = build_orchestrator(app_config, env_config)
        orchestrator.recover_interrupted()

        if args.run_once:
            # uvicorn owns signal handling in service mode
            def signal_handler(signum, frame):
                logger.info(
                    f"Received signal {signum}, shutting down",
                    extra={"event": "service.signal_received", "signal": signum},
                )
                orchestrator.reset(f"Stopped by signal {signum}")
                raise KeyboardInterrupt

            previous_handler = signal.signal(signal.SIGTERM, signal_handler)
            try:
                return run_once(orchestrator)
            except KeyboardInterrupt:
                # The run did not finish; no-op if SIGTERM already reset it
                orchestrator.reset("Interrupted by user")
                print("\nRun interrupted", file=sys.stderr)
                return 1
            finally:
                signal.signal(signal.SIGTERM, previous_handler)
                orchestrator.fetchers.close()
                close_database()

        scheduler_service = SchedulerService(
            orchestrator,
            schedule=app_config.schedule,
            stuck_after_minutes=app_config.orchestrator.stuck_after_minutes,
        )
        scheduler_service.start()

        try:
            uvicorn.run(
                create_app(orchestrator, server_config=app_config.server),
                host=app_config.server.host,
                port=app_config.server.port,
                log_config=None,
            )
        finally:
            scheduler_service.shutdown(wait=False)
            orchestrator.reset("Service shutting down")
            orchestrator.fetchers.close()
            close_database()
            logger.info(
                "Studio Pipeline stopped",
                extra={
                    "event": "service.stopping",
                    "uptime_seconds": round(time.time() - start_time, 2),
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


if __name__ == "__main__":
    sys.exit(main())
