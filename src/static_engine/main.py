#!/usr/bin/env python3
"""Main entry point for static-engine."""

import argparse
import asyncio
import logging
import signal
import sys
from typing import Optional

from static_engine.container import ServiceContainer, build_container
from static_engine.utils.config import load_config, validate_config
from static_engine.utils.logging import setup_logging

logger = logging.getLogger(__name__)


class WorkerApp:
    """Runs the generation worker pool until a shutdown signal arrives."""

    def __init__(self, config: dict):
        self.config = config
        self.container: Optional[ServiceContainer] = None
        self.running = False

    async def start(self) -> None:
        """Start consuming generation tasks."""
        logger.info("Starting static-engine worker...")

        self.container = build_container(self.config, run_workers=True)
        await self.container.start()
        self.running = True

        # Setup signal handlers for graceful shutdown
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

        logger.info(
            f"static-engine worker started (concurrency {self.config['worker_concurrency']})"
        )

        try:
            while self.running:
                await asyncio.sleep(1)
        finally:
            await self.container.stop()

    def _signal_handler(self, signum, _):
        """Handle shutdown signals gracefully."""
        logger.info(f"Received signal {signum}, shutting down gracefully...")
        self.running = False


def serve(config: dict, with_workers: bool) -> None:
    """Run the HTTP API with uvicorn."""
    import uvicorn

    from static_engine.api.server import create_app

    app = create_app(build_container(config, run_workers=with_workers))
    uvicorn.run(
        app,
        host=config["host"],
        port=config["port"],
        log_level=config["log_level"].lower(),
        log_config=None,
    )


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="static-engine AI ad generation pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  static-engine serve                 # API and worker pool in one process
  static-engine serve --no-workers    # API only, tasks drained elsewhere
  static-engine worker                # Worker pool only
        """,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument(
        "--no-workers",
        action="store_true",
        help="Do not consume generation tasks in the API process",
    )
    subparsers.add_parser("worker", help="Run the generation worker pool")

    args = parser.parse_args()

    config = load_config()
    setup_logging(config["log_level"], json_output=config["log_json"])

    errors = validate_config(config)
    if errors:
        for error in errors:
            logger.error(f"Configuration error: {error}")
        sys.exit(1)

    try:
        if args.command == "serve":
            serve(config, with_workers=not args.no_workers)
        else:
            asyncio.run(WorkerApp(config).start())
    except KeyboardInterrupt:
        logger.info("Application interrupted by user")
        sys.exit(0)
    except Exception as e:
        logger.error(f"Application error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
