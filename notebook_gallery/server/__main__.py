"""CLI entry point for running the gallery HTTP service.

Usage:
    python -m notebook_gallery.server [options]

Options:
    --host HOST          Host to bind to (default: from config, 127.0.0.1)
    --port PORT          Port to bind to (default: from config, 8080)
    --config PATH        Path to config.yaml (default: ~/.notebook-gallery/config.yaml)
    --log-level LEVEL    Log level (default: INFO)
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

import yaml

from ..config import DEFAULT_CONFIG_PATH
from .service import GalleryService

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def parse_args(args: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments.

    Args:
        args: Command line arguments (defaults to sys.argv[1:]).

    Returns:
        Parsed arguments namespace.
    """
    parser = argparse.ArgumentParser(
        description="Notebook Gallery - HTTP Service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Start with defaults
    python -m notebook_gallery.server

    # Specify a config file
    python -m notebook_gallery.server --config /etc/gallery/config.yaml

    # Bind to all interfaces on port 9000
    python -m notebook_gallery.server --host 0.0.0.0 --port 9000
""",
    )

    parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Host to bind to (default: server.host from config)",
    )

    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port to bind to (default: server.port from config)",
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_PATH,
        help=f"Path to config.yaml (default: {DEFAULT_CONFIG_PATH})",
    )

    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=LOG_LEVELS,
        help="Log level (default: INFO)",
    )

    return parser.parse_args(args)


def setup_logging(level: str) -> None:
    """Configure logging.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
    """
    logging.basicConfig(
        level=getattr(logging, level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


async def run_service(service: GalleryService, shutdown_event: asyncio.Event) -> None:
    """Run the service until shutdown event is set."""
    await service.start()

    try:
        await shutdown_event.wait()
    finally:
        await service.stop()


def main(args: list[str] | None = None) -> int:
    """Main entry point.

    Args:
        args: Command line arguments (defaults to sys.argv[1:]).

    Returns:
        Exit code (0 for success, non-zero for error).
    """
    parsed = parse_args(args)
    setup_logging(parsed.log_level)

    logger = logging.getLogger(__name__)

    shutdown_event = asyncio.Event()

    try:
        service = GalleryService(
            config_path=parsed.config.expanduser().absolute(),
            host=parsed.host,
            port=parsed.port,
        )
    except (OSError, ValueError, yaml.YAMLError) as e:
        logger.error(f"Invalid configuration: {e}")
        return 2

    def signal_handler(signum: int, frame: object) -> None:
        sig_name = signal.Signals(signum).name
        logger.info(f"Received {sig_name}, initiating shutdown...")
        shutdown_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    logger.info(f"Config path: {parsed.config.expanduser().absolute()}")
    logger.info(f"State directory: {service.config.directories.state}")
    logger.info(f"Server will listen on http://{service.host}:{service.port}")

    try:
        asyncio.run(run_service(service, shutdown_event))
        return 0
    except Exception as e:
        logger.error(f"Service error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
