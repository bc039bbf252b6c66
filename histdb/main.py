"""
HistDB server - Main entry point.

Starts the HTTP API over a database built from environment configuration.

Usage:
    python -m histdb.main

Configuration is entirely via environment variables.
See config.py and api/config.py for all available settings.

Invariants:
    - Logging is configured before any component is created
    - The database is opened on startup and closed on shutdown
"""

from __future__ import annotations

import logging
import sys

import json_log_formatter
import uvicorn

from .api.config import Settings
from .api.http_server import create_http_app
from .config import HistDbConfig
from .database import HistDb

logger = logging.getLogger(__name__)


def setup_logging(config: HistDbConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: HistDB configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def main() -> None:
    """Main entry point."""
    try:
        config = HistDbConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)
    config.log_config()

    settings = Settings()
    app = create_http_app(HistDb(config), settings)

    logger.info("Starting HistDB HTTP API", extra={"host": settings.host, "port": settings.port})
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    main()
