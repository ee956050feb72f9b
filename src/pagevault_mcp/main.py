#!/usr/bin/env python
"""Main entry point for the Page Vault MCP server."""
import argparse
import atexit
import logging
import os
import sys
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError

from pagevault_mcp.config import PageVaultConfig, config
from pagevault_mcp.exceptions import ConfigurationError
from pagevault_mcp.models.db_models import init_db
from pagevault_mcp.observability import DEFAULT_METRICS_FILE, configure_logging, metrics
from pagevault_mcp.server.mcp_server import PageVaultMcpServer


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="Page Vault MCP Server")
    parser.add_argument(
        "--database-path",
        help="SQLite database file path",
        type=str,
        default=os.environ.get("PAGEVAULT_DATABASE_PATH"),
    )
    parser.add_argument(
        "--in-memory",
        help="Keep the vault in an in-memory database (nothing is persisted)",
        action="store_true",
    )
    parser.add_argument(
        "--log-dir",
        help="Directory for rotating log files",
        type=str,
        default=os.environ.get("PAGEVAULT_LOG_DIR"),
    )
    parser.add_argument(
        "--log-level",
        help="Logging level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=os.environ.get("PAGEVAULT_LOG_LEVEL", "INFO"),
    )
    return parser.parse_args(argv)


def update_config(args) -> None:
    """Update the global config with command line arguments.

    Raises:
        ConfigurationError: If the resulting configuration is invalid.
    """
    if args.database_path:
        config.database_path = Path(args.database_path)
    if args.in_memory:
        config.in_memory_db = True
    try:
        PageVaultConfig.model_validate(config.model_dump())
    except PydanticValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e


def _save_metrics_on_exit():
    """Save metrics to disk on server shutdown."""
    try:
        if metrics.save_metrics():
            logging.getLogger(__name__).info("Metrics saved to disk on shutdown")
    except OSError as e:
        logging.getLogger(__name__).warning(f"Failed to save metrics on shutdown: {e}")


def main(argv=None):
    """Run the Page Vault MCP server."""
    args = parse_args(argv)

    # Configure logging (stderr + persistent file logging with rotation)
    log_level = getattr(logging, args.log_level.upper(), logging.INFO)
    try:
        log_dir = configure_logging(log_dir=args.log_dir, level=log_level, console=True)
    except OSError as e:
        # Fall back to basic console logging if file logging fails
        logging.basicConfig(level=log_level)
        logging.getLogger(__name__).warning(f"Failed to configure file logging: {e}")
        log_dir = None

    logger = logging.getLogger(__name__)
    if log_dir:
        logger.info(f"Persistent logging enabled: {log_dir}")

    try:
        update_config(args)
    except ConfigurationError as e:
        logger.error(str(e))
        sys.exit(2)

    metrics.enable_persistence(DEFAULT_METRICS_FILE)
    atexit.register(_save_metrics_on_exit)

    # Initialize database schema; a single engine is shared by all repositories
    try:
        logger.info(f"Using SQLite database: {config.get_db_url()}")
        engine = init_db()
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        sys.exit(1)

    try:
        logger.info("Starting Page Vault MCP server")
        server = PageVaultMcpServer(engine=engine)
        server.run()
    except Exception as e:
        logger.error(f"Error running server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
