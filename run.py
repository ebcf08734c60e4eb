#!/usr/bin/env python3
"""
Bingo Ledger Entry Point

Starts the FastAPI server with the configured host and port.
"""

import sys

from bingo_ledger.api import run_server
from bingo_ledger.config import get_config
from bingo_ledger.logging_config import setup_logging


if __name__ == "__main__":
    config = get_config()
    logger = setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)
    logger.info(f"Starting Bingo ledger ({config.environment.value}) on {config.api_host}:{config.api_port}")

    try:
        run_server(
            host=config.api_host,
            port=config.api_port,
            debug=not config.is_production
        )
    except KeyboardInterrupt:
        logger.info("Shutting down Bingo ledger")
    except Exception as e:
        logger.error(f"Error starting server: {e}", exc_info=True)
        sys.exit(1)
