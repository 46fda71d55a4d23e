#!/usr/bin/env python3
"""
Pawn Ledger Entry Point

Starts the FastAPI server with the due-date scheduler running in the background.
"""

import sys

import uvicorn

from pawn_core.api import create_app
from pawn_core.config import get_config
from pawn_core.logging_config import setup_logging


if __name__ == "__main__":
    config = get_config()
    logger = setup_logging(
        level=config.log_level,
        log_format=config.log_format,
        log_file=config.log_file
    )
    logger.info(f"Starting Pawn Ledger API on {config.api_host}:{config.api_port}")
    
    try:
        uvicorn.run(
            create_app(),
            host=config.api_host,
            port=config.api_port,
            log_level=config.log_level.lower()
        )
    except KeyboardInterrupt:
        logger.info("Shutting down Pawn Ledger API")
    except Exception as e:
        logger.error(f"Error starting server: {e}")
        sys.exit(1)
