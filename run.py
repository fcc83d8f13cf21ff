#!/usr/bin/env python3
"""
Fleet Billing Ledger Entry Point

Starts the FastAPI server with the billing ledger API.
"""

import sys

import uvicorn

from fleet_billing.config import get_config
from fleet_billing.logging_config import setup_logging


def run_server(host: str, port: int, debug: bool = False):
    """Run the FastAPI server"""
    uvicorn.run(
        "fleet_billing.api:app",
        host=host,
        port=port,
        reload=debug,
        log_level="info"
    )


if __name__ == "__main__":
    config = get_config()
    logger = setup_logging(config.log_level, config.log_format, config.log_file)
    logger.info("Starting fleet billing ledger on %s:%s (storage: %s)",
                config.api_host, config.api_port, config.storage_backend)

    try:
        run_server(host=config.api_host, port=config.api_port)
    except KeyboardInterrupt:
        logger.info("Shutting down fleet billing ledger")
    except Exception:
        logger.exception("Error starting server")
        sys.exit(1)
