#!/usr/bin/env python3
"""
Lending Core Entry Point

Starts the FastAPI server with the configured host, port and storage.
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from lending_core.config import get_config
from lending_core.logging_config import log_action, setup_logging
from lending_core.api import run_server


if __name__ == "__main__":
    config = get_config()
    logger = setup_logging(config.log_level, config.log_format, config.log_file)

    log_action(
        logger, "info", "Starting lending core API",
        action="server_start",
        extra={
            "host": config.api_host,
            "port": config.api_port,
            "database_url": config.database_url,
            "history_granularity": config.history_granularity
        }
    )

    try:
        run_server(
            host=config.api_host,
            port=config.api_port,
            debug=False,  # Set to True for development
            workers=config.api_workers
        )
    except KeyboardInterrupt:
        log_action(logger, "info", "Shutting down lending core API", action="server_stop")
    except Exception as e:
        log_action(logger, "error", f"Error starting server: {e}", action="server_error")
        sys.exit(1)
