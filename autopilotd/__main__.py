"""Entry point for running the autopilot daemon.

This module provides the CLI entry point for starting the daemon.
"""

import logging
import sys

import uvicorn

from autopilot_library.config import load_config

logger = logging.getLogger(__name__)


def main() -> None:
    """Run the autopilot daemon.

    Loads configuration and starts the uvicorn server. A single worker is
    always used: run admission and triggers live in process memory.
    """
    try:
        config = load_config()

        uvicorn.run(
            "autopilotd.main:app",
            host=config.host,
            port=config.port,
            log_level=config.log_level.lower(),
            workers=1,
        )

    except KeyboardInterrupt:
        logger.info("Received interrupt, shutting down")
        sys.exit(0)
    except Exception as e:
        logger.error(f"Failed to start daemon: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
