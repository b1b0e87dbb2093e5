"""
Main entry point for the MCP shim.
"""

import asyncio
import os
import sys

from mcp_shim.logging_config import get_logger, setup_logging, shutdown_logging

logger = get_logger("mcp_shim")


def main():
    """Main entry point."""
    # Console logging from the environment until the full config is loaded
    setup_logging(level=os.getenv("MCP_LOG_LEVEL", "info"))

    from mcp_shim.config import ConfigError, load_config
    from mcp_shim.server import serve

    try:
        config = load_config()
    except ConfigError as e:
        logger.error(f"Invalid shim configuration: {e}")
        shutdown_logging()
        sys.exit(2)

    setup_logging(
        level=config.log_level,
        log_file=config.log_file_path if config.log_to_file else None,
        max_bytes=config.log_max_size,
        server_name=config.server_name,
    )
    logger.debug("Configuration", extra={"data": config.summary()})

    exit_code = 0
    try:
        asyncio.run(serve(config))
    except KeyboardInterrupt:
        pass
    except Exception as e:
        logger.critical(f"Uncaught exception: {e}", exc_info=True)
        exit_code = 1
    finally:
        shutdown_logging()
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
