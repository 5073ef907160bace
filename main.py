"""Entry point when running as a script."""

import asyncio
import logging

from mcp_neo4j_memory.config import LOGGER_NAME
from mcp_neo4j_memory.server import main

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(LOGGER_NAME)

if __name__ == "__main__":
    logger.debug("Running mcp-neo4j-memory as a script")
    asyncio.run(main())
