import os
import sys

from loguru import logger

logger.remove()
logger.add(sys.stderr, level=os.getenv("IMAP_SIMPLE_LOG_LEVEL", "INFO"))

__all__ = ["logger"]
