"""
log.py
======
Package logger. Modules call get_logger(__name__) or get_logger("watchdog")
and inherit the console handler configured here.
"""

import logging
import os
import sys

logger = logging.getLogger("medisync")
logger.setLevel(
    logging.DEBUG if os.getenv("MEDISYNC_DEBUG", "false").lower() == "true" else logging.INFO
)

# Prevent duplicate handlers when the module is reloaded (uvicorn --reload)
if logger.handlers:
    logger.handlers.clear()

console_handler = logging.StreamHandler(sys.stdout)
console_handler.setFormatter(logging.Formatter(
    '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
))
logger.addHandler(console_handler)


def get_logger(name: str = None) -> logging.Logger:
    """Get the package logger, or a child of it when a name is given."""
    if not name:
        return logger
    if name.startswith("medisync."):
        name = name[len("medisync."):]
    return logger.getChild(name)
