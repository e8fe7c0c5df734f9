"""
Logging setup for the command line.

Library modules only create loggers; handlers are attached here, once, by
the entry point.
"""

import logging
import os
from typing import Optional

from rich.logging import RichHandler

LOG_LEVEL_ENV_VAR = "AI_ORCHESTRATOR_LOG_LEVEL"
NOISY_LOGGERS = ("openai", "anthropic", "httpx", "httpcore")


def configure_logging(level: Optional[str] = None) -> None:
    """Send log records to a Rich console handler.

    Args:
        level: Log level name; defaults to $AI_ORCHESTRATOR_LOG_LEVEL or INFO
    """
    level_name = (level or os.getenv(LOG_LEVEL_ENV_VAR, "INFO")).upper()

    handler = RichHandler(
        rich_tracebacks=True,
        show_path=False,
        show_time=True,
        log_time_format="%Y-%m-%d %H:%M:%S",
    )
    handler.set_name("console_handler")
    handler.setFormatter(logging.Formatter(fmt="%(name)s: %(message)s"))

    logging.basicConfig(handlers=[handler], level=level_name, force=True, format="%(message)s")

    # SDK debug output would echo request bodies.
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
