"""structlog setup for the qualflow CLI and workers.

Called once at process start. Library code only ever calls
``structlog.get_logger(__name__)`` or receives a bound logger by injection.
"""

from __future__ import annotations

import logging
import os
import sys

import litellm
import structlog

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


def configure_logging(level: str | None = None, json_output: bool | None = None) -> None:
    """Configure structlog to write to stderr.

    Args:
        level: Minimum level name. Defaults to ``QUALFLOW_LOG_LEVEL`` or INFO.
        json_output: Render JSON lines instead of the console format.
            Defaults to ``QUALFLOW_LOG_JSON=1``.
    """
    level_name = (level or os.environ.get("QUALFLOW_LOG_LEVEL", "INFO")).upper()
    if json_output is None:
        json_output = os.environ.get("QUALFLOW_LOG_JSON") == "1"

    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=False)
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(_LEVELS.get(level_name, logging.INFO)),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        context_class=dict,
        cache_logger_on_first_use=False,
    )

    # Keep litellm's own chatter off stderr.
    litellm.suppress_debug_info = True
