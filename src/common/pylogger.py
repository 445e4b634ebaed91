"""Structured logging setup.

structlog is layered over the stdlib ``logging`` module so that modules
using ``logging.getLogger(__name__)`` and modules using
``get_python_logger()`` end up on the same handler and format.
"""

import logging
import sys
from typing import Optional

import structlog

_configured = False


def configure_logging(level: str = "INFO", fmt: str = "json") -> None:
    """Configure stdlib logging and structlog.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ...)
        fmt: "json" for machine-readable output, anything else for console output
    """
    global _configured

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, level.upper(), logging.INFO),
        stream=sys.stderr,
        force=True,
    )
    _configure_structlog(fmt)
    _configured = True


def _configure_structlog(fmt: str) -> None:
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            (
                structlog.processors.JSONRenderer()
                if fmt == "json"
                else structlog.dev.ConsoleRenderer()
            ),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_python_logger(name: Optional[str] = None):
    """Return a structlog logger.

    Until ``configure_logging()`` runs, only structlog is set up (and only
    if nothing else configured it); stdlib handlers belong to the
    embedding application.
    """
    if not _configured and not structlog.is_configured():
        _configure_structlog("json")
    return structlog.get_logger(name)
