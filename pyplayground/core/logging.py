"""
Logging setup for pyplayground.

All modules log through ``get_logger(__name__)``; ``setup_logging`` attaches a
Rich handler to the package logger so host applications and the CLI share one
format.
"""

from __future__ import annotations

import logging

from rich.console import Console
from rich.logging import RichHandler

PACKAGE_LOGGER = "pyplayground"


def setup_logging(
    level: str | int = "INFO",
    *,
    console: Console | None = None,
    rich_tracebacks: bool = True,
) -> logging.Logger:
    """
    Configure the package logger with a Rich handler.

    Calling this more than once replaces the previously installed handler
    instead of stacking a new one.

    Args:
        level: Logging level name or number
        console: Optional console to write to (defaults to stderr)
        rich_tracebacks: Render exception tracebacks with Rich

    Returns:
        The configured package logger
    """
    if isinstance(level, str):
        resolved = logging.getLevelName(level.strip().upper())
        if not isinstance(resolved, int):
            resolved = logging.INFO
    else:
        resolved = level

    logger = logging.getLogger(PACKAGE_LOGGER)
    for handler in list(logger.handlers):
        if getattr(handler, "_pyplayground_handler", False):
            logger.removeHandler(handler)

    handler = RichHandler(
        console=console or Console(stderr=True),
        rich_tracebacks=rich_tracebacks,
        show_path=False,
        markup=False,
    )
    handler._pyplayground_handler = True  # type: ignore[attr-defined]
    handler.setFormatter(logging.Formatter("%(message)s", datefmt="[%X]"))

    logger.addHandler(handler)
    logger.setLevel(resolved)
    logger.propagate = False
    return logger


def get_logger(name: str) -> logging.Logger:
    """Return a logger namespaced under the package logger."""
    if name != PACKAGE_LOGGER and not name.startswith(PACKAGE_LOGGER + "."):
        name = f"{PACKAGE_LOGGER}.{name}"
    return logging.getLogger(name)
