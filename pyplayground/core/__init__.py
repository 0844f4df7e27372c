"""
Core functionality for pyplayground.
"""

from .config import DEFAULT_SNIPPET, PlaygroundConfig, SandboxConfig
from .exceptions import (
    ConfigurationError,
    ContextStartError,
    MessageFormatError,
    PlaygroundError,
    SandboxError,
    UserCodeError,
)
from .logging import get_logger, setup_logging

__all__ = [
    "ConfigurationError",
    "ContextStartError",
    "DEFAULT_SNIPPET",
    "MessageFormatError",
    "PlaygroundConfig",
    "PlaygroundError",
    "SandboxConfig",
    "SandboxError",
    "UserCodeError",
    "get_logger",
    "setup_logging",
]
