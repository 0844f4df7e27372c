"""
pyplayground - run untrusted Python snippets in a disposable sandbox process
and observe their output as structured messages.
"""

from .core import (
    ConfigurationError,
    PlaygroundConfig,
    PlaygroundError,
    SandboxConfig,
    UserCodeError,
    setup_logging,
)
from .execution import ExecutionHost, RunSnapshot, RunStatus
from .sandbox import Message, MessageKind

__version__ = "0.1.0"

__all__ = [
    "ConfigurationError",
    "ExecutionHost",
    "Message",
    "MessageKind",
    "PlaygroundConfig",
    "PlaygroundError",
    "RunSnapshot",
    "RunStatus",
    "SandboxConfig",
    "UserCodeError",
    "__version__",
    "setup_logging",
]
